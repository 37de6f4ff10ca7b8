import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines.sessions import build_event
from scripts import telemetry_report


def test_rollups_view_prints_json(temp_db, capsys):
    db.append_event(build_event("alice", "lesson_view", duration_seconds=300))

    exit_code = telemetry_report.main(["alice", "--view", "rollups", "--window-days", "2"])
    captured = capsys.readouterr()

    assert exit_code == 0
    rollups = json.loads(captured.out)
    assert len(rollups) == 3
    assert rollups[-1]["minutes_spent"] == 5


def test_report_view_writes_output_file(temp_db, capsys, tmp_path):
    output = tmp_path / "report.json"

    exit_code = telemetry_report.main(["alice", "--timeframe", "month", "--output", str(output)])

    assert exit_code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["timeframe"] == "month"
    assert report["user_id"] == "alice"


def test_unknown_time_zone_fails(temp_db, capsys):
    exit_code = telemetry_report.main(["alice", "--view", "heatmap", "--tz", "Nowhere/City"])
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "time zone" in captured.err
