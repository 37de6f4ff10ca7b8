"""Print rollups, the heatmap, insights or a progress report for one learner."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from catalog import CourseCatalog
from engines.aggregation import AggregationEngine
from engines.insights import InsightGenerator
from engines.reports import TIMEFRAME_DAYS, ReportBuilder
from errors import TelemetryError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("user_id", help="Learner whose telemetry should be summarised")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the telemetry SQLite database (default: $DB_PATH)",
    )
    parser.add_argument(
        "--view",
        choices=("rollups", "heatmap", "insights", "report"),
        default="report",
        help="What to print (default: report)",
    )
    parser.add_argument("--tz", type=str, default="UTC", help="IANA time zone (default: UTC)")
    parser.add_argument(
        "--window-days",
        type=int,
        default=30,
        help="Rollup window in days (default: 30)",
    )
    parser.add_argument(
        "--timeframe",
        choices=tuple(TIMEFRAME_DAYS),
        default="week",
        help="Report timeframe (default: week)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON output",
    )
    return parser


def _render(args: argparse.Namespace) -> object:
    aggregation = AggregationEngine()
    if args.view == "rollups":
        rollups = aggregation.get_daily_rollups(args.user_id, args.window_days, args.tz)
        return [rollup.model_dump(mode="json") for rollup in rollups]
    if args.view == "heatmap":
        return aggregation.get_weekly_heatmap(args.user_id, tz=args.tz).model_dump(mode="json")
    if args.view == "insights":
        return InsightGenerator(aggregation).generate_insights(args.user_id, tz=args.tz).model_dump(mode="json")
    report = ReportBuilder(aggregation, CourseCatalog()).build_report(args.user_id, args.timeframe, tz=args.tz)
    return report.model_dump(mode="json")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    if args.db:
        db.DB_PATH = args.db
        db._pool = db.SQLiteConnectionPool(args.db, max_connections=2, timeout=db.DB_TIMEOUT_SECONDS)
    db.init()

    try:
        result = _render(args)
    except TelemetryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    payload = json.dumps(result, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
