import random
import time

import requests

BASE_URL = "http://127.0.0.1:8000"

# Activity pools by learner profile
COURSES = {
    "english-b1": ["unit-1", "unit-2", "unit-3", "unit-4"],
    "business-english": ["meetings", "emails", "negotiation"],
    "grammar-basics": ["present-perfect", "conditionals", "passive-voice"],
}

WORDS = ["negotiate", "deadline", "agenda", "colleague", "invoice", "schedule", "proposal", "summary"]

GRAMMAR_POINTS = ["present perfect", "conditionals", "passive voice", "reported speech"]

USERS = {
    "alice": {"accuracy": 0.85, "focus": (7.5, 9.5), "activities": 12},
    "peter": {"accuracy": 0.6, "focus": (5.0, 7.5), "activities": 8},
    "marco": {"accuracy": 0.4, "focus": (6.0, 8.0), "activities": 5},
}


def test_connection():
    try:
        r = requests.get(BASE_URL, timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def post_activity(payload):
    try:
        r = requests.post(f"{BASE_URL}/activities", json=payload, timeout=5)
    except requests.RequestException as e:
        print(f" → Exception while posting activity: {e}")
        return False
    if r.status_code == 201:
        return True
    print(f" → Error {r.status_code}: {r.text[:200]}")
    return False


def simulate_learner(user_id, profile):
    success_count = 0
    course_id = random.choice(list(COURSES))
    lessons = COURSES[course_id]
    for i in range(profile["activities"]):
        lesson_id = lessons[i % len(lessons)]
        is_correct = random.random() < profile["accuracy"]
        kind = random.choice(["quiz_attempt", "translation", "grammar", "lesson_view", "lesson_complete"])
        metadata = {
            "course_id": course_id,
            "focus_score": round(random.uniform(*profile["focus"]), 1),
        }
        payload = {
            "user_id": user_id,
            "activity_type": kind,
            "resource_id": lesson_id,
            "resource_type": "lesson",
            "duration_seconds": random.randint(60, 900),
        }
        if kind in ("quiz_attempt", "translation"):
            metadata["word"] = random.choice(WORDS)
            payload["correct"] = is_correct
        elif kind == "grammar":
            metadata["grammar_point"] = random.choice(GRAMMAR_POINTS)
            payload["correct"] = is_correct
        elif kind == "lesson_complete":
            payload["progress"] = min(100, round((i + 1) / profile["activities"] * 100))
        payload["metadata"] = metadata

        print(f"[{user_id}] {kind} on {course_id}/{lesson_id}")
        if post_activity(payload):
            success_count += 1
        time.sleep(0.1)

    r = requests.post(
        f"{BASE_URL}/positions",
        json={"user_id": user_id, "course_id": course_id, "lesson_id": lessons[-1], "position": 42},
        timeout=5,
    )
    if not r.ok:
        print(f" → Position error: {r.status_code}")

    r = requests.post(f"{BASE_URL}/sessions/end", json={"user_id": user_id}, timeout=5)
    if r.ok:
        session = r.json()
        print(f" → Session closed after {session['total_duration_seconds']:.0f}s")

    print(f"{success_count} of {profile['activities']} activities recorded.")
    return success_count


def run_seed():
    if not test_connection():
        return

    total = 0
    for user, profile in USERS.items():
        print(f"\nSeeding activity for {user}")
        total += simulate_learner(user, profile)

    print(f"\nTotal activities recorded: {total}")

    # Check analytics after seeding
    for user in USERS:
        r = requests.get(f"{BASE_URL}/analytics/insights/{user}", timeout=10)
        if r.ok:
            bundle = r.json()
            print(f"{user}: {len(bundle['recommended_actions'])} recommendations")
        else:
            print(f"Failed to get insights for {user}")


if __name__ == "__main__":
    run_seed()
