#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development and API testing.

Usage:
    python seed_test_data.py

This creates a demo user with API key ``demo-api-key``, stores the 50-point
San Francisco morning trace for it and runs visit detection over that day.
"""

import datetime

from database import init_db, SessionLocal
from models import Point, User
from processing import detect_visits
from tests.gps_test_fixtures import MORNING_SETTINGS, MORNING_START, MORNING_TRACE

DEMO_API_KEY = "demo-api-key"


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(User).filter(User.email == "demo@example.com").first()
    if existing:
        print("Demo user already exists. Skipping seed.")
        db.close()
        return

    user = User(email="demo@example.com", api_key=DEMO_API_KEY)
    db.add(user)
    db.commit()
    db.refresh(user)
    print(f"Created user: demo@example.com (id={user.id})")

    for lat, lon, accuracy, offset in MORNING_TRACE:
        db.add(Point(
            user_id=user.id,
            latitude=lat,
            longitude=lon,
            accuracy=accuracy,
            timestamp=MORNING_START + datetime.timedelta(seconds=offset),
        ))
    db.commit()
    print(f"Inserted {len(MORNING_TRACE)} points")

    day_start = MORNING_START.replace(hour=0, minute=0)
    visits = detect_visits(db, user, day_start, day_start + datetime.timedelta(days=1), settings=MORNING_SETTINGS)
    print(f"Detected {len(visits)} visits")

    for v in visits:
        print(f"  - {v.name}: {v.duration}m "
              f"({v.started_at.strftime('%H:%M')}-{v.ended_at.strftime('%H:%M')})")

    db.close()
    print(f"\nDone! Use 'Authorization: Bearer {DEMO_API_KEY}'")


if __name__ == "__main__":
    seed()
