"""Shared pytest fixtures: in-memory DB, two users, point factory."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base, enable_sqlite_savepoints
from models import Point, User
from tests.gps_test_fixtures import MORNING_START, MORNING_TRACE


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = enable_sqlite_savepoints(create_engine("sqlite:///:memory:"))
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def user(db):
    user = User(email="test@example.com", api_key="test-api-key")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_user(db):
    user = User(email="other@example.com", api_key="other-api-key")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def add_points(db):
    """Insert (lat, lon, accuracy, timestamp) rows for a user and return the Points."""
    def _add(user, rows, geodata=None):
        points = []
        for lat, lon, accuracy, timestamp in rows:
            point = Point(
                user_id=user.id,
                latitude=lat,
                longitude=lon,
                accuracy=accuracy,
                timestamp=timestamp,
                geodata=geodata,
            )
            db.add(point)
            points.append(point)
        db.commit()
        return points
    return _add


@pytest.fixture
def morning(user, add_points):
    """The user's morning trace as persisted Points."""
    rows = [
        (lat, lon, acc, MORNING_START + datetime.timedelta(seconds=offset))
        for lat, lon, acc, offset in MORNING_TRACE
    ]
    return add_points(user, rows)
