"""SQLAlchemy models for users, points, areas, places, visits and their side tables."""

import datetime
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base

VISIT_STATUSES = ("suggested", "confirmed", "declined")
PLACE_SOURCES = ("manual", "photon", "reverse_geocoded")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    api_key = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    points = relationship("Point", back_populates="user", cascade="all, delete-orphan")
    areas = relationship("Area", back_populates="user", cascade="all, delete-orphan")
    visits = relationship("Visit", back_populates="user", cascade="all, delete-orphan")


class Point(Base):
    """A raw GPS fix. Only ``visit_id`` is ever written by visit detection."""

    __tablename__ = "points"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    accuracy = Column(Float, nullable=True)
    geodata = Column(JSON, nullable=True)
    visit_id = Column(Integer, ForeignKey("visits.id", ondelete="SET NULL"), nullable=True, index=True)

    user = relationship("User", back_populates="points")
    visit = relationship("Visit", back_populates="points")


class Area(Base):
    """A user-defined circular geofence; wins over Place resolution."""

    __tablename__ = "areas"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius = Column(Float, nullable=False)  # metres

    user = relationship("User", back_populates="areas")
    visits = relationship("Visit", back_populates="area")


class Place(Base):
    """A named location a visit can be anchored to.

    Places with ``user_id`` unset are shared between users. The unique
    constraint lets concurrent resolvers converge on one row instead of
    creating duplicates.
    """

    __tablename__ = "places"
    __table_args__ = (
        UniqueConstraint("name", "latitude", "longitude", name="uq_places_name_coordinates"),
    )

    DEFAULT_NAME = "Suggested place"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    city = Column(String, nullable=True)
    country = Column(String, nullable=True)
    source = Column(String, nullable=False, default="manual")
    geodata = Column(JSON, nullable=True)
    reverse_geocoded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    visits = relationship("Visit", back_populates="place")


class Visit(Base):
    """A detected or user-entered stay, anchored to an Area or a Place (never both)."""

    __tablename__ = "visits"
    __table_args__ = (
        CheckConstraint(
            "area_id IS NULL OR place_id IS NULL", name="ck_visits_single_anchor",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    area_id = Column(Integer, ForeignKey("areas.id"), nullable=True)
    place_id = Column(Integer, ForeignKey("places.id"), nullable=True)
    name = Column(String, nullable=False)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    status = Column(String, nullable=False, default="suggested")
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    user = relationship("User", back_populates="visits")
    area = relationship("Area", back_populates="visits")
    place = relationship("Place", back_populates="visits")
    points = relationship("Point", back_populates="visit", order_by="Point.timestamp")
    place_visits = relationship("PlaceVisit", back_populates="visit", cascade="all, delete-orphan")

    @property
    def anchor(self):
        """The Area or Place this visit belongs to, or None."""
        return self.area or self.place

    @anchor.setter
    def anchor(self, value):
        if value is None:
            self.area, self.place = None, None
        elif isinstance(value, Area):
            self.area, self.place = value, None
        elif isinstance(value, Place):
            self.area, self.place = None, value
        else:
            raise TypeError(f"Visit anchor must be an Area or a Place, not {type(value).__name__}")

    @property
    def suggested_places(self) -> list[Place]:
        return [pv.place for pv in self.place_visits]


class PlaceVisit(Base):
    """A place offered as an alternative anchor for a visit."""

    __tablename__ = "place_visits"
    __table_args__ = (UniqueConstraint("visit_id", "place_id", name="uq_place_visits_pair"),)

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id", ondelete="CASCADE"), nullable=False)
    place_id = Column(Integer, ForeignKey("places.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    visit = relationship("Visit", back_populates="place_visits")
    place = relationship("Place")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, default="info")
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class Job(Base):
    """A queued unit of background work (e.g. reverse geocoding a new place)."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    args = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)


class Config(Base):
    """Key/value threshold overrides; ``user_id`` NULL means global."""

    __tablename__ = "config"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_config_user_key"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    key = Column(String, nullable=False)
    value = Column(String, nullable=False)
