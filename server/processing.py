"""Visit detection pipeline: chunk, cluster, extract, merge, resolve places, persist.

Processing pipeline (runs per user over a time window):
1. Split the window into calendar-year chunks.
2. Cluster the chunk's unvisited points with DBSCAN and turn clusters into
   visit candidates. If clustering is unavailable, fall back to radius and
   time-bucket grouping.
3. Merge consecutive candidates that belong to the same stay.
4. Anchor each candidate to an Area or a Place and persist it as a
   suggested Visit, linking its points.
5. Notify the user and queue reverse geocoding for places created on the way.
"""

import datetime
import logging
import threading
import weakref
from typing import Callable, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import settings as app_settings
from clustering import DensityAwareClusterer
from extraction import ClusterExtractor, VisitCandidate
from geo import haversine_m
from geocoding import PhotonGeocoder
from grouping import FallbackDetector
from jobs import enqueue, get_geocoder
from merging import VisitMerger
from models import Place, PlaceVisit, Point, User, Visit
from names import suggest_place_name
from notifications import notify, visits_detected_message
from places import PlaceResolver, find_matching_area
from settings import DetectionSettings, get_settings
from time_chunks import TimeChunk, year_chunks

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = "Unknown Location"
CONFIRMED_VISIT_WINDOW = datetime.timedelta(hours=1)

# Point-to-visit assignment is serialized per user. Entries live only while
# some caller holds a reference to the lock.
_user_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()
_user_locks_guard = threading.Lock()


def _lock_for(user_id: int) -> threading.Lock:
    with _user_locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = _user_locks[user_id] = threading.Lock()
        return lock


def _as_naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


# ---------------------------------------------------------------------------
# Visit creation
# ---------------------------------------------------------------------------

class VisitCreator:
    """Persist visit candidates as suggested Visits anchored to an Area or a Place."""

    def __init__(
        self,
        db: Session,
        user: User,
        settings: DetectionSettings,
        geocoder: PhotonGeocoder | None = None,
    ):
        self.db = db
        self.user = user
        self.settings = settings
        self.resolver = PlaceResolver(db, user.id, settings, geocoder)
        self.created_visits: list[Visit] = []

    @property
    def created_places(self) -> list[Place]:
        return self.resolver.created_places

    def create_visits(self, candidates: list[VisitCandidate]) -> list[Visit]:
        visits = []
        for candidate in candidates:
            existing = self.find_existing_confirmed_visit(candidate)
            if existing is not None:
                logger.debug("Candidate at %s matches confirmed visit %d", candidate.start_time, existing.id)
                visits.append(existing)
                continue

            visit, suggested_places = self._create_visit(candidate)
            if visit is None:
                continue
            if suggested_places:
                self.associate_suggested_places(visit, suggested_places)
            self.created_visits.append(visit)
            visits.append(visit)
        return visits

    def find_existing_confirmed_visit(self, candidate: VisitCandidate) -> Optional[Visit]:
        """A confirmed visit within an hour of the candidate whose anchor is close to its centre."""
        window_start = candidate.start_time - CONFIRMED_VISIT_WINDOW
        window_end = candidate.end_time + CONFIRMED_VISIT_WINDOW
        confirmed = (
            self.db.query(Visit)
            .filter(
                Visit.user_id == self.user.id,
                Visit.status == "confirmed",
                or_(
                    Visit.started_at.between(window_start, window_end),
                    Visit.ended_at.between(window_start, window_end),
                ),
            )
            .order_by(Visit.started_at.asc())
            .all()
        )
        for visit in confirmed:
            anchor = visit.anchor
            if anchor is None:
                continue
            distance = haversine_m(candidate.center_lat, candidate.center_lon, anchor.latitude, anchor.longitude)
            if distance <= self.settings.confirmed_visit_radius_meters:
                return visit
        return None

    def _create_visit(self, candidate: VisitCandidate) -> tuple[Optional[Visit], list[Place]]:
        area = find_matching_area(self.db, self.user.id, candidate.center_lat, candidate.center_lon)
        resolution = None if area else self.resolver.resolve(candidate)
        main_place = resolution.main_place if resolution else None

        visit = Visit(
            user_id=self.user.id,
            name=visit_name(area, main_place, candidate.suggested_name),
            started_at=candidate.start_time,
            ended_at=candidate.end_time,
            duration=int(candidate.duration // 60),
            status="suggested",
        )
        visit.anchor = area or main_place
        self.db.add(visit)
        self.db.flush()

        point_ids = [p.id for p in candidate.points]
        claimed = 0
        if point_ids:
            # Only claim points that no other visit took in the meantime.
            claimed = self.db.query(Point).filter(
                Point.id.in_(point_ids), Point.visit_id.is_(None),
            ).update({Point.visit_id: visit.id}, synchronize_session="fetch")

        if not claimed:
            logger.info("Points of candidate at %s were already claimed, skipping it", candidate.start_time)
            self.db.delete(visit)
            self.db.flush()
            return None, []
        if claimed < len(point_ids):
            started_at, ended_at = (
                self.db.query(func.min(Point.timestamp), func.max(Point.timestamp))
                .filter(Point.visit_id == visit.id)
                .one()
            )
            visit.started_at, visit.ended_at = started_at, ended_at
            visit.duration = int((ended_at - started_at).total_seconds() // 60)
            self.db.flush()

        return visit, resolution.suggested_places if resolution else []

    def associate_suggested_places(self, visit: Visit, places: list[Place]):
        existing_ids = {
            row.place_id
            for row in self.db.query(PlaceVisit.place_id).filter(PlaceVisit.visit_id == visit.id)
        }
        for place in places:
            if place.id in existing_ids:
                continue
            self.db.add(PlaceVisit(visit_id=visit.id, place_id=place.id))
            existing_ids.add(place.id)
        self.db.flush()


def visit_name(area, place, suggested_name: str | None) -> str:
    if area is not None:
        return area.name
    if place is not None:
        return place.name
    if suggested_name and suggested_name.strip():
        return suggested_name
    return UNKNOWN_LOCATION


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_candidates(
    db: Session,
    user_id: int,
    chunk: TimeChunk,
    settings: DetectionSettings,
    name_suggester: Callable = suggest_place_name,
) -> list[VisitCandidate]:
    """Density clustering for one chunk, or the fallback grouping when it is unavailable."""
    try:
        clusters = DensityAwareClusterer(db, user_id, chunk.begin, chunk.end, settings).call()
        candidates = ClusterExtractor(db, settings, name_suggester).call(clusters)
    except SQLAlchemyError as e:
        logger.warning("Density clustering failed for user=%d: %s", user_id, e)
        db.rollback()
        candidates = None

    if candidates is None:
        logger.info(
            "Falling back to radius grouping for user=%d (%s..%s)", user_id, chunk.begin, chunk.end,
        )
        candidates = FallbackDetector(db, user_id, chunk.begin, chunk.end, settings, name_suggester).call()
    return candidates


def travel_points_lookup(db: Session, user_id: int):
    """Build the merger's lookup of the user's coordinates strictly between two instants."""
    def lookup(start: datetime.datetime, end: datetime.datetime) -> list[tuple[float, float]]:
        rows = (
            db.query(Point.latitude, Point.longitude)
            .filter(Point.user_id == user_id, Point.timestamp > start, Point.timestamp < end)
            .order_by(Point.timestamp.asc())
            .all()
        )
        return [(row.latitude, row.longitude) for row in rows]
    return lookup


def detect_visits(
    db: Session,
    user: User,
    start_at: datetime.datetime,
    end_at: datetime.datetime,
    geocoder: PhotonGeocoder | None = None,
    settings: DetectionSettings | None = None,
    name_suggester: Callable = suggest_place_name,
) -> list[Visit]:
    """Detect and persist visits for a user between ``start_at`` and ``end_at``.

    Returns the created suggested visits, plus any already-confirmed visits
    that candidates matched. Each chunk is committed on its own.
    """
    start_at, end_at = _as_naive_utc(start_at), _as_naive_utc(end_at)
    if settings is None:
        settings = get_settings(db, user.id)
    if geocoder is None and app_settings.REVERSE_GEOCODING_ENABLED:
        geocoder = get_geocoder()

    creator = VisitCreator(db, user, settings, geocoder)
    merger = VisitMerger(settings, travel_points_lookup(db, user.id))
    visits: list[Visit] = []

    with _lock_for(user.id):
        for chunk in year_chunks(start_at, end_at):
            candidates = detect_candidates(db, user.id, chunk, settings, name_suggester)
            merged = merger.merge(sorted(candidates, key=lambda c: c.start_time))
            try:
                chunk_visits = creator.create_visits(merged)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Persisting visits failed for user=%d (%s..%s)", user.id, chunk.begin, chunk.end)
                raise
            logger.info(
                "Chunk %s..%s for user=%d: %d candidates, %d merged, %d visits",
                chunk.begin, chunk.end, user.id, len(candidates), len(merged), len(chunk_visits),
            )
            visits.extend(chunk_visits)

    title, content = visits_detected_message(len(creator.created_visits), start_at, end_at)
    notify(db, user.id, title, content)
    if app_settings.REVERSE_GEOCODING_ENABLED:
        for place in creator.created_places:
            enqueue(db, "reverse_geocode_place", place_id=place.id)
    db.commit()
    return visits
