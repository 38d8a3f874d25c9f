"""A small database-backed job queue for follow-up work.

Jobs are rows in the ``jobs`` table. ``enqueue`` adds one, and
``run_pending`` (called by a worker loop or a cron-style script) runs the
pending ones in FIFO order through the handlers registered with ``@job``.
"""

import datetime
import logging
from typing import Callable

from sqlalchemy.orm import Session

import settings as app_settings
from geocoding import PhotonGeocoder
from models import Job, Place
from names import build_place_name
from places import find_or_create_place

logger = logging.getLogger(__name__)

_HANDLERS: dict[str, Callable] = {}
_geocoder: PhotonGeocoder | None = None


def job(name: str):
    """Register ``func(db, **args)`` as the handler for jobs called ``name``."""
    def decorator(func):
        _HANDLERS[name] = func
        return func
    return decorator


def enqueue(db: Session, name: str, **args) -> Job:
    """Queue a job. The caller commits."""
    if name not in _HANDLERS:
        raise ValueError(f"Unknown job: {name}")
    queued = Job(name=name, args=args, status="pending")
    db.add(queued)
    return queued


def run_pending(db: Session, limit: int | None = None) -> int:
    """Run pending jobs oldest first; returns how many were attempted."""
    query = db.query(Job).filter(Job.status == "pending").order_by(Job.id.asc())
    if limit is not None:
        query = query.limit(limit)

    attempted = 0
    for queued in query.all():
        queued.status = "running"
        queued.attempts += 1
        db.commit()
        attempted += 1

        try:
            _HANDLERS[queued.name](db, **(queued.args or {}))
        except Exception as e:
            db.rollback()
            logger.exception("Job %s (id=%d) failed", queued.name, queued.id)
            queued.status = "failed"
            queued.last_error = str(e)
        else:
            queued.status = "done"
        queued.finished_at = datetime.datetime.utcnow()
        db.commit()
    return attempted


def get_geocoder() -> PhotonGeocoder:
    global _geocoder
    if _geocoder is None:
        _geocoder = PhotonGeocoder()
    return _geocoder


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

@job("reverse_geocode_place")
def reverse_geocode_place(db: Session, place_id: int, geocoder: PhotonGeocoder | None = None):
    """Enrich a place from the geocoder and record any further places found around it."""
    if not app_settings.REVERSE_GEOCODING_ENABLED:
        logger.warning("Reverse geocoding is disabled; skipping place %d", place_id)
        return

    place = db.get(Place, place_id)
    if place is None:
        raise LookupError(f"Place {place_id} not found")

    results = (geocoder or get_geocoder()).search(place.latitude, place.longitude)
    if not results:
        return

    first, *others = results
    place.name = build_place_name(first.properties) or place.name
    place.city = first.city or place.city
    place.country = first.country or place.country
    place.geodata = first.geodata
    place.source = "reverse_geocoded"
    place.reverse_geocoded_at = datetime.datetime.utcnow()
    db.flush()

    settings = app_settings.get_settings(db)
    for result in others:
        name = build_place_name(result.properties)
        if name is None:
            continue
        find_or_create_place(
            db,
            name=name,
            latitude=result.latitude,
            longitude=result.longitude,
            similarity_radius_m=settings.place_similarity_radius_meters,
            source="photon",
            city=result.city,
            country=result.country,
            geodata=result.geodata,
        )
    db.commit()
    logger.info("Reverse geocoded place %d as %r (%d nearby results)", place.id, place.name, len(others))
