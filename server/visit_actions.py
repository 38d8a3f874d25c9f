"""User-initiated visit changes: manual merge, bulk status updates, manual creation.

Every action either applies fully or raises :class:`VisitActionError` with
the reasons, leaving the database untouched.
"""

import datetime
import logging

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import VISIT_STATUSES, Place, User, Visit
from places import find_or_create_place

logger = logging.getLogger(__name__)


class VisitActionError(Exception):
    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


def _owned_visits(db: Session, user: User, visit_ids) -> list[Visit]:
    return (
        db.query(Visit)
        .filter(Visit.user_id == user.id, Visit.id.in_(list(visit_ids)))
        .order_by(Visit.started_at.asc(), Visit.id.asc())
        .all()
    )


def _parse_time(value) -> datetime.datetime:
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.strip())
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge_visits(db: Session, user: User, visit_ids) -> Visit:
    """Fold two or more of the user's visits into the earliest one.

    The merged visit spans all of them, takes their distinct names joined
    with ", ", owns all their points and is confirmed.
    """
    if not visit_ids or len(set(visit_ids)) < 2:
        raise VisitActionError("At least 2 visits must be selected for merging")

    visits = _owned_visits(db, user, set(visit_ids))
    if len(visits) < 2:
        raise VisitActionError("At least 2 visits must be selected for merging")

    base, others = visits[0], visits[1:]
    names: list[str] = []
    for v in visits:
        if v.name and v.name not in names:
            names.append(v.name)

    try:
        base.started_at = min(v.started_at for v in visits)
        base.ended_at = max(v.ended_at for v in visits)
        base.duration = int((base.ended_at - base.started_at).total_seconds() // 60)
        base.name = ", ".join(names) or base.name
        base.status = "confirmed"

        other_ids = [v.id for v in others]
        for v in others:
            for point in list(v.points):
                point.visit = base
            db.delete(v)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Merging visits %s for user=%d failed: %s", sorted(visit_ids), user.id, e)
        raise VisitActionError(str(e))

    db.refresh(base)
    logger.info("Merged visits %s for user=%d into visit %d", other_ids, user.id, base.id)
    return base


# ---------------------------------------------------------------------------
# Bulk status update
# ---------------------------------------------------------------------------

def bulk_update_status(db: Session, user: User, visit_ids, status: str) -> dict:
    """Set ``status`` on the user's visits among ``visit_ids``; other users' ids are ignored."""
    if not visit_ids:
        raise VisitActionError("No visits selected")
    if status not in VISIT_STATUSES:
        raise VisitActionError("Invalid status")

    visits = _owned_visits(db, user, visit_ids)
    if not visits:
        raise VisitActionError("No matching visits found")

    try:
        for v in visits:
            v.status = status
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise VisitActionError(str(e))

    logger.info("Set %d visits of user=%d to %s", len(visits), user.id, status)
    return {"count": len(visits), "visits": visits}


# ---------------------------------------------------------------------------
# Manual creation
# ---------------------------------------------------------------------------

def create_visit(
    db: Session,
    user: User,
    name: str,
    latitude,
    longitude,
    started_at,
    ended_at,
) -> Visit:
    """Record a confirmed visit the user entered by hand, anchored to a manual place."""
    errors = []
    name = (name or "").strip()
    if not name:
        errors.append("Name can't be blank")
    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError):
        errors.append("Latitude and longitude must be numbers")
    try:
        start, end = _parse_time(started_at), _parse_time(ended_at)
    except (TypeError, ValueError, AttributeError):
        errors.append("Invalid start or end time")
    else:
        if end < start:
            errors.append("End time must be after start time")
    if errors:
        raise VisitActionError(errors)

    try:
        place = (
            db.query(Place)
            .filter(
                Place.latitude == lat,
                Place.longitude == lon,
                or_(Place.user_id == user.id, Place.user_id.is_(None)),
            )
            .order_by(Place.id)
            .first()
        )
        if place is None:
            place, _ = find_or_create_place(
                db, name=name, latitude=lat, longitude=lon,
                similarity_radius_m=0, user_id=user.id, source="manual",
            )

        visit = Visit(
            user_id=user.id,
            name=name,
            started_at=start,
            ended_at=end,
            duration=int((end - start).total_seconds() // 60),
            status="confirmed",
        )
        visit.anchor = place
        db.add(visit)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Creating visit %r for user=%d failed: %s", name, user.id, e)
        raise VisitActionError(str(e))

    db.refresh(visit)
    logger.info("Created confirmed visit %d (%r) for user=%d", visit.id, name, user.id)
    return visit
