"""REST API endpoints for visit detection, review and the supporting areas/places."""

import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db
from models import VISIT_STATUSES, Area, Notification, Place, User, Visit
from processing import detect_visits
from visit_actions import VisitActionError, bulk_update_status, create_visit, merge_visits

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class DetectRequest(BaseModel):
    start_at: datetime.datetime
    end_at: datetime.datetime


class VisitCreate(BaseModel):
    name: str
    latitude: float | str
    longitude: float | str
    started_at: datetime.datetime
    ended_at: datetime.datetime


class MergeRequest(BaseModel):
    visit_ids: list[int]


class BulkUpdateRequest(BaseModel):
    visit_ids: list[int] = Field(default_factory=list)
    status: str


class PlaceResponse(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None
    source: str

    class Config:
        from_attributes = True


class AreaCreate(BaseModel):
    name: str
    latitude: float
    longitude: float
    radius: float = Field(..., gt=0, description="Radius in metres")


class AreaResponse(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    radius: float

    class Config:
        from_attributes = True


class VisitResponse(BaseModel):
    id: int
    name: str
    started_at: str
    ended_at: str
    duration: int
    status: str
    area_id: Optional[int] = None
    place: Optional[PlaceResponse] = None
    suggested_places: list[PlaceResponse] = []
    point_count: int = 0


class DetectResponse(BaseModel):
    visits_detected: int
    visits: list[VisitResponse]


class BulkUpdateResponse(BaseModel):
    message: str
    updated_count: int


class NotificationResponse(BaseModel):
    id: int
    kind: str
    title: str
    content: str
    created_at: str
    read: bool


def _visit_response(v: Visit) -> VisitResponse:
    return VisitResponse(
        id=v.id,
        name=v.name,
        started_at=v.started_at.isoformat(),
        ended_at=v.ended_at.isoformat(),
        duration=v.duration,
        status=v.status,
        area_id=v.area_id,
        place=PlaceResponse.model_validate(v.place) if v.place else None,
        suggested_places=[PlaceResponse.model_validate(p) for p in v.suggested_places],
        point_count=len(v.points),
    )


def _naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def _unprocessable(e: VisitActionError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.errors)


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------

def get_current_user(authorization: str = Header(...), db: Session = Depends(get_db)) -> User:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    api_key = authorization[7:].strip()
    user = db.query(User).filter(User.api_key == api_key).first() if api_key else None
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return user


# ---------------------------------------------------------------------------
# Visit endpoints
# ---------------------------------------------------------------------------

@router.post("/visits/detect", response_model=DetectResponse)
def detect(req: DetectRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if _naive_utc(req.end_at) < _naive_utc(req.start_at):
        raise HTTPException(status_code=422, detail="end_at must not be before start_at")
    visits = detect_visits(db, user, req.start_at, req.end_at)
    logger.info("Detection for user=%d returned %d visits", user.id, len(visits))
    return DetectResponse(visits_detected=len(visits), visits=[_visit_response(v) for v in visits])


@router.get("/visits", response_model=list[VisitResponse])
def list_visits(
    start_at: Optional[datetime.datetime] = None,
    end_at: Optional[datetime.datetime] = None,
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if status is not None and status not in VISIT_STATUSES:
        raise HTTPException(status_code=422, detail="Invalid status")

    query = db.query(Visit).filter(Visit.user_id == user.id)
    if start_at is not None:
        query = query.filter(Visit.ended_at >= _naive_utc(start_at))
    if end_at is not None:
        query = query.filter(Visit.started_at <= _naive_utc(end_at))
    if status is not None:
        query = query.filter(Visit.status == status)
    return [_visit_response(v) for v in query.order_by(Visit.started_at.asc()).all()]


@router.post("/visits", response_model=VisitResponse, status_code=201)
def create(req: VisitCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        visit = create_visit(db, user, req.name, req.latitude, req.longitude, req.started_at, req.ended_at)
    except VisitActionError as e:
        raise _unprocessable(e)
    return _visit_response(visit)


@router.post("/visits/merge", response_model=VisitResponse)
def merge(req: MergeRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        visit = merge_visits(db, user, req.visit_ids)
    except VisitActionError as e:
        raise _unprocessable(e)
    return _visit_response(visit)


@router.post("/visits/bulk_update", response_model=BulkUpdateResponse)
def bulk_update(req: BulkUpdateRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        result = bulk_update_status(db, user, req.visit_ids, req.status)
    except VisitActionError as e:
        raise _unprocessable(e)
    return BulkUpdateResponse(
        message=f"{result['count']} visits updated to {req.status}",
        updated_count=result["count"],
    )


# ---------------------------------------------------------------------------
# Area and place endpoints
# ---------------------------------------------------------------------------

@router.get("/areas", response_model=list[AreaResponse])
def list_areas(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(Area).filter(Area.user_id == user.id).order_by(Area.id).all()


@router.post("/areas", response_model=AreaResponse, status_code=201)
def create_area(req: AreaCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    area = Area(user_id=user.id, name=req.name, latitude=req.latitude, longitude=req.longitude, radius=req.radius)
    db.add(area)
    db.commit()
    db.refresh(area)
    logger.info("Area created: %s (id=%d) by user=%d", area.name, area.id, user.id)
    return area


@router.get("/places", response_model=list[PlaceResponse])
def list_places(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """The user's own places plus shared ones their visits are anchored to."""
    used = db.query(Visit.place_id).filter(Visit.user_id == user.id, Visit.place_id.isnot(None))
    return (
        db.query(Place)
        .filter(or_(Place.user_id == user.id, Place.id.in_(used)))
        .order_by(Place.name)
        .all()
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    limit: int = 50,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = (
        db.query(Notification)
        .filter(Notification.user_id == user.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )
    return [
        NotificationResponse(
            id=n.id,
            kind=n.kind,
            title=n.title,
            content=n.content,
            created_at=n.created_at.isoformat() if n.created_at else "",
            read=n.read_at is not None,
        )
        for n in rows
    ]
