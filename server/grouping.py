"""In-memory fallback for visit detection when density clustering is unavailable.

Points are first folded into fixed-radius groups (a group holds points
within ``fallback_radius_meters`` of its first point). Each group is cut
into time buckets wherever the stream goes quiet for longer than the time
threshold, buckets too thin or too short to be a stay are dropped, and
neighbouring buckets at the same spot are joined again when they are
separated by no more than the tighter merge threshold.
"""

import datetime
import logging
from typing import Callable

from sqlalchemy.orm import Session

from extraction import VisitCandidate, build_candidate
from geo import haversine_m
from models import Point
from names import suggest_place_name
from settings import DetectionSettings

logger = logging.getLogger(__name__)


def group_by_radius(points: list, radius_m: float) -> list[list]:
    """Split time-sorted points into runs that stay within radius_m of the run's first point."""
    groups: list[list] = []
    for point in points:
        if groups:
            anchor = groups[-1][0]
            if haversine_m(anchor.latitude, anchor.longitude, point.latitude, point.longitude) <= radius_m:
                groups[-1].append(point)
                continue
        groups.append([point])
    return groups


def split_by_time(group: list, threshold_minutes: float) -> list[list]:
    """Cut a time-sorted group wherever consecutive points are more than threshold_minutes apart."""
    buckets = [[group[0]]] if group else []
    for previous, point in zip(group, group[1:]):
        if (point.timestamp - previous.timestamp).total_seconds() / 60 > threshold_minutes:
            buckets.append([point])
        else:
            buckets[-1].append(point)
    return buckets


def join_close(groups: list[list], threshold_minutes: float, radius_m: float) -> list[list]:
    """Join consecutive groups at the same spot separated by at most threshold_minutes."""
    joined: list[list] = []
    for group in groups:
        if joined:
            previous = joined[-1]
            gap_minutes = (group[0].timestamp - previous[-1].timestamp).total_seconds() / 60
            same_spot = haversine_m(
                previous[0].latitude, previous[0].longitude, group[0].latitude, group[0].longitude,
            ) <= radius_m
            if gap_minutes <= threshold_minutes and same_spot:
                joined[-1] = previous + group
                continue
        joined.append(list(group))
    return joined


def is_stay(group: list, min_points: int, min_duration_seconds: float) -> bool:
    if len(group) < max(min_points, 2):
        return False
    return (group[-1].timestamp - group[0].timestamp).total_seconds() >= min_duration_seconds


class FallbackDetector:
    def __init__(
        self,
        db: Session,
        user_id: int,
        start_at: datetime.datetime,
        end_at: datetime.datetime,
        settings: DetectionSettings,
        name_suggester: Callable = suggest_place_name,
    ):
        self.db = db
        self.user_id = user_id
        self.start_at = start_at
        self.end_at = end_at
        self.settings = settings
        self.name_suggester = name_suggester

    def call(self) -> list[VisitCandidate]:
        points = (
            self.db.query(Point)
            .filter(
                Point.user_id == self.user_id,
                Point.timestamp >= self.start_at,
                Point.timestamp <= self.end_at,
                Point.visit_id.is_(None),
            )
            .order_by(Point.timestamp.asc())
            .all()
        )
        return self.detect(points)

    def detect(self, points: list) -> list[VisitCandidate]:
        s = self.settings
        groups = [
            bucket
            for group in group_by_radius(points, s.fallback_radius_meters)
            for bucket in split_by_time(group, s.time_threshold_minutes)
        ]
        groups = [g for g in groups if is_stay(g, s.min_points, s.min_visit_duration_seconds)]
        groups = join_close(groups, s.merge_threshold_minutes, s.fallback_radius_meters)

        logger.info(
            "Fallback grouping for user=%d found %d stays in %d points",
            self.user_id, len(groups), len(points),
        )
        return [build_candidate(g, s, self.name_suggester) for g in groups]
