"""Turn raw clusters into visit candidates.

A candidate carries the stay's time span, an accuracy-weighted centre, a
radius and a suggested name, plus the real points that back it. Synthetic
members and points that vanished since clustering are dropped; a storage
error while resolving points fails the whole extraction.
"""

import dataclasses
import datetime
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clustering import Cluster
from geo import haversine_m
from models import Point
from names import suggest_place_name
from settings import DetectionSettings

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class VisitCandidate:
    start_time: datetime.datetime
    end_time: datetime.datetime
    center_lat: float
    center_lon: float
    radius: float
    points: tuple
    suggested_name: Optional[str] = None

    @property
    def duration(self) -> float:
        """Seconds between the first and last point."""
        return (self.end_time - self.start_time).total_seconds()


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def weighted_center(
    points,
    default_accuracy: float = 50.0,
    exponent: float = 1.0,
) -> Optional[tuple[float, float]]:
    """Centre of the points weighted by 1 / accuracy**exponent.

    A smaller reported error radius gives a point more pull. Points with
    no accuracy use ``default_accuracy``.
    """
    if not points:
        return None

    total = lat_sum = lon_sum = 0.0
    for p in points:
        accuracy = p.accuracy if p.accuracy is not None and p.accuracy > 0 else default_accuracy
        weight = 1.0 / max(accuracy, 1.0) ** exponent
        total += weight
        lat_sum += p.latitude * weight
        lon_sum += p.longitude * weight
    return lat_sum / total, lon_sum / total


def visit_radius(points, center: tuple[float, float], minimum: float = 15.0) -> float:
    """Distance from the centre to the furthest point, never below ``minimum``."""
    if not points:
        return minimum
    furthest = max(haversine_m(center[0], center[1], p.latitude, p.longitude) for p in points)
    return max(furthest, minimum)


def build_candidate(
    points,
    settings: DetectionSettings,
    name_suggester: Callable = suggest_place_name,
) -> Optional[VisitCandidate]:
    if not points:
        return None
    points = sorted(points, key=lambda p: p.timestamp)
    center = weighted_center(points, settings.default_accuracy_meters, settings.accuracy_weight_exponent)
    return VisitCandidate(
        start_time=points[0].timestamp,
        end_time=points[-1].timestamp,
        center_lat=center[0],
        center_lon=center[1],
        radius=visit_radius(points, center, settings.minimum_radius_meters),
        points=tuple(points),
        suggested_name=name_suggester(points),
    )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ClusterExtractor:
    def __init__(
        self,
        db: Session,
        settings: DetectionSettings,
        name_suggester: Callable = suggest_place_name,
    ):
        self.db = db
        self.settings = settings
        self.name_suggester = name_suggester

    def call(self, clusters: list[Cluster] | None) -> list[VisitCandidate] | None:
        """Build one candidate per cluster that still has real points.

        Returns None when ``clusters`` is None (clustering unavailable) or
        when loading points hits a storage error.
        """
        if clusters is None:
            return None

        candidates = []
        for cluster in clusters:
            try:
                points = self._load_points(cluster.point_ids)
            except SQLAlchemyError as e:
                logger.warning("Point lookup failed while extracting visits: %s", e)
                self.db.rollback()
                return None

            candidate = build_candidate(points, self.settings, self.name_suggester)
            if candidate is None:
                logger.debug("Skipping cluster at %s: none of its points exist any more", cluster.start_time)
                continue
            candidates.append(candidate)

        return candidates

    def _load_points(self, point_ids: list[int]) -> list[Point]:
        if not point_ids:
            return []
        return self.db.query(Point).filter(Point.id.in_(point_ids)).all()
