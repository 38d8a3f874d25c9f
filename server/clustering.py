"""Density-based spatial-temporal clustering of a user's unvisited points.

Algorithm:
1. Load the user's points in ``[start, end]`` that have no visit yet.
2. Optionally bridge short GPS silences with interpolated synthetic points
   (density normalization) so a stay is not split by a sensor gap.
3. Run DBSCAN over great-circle (haversine) distance.
4. Split every spatial cluster wherever consecutive members are further
   apart in time than the configured gap.
5. Drop clusters that are too small or too short to be a stay.

``call()`` returns ``None`` when the point query fails (e.g. a statement
timeout), which is different from ``[]`` ("nothing to cluster"): the
caller is expected to fall back to a cheaper strategy.
"""

import dataclasses
import datetime
import logging
import math
from typing import Union

import numpy as np
from sklearn.cluster import DBSCAN
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from geo import EARTH_RADIUS_M, haversine_m, interpolate
from models import Point
from settings import DetectionSettings

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class RealPoint:
    """A persisted point, referenced by id."""

    id: int
    latitude: float
    longitude: float
    timestamp: datetime.datetime


@dataclasses.dataclass(frozen=True)
class SyntheticPoint:
    """An interpolated point that only exists to keep a cluster contiguous."""

    latitude: float
    longitude: float
    timestamp: datetime.datetime


ClusterMember = Union[RealPoint, SyntheticPoint]


@dataclasses.dataclass(frozen=True)
class Cluster:
    members: tuple[ClusterMember, ...]
    start_time: datetime.datetime
    end_time: datetime.datetime

    @property
    def point_count(self) -> int:
        return len(self.members)

    @property
    def point_ids(self) -> list[int]:
        """Ids of the real points only; synthetic members have none."""
        return [m.id for m in self.members if isinstance(m, RealPoint)]

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


class DensityAwareClusterer:
    def __init__(
        self,
        db: Session,
        user_id: int,
        start_at: datetime.datetime,
        end_at: datetime.datetime,
        settings: DetectionSettings,
    ):
        self.db = db
        self.user_id = user_id
        self.start_at = start_at
        self.end_at = end_at
        self.settings = settings

    def call(self) -> list[Cluster] | None:
        try:
            points = self._candidate_points()
        except OperationalError as e:
            logger.warning(
                "Clustering query failed for user=%d (%s..%s): %s",
                self.user_id, self.start_at, self.end_at, e,
            )
            self.db.rollback()
            return None

        if len(points) < self.settings.min_points:
            return []

        members: list[ClusterMember] = list(points)
        if self.settings.density_normalization_enabled:
            members.extend(self.bridge_gaps(points))
            members.sort(key=lambda m: m.timestamp)

        return self.cluster_members(members)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _candidate_points(self) -> list[RealPoint]:
        if self.db.get_bind().dialect.name == "postgresql":
            # SET cannot take bind parameters; the value is an int from settings.
            self.db.execute(text(f"SET LOCAL statement_timeout = {int(self.settings.query_timeout_ms)}"))

        rows = (
            self.db.query(Point.id, Point.latitude, Point.longitude, Point.timestamp)
            .filter(
                Point.user_id == self.user_id,
                Point.timestamp >= self.start_at,
                Point.timestamp <= self.end_at,
                Point.visit_id.is_(None),
                Point.latitude.isnot(None),
                Point.longitude.isnot(None),
            )
            .order_by(Point.timestamp.asc())
            .all()
        )
        return [RealPoint(r.id, r.latitude, r.longitude, r.timestamp) for r in rows]

    # ------------------------------------------------------------------
    # Density normalization
    # ------------------------------------------------------------------

    def bridge_gaps(self, points: list[RealPoint]) -> list[SyntheticPoint]:
        """Interpolate synthetic points across silences short enough to be sensor gaps.

        A gap is bridged when it is longer than the clustering time gap but
        no longer than ``density_max_gap_hours``, and the user ended up no
        more than ``density_max_distance_meters`` from where they were.
        """
        s = self.settings
        time_step = s.time_gap_seconds / 2
        space_step = s.eps_meters / 2
        synthetic = []

        for before, after in zip(points, points[1:]):
            gap = (after.timestamp - before.timestamp).total_seconds()
            if gap <= s.time_gap_seconds or gap > s.density_max_gap_seconds:
                continue
            distance = haversine_m(before.latitude, before.longitude, after.latitude, after.longitude)
            if distance > s.density_max_distance_meters:
                continue

            intervals = max(math.ceil(gap / time_step), math.ceil(distance / space_step), 2)
            for k in range(1, intervals):
                fraction = k / intervals
                lat, lon = interpolate(
                    before.latitude, before.longitude, after.latitude, after.longitude, fraction,
                )
                synthetic.append(SyntheticPoint(
                    latitude=lat,
                    longitude=lon,
                    timestamp=before.timestamp + datetime.timedelta(seconds=gap * fraction),
                ))

        if synthetic:
            logger.debug("Bridged GPS gaps for user=%d with %d synthetic points", self.user_id, len(synthetic))
        return synthetic

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def cluster_members(self, members: list[ClusterMember]) -> list[Cluster]:
        """Spatially cluster time-sorted members, then split each cluster on time gaps."""
        if len(members) < self.settings.min_points:
            return []

        coords = np.radians([[m.latitude, m.longitude] for m in members])
        labels = DBSCAN(
            eps=self.settings.eps_meters / EARTH_RADIUS_M,
            min_samples=self.settings.min_points,
            metric="haversine",
            algorithm="ball_tree",
        ).fit_predict(coords)

        spatial: dict[int, list[ClusterMember]] = {}
        for member, label in zip(members, labels):
            if label == -1:  # noise
                continue
            spatial.setdefault(int(label), []).append(member)

        clusters = []
        for group in spatial.values():
            for segment in self._split_on_time_gaps(group):
                cluster = Cluster(
                    members=tuple(segment),
                    start_time=segment[0].timestamp,
                    end_time=segment[-1].timestamp,
                )
                if self._is_stay(cluster):
                    clusters.append(cluster)

        clusters.sort(key=lambda c: c.start_time)
        return clusters

    def _split_on_time_gaps(self, group: list[ClusterMember]) -> list[list[ClusterMember]]:
        group = sorted(group, key=lambda m: m.timestamp)
        segments = [[group[0]]]
        for prev, cur in zip(group, group[1:]):
            if (cur.timestamp - prev.timestamp).total_seconds() > self.settings.time_gap_seconds:
                segments.append([cur])
            else:
                segments[-1].append(cur)
        return segments

    def _is_stay(self, cluster: Cluster) -> bool:
        return (
            cluster.point_count >= self.settings.min_points
            and cluster.duration_seconds >= self.settings.min_visit_duration_seconds
        )
