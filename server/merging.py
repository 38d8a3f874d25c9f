"""Merge consecutive visit candidates that belong to the same stay.

Two candidates merge when the gap between them is short, or when it is
longer (up to the extended window) but the user's own points show they
did not travel in between.
"""

import dataclasses
import datetime
import functools
import logging
from typing import Callable, Optional

from extraction import VisitCandidate
from geo import haversine_m, path_length_m
from settings import DetectionSettings

logger = logging.getLogger(__name__)

# (start, end) -> [(lat, lon), ...] of the user's points strictly inside the window, time-ordered
TravelPointsLookup = Callable[[datetime.datetime, datetime.datetime], list[tuple[float, float]]]


class VisitMerger:
    def __init__(self, settings: DetectionSettings, travel_points: Optional[TravelPointsLookup] = None):
        self.settings = settings
        self.travel_points = travel_points

    def merge(self, candidates: list[VisitCandidate]) -> list[VisitCandidate]:
        """Left-fold over candidates sorted by start time into a new, merged list."""
        return functools.reduce(self._fold, candidates, [])

    def _fold(self, merged: list[VisitCandidate], candidate: VisitCandidate) -> list[VisitCandidate]:
        if merged and self.can_merge(merged[-1], candidate):
            return merged[:-1] + [self._absorb(merged[-1], candidate)]
        return merged + [candidate]

    def can_merge(self, current: VisitCandidate, following: VisitCandidate) -> bool:
        s = self.settings
        gap = (following.start_time - current.end_time).total_seconds()

        if gap <= s.maximum_visit_gap_seconds:
            if not self._moved_significantly(current, following):
                return True
            # The centres moved: only merge if the gap shows no real travel.
        elif gap > s.extended_merge_seconds:
            return False

        return not self._traveled_far(current.end_time, following.start_time)

    def _moved_significantly(self, current: VisitCandidate, following: VisitCandidate) -> bool:
        displacement = haversine_m(
            current.center_lat, current.center_lon, following.center_lat, following.center_lon,
        )
        return displacement > self.settings.significant_movement_meters

    def _traveled_far(self, start: datetime.datetime, end: datetime.datetime) -> bool:
        if self.travel_points is None:
            return False
        coords = self.travel_points(start, end)
        if not coords:
            return False
        distance = path_length_m(coords)
        logger.debug("Travelled %.0fm between %s and %s", distance, start, end)
        return distance > self.settings.travel_threshold_meters

    @staticmethod
    def _absorb(current: VisitCandidate, following: VisitCandidate) -> VisitCandidate:
        return dataclasses.replace(
            current,
            end_time=max(current.end_time, following.end_time),
            radius=max(current.radius, following.radius),
            points=current.points + following.points,
            suggested_name=current.suggested_name or following.suggested_name,
        )
