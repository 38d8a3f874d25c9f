"""Tests for merging consecutive visit candidates."""

import datetime

import pytest

from extraction import VisitCandidate
from merging import VisitMerger
from settings import DetectionSettings

T0 = datetime.datetime(2024, 5, 20, 9, 0)


def candidate(start_min, end_min, lat=52.52, lon=13.405, radius=20.0, name=None, points=()):
    return VisitCandidate(
        start_time=T0 + datetime.timedelta(minutes=start_min),
        end_time=T0 + datetime.timedelta(minutes=end_min),
        center_lat=lat,
        center_lon=lon,
        radius=radius,
        points=tuple(points),
        suggested_name=name,
    )


def lookup_returning(coords):
    calls = []

    def lookup(start, end):
        calls.append((start, end))
        return coords
    lookup.calls = calls
    return lookup


# A round trip of roughly 2.2 km
ERRAND = [(52.52, 13.405), (52.53, 13.405), (52.52, 13.405)]
# A few metres of shuffling around
PACING = [(52.52, 13.405), (52.52005, 13.405), (52.52, 13.405)]


class TestCanMerge:
    def test_short_gap_at_the_same_spot_always_merges(self):
        merger = VisitMerger(DetectionSettings(), lookup_returning(ERRAND))
        assert merger.can_merge(candidate(0, 30), candidate(60, 90))

    def test_short_gap_with_displacement_checks_travel(self):
        a, b = candidate(0, 30), candidate(40, 90, lat=52.5210)
        assert not VisitMerger(DetectionSettings(), lookup_returning(ERRAND)).can_merge(a, b)
        assert VisitMerger(DetectionSettings(), lookup_returning(PACING)).can_merge(a, b)

    @pytest.mark.parametrize("gap", [31, 60, 120])
    def test_extended_gap_merges_without_travel(self, gap):
        merger = VisitMerger(DetectionSettings(), lookup_returning(PACING))
        assert merger.can_merge(candidate(0, 30), candidate(30 + gap, 200))

    @pytest.mark.parametrize("gap", [31, 60, 120])
    def test_extended_gap_with_travel_does_not_merge(self, gap):
        merger = VisitMerger(DetectionSettings(), lookup_returning(ERRAND))
        assert not merger.can_merge(candidate(0, 30), candidate(30 + gap, 200))

    def test_no_points_in_the_gap_means_no_travel(self):
        merger = VisitMerger(DetectionSettings(), lookup_returning([]))
        assert merger.can_merge(candidate(0, 30), candidate(90, 120))

    def test_gap_longer_than_extended_window_never_merges(self):
        lookup = lookup_returning([])
        merger = VisitMerger(DetectionSettings(), lookup)

        assert not merger.can_merge(candidate(0, 30), candidate(151, 200))
        assert lookup.calls == []

    def test_travel_lookup_covers_the_gap(self):
        lookup = lookup_returning([])
        VisitMerger(DetectionSettings(), lookup).can_merge(candidate(0, 30), candidate(90, 120))
        assert lookup.calls == [(T0 + datetime.timedelta(minutes=30), T0 + datetime.timedelta(minutes=90))]

    def test_thresholds_come_from_settings(self):
        settings = DetectionSettings(maximum_visit_gap_minutes=5, extended_merge_hours=0.5)
        merger = VisitMerger(settings, lookup_returning([]))
        assert merger.can_merge(candidate(0, 30), candidate(50, 60))
        assert not merger.can_merge(candidate(0, 30), candidate(61, 70))


class TestMerge:
    def test_empty(self):
        assert VisitMerger(DetectionSettings()).merge([]) == []

    def test_merged_candidate_absorbs_the_next(self):
        a = candidate(0, 30, radius=20.0, points=("p1", "p2"))
        b = candidate(40, 90, lat=52.52001, radius=35.0, name="Office", points=("p3",))

        [merged] = VisitMerger(DetectionSettings()).merge([a, b])

        assert merged.start_time == a.start_time
        assert merged.end_time == b.end_time
        assert merged.points == ("p1", "p2", "p3")
        assert merged.radius == 35.0
        assert (merged.center_lat, merged.center_lon) == (a.center_lat, a.center_lon)
        assert merged.suggested_name == "Office"

    def test_chain_of_short_gaps_folds_into_one(self):
        candidates = [candidate(0, 20), candidate(30, 50), candidate(60, 80)]
        merged = VisitMerger(DetectionSettings()).merge(candidates)
        assert len(merged) == 1
        assert merged[0].end_time == T0 + datetime.timedelta(minutes=80)

    def test_distinct_stays_stay_apart(self):
        candidates = [candidate(0, 30), candidate(300, 330), candidate(331, 360, lat=52.60)]
        merged = VisitMerger(DetectionSettings(), lookup_returning(ERRAND)).merge(candidates)
        assert len(merged) == 3

    def test_merging_merged_output_is_a_no_op(self):
        candidates = [candidate(0, 20), candidate(30, 50), candidate(300, 320), candidate(325, 340, lat=52.60)]
        merger = VisitMerger(DetectionSettings(), lookup_returning(ERRAND))

        once = merger.merge(candidates)
        assert merger.merge(once) == once

    def test_input_is_left_untouched(self):
        candidates = [candidate(0, 20), candidate(30, 50)]
        snapshot = list(candidates)
        VisitMerger(DetectionSettings()).merge(candidates)
        assert candidates == snapshot
