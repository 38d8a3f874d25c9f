"""Tests for turning clusters into visit candidates."""

import datetime
from types import SimpleNamespace
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from clustering import Cluster, RealPoint, SyntheticPoint
from extraction import ClusterExtractor, build_candidate, visit_radius, weighted_center
from geo import haversine_m
from models import Point
from settings import DetectionSettings

T0 = datetime.datetime(2024, 4, 2, 14, 0)


def fix(lat, lon, accuracy=None, minutes=0, geodata=None):
    return SimpleNamespace(
        latitude=lat, longitude=lon, accuracy=accuracy,
        timestamp=T0 + datetime.timedelta(minutes=minutes), geodata=geodata,
    )


def cluster_of(points, extra=()):
    members = [RealPoint(p.id, p.latitude, p.longitude, p.timestamp) for p in points] + list(extra)
    members.sort(key=lambda m: m.timestamp)
    return Cluster(members=tuple(members), start_time=members[0].timestamp, end_time=members[-1].timestamp)


class TestWeightedCenter:
    def test_accurate_fixes_pull_harder_than_an_outlier(self):
        accurate = [fix(52.5200 + 0.00001 * i, 13.4050, accuracy=5.0) for i in range(5)]
        outlier = fix(52.5300, 13.4050, accuracy=200.0)
        points = accurate + [outlier]

        lat, lon = weighted_center(points)
        plain_lat = sum(p.latitude for p in points) / len(points)

        assert haversine_m(lat, lon, 52.52002, 13.405) < haversine_m(plain_lat, 13.405, 52.52002, 13.405)

    def test_missing_accuracy_uses_the_default(self):
        points = [fix(10.0, 10.0, accuracy=None), fix(10.0, 10.002, accuracy=50.0)]
        lat, lon = weighted_center(points, default_accuracy=50.0)
        assert abs(lon - 10.001) < 1e-9

    def test_exponent_sharpens_the_weighting(self):
        points = [fix(0.0, 0.0, accuracy=10.0), fix(0.0, 0.01, accuracy=40.0)]
        _, lon_linear = weighted_center(points, exponent=1.0)
        _, lon_squared = weighted_center(points, exponent=2.0)
        assert lon_squared < lon_linear

    def test_empty_input(self):
        assert weighted_center([]) is None


class TestVisitRadius:
    def test_radius_reaches_the_furthest_point(self):
        points = [fix(52.52, 13.405), fix(52.5209, 13.405)]
        assert 95 < visit_radius(points, (52.52, 13.405)) < 105

    def test_radius_has_a_floor(self):
        points = [fix(52.52, 13.405), fix(52.52, 13.405)]
        assert visit_radius(points, (52.52, 13.405), minimum=15.0) == 15.0


class TestBuildCandidate:
    def test_candidate_spans_its_points(self):
        points = [fix(52.52, 13.405, 10.0, minutes=m) for m in (20, 0, 10)]
        candidate = build_candidate(points, DetectionSettings(), name_suggester=lambda pts: "Cafe")

        assert candidate.start_time == T0
        assert candidate.end_time == T0 + datetime.timedelta(minutes=20)
        assert candidate.duration == 1200
        assert candidate.suggested_name == "Cafe"
        assert [p.timestamp for p in candidate.points] == sorted(p.timestamp for p in points)

    def test_no_points_no_candidate(self):
        assert build_candidate([], DetectionSettings()) is None


class TestClusterExtractor:
    def _points(self, db, user, count=5):
        points = [
            Point(user_id=user.id, latitude=52.52, longitude=13.405, accuracy=10.0,
                  timestamp=T0 + datetime.timedelta(minutes=5 * i))
            for i in range(count)
        ]
        db.add_all(points)
        db.commit()
        return points

    def test_synthetic_members_never_reach_the_candidate(self, db, user):
        points = self._points(db, user)
        synthetic = [SyntheticPoint(52.52, 13.405, T0 + datetime.timedelta(minutes=2))]

        candidates = ClusterExtractor(db, DetectionSettings()).call([cluster_of(points, synthetic)])

        assert len(candidates) == 1
        assert all(isinstance(p, Point) for p in candidates[0].points)
        assert sorted(p.id for p in candidates[0].points) == sorted(p.id for p in points)

    def test_missing_points_are_skipped(self, db, user):
        points = self._points(db, user)
        cluster = cluster_of(points)
        db.delete(points[0])
        db.commit()

        candidates = ClusterExtractor(db, DetectionSettings()).call([cluster])

        assert len(candidates[0].points) == 4
        assert candidates[0].start_time == T0 + datetime.timedelta(minutes=5)

    def test_cluster_without_surviving_points_is_dropped(self, db, user):
        gone = self._points(db, user, count=3)
        kept = self._points(db, user, count=3)
        gone_cluster = cluster_of(gone)
        for p in gone:
            db.delete(p)
        db.commit()

        candidates = ClusterExtractor(db, DetectionSettings()).call([gone_cluster, cluster_of(kept)])

        assert len(candidates) == 1
        assert {p.id for p in candidates[0].points} == {p.id for p in kept}

    def test_unavailable_clusters_stay_unavailable(self, db):
        assert ClusterExtractor(db, DetectionSettings()).call(None) is None

    def test_no_clusters(self, db):
        assert ClusterExtractor(db, DetectionSettings()).call([]) == []

    def test_storage_error_fails_the_extraction(self, db, user):
        points = self._points(db, user)
        extractor = ClusterExtractor(db, DetectionSettings())
        error = OperationalError("SELECT ...", {}, Exception("connection lost"))

        with patch.object(ClusterExtractor, "_load_points", side_effect=error):
            assert extractor.call([cluster_of(points)]) is None
