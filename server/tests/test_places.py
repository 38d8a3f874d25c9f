"""Tests for area matching, place dedup and place resolution."""

import datetime
from unittest.mock import MagicMock, patch

from extraction import VisitCandidate
from geocoding import GeocodeResult, parse_feature
from models import Area, Place, Point
from places import PlaceResolver, find_matching_area, find_or_create_place, nearby_places
from settings import DetectionSettings
from tests.gps_test_fixtures import photon_feature

T0 = datetime.datetime(2024, 6, 1, 12, 0)


def candidate(lat=52.52, lon=13.405, name=None, points=()):
    return VisitCandidate(
        start_time=T0, end_time=T0 + datetime.timedelta(minutes=30),
        center_lat=lat, center_lon=lon, radius=20.0, points=tuple(points), suggested_name=name,
    )


def fake_geocoder(*features):
    geocoder = MagicMock()
    geocoder.search.return_value = [parse_feature(f) for f in features]
    return geocoder


class TestFindMatchingArea:
    def test_closest_containing_area_wins(self, db, user):
        db.add_all([
            Area(user_id=user.id, name="Campus", latitude=52.521, longitude=13.405, radius=500),
            Area(user_id=user.id, name="Office", latitude=52.5201, longitude=13.405, radius=50),
            Area(user_id=user.id, name="Elsewhere", latitude=52.60, longitude=13.405, radius=50),
        ])
        db.commit()
        assert find_matching_area(db, user.id, 52.52, 13.405).name == "Office"

    def test_other_users_areas_are_ignored(self, db, user, other_user):
        db.add(Area(user_id=other_user.id, name="Theirs", latitude=52.52, longitude=13.405, radius=100))
        db.commit()
        assert find_matching_area(db, user.id, 52.52, 13.405) is None


class TestNearbyPlaces:
    def test_own_and_shared_places_closest_first(self, db, user, other_user):
        db.add_all([
            Place(name="Far", latitude=52.5208, longitude=13.405),
            Place(name="Near", latitude=52.5201, longitude=13.405, user_id=user.id),
            Place(name="Theirs", latitude=52.52, longitude=13.405, user_id=other_user.id),
            Place(name="Out of range", latitude=52.53, longitude=13.405),
        ])
        db.commit()
        names = [p.name for p in nearby_places(db, user.id, 52.52, 13.405, 100)]
        assert names == ["Near", "Far"]


class TestFindOrCreatePlace:
    def test_reuses_a_same_named_place_nearby(self, db):
        first, created = find_or_create_place(db, name="Cafe", latitude=52.52, longitude=13.405, similarity_radius_m=50)
        again, created_again = find_or_create_place(
            db, name="Cafe", latitude=52.52001, longitude=13.405, similarity_radius_m=50,
        )
        assert created and not created_again
        assert again.id == first.id
        assert db.query(Place).count() == 1

    def test_different_names_are_different_places(self, db):
        find_or_create_place(db, name="Cafe", latitude=52.52, longitude=13.405, similarity_radius_m=50)
        find_or_create_place(db, name="Bakery", latitude=52.52, longitude=13.405, similarity_radius_m=50)
        assert db.query(Place).count() == 2

    def test_concurrent_insert_converges_on_the_committed_row(self, db):
        winner = Place(name="Cafe", latitude=52.52, longitude=13.405, source="photon")
        db.add(winner)
        db.commit()

        # Simulate losing the race: the lookup misses the row another session just committed.
        with patch("places.nearby_places", return_value=[]):
            place, created = find_or_create_place(
                db, name="Cafe", latitude=52.52, longitude=13.405, similarity_radius_m=50,
            )

        assert not created
        assert place.id == winner.id
        assert db.query(Place).count() == 1


class TestPlaceResolver:
    def test_existing_place_is_the_main_place(self, db, user):
        home = Place(name="Home", latitude=52.5201, longitude=13.405, user_id=user.id)
        db.add(home)
        db.commit()
        geocoder = fake_geocoder(photon_feature("Cafe Blue", 52.5202, 13.405, street="Main St"))

        resolution = PlaceResolver(db, user.id, DetectionSettings(), geocoder).resolve(candidate())

        assert resolution.main_place.id == home.id
        assert [p.name for p in resolution.suggested_places] == ["Home", "Cafe Blue, Main St, San Francisco"]

    def test_closest_geocoded_place_when_nothing_exists(self, db, user):
        geocoder = fake_geocoder(
            photon_feature("Far Cafe", 52.5209, 13.405),
            photon_feature("Near Cafe", 52.5201, 13.405),
        )
        resolver = PlaceResolver(db, user.id, DetectionSettings(), geocoder)
        resolution = resolver.resolve(candidate())

        assert resolution.main_place.name == "Near Cafe, San Francisco"
        assert resolution.main_place.source == "photon"
        assert resolution.main_place.user_id is None
        assert resolution.main_place in resolution.suggested_places
        assert len(resolver.created_places) == 2

    def test_points_geodata_contributes_places(self, db, user):
        point = Point(
            user_id=user.id, latitude=52.52, longitude=13.405, timestamp=T0,
            geodata={"features": [photon_feature("Museum", 52.5203, 13.405)]},
        )
        db.add(point)
        db.commit()

        resolution = PlaceResolver(db, user.id, DetectionSettings()).resolve(candidate(points=[point]))

        assert resolution.main_place.name == "Museum, San Francisco"

    def test_unnamed_geocode_result_gets_the_placeholder_name(self, db, user):
        geocoder = MagicMock()
        geocoder.search.return_value = [GeocodeResult(latitude=52.5201, longitude=13.405, properties={"type": "house"})]

        resolution = PlaceResolver(db, user.id, DetectionSettings(), geocoder).resolve(candidate())

        assert resolution.main_place.name == Place.DEFAULT_NAME

    def test_suggestions_have_one_entry_per_name(self, db, user):
        near = Place(name="Cafe Blue, San Francisco", latitude=52.5201, longitude=13.405)
        db.add(near)
        db.commit()
        # About 90 m from the centre, too far to be deduplicated into ``near``.
        geocoder = fake_geocoder(photon_feature("Cafe Blue", 52.5208, 13.405))

        resolution = PlaceResolver(db, user.id, DetectionSettings(), geocoder).resolve(candidate())

        assert resolution.main_place.id == near.id
        assert resolution.suggested_places == [near]
        assert db.query(Place).count() == 2

    def test_manual_place_from_the_suggested_name(self, db, user):
        resolution = PlaceResolver(db, user.id, DetectionSettings()).resolve(candidate(name="Grandma's"))

        assert resolution.main_place.name == "Grandma's"
        assert resolution.main_place.source == "manual"
        assert resolution.suggested_places == [resolution.main_place]

    def test_manual_place_falls_back_to_the_placeholder(self, db, user):
        resolution = PlaceResolver(db, user.id, DetectionSettings()).resolve(candidate(name="  "))
        assert resolution.main_place.name == Place.DEFAULT_NAME

    def test_resolving_twice_returns_the_same_place(self, db, user):
        geocoder = fake_geocoder(photon_feature("Cafe Blue", 52.5201, 13.405))
        resolver = PlaceResolver(db, user.id, DetectionSettings(), geocoder)

        first = resolver.resolve(candidate())
        db.commit()
        second = resolver.resolve(candidate())

        assert first.main_place.id == second.main_place.id
        assert db.query(Place).filter(Place.name == "Cafe Blue, San Francisco").count() == 1
