"""Resolve a visit's centre to an Area or to one main Place plus alternatives.

Resolution order for the main place:
1. Existing places (the user's own or shared) within the search radius,
   closest first.
2. Points of interest embedded in the visit's own points' geodata.
3. Reverse-geocoding results around the centre.
4. A manual place named after the visit's suggested name.

Every source contributes to the list of suggested places. Places are
deduplicated by name and proximity, and concurrent creation of the same
place converges on a single row.
"""

import dataclasses
import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from extraction import VisitCandidate
from geo import bounding_box, haversine_m
from geocoding import GeocodeResult, PhotonGeocoder, parse_feature
from models import Area, Place
from names import build_place_name, feature_properties
from settings import DetectionSettings

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class PlaceResolution:
    main_place: Place
    suggested_places: list[Place]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _within(query, column_lat, column_lon, lat: float, lon: float, radius_m: float):
    min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_m)
    return query.filter(column_lat.between(min_lat, max_lat), column_lon.between(min_lon, max_lon))


def nearby_places(
    db: Session, user_id: int | None, lat: float, lon: float, radius_m: float, name: str | None = None,
) -> list[Place]:
    """Places visible to the user within ``radius_m`` of a point, closest first."""
    query = db.query(Place)
    if user_id is None:
        query = query.filter(Place.user_id.is_(None))
    else:
        query = query.filter(or_(Place.user_id == user_id, Place.user_id.is_(None)))
    if name is not None:
        query = query.filter(Place.name == name)

    scored = []
    for place in _within(query, Place.latitude, Place.longitude, lat, lon, radius_m).all():
        d = haversine_m(lat, lon, place.latitude, place.longitude)
        if d <= radius_m:
            scored.append((d, place.id, place))
    scored.sort(key=lambda t: (t[0], t[1]))
    return [place for _, _, place in scored]


def find_matching_area(db: Session, user_id: int, lat: float, lon: float) -> Optional[Area]:
    """The closest of the user's areas whose circle contains the point."""
    best, best_dist = None, float("inf")
    for area in db.query(Area).filter(Area.user_id == user_id).all():
        d = haversine_m(lat, lon, area.latitude, area.longitude)
        if d <= area.radius and d < best_dist:
            best, best_dist = area, d
    return best


def find_or_create_place(
    db: Session,
    *,
    name: str,
    latitude: float,
    longitude: float,
    similarity_radius_m: float,
    user_id: int | None = None,
    source: str = "manual",
    city: str | None = None,
    country: str | None = None,
    geodata: dict | None = None,
) -> tuple[Place, bool]:
    """Return ``(place, created)`` for the place with this name near the coordinates.

    The insert runs in a savepoint. If another session committed the same
    (name, latitude, longitude) first, the unique constraint fires and the
    committed row is returned instead. A user's place never converges on
    another user's private row.
    """
    existing = nearby_places(db, user_id, latitude, longitude, similarity_radius_m, name=name)
    if existing:
        return existing[0], False

    place = Place(
        user_id=user_id,
        name=name,
        latitude=latitude,
        longitude=longitude,
        city=city,
        country=country,
        source=source,
        geodata=geodata,
    )
    try:
        with db.begin_nested():
            db.add(place)
    except IntegrityError:
        winner = (
            db.query(Place)
            .filter(Place.name == name, Place.latitude == latitude, Place.longitude == longitude)
            .first()
        )
        if winner is None or (user_id is not None and winner.user_id not in (None, user_id)):
            raise
        logger.info("Place %r at (%f, %f) already exists (id=%d), reusing it", name, latitude, longitude, winner.id)
        return winner, False
    return place, True


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class PlaceResolver:
    def __init__(self, db: Session, user_id: int, settings: DetectionSettings, geocoder: PhotonGeocoder | None = None):
        self.db = db
        self.user_id = user_id
        self.settings = settings
        self.geocoder = geocoder
        self.created_places: list[Place] = []

    def resolve(self, candidate: VisitCandidate) -> PlaceResolution:
        lat, lon = candidate.center_lat, candidate.center_lon

        existing = nearby_places(self.db, self.user_id, lat, lon, self.settings.place_search_radius_meters)
        from_points = self._places_from_points(candidate.points)
        from_geocoder = self._places_from_geocoder(lat, lon)

        potential = _unique(from_points + from_geocoder)
        if existing:
            main = existing[0]
        elif potential:
            main = min(potential, key=lambda p: (haversine_m(lat, lon, p.latitude, p.longitude), p.id))
        else:
            main = self._create_default_place(lat, lon, candidate.suggested_name)

        # One entry per name; the main place comes first so it is always kept.
        suggested = _unique([main] + existing + potential, key=lambda p: p.name)
        return PlaceResolution(main_place=main, suggested_places=suggested)

    def _places_from_points(self, points) -> list[Place]:
        places = []
        for point in points:
            for result in _point_features(point):
                place = self._place_from_result(result, require_name=True)
                if place is not None:
                    places.append(place)
        return places

    def _places_from_geocoder(self, lat: float, lon: float) -> list[Place]:
        if self.geocoder is None:
            return []
        places = []
        for result in self.geocoder.search(lat, lon):
            place = self._place_from_result(result, require_name=False)
            if place is not None:
                places.append(place)
        return places

    def _place_from_result(self, result: GeocodeResult, require_name: bool) -> Optional[Place]:
        name = build_place_name(result.properties)
        if name is None:
            if require_name:
                return None
            name = Place.DEFAULT_NAME
        return self._find_or_create(
            name=name,
            latitude=result.latitude,
            longitude=result.longitude,
            similarity_radius_m=self.settings.place_similarity_radius_meters,
            source="photon",
            city=result.city,
            country=result.country,
            geodata=result.geodata,
        )

    def _create_default_place(self, lat: float, lon: float, suggested_name: str | None) -> Place:
        return self._find_or_create(
            name=(suggested_name or "").strip() or Place.DEFAULT_NAME,
            latitude=lat,
            longitude=lon,
            similarity_radius_m=self.settings.place_similarity_radius_meters,
            source="manual",
        )

    def _find_or_create(self, **fields) -> Place:
        place, created = find_or_create_place(self.db, user_id=None, **fields)
        if created:
            self.created_places.append(place)
        return place


def _point_features(point) -> list[GeocodeResult]:
    """Geocode results embedded in a point, located at the feature or else at the point."""
    geodata = getattr(point, "geodata", None)
    if not isinstance(geodata, dict):
        return []
    features = geodata.get("features") if isinstance(geodata.get("features"), list) else [geodata]

    results = []
    for feature in features:
        parsed = parse_feature(feature)
        if parsed is None:
            for props in feature_properties(feature):
                parsed = GeocodeResult(
                    latitude=point.latitude,
                    longitude=point.longitude,
                    properties=props,
                    name=props.get("name"),
                    street=props.get("street"),
                    housenumber=props.get("housenumber"),
                    city=props.get("city"),
                    country=props.get("country"),
                )
        if parsed is not None:
            results.append(parsed)
    return results


def _unique(places: list[Place], key=lambda p: p.id) -> list[Place]:
    seen, out = set(), []
    for place in places:
        if key(place) not in seen:
            seen.add(key(place))
            out.append(place)
    return out
