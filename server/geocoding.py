"""Reverse geocoding via a Photon server (OpenStreetMap data).

Photon answers ``/reverse`` with a GeoJSON FeatureCollection. Each feature
is flattened into a :class:`GeocodeResult`. Network and decoding failures
are logged and reported as "no results"; callers never see exceptions.
"""

import dataclasses
import logging
import time
from typing import Optional

import requests

import settings

logger = logging.getLogger(__name__)

MIN_REQUEST_INTERVAL_S = 1.1


@dataclasses.dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    properties: dict
    name: Optional[str] = None
    street: Optional[str] = None
    housenumber: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @property
    def geodata(self) -> dict:
        return {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [self.longitude, self.latitude]},
            "properties": self.properties,
        }


def parse_feature(feature) -> Optional[GeocodeResult]:
    """Flatten one GeoJSON feature; None when it has no usable coordinates or properties."""
    if not isinstance(feature, dict):
        return None
    properties = feature.get("properties")
    coordinates = (feature.get("geometry") or {}).get("coordinates")
    if not isinstance(properties, dict) or not properties:
        return None
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) < 2:
        return None
    try:
        lon, lat = float(coordinates[0]), float(coordinates[1])
    except (TypeError, ValueError):
        return None
    return GeocodeResult(
        latitude=lat,
        longitude=lon,
        properties=properties,
        name=properties.get("name"),
        street=properties.get("street"),
        housenumber=properties.get("housenumber"),
        city=properties.get("city"),
        country=properties.get("country"),
    )


class PhotonGeocoder:
    def __init__(
        self,
        host: str | None = None,
        use_https: bool | None = None,
        api_key: str | None = None,
        timeout: float = 10,
    ):
        self.host = host or settings.PHOTON_API_HOST
        self.use_https = settings.PHOTON_API_USE_HTTPS if use_https is None else use_https
        self.api_key = api_key or settings.PHOTON_API_KEY
        self.timeout = timeout
        self._last_call = 0.0

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}"

    def _throttle(self):
        # Public Photon/OSM servers ask for at most one request per second.
        elapsed = time.time() - self._last_call
        if elapsed < MIN_REQUEST_INTERVAL_S:
            time.sleep(MIN_REQUEST_INTERVAL_S - elapsed)

    def search(self, lat: float, lon: float, limit: int = 10) -> list[GeocodeResult]:
        """Places around a coordinate, nearest first."""
        self._throttle()
        headers = {"User-Agent": "VisitDetection/1.0"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key

        try:
            resp = requests.get(
                f"{self.base_url}/reverse",
                params={"lat": lat, "lon": lon, "limit": limit, "distance_sort": "true"},
                headers=headers,
                timeout=self.timeout,
            )
            self._last_call = time.time()
            if resp.status_code != 200:
                logger.warning("Photon reverse geocode returned HTTP %d", resp.status_code)
                return []
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Photon reverse geocode failed: %s", e)
            return []

        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            return []
        return [r for r in (parse_feature(f) for f in features) if r is not None]
