"""Detection thresholds and process-level settings.

Per-user thresholds live in the ``config`` table as string key/value rows
(global rows have no user). They are read once per detection run into a
frozen :class:`DetectionSettings` which is handed to every component.
"""

import dataclasses
import logging
import os

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Process-level settings (environment)
# ---------------------------------------------------------------------------

REVERSE_GEOCODING_ENABLED = os.environ.get("REVERSE_GEOCODING_ENABLED", "false").lower() in ("1", "true", "yes")
PHOTON_API_HOST = os.environ.get("PHOTON_API_HOST", "photon.komoot.io")
PHOTON_API_USE_HTTPS = os.environ.get("PHOTON_API_USE_HTTPS", "true").lower() in ("1", "true", "yes")
PHOTON_API_KEY = os.environ.get("PHOTON_API_KEY")


# ---------------------------------------------------------------------------
# Per-user detection thresholds
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class DetectionSettings:
    # Density clustering
    eps_meters: float = 100.0
    min_points: int = 2
    time_gap_minutes: float = 30.0
    min_visit_duration_seconds: float = 180.0
    query_timeout_ms: int = 30_000

    # Density normalization (synthetic gap bridging)
    density_normalization_enabled: bool = False
    density_max_gap_hours: float = 12.0
    density_max_distance_meters: float = 500.0

    # Candidate geometry
    default_accuracy_meters: float = 50.0
    accuracy_weight_exponent: float = 1.0
    minimum_radius_meters: float = 15.0

    # Merging
    maximum_visit_gap_minutes: float = 30.0
    extended_merge_hours: float = 2.0
    travel_threshold_meters: float = 200.0
    significant_movement_meters: float = 50.0

    # Place resolution
    place_search_radius_meters: float = 100.0
    place_similarity_radius_meters: float = 50.0
    confirmed_visit_radius_meters: float = 100.0

    # Fallback grouping
    fallback_radius_meters: float = 100.0
    time_threshold_minutes: float = 30.0
    merge_threshold_minutes: float = 15.0

    @property
    def time_gap_seconds(self) -> float:
        return self.time_gap_minutes * 60

    @property
    def density_max_gap_seconds(self) -> float:
        return self.density_max_gap_hours * 3600

    @property
    def maximum_visit_gap_seconds(self) -> float:
        return self.maximum_visit_gap_minutes * 60

    @property
    def extended_merge_seconds(self) -> float:
        return self.extended_merge_hours * 3600


DEFAULT_SETTINGS = {f.name: f.default for f in dataclasses.fields(DetectionSettings)}


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(float(raw))
    return float(raw)


def settings_from_mapping(values: dict) -> DetectionSettings:
    """Build settings from a string mapping, ignoring unknown or unparsable keys."""
    overrides = {}
    for key, raw in values.items():
        if key not in DEFAULT_SETTINGS:
            continue
        try:
            overrides[key] = _coerce(str(raw), DEFAULT_SETTINGS[key])
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", key, raw)
    return DetectionSettings(**overrides)


def get_settings(db: Session, user_id: int | None = None) -> DetectionSettings:
    """Read thresholds from the Config table; per-user rows override global ones."""
    query = db.query(Config).filter(Config.key.in_(DEFAULT_SETTINGS.keys()))
    if user_id is None:
        query = query.filter(Config.user_id.is_(None))
    else:
        query = query.filter(or_(Config.user_id.is_(None), Config.user_id == user_id))

    values = {}
    # Global rows first so per-user rows win.
    for row in sorted(query.all(), key=lambda r: r.user_id is not None):
        values[row.key] = row.value
    return settings_from_mapping(values)
