"""Place-name helpers working on reverse-geocode feature properties.

Points may carry the reverse-geocode response they were enriched with in
``Point.geodata``. It is either a single feature (``{"properties": {...}}``)
or a collection (``{"features": [{"properties": {...}}, ...]}``).
"""

from collections import Counter
from typing import Iterable, Optional

SUGGESTION_COMPONENTS = ("name", "street", "city", "state")
PLACE_NAME_COMPONENTS = ("name", "street", "housenumber", "city")


def feature_properties(geodata) -> list[dict]:
    """All usable property dicts embedded in a point's geodata."""
    if not isinstance(geodata, dict):
        return []

    features = geodata.get("features")
    if isinstance(features, list):
        return [
            f["properties"]
            for f in features
            if isinstance(f, dict) and isinstance(f.get("properties"), dict) and f["properties"]
        ]

    properties = geodata.get("properties")
    if isinstance(properties, dict) and properties:
        return [properties]
    return []


def _join_components(properties: dict, keys: Iterable[str]) -> str:
    parts: list[str] = []
    for key in keys:
        value = properties.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value and value not in parts:
            parts.append(value)
    return ", ".join(parts)


def build_place_name(properties: dict) -> Optional[str]:
    """Join non-blank name, street, housenumber and city, skipping repeated values."""
    if not isinstance(properties, dict):
        return None
    return _join_components(properties, PLACE_NAME_COMPONENTS) or None


def suggest_place_name(points) -> Optional[str]:
    """Suggest a name for a stay from its points' embedded geodata.

    Picks the most common feature type across all points, then the most
    common non-blank name within that type, and describes it as
    "name, street, city, state" with whatever components exist.
    """
    features = [props for p in points for props in feature_properties(getattr(p, "geodata", None))]
    if not features:
        return None

    types = Counter(props.get("type") for props in features)
    top_type, _ = types.most_common(1)[0]
    of_type = [props for props in features if props.get("type") == top_type]

    names = Counter(
        str(props.get("name")).strip()
        for props in of_type
        if props.get("name") and str(props.get("name")).strip()
    )
    if not names:
        return None
    top_name, _ = names.most_common(1)[0]

    best = next(props for props in of_type if str(props.get("name") or "").strip() == top_name)
    return _join_components(best, SUGGESTION_COMPONENTS) or None
