"""
Canned payloads for mock mode

Shaped like the mapped output of the real APIs so the rest of the pipeline
runs unchanged offline. Keyed by the node ids the default planner uses.
"""

import math
import random
from typing import Any, Callable, Dict

MOCK_PLACE_COUNT = 8
MOCK_ORIGIN = (37.8715, -122.2730)


def _places() -> Dict[str, Any]:
    lat0, lon0 = MOCK_ORIGIN
    names = [f"Mock Place {i + 1}" for i in range(MOCK_PLACE_COUNT)]
    return {
        "name": names,
        "lat": [lat0 + 0.005 * math.sin(i) for i in range(MOCK_PLACE_COUNT)],
        "lon": [lon0 + 0.005 * math.cos(i) for i in range(MOCK_PLACE_COUNT)],
        "cuisine": ["mexican", "thai", "pizza", "japanese", "indian", "chinese", "vietnamese", "mediterranean"],
        "opening_hours": ["Mo-Su 11:00-22:00", "", "Mo-Su 10:00-20:00", "Mo-Su 11:30-21:30", "", "", "", ""],
        "outdoor_seating": ["yes", "", "yes", "", "yes", "", "", "yes"],
        "wheelchair": ["yes", "yes", "", "", "yes", "", "", ""],
        "address": [f"{2000 + i} University Ave" for i in range(MOCK_PLACE_COUNT)],
    }


def _etas() -> Dict[str, Any]:
    return {"eta_seconds": [240 + 40 * i for i in range(MOCK_PLACE_COUNT)]}


def _weather() -> Dict[str, Any]:
    return {
        "temp_c": [round(17 + random.random() * 3, 1) for _ in range(MOCK_PLACE_COUNT)],
        "precip": [round(random.random() * 1.5, 1) for _ in range(MOCK_PLACE_COUNT)],
    }


MOCK_PAYLOADS: Dict[str, Callable[[], Dict[str, Any]]] = {
    "n1_overpass": _places,
    "n2_eta": _etas,
    "n3_weather": _weather,
}


def mock_payload(node_id: str) -> Dict[str, Any]:
    """Payload for a node id; unknown ids get an empty mapping."""
    factory = MOCK_PAYLOADS.get(node_id)
    return factory() if factory else {}
