"""
Default Planner

Deterministic plan for "find good nearby restaurants": query Overpass (OSM)
for restaurants around the origin, get driving ETAs from OSRM, fetch the
current weather per place from Open-Meteo, then join, score, rank and
correlate.
"""

import logging
from typing import Any, Dict, Optional

from config.settings import settings
from schemas.pipeline import Coordinate, PipelineSpec

logger = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass.kumi.systems/api/interpreter"
OSRM_TABLE_URL = "https://router.project-osrm.org/table/v1/driving/{{compose.dest_coords_csv}}"
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"

WEATHER_FANOUT_MAX = 12


def parse_origin(value: Any) -> Coordinate:
    """Origin from "lat,lon" (or a mapping); falls back to the configured default."""
    origin = Coordinate.parse(value)
    if origin is None:
        origin = Coordinate.parse(settings.DEFAULT_ORIGIN)
    return origin


def parse_radius(value: Any) -> int:
    try:
        radius = int(float(value))
    except (TypeError, ValueError):
        return settings.DEFAULT_RADIUS_M
    return radius if radius > 0 else settings.DEFAULT_RADIUS_M


def overpass_query(origin: Coordinate, radius_m: int) -> str:
    return (
        "[out:json][timeout:25];\n"
        f'node["amenity"="restaurant"](around:{radius_m},{origin.lat},{origin.lon});\n'
        "out;"
    )


def build_default_spec(origin: Coordinate, radius_m: int, use_mocks: bool = False,
                       context: Optional[Dict[str, Any]] = None) -> PipelineSpec:
    nodes = [
        {
            "id": "n1_overpass",
            "name": "Find Restaurants (OSM)",
            "type": "http",
            "provider": "overpass.interpreter",
            "method": "POST",
            "url": OVERPASS_URL,
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
            "body": {"data": overpass_query(origin, radius_m)},
            "map": {
                "name": "$.elements[*].tags.name",
                "lat": "$.elements[*].lat",
                "lon": "$.elements[*].lon",
                "cuisine": "$.elements[*].tags.cuisine",
                "opening_hours": "$.elements[*].tags.opening_hours",
                "outdoor_seating": "$.elements[*].tags.outdoor_seating",
                "wheelchair": "$.elements[*].tags.wheelchair",
                "address": "$.elements[*].tags['addr:street']",
            },
            "retry": {"times": 2, "backoff_ms": 300},
            "timeout_ms": 9000,
        },
        {
            "id": "n2_eta",
            "name": "Calculate ETA (OSRM)",
            "type": "http",
            "provider": "osrm.table",
            "method": "GET",
            "url": OSRM_TABLE_URL,
            "params": {"sources": "0"},
            "compose": {"dest_coords_csv": "{{join_coords(outputs.n1_overpass.lat, outputs.n1_overpass.lon)}}"},
            # Row 0 is the origin; column 0 is the origin's distance to itself
            "map": {"eta_seconds": "$.durations[0][1:]"},
            "retry": {"times": 2, "backoff_ms": 300},
            "timeout_ms": 4000,
        },
        {
            "id": "n3_weather",
            "name": "Get Weather",
            "type": "http",
            "provider": "open_meteo.forecast",
            "method": "GET",
            "url": OPEN_METEO_URL,
            "params": {"latitude": "{{lat}}", "longitude": "{{lon}}", "current": "temperature_2m,precipitation"},
            "fanout": {"over": "outputs.n1_overpass", "max": WEATHER_FANOUT_MAX, "mapping": {"lat": "lat", "lon": "lon"}},
            "map": {"temp_c": "$.current.temperature_2m", "precip": "$.current.precipitation"},
            "retry": {"times": 1, "backoff_ms": 200},
            "timeout_ms": 2500,
        },
        {
            "id": "t1_join",
            "name": "Combine Data",
            "type": "transform",
            "fn": "join_on_index",
            "args": {
                "left": "outputs.n1_overpass",
                "rightArrays": ["outputs.n2_eta.eta_seconds", "outputs.n3_weather.precip", "outputs.n3_weather.temp_c"],
                "rightKeys": ["eta_seconds", "precip", "temp_c"],
            },
        },
        {
            "id": "t_osm_quality",
            "name": "Assess Quality",
            "type": "transform",
            "fn": "compute_osm_quality",
            "args": {
                "from": "outputs.t1_join",
                "fields": {
                    "cuisine": "cuisine",
                    "opening_hours": "opening_hours",
                    "outdoor_seating": "outdoor_seating",
                    "wheelchair": "wheelchair",
                },
            },
        },
        {
            "id": "t2_score",
            "name": "Calculate Score",
            "type": "transform",
            "fn": "compute_score",
            "args": {"from": "outputs.t_osm_quality", "ratingKey": "quality", "etaKey": "eta_seconds", "precipKey": "precip"},
        },
        {
            "id": "t3_top",
            "name": "Rank Top 5",
            "type": "transform",
            "fn": "top_n",
            "args": {"from": "outputs.t2_score", "n": 5, "by": "score", "desc": True},
        },
        {
            "id": "t4_corr",
            "name": "Analyze Correlation",
            "type": "transform",
            "fn": "correlation",
            "args": {
                "xFrom": "$.outputs.t_osm_quality[*].quality",
                "yFrom": "$.outputs.t_osm_quality[*].eta_seconds",
                "x": "quality",
                "y": "eta_seconds",
            },
        },
    ]
    edges = [
        {"from": "n1_overpass", "to": "n2_eta"},
        {"from": "n1_overpass", "to": "n3_weather"},
        {"from": "n1_overpass", "to": "t1_join"},
        {"from": "n2_eta", "to": "t1_join"},
        {"from": "n3_weather", "to": "t1_join"},
        {"from": "t1_join", "to": "t_osm_quality"},
        {"from": "t_osm_quality", "to": "t2_score"},
        {"from": "t2_score", "to": "t3_top"},
        {"from": "t_osm_quality", "to": "t4_corr"},
    ]
    decision = [
        "Planner is using the deterministic default plan.",
        "Querying Overpass (OSM) for local amenities.",
        "Calculating ETA via OSRM, then merging weather/quality data.",
    ]
    hint = "Running with mock data." if use_mocks else "All-free stack. Execution speed optimized by reducing fanout."

    return PipelineSpec.from_dict({
        "nodes": nodes,
        "edges": edges,
        "origin": origin.to_dict(),
        "context": dict(context or {}),
        "limits": {"max_items": 50},
        "hints": [hint],
        "decision": decision,
    })


async def plan(goal: str = "", context: Optional[Dict[str, Any]] = None, use_mocks: bool = False) -> PipelineSpec:
    """Produce the specification for a run request."""
    context = context or {}
    origin = parse_origin(context.get("origin") or settings.DEFAULT_ORIGIN)
    radius_m = parse_radius(context.get("radius_m"))
    logger.info(f"Planning for goal={goal[:30]!r} origin={origin.lat},{origin.lon} radius={radius_m}m")
    return build_default_spec(origin, radius_m, use_mocks=use_mocks, context=context)
