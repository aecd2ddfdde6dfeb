"""
Transform Library

Pure functions over rows (lists of dicts) and arrays. They take already
resolved arguments; run_transform() does the resolving for a transform node
and dispatches on its TransformKind.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from schemas.pipeline import (
    CorrelationArgs,
    JoinArgs,
    QualityArgs,
    Scope,
    ScoreArgs,
    TopNArgs,
    TransformKind,
    TransformNode,
)
from .errors import UnknownTransformError
from .paths import as_rows, resolve_path

logger = logging.getLogger(__name__)

QUALITY_BASE = 3.5
QUALITY_MAX = 5.0
ETA_REFERENCE_SECONDS = 600  # 10 minute window
PRECIP_PENALTY_PER_MM = 0.1
PRECIP_PENALTY_CAP = 1.0
CORRELATION_EPSILON = 1e-6

DEFAULT_QUALITY_FIELDS = {
    "cuisine": "cuisine",
    "opening_hours": "opening_hours",
    "outdoor_seating": "outdoor_seating",
    "wheelchair": "wheelchair",
}


def to_number(value: Any) -> Optional[float]:
    """Numeric value of `value`, or None if it has none."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _num(value: Any) -> float:
    number = to_number(value)
    return number if number is not None else 0.0


def _is_yes(value: Any) -> bool:
    return str(value or "").strip().lower() == "yes"


# =============================================================================
# Transforms
# =============================================================================

def join_on_index(left: Any, right_arrays: Sequence[Any], right_keys: Sequence[str]) -> List[Dict[str, Any]]:
    """
    Zip each right array onto the left rows by position.

    Row i gets right_arrays[j][i] under right_keys[j]; short (or missing)
    arrays contribute None.
    """
    rows = as_rows(left)
    arrays = [arr if isinstance(arr, list) else [] for arr in (right_arrays or [])]
    joined = []
    for i, row in enumerate(rows):
        merged = dict(row) if isinstance(row, dict) else {}
        for key, arr in zip(right_keys or [], arrays):
            if key:
                merged[key] = arr[i] if i < len(arr) else None
        joined.append(merged)
    return joined


def compute_osm_quality(rows: Any, fields: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
    """Heuristic 3.5-5.0 quality from the presence of OSM tags."""
    names = {**DEFAULT_QUALITY_FIELDS, **(fields or {})}
    scored = []
    for row in as_rows(rows):
        row = row if isinstance(row, dict) else {}
        quality = QUALITY_BASE
        if row.get(names["cuisine"]):
            quality += 0.6
        if row.get(names["opening_hours"]):
            quality += 0.4
        if _is_yes(row.get(names["outdoor_seating"])):
            quality += 0.2
        if _is_yes(row.get(names["wheelchair"])):
            quality += 0.2
        scored.append({**row, "quality": round(min(quality, QUALITY_MAX), 6)})
    return scored


def compute_score(
    rows: Any,
    rating_key: str = "quality",
    eta_key: str = "eta_seconds",
    precip_key: str = "precip",
) -> List[Dict[str, Any]]:
    """score = rating - eta/600 - min(1.0, precip * 0.1)"""
    scored = []
    for row in as_rows(rows):
        row = row if isinstance(row, dict) else {}
        eta_penalty = _num(row.get(eta_key)) / ETA_REFERENCE_SECONDS
        rain_penalty = min(PRECIP_PENALTY_CAP, _num(row.get(precip_key)) * PRECIP_PENALTY_PER_MM)
        scored.append({**row, "score": _num(row.get(rating_key)) - eta_penalty - rain_penalty})
    return scored


def top_n(rows: Any, n: int = 5, by: str = "score", desc: bool = True) -> List[Any]:
    """First n rows ordered by a numeric field. Ties keep their input order."""
    ordered = sorted(
        as_rows(rows),
        key=lambda row: _num(row.get(by) if isinstance(row, dict) else None),
        reverse=desc,
    )
    return ordered[:max(0, int(n))]


def correlation(xs: Any, ys: Any) -> float:
    """
    Pearson r of two series paired by index.

    Pairs where either side is non-numeric are dropped together, so the two
    series never shift against each other. 0.0 for fewer than two pairs or a
    zero-variance series.
    """
    xs = xs if isinstance(xs, list) else []
    ys = ys if isinstance(ys, list) else []
    pairs = []
    for x, y in zip(xs, ys):
        nx, ny = to_number(x), to_number(y)
        if nx is not None and ny is not None:
            pairs.append((nx, ny))

    n = len(pairs)
    if n < 2:
        return 0.0

    mean_x = sum(x for x, _ in pairs) / n
    mean_y = sum(y for _, y in pairs) / n
    num = dx = dy = 0.0
    for x, y in pairs:
        vx, vy = x - mean_x, y - mean_y
        num += vx * vy
        dx += vx * vx
        dy += vy * vy

    den = math.sqrt(dx * dy)
    if den <= CORRELATION_EPSILON:
        return 0.0
    return max(-1.0, min(1.0, num / den))


# =============================================================================
# Dispatch
# =============================================================================

def _input(scope: Scope, expression: Any) -> Any:
    """Resolve a transform input; missing upstream output becomes an empty list."""
    value = resolve_path(scope, expression)
    return [] if value is None else value


def run_transform(node: TransformNode, scope: Scope) -> Any:
    """Resolve a transform node's inputs and run it. Raises UnknownTransformError."""
    kind = node.kind
    args = node.args

    if kind == TransformKind.JOIN_ON_INDEX and isinstance(args, JoinArgs):
        right = [resolve_path(scope, path) for path in args.right_arrays]
        return join_on_index(_input(scope, args.left), right, args.right_keys)

    elif kind == TransformKind.COMPUTE_OSM_QUALITY and isinstance(args, QualityArgs):
        return compute_osm_quality(_input(scope, args.source), args.fields)

    elif kind == TransformKind.COMPUTE_SCORE and isinstance(args, ScoreArgs):
        return compute_score(
            _input(scope, args.source),
            rating_key=args.rating_key,
            eta_key=args.eta_key,
            precip_key=args.precip_key,
        )

    elif kind == TransformKind.TOP_N and isinstance(args, TopNArgs):
        return top_n(_input(scope, args.source), n=args.n, by=args.by, desc=args.desc)

    elif kind == TransformKind.CORRELATION and isinstance(args, CorrelationArgs):
        return correlation(_input(scope, args.x_from), _input(scope, args.y_from))

    else:
        raise UnknownTransformError(node.fn)
