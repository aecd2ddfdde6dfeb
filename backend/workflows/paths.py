"""
Path resolution and templating

Everything that reads data out of prior outputs goes through here:
- resolve_path: dotted paths (a.b.c) or JSON paths ($.a[*].b) against a scope
- interpolate: {{ expr }} placeholders in strings, plus the join_coords() helper
- as_rows: columnar {col: [...]} data -> list of row dicts
- apply_map: raw response body -> named output columns

Resolution never raises: a bad or missing path is None at the point of use.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Union

from jsonpath_ng.ext import parse as parse_jsonpath

from schemas.pipeline import Coordinate, Scope

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
JOIN_COORDS_RE = re.compile(r"^join_coords\(([^,]+),\s*([^)]+)\)\s*$")

# Wildcards, recursion, filters, slices and unions can match several values
MULTI_MATCH_RE = re.compile(r"\[\*\]|\.\*|\.\.|\?\(|\[-?\d*:-?\d*\]|\[\s*-?\d+\s*,")
# `<rows>[*]<rest>`: split at the first wildcard that is followed by more path
ROWS_PATH_RE = re.compile(r"^(?P<rows>.+?\[\*\])(?P<rest>[.\[].*)$")

ScopeLike = Union[Scope, Dict[str, Any]]


def _scope_data(scope: ScopeLike) -> Any:
    return scope.as_dict() if isinstance(scope, Scope) else scope


def is_jsonpath(expression: Any) -> bool:
    return isinstance(expression, str) and (expression.startswith("$.") or expression.startswith("$["))


def _jsonpath_matches(data: Any, expression: str) -> Optional[List[Any]]:
    try:
        return [match.value for match in parse_jsonpath(expression).find(data)]
    except Exception as e:
        logger.debug(f"JSON path '{expression}' failed: {e}")
        return None


def _walk(data: Any, expression: str) -> Any:
    current = data
    for part in expression.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
    return current


def resolve_path(scope: ScopeLike, expression: Any) -> Any:
    """
    Resolve an expression against a scope.

    Non-strings are returned unchanged. `$.`/`$[` expressions are JSON paths and
    return the list of matches; anything else is a dotted field walk.
    """
    if not isinstance(expression, str):
        return expression
    data = _scope_data(scope)
    if is_jsonpath(expression):
        return _jsonpath_matches(data, expression)
    return _walk(data, expression)


def to_text(value: Any) -> str:
    """Render a resolved value into a template."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _scope_origin(scope: ScopeLike) -> Optional[Coordinate]:
    if isinstance(scope, Scope):
        return scope.origin
    if isinstance(scope, dict):
        return Coordinate.parse(scope.get("origin") or scope.get("_origin"))
    return None


def join_coords(scope: ScopeLike, lat_path: str, lon_path: str) -> str:
    """
    Build a `lon,lat;lon,lat;...` coordinate list from two parallel arrays.

    The scope origin, when present, is listed first so that routing engines
    given `sources=0` measure from it.
    """
    lats = resolve_path(scope, lat_path.strip())
    lons = resolve_path(scope, lon_path.strip())
    if not isinstance(lats, list) or not isinstance(lons, list):
        return ""

    pairs = []
    origin = _scope_origin(scope)
    if origin is not None:
        pairs.append(f"{to_text(origin.lon)},{to_text(origin.lat)}")
    for lat, lon in zip(lats, lons):
        if lat is None or lon is None:
            continue
        pairs.append(f"{to_text(lon)},{to_text(lat)}")
    return ";".join(pairs)


def interpolate(template: Any, scope: ScopeLike) -> Any:
    """Expand every {{ expr }} in a string. Non-strings pass through."""
    if not isinstance(template, str) or not template:
        return template

    def _replace(match: re.Match) -> str:
        code = match.group(1).strip()
        join_match = JOIN_COORDS_RE.match(code)
        if join_match:
            return join_coords(scope, join_match.group(1), join_match.group(2))
        return to_text(resolve_path(scope, code))

    return PLACEHOLDER_RE.sub(_replace, template)


def interpolate_mapping(mapping: Optional[Dict[str, Any]], scope: ScopeLike) -> Optional[Dict[str, Any]]:
    if mapping is None:
        return None
    return {key: interpolate(to_text(value) if not isinstance(value, str) else value, scope)
            for key, value in mapping.items()}


def as_rows(data: Any) -> List[Any]:
    """
    Normalize to a list of row dicts.

    Lists are returned as-is. A dict whose values are all lists is transposed,
    truncated to the shortest column. Anything else is an empty list.
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and data and all(isinstance(v, list) for v in data.values()):
        length = min(len(v) for v in data.values())
        keys = list(data.keys())
        return [{key: data[key][i] for key in keys} for i in range(length)]
    if data:
        logger.debug(f"as_rows: input is neither rows nor columns ({type(data).__name__}); using []")
    return []


def _unwrap(matches: List[Any], expression: str) -> Any:
    if len(matches) == 1 and not MULTI_MATCH_RE.search(expression):
        return matches[0]
    return matches


def _row_column(body: Any, rows: str, rest: str, elements_by_rows: Dict[str, Any]) -> Any:
    if rows not in elements_by_rows:
        elements_by_rows[rows] = _jsonpath_matches(body, rows)
    elements = elements_by_rows[rows]
    if not elements:
        return elements

    column = []
    for element in elements:
        matches = _jsonpath_matches(element, f"${rest}")
        if matches is None:
            return None
        column.append(_unwrap(matches, rest) if matches else None)
    return column


def apply_map(body: Any, mapping: Optional[Dict[str, str]]) -> Any:
    """
    Project a response body into named columns, one JSON path per column.

    A column whose path fails or matches nothing is None; a single match on a
    non-wildcard path is unwrapped to a scalar.

    Paths of the form `<rows>[*]<rest>` produce one entry per element of
    `<rows>[*]`, with None where `<rest>` is missing, so columns mapped from
    the same rows stay aligned by index.
    """
    if not mapping or not isinstance(mapping, dict):
        return body

    out: Dict[str, Any] = {}
    elements_by_rows: Dict[str, Any] = {}
    for column, path in mapping.items():
        expression = path if is_jsonpath(path) else f"$.{path}"
        per_row = ROWS_PATH_RE.match(expression)
        if per_row:
            matches = _row_column(body, per_row.group("rows"), per_row.group("rest"), elements_by_rows)
        else:
            matches = _jsonpath_matches(body, expression)

        if not matches:
            if matches is None:
                logger.warning(f"Map path for column '{column}' failed: {path}")
            out[column] = None
        elif per_row:
            out[column] = matches
        else:
            out[column] = _unwrap(matches, expression)
    return out
