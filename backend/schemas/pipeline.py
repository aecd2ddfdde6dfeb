"""
Pipeline Specification Schema

Defines the declarative specification interpreted by the pipeline engine
and the records produced by a run.

A specification is an ordered list of nodes plus a list of edges:
- Nodes are either "http" (call an external API) or "transform" (pure data step)
- Nodes run strictly in declaration order
- Edges only describe dependencies for display; they never change execution order
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


class NodeStatus(str, Enum):
    """Lifecycle of a node (and of the edges leaving it)."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeType(str, Enum):
    HTTP = "http"
    TRANSFORM = "transform"


class TransformKind(str, Enum):
    """The closed set of transforms a transform node can name in `fn`."""
    JOIN_ON_INDEX = "join_on_index"
    COMPUTE_OSM_QUALITY = "compute_osm_quality"
    COMPUTE_SCORE = "compute_score"
    TOP_N = "top_n"
    CORRELATION = "correlation"


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key wins; lets specs use either camelCase or snake_case."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# =============================================================================
# Shared value types
# =============================================================================

@dataclass
class Coordinate:
    lat: float
    lon: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}

    @classmethod
    def parse(cls, value: Any) -> Optional["Coordinate"]:
        """Accepts {"lat", "lon"} mappings or "lat,lon" strings. Returns None if unusable."""
        if isinstance(value, Coordinate):
            return value
        try:
            if isinstance(value, dict):
                if value.get("lat") is None or value.get("lon") is None:
                    return None
                return cls(lat=float(value["lat"]), lon=float(value["lon"]))
            if isinstance(value, str):
                lat, lon = (part.strip() for part in value.split(",")[:2])
                return cls(lat=float(lat), lon=float(lon))
        except (TypeError, ValueError):
            return None
        return None


@dataclass
class RetryPolicy:
    """Extra attempts after the first one, with exponential backoff between them."""
    times: int = 0
    backoff_ms: int = 100

    def to_dict(self) -> Dict[str, int]:
        return {"times": self.times, "backoff_ms": self.backoff_ms}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            times=max(0, int(data.get("times", 0) or 0)),
            backoff_ms=max(0, int(data.get("backoff_ms", 100) or 0)),
        )


@dataclass
class FanoutConfig:
    """
    Repeat an HTTP node once per item of a collection.

    over: path expression yielding rows (or columns) to iterate
    max: cap on the number of parallel calls (None means every item)
    mapping: scope variable name -> field of the item
    """
    over: str
    max: Optional[int] = None
    mapping: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"over": self.over, "max": self.max, "mapping": dict(self.mapping)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["FanoutConfig"]:
        if not data or not data.get("over"):
            return None
        max_calls = data.get("max")
        return cls(
            over=data["over"],
            max=int(max_calls) if max_calls else None,
            mapping=dict(data.get("mapping") or {}),
        )


# =============================================================================
# Transform arguments (one record per TransformKind)
# =============================================================================

@dataclass
class JoinArgs:
    left: Any = None
    right_arrays: List[Any] = field(default_factory=list)
    right_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"left": self.left, "rightArrays": list(self.right_arrays), "rightKeys": list(self.right_keys)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinArgs":
        return cls(
            left=data.get("left"),
            right_arrays=list(_pick(data, "rightArrays", "right_arrays", default=[])),
            right_keys=list(_pick(data, "rightKeys", "right_keys", default=[])),
        )


@dataclass
class QualityArgs:
    source: Any = "outputs.t1_join"
    fields: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source, "fields": dict(self.fields)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityArgs":
        return cls(
            source=_pick(data, "from", "source", default="outputs.t1_join"),
            fields=dict(data.get("fields") or {}),
        )


@dataclass
class ScoreArgs:
    source: Any = "outputs.t_osm_quality"
    rating_key: str = "quality"
    eta_key: str = "eta_seconds"
    precip_key: str = "precip"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.source,
            "ratingKey": self.rating_key,
            "etaKey": self.eta_key,
            "precipKey": self.precip_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreArgs":
        return cls(
            source=_pick(data, "from", "source", default="outputs.t_osm_quality"),
            rating_key=_pick(data, "ratingKey", "rating_key", default="quality"),
            eta_key=_pick(data, "etaKey", "eta_key", default="eta_seconds"),
            precip_key=_pick(data, "precipKey", "precip_key", default="precip"),
        )


@dataclass
class TopNArgs:
    source: Any = "outputs.t2_score"
    n: int = 5
    by: str = "score"
    desc: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source, "n": self.n, "by": self.by, "desc": self.desc}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopNArgs":
        return cls(
            source=_pick(data, "from", "source", default="outputs.t2_score"),
            n=int(_pick(data, "n", default=5)),
            by=_pick(data, "by", default="score"),
            desc=data.get("desc") is not False,
        )


@dataclass
class CorrelationArgs:
    x_from: Any = None
    y_from: Any = None
    # Labels reported in the final correlation record
    x_label: str = "quality"
    y_label: str = "eta_seconds"

    def to_dict(self) -> Dict[str, Any]:
        return {"xFrom": self.x_from, "yFrom": self.y_from, "x": self.x_label, "y": self.y_label}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorrelationArgs":
        return cls(
            x_from=_pick(data, "xFrom", "x_from"),
            y_from=_pick(data, "yFrom", "y_from"),
            x_label=_pick(data, "x", "x_label", default="quality"),
            y_label=_pick(data, "y", "y_label", default="eta_seconds"),
        )


TransformArgs = Union[JoinArgs, QualityArgs, ScoreArgs, TopNArgs, CorrelationArgs]

TRANSFORM_ARGS = {
    TransformKind.JOIN_ON_INDEX: JoinArgs,
    TransformKind.COMPUTE_OSM_QUALITY: QualityArgs,
    TransformKind.COMPUTE_SCORE: ScoreArgs,
    TransformKind.TOP_N: TopNArgs,
    TransformKind.CORRELATION: CorrelationArgs,
}


def parse_transform_args(fn: str, data: Optional[Dict[str, Any]]) -> Union[TransformArgs, Dict[str, Any]]:
    """Typed args for known transforms; unknown names keep their raw args."""
    try:
        kind = TransformKind(fn)
    except ValueError:
        return dict(data or {})
    return TRANSFORM_ARGS[kind].from_dict(data or {})


# =============================================================================
# Nodes and edges
# =============================================================================

@dataclass
class Node:
    """Fields shared by every node kind. Use HttpNode or TransformNode."""
    type: ClassVar[NodeType]

    id: str
    name: str = ""
    status: NodeStatus = NodeStatus.PENDING
    latency_ms: Optional[int] = None
    error_message: Optional[str] = None
    # Descriptive label of the upstream service (e.g. "osrm.table")
    provider: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def type_name(self) -> str:
        return self.type.value

    def reset(self):
        self.status = NodeStatus.PENDING
        self.latency_ms = None
        self.error_message = None

    def _common_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "type": self.type_name,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "error_message": self.error_message,
        }
        if self.provider:
            result["provider"] = self.provider
        return result

    def to_dict(self) -> Dict[str, Any]:
        return self._common_dict()

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Node":
        """Build the right node variant from its `type` tag."""
        node_type = data.get("type")
        if node_type == NodeType.HTTP.value:
            return HttpNode.from_dict(data)
        if node_type == NodeType.TRANSFORM.value:
            return TransformNode.from_dict(data)
        return UnsupportedNode.from_dict(data)


@dataclass
class HttpNode(Node):
    type: ClassVar[NodeType] = NodeType.HTTP

    method: str = "GET"
    url: str = ""
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, str]] = None
    body: Optional[Dict[str, str]] = None
    # Named templates evaluated first; visible to the others as {{compose.<name>}}
    compose: Optional[Dict[str, str]] = None
    # Output column -> JSON path over the response body
    map: Optional[Dict[str, str]] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_ms: Optional[int] = None
    fanout: Optional[FanoutConfig] = None
    # Accepted but never executed: a node with a fallback still fails
    fallback: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self._common_dict()
        result.update({
            "method": self.method,
            "url": self.url,
            "retry": self.retry.to_dict(),
        })
        for key in ("headers", "params", "body", "compose", "map", "timeout_ms", "fallback"):
            value = getattr(self, key)
            if value is not None:
                result[key] = dict(value) if isinstance(value, dict) else value
        if self.fanout:
            result["fanout"] = self.fanout.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HttpNode":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            provider=data.get("provider"),
            method=str(data.get("method") or "GET").upper(),
            url=data.get("url", ""),
            headers=data.get("headers"),
            params=data.get("params"),
            body=data.get("body"),
            compose=data.get("compose"),
            map=data.get("map"),
            retry=RetryPolicy.from_dict(data.get("retry")),
            timeout_ms=data.get("timeout_ms"),
            fanout=FanoutConfig.from_dict(data.get("fanout")),
            fallback=data.get("fallback"),
        )


@dataclass
class TransformNode(Node):
    type: ClassVar[NodeType] = NodeType.TRANSFORM

    fn: str = ""
    args: Union[TransformArgs, Dict[str, Any]] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[TransformKind]:
        try:
            return TransformKind(self.fn)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        result = self._common_dict()
        result["fn"] = self.fn
        result["args"] = self.args if isinstance(self.args, dict) else self.args.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformNode":
        fn = data.get("fn", "")
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            provider=data.get("provider"),
            fn=fn,
            args=parse_transform_args(fn, data.get("args")),
        )


@dataclass
class UnsupportedNode(Node):
    """A node whose `type` tag has no runner. It fails on its own when executed."""
    type: ClassVar[Optional[NodeType]] = None

    declared_type: str = ""

    @property
    def type_name(self) -> str:
        return self.declared_type

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnsupportedNode":
        node_type = data.get("type")
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            provider=data.get("provider"),
            declared_type="" if node_type is None else str(node_type),
        )


@dataclass
class Edge:
    """A display-only dependency link. Its status mirrors its source node."""
    from_node: str
    to_node: str
    status: NodeStatus = NodeStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.from_node, "to": self.to_node, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            from_node=_pick(data, "from", "from_node", default=""),
            to_node=_pick(data, "to", "to_node", default=""),
        )


@dataclass
class PipelineSpec:
    """
    A complete plan: ordered nodes, display edges and planner metadata.

    `decision` is the planner's decision log and `hints` its recommendations;
    both are echoed back in the run response.
    """
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    origin: Optional[Coordinate] = None
    context: Dict[str, Any] = field(default_factory=dict)
    limits: Dict[str, Any] = field(default_factory=dict)
    hints: List[str] = field(default_factory=list)
    decision: List[str] = field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def validate(self) -> List[str]:
        """Structural checks. Returns a list of error messages (empty if valid)."""
        errors = []
        if not self.nodes:
            errors.append("Specification has no nodes")

        seen = set()
        for node in self.nodes:
            if not node.id:
                errors.append("Node missing 'id'")
            elif node.id in seen:
                errors.append(f"Duplicate node id: {node.id}")
            seen.add(node.id)

            if isinstance(node, HttpNode) and not node.url:
                errors.append(f"Node '{node.id}' (http) missing 'url'")
            if isinstance(node, TransformNode) and not node.fn:
                errors.append(f"Node '{node.id}' (transform) missing 'fn'")
            if isinstance(node, UnsupportedNode):
                errors.append(f"Node '{node.id}' has unsupported type: {node.type_name or '(none)'}")

        for edge in self.edges:
            if edge.from_node not in seen:
                errors.append(f"Edge from unknown node: {edge.from_node}")
            if edge.to_node not in seen:
                errors.append(f"Edge to unknown node: {edge.to_node}")

        return errors

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Full node/edge state, so a consumer can always re-render from scratch."""
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.snapshot()
        result.update({
            "origin": self.origin.to_dict() if self.origin else None,
            "context": dict(self.context),
            "limits": dict(self.limits),
            "hints": list(self.hints),
            "decision": list(self.decision),
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineSpec":
        """Create from dict. Raises ValueError on malformed nodes."""
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            origin=Coordinate.parse(_pick(data, "origin", "_origin")),
            context=dict(data.get("context") or {}),
            limits=dict(data.get("limits") or {}),
            hints=list(data.get("hints") or []),
            decision=list(_pick(data, "decision", "_decision", default=[])),
        )


# =============================================================================
# Run records
# =============================================================================

@dataclass
class RunLogEntry:
    """Outcome of one node in a run."""
    node_id: str
    status: str  # "ok" or "error"
    attempts: int
    duration_ms: int
    fallback_used: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "node_id": self.node_id,
            "status": self.status,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "fallback_used": self.fallback_used,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class RunError:
    """A failure; fan-out items are scoped as `node_id[index]`."""
    node_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"node_id": self.node_id, "error": self.error}


@dataclass
class RunRecord:
    """Everything one execution produced. Created per run, never persisted."""
    outputs: Dict[str, Any] = field(default_factory=dict)
    log: List[RunLogEntry] = field(default_factory=list)
    errors: List[RunError] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    # Final node/edge snapshot
    state: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outputs": self.outputs,
            "log": [entry.to_dict() for entry in self.log],
            "errors": [err.to_dict() for err in self.errors],
            "metrics": dict(self.metrics),
            "state": self.state,
        }


# =============================================================================
# Template / path scope
# =============================================================================

@dataclass
class Scope:
    """
    Data visible to path expressions and templates.

    Named roots: outputs, context, compose, origin (and env, for headers only).
    Overlay variables (one fan-out item's fields) sit at the top level and
    win over the named roots.
    """
    outputs: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    origin: Optional[Coordinate] = None
    compose: Dict[str, Any] = field(default_factory=dict)
    overlay: Dict[str, Any] = field(default_factory=dict)
    env: Optional[Dict[str, str]] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "outputs": self.outputs,
            "context": self.context,
            "compose": self.compose,
            "origin": self.origin.to_dict() if self.origin else None,
        }
        if self.env is not None:
            data["env"] = self.env
        data.update(self.overlay)
        return data

    def with_overlay(self, variables: Dict[str, Any]) -> "Scope":
        """Child scope for one fan-out item. Shares the outputs store (read-only use)."""
        return Scope(
            outputs=self.outputs,
            context=self.context,
            origin=self.origin,
            compose=dict(self.compose),
            overlay={**self.overlay, **variables},
            env=self.env,
        )

    def with_compose(self, values: Dict[str, Any]) -> "Scope":
        child = self.with_overlay({})
        child.compose = {**self.compose, **values}
        return child

    def with_env(self, env: Dict[str, str]) -> "Scope":
        child = self.with_overlay({})
        child.env = dict(env)
        return child

