"""
Pipeline Engine

Interprets a PipelineSpec. Nodes run one at a time in declaration order,
each moving pending -> running -> completed | failed. A failed node never
stops the run: later nodes still execute and must cope with missing input.

Every transition is published as an EngineEvent carrying a full node/edge
snapshot so a consumer can re-render from any single event.
"""

import copy
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from schemas.pipeline import (
    CorrelationArgs,
    HttpNode,
    Node,
    NodeStatus,
    PipelineSpec,
    RunError,
    RunLogEntry,
    RunRecord,
    Scope,
    TransformKind,
    TransformNode,
)
from .errors import FanoutFailedError, InvalidSpecError, PipelineError
from .http_runner import HttpNodeRunner
from .paths import as_rows
from .transforms import run_transform

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class EngineEvent:
    """Event emitted by the pipeline engine (node_start, node_complete, node_fail)."""
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.event_type, "timestamp": self.timestamp, **self.data}


Publisher = Callable[[EngineEvent], Union[None, Awaitable[None]]]


def default_correlation() -> Dict[str, Any]:
    return {"x": "quality", "y": "eta_seconds", "pearson_r": 0, "n": 0}


def build_summary(ranked: List[Any], count: int, correlation: Dict[str, Any]) -> str:
    """One-line description of the result; "No results." when nothing was ranked."""
    if not ranked:
        return "No results."
    r = float(correlation.get("pearson_r") or 0)
    return (
        f"Found {count} restaurants. Quality vs ETA correlation r={r:.2f}. "
        f"Showing top {len(ranked)}."
    )


def _first_transform(spec: PipelineSpec, kind: TransformKind) -> Optional[TransformNode]:
    for node in spec.nodes:
        if isinstance(node, TransformNode) and node.kind == kind:
            return node
    return None


def aggregate_outputs(spec: PipelineSpec, outputs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Final outputs: every node output plus ranked_list, count, correlation, summary.

    ranked_list comes from the first top_n node, count from the first
    join_on_index node and the correlation record from the first correlation
    node. Missing (or failed) producers fall back to empty values.
    """
    final = dict(outputs)

    join_node = _first_transform(spec, TransformKind.JOIN_ON_INDEX)
    count = len(as_rows(outputs.get(join_node.id))) if join_node else 0

    top_node = _first_transform(spec, TransformKind.TOP_N)
    ranked = outputs.get(top_node.id) if top_node else None
    ranked = ranked if isinstance(ranked, list) else []

    correlation = default_correlation()
    corr_node = _first_transform(spec, TransformKind.CORRELATION)
    if corr_node and outputs.get(corr_node.id) is not None:
        args = corr_node.args if isinstance(corr_node.args, CorrelationArgs) else CorrelationArgs()
        correlation = {
            "x": args.x_label,
            "y": args.y_label,
            "pearson_r": outputs[corr_node.id],
            "n": count,
        }

    final["ranked_list"] = ranked
    final["count"] = count
    final["correlation"] = correlation
    final["summary"] = build_summary(ranked, count, correlation)
    return final


class PipelineEngine:
    """
    Executes pipeline specifications.

    The engine:
    1. Validates that the spec has nodes and clones it to a pending state
    2. Runs each node in order through the HTTP runner or the transform library
    3. Tracks node/edge status, the run log and the error list
    4. Publishes node_start / node_complete / node_fail events
    5. Aggregates the final outputs
    """

    def __init__(self, http_runner: Optional[HttpNodeRunner] = None):
        self.http_runner = http_runner or HttpNodeRunner()

    @staticmethod
    def prepare_spec(spec: Union[PipelineSpec, Dict[str, Any]]) -> PipelineSpec:
        """Copy of the spec with every node and edge reset to pending. Raises InvalidSpecError."""
        if isinstance(spec, PipelineSpec):
            prepared = copy.deepcopy(spec)
        elif isinstance(spec, dict):
            nodes = spec.get("nodes")
            if not isinstance(nodes, list) or not nodes:
                raise InvalidSpecError("'nodes' must be a non-empty list")
            try:
                prepared = PipelineSpec.from_dict(spec)
            except (TypeError, ValueError, AttributeError) as e:
                raise InvalidSpecError(str(e)) from e
        else:
            raise InvalidSpecError("specification must be an object with nodes and edges")

        if not prepared.nodes:
            raise InvalidSpecError("'nodes' must be a non-empty list")
        for problem in prepared.validate():
            logger.warning(f"Spec check: {problem}")

        for node in prepared.nodes:
            node.reset()
        for edge in prepared.edges:
            edge.status = NodeStatus.PENDING
        return prepared

    async def execute(
        self,
        spec: Union[PipelineSpec, Dict[str, Any]],
        publish: Optional[Publisher] = None,
        use_mocks: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> RunRecord:
        """Run every node of the spec and return the run record."""
        spec = self.prepare_spec(spec)
        record = RunRecord(metrics={"api_calls": 0})
        scope = Scope(
            outputs=record.outputs,
            context=dict(context if context is not None else spec.context),
            origin=spec.origin,
        )
        logger.info(f"Executing pipeline: {len(spec.nodes)} node(s), mocks={use_mocks}")

        for node in spec.nodes:
            await self._execute_node(spec, node, scope, record, publish, use_mocks)

        record.outputs = aggregate_outputs(spec, record.outputs)
        record.state = spec.snapshot()
        logger.info(f"Pipeline finished: {len(record.errors)} error(s), {record.metrics['api_calls']} API call(s)")
        return record

    async def _execute_node(
        self,
        spec: PipelineSpec,
        node: Node,
        scope: Scope,
        record: RunRecord,
        publish: Optional[Publisher],
        use_mocks: bool,
    ):
        started = time.perf_counter()

        node.status = NodeStatus.RUNNING
        for edge in spec.edges:
            if edge.to_node == node.id:
                edge.status = NodeStatus.RUNNING
        await self._publish(publish, "node_start", nodeId=node.id, state=spec.snapshot())
        logger.info(f"[NODE START {node.label}] type={node.type_name}")

        try:
            data, attempts, fallback_used = await self._run_node(node, scope, record, use_mocks)

        except Exception as e:
            duration = int((time.perf_counter() - started) * 1000)
            message = str(e) or type(e).__name__
            if not isinstance(e, PipelineError):
                logger.exception(f"Unexpected error in node {node.id}")

            node.status = NodeStatus.FAILED
            node.latency_ms = duration
            node.error_message = message
            self._mark_outgoing(spec, node, NodeStatus.FAILED)
            self._settle_incoming(spec, node)

            if isinstance(e, FanoutFailedError):
                record.errors.extend(e.item_errors)
            record.errors.append(RunError(node_id=node.id, error=message))
            record.log.append(RunLogEntry(
                node_id=node.id,
                status="error",
                attempts=getattr(e, "attempts", 1),
                duration_ms=duration,
                error=message,
            ))
            logger.error(f"[NODE ERROR {node.label}] {duration}ms: {message}")
            await self._publish(
                publish,
                "node_fail",
                nodeId=node.id,
                status=NodeStatus.FAILED.value,
                error=message,
                duration_ms=duration,
                state=spec.snapshot(),
            )
            return

        duration = int((time.perf_counter() - started) * 1000)
        record.outputs[node.id] = data
        node.status = NodeStatus.COMPLETED
        node.latency_ms = duration
        self._mark_outgoing(spec, node, NodeStatus.COMPLETED)
        self._settle_incoming(spec, node)

        record.log.append(RunLogEntry(
            node_id=node.id,
            status="ok",
            attempts=attempts,
            duration_ms=duration,
            fallback_used=fallback_used,
        ))
        logger.info(f"[NODE OK {node.label}] {duration}ms, attempts={attempts}")
        await self._publish(
            publish,
            "node_complete",
            nodeId=node.id,
            status=NodeStatus.COMPLETED.value,
            latency_ms=duration,
            state=spec.snapshot(),
        )

    async def _run_node(
        self,
        node: Node,
        scope: Scope,
        record: RunRecord,
        use_mocks: bool,
    ) -> Tuple[Any, int, bool]:
        """Dispatch on node kind. Returns (data, attempts, fallback_used)."""
        if isinstance(node, HttpNode):
            record.metrics["api_calls"] += 1
            if node.fanout:
                result = await self.http_runner.run_fanout(node, scope, use_mocks)
                record.errors.extend(result.errors)
                return result.data, result.attempts, result.fallback_used
            call = await self.http_runner.run(node, scope, use_mocks)
            return call.data, call.attempts, call.fallback_used

        if isinstance(node, TransformNode):
            return run_transform(node, scope), 1, False

        raise PipelineError(f"Unsupported node type '{node.type_name}' for node {node.id}")

    @staticmethod
    def _mark_outgoing(spec: PipelineSpec, node: Node, status: NodeStatus):
        for edge in spec.edges:
            if edge.from_node == node.id:
                edge.status = status

    @staticmethod
    def _settle_incoming(spec: PipelineSpec, node: Node):
        """Incoming edges show `running` while their target runs, then mirror their source again."""
        for edge in spec.edges:
            if edge.to_node == node.id:
                source = spec.get_node(edge.from_node)
                terminal = source is not None and source.status in (NodeStatus.COMPLETED, NodeStatus.FAILED)
                edge.status = source.status if terminal else NodeStatus.PENDING

    async def _publish(self, publish: Optional[Publisher], event_type: str, **data):
        if publish is None:
            return
        event = EngineEvent(event_type=event_type, data=data)
        try:
            result = publish(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Event publisher failed on {event_type}")


# Global engine instance
pipeline_engine = PipelineEngine()
