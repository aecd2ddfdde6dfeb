"""
Run Service

One complete run for the API: plan -> execute -> compose the response.
Lifecycle events (planning_start ... pipeline_complete) are published to the
run's event channel, and the channel is closed when the run finishes.
"""

import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from schemas.pipeline import PipelineSpec, RunLogEntry, RunRecord
from services.event_hub import RunEventHub, event_hub
from workflows import planner
from workflows.engine import EngineEvent, PipelineEngine, default_correlation, pipeline_engine
from workflows.errors import InvalidSpecError

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"run_{secrets.token_hex(4)}"


class RunFailed(Exception):
    """A run that could not produce results (planning failed or the spec was unusable)."""

    def __init__(self, run_id: str, error: str):
        self.run_id = run_id
        self.error = error
        super().__init__(error)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "error", "runId": self.run_id, "errors": [{"error": self.error}]}


def normalize_ranked_row(row: Any) -> Dict[str, Any]:
    row = row if isinstance(row, dict) else {}
    eta_seconds = row.get("eta_seconds")
    eta_min = None
    if isinstance(eta_seconds, (int, float)) and not isinstance(eta_seconds, bool):
        eta_min = round(eta_seconds / 60, 1)
    name = row.get("name")
    return {
        "name": name if name is not None else "(unknown)",
        "quality": float(row.get("quality") or 0),
        "eta_min": eta_min,
        "temp_c": row.get("temp_c"),
        "precip": row.get("precip"),
        "score": float(row.get("score") or 0),
        "address": row.get("address"),
    }


def compute_health(log: List[RunLogEntry], duration_ms: int, hints: List[str]) -> Dict[str, Any]:
    """Run health: wall time, mean latency of successful nodes, fallback count, planner hints."""
    ok_durations = [entry.duration_ms for entry in log if entry.status == "ok"]
    avg_latency_ms = round(sum(ok_durations) / len(ok_durations)) if ok_durations else 0
    return {
        "run_time_sec": round(duration_ms / 1000, 1),
        "avg_latency_ms": avg_latency_ms,
        "fail_rate_24h": 0,
        "auto_reroutes": sum(1 for entry in log if entry.fallback_used),
        "recommendations": list(hints),
    }


def compose_response(
    run_id: str,
    spec: PipelineSpec,
    record: RunRecord,
    duration_ms: int,
) -> Dict[str, Any]:
    outputs = record.outputs
    ranked = outputs.get("ranked_list") or []
    correlation = outputs.get("correlation") or default_correlation()
    return {
        "status": "ok",
        "runId": run_id,
        "summary": outputs.get("summary", "No results."),
        "results": {
            "ranked_list": [normalize_ranked_row(row) for row in ranked],
            "correlation": correlation,
            "metrics": {
                "total_duration_ms": duration_ms,
                "api_calls": record.metrics.get("api_calls", 0),
            },
        },
        "pipeline_spec": spec.to_dict(),
        "log": {
            "run": [entry.to_dict() for entry in record.log],
            "decision": list(spec.decision),
        },
        "errors": [err.to_dict() for err in record.errors],
        "health": compute_health(record.log, duration_ms, spec.hints),
    }


class RunService:
    """Runs pipelines on behalf of the API and streams their progress."""

    def __init__(self, engine: Optional[PipelineEngine] = None, hub: Optional[RunEventHub] = None):
        self.engine = engine or pipeline_engine
        self.hub = hub or event_hub

    async def run(
        self,
        run_id: str,
        goal: str = "",
        context: Optional[Dict[str, Any]] = None,
        use_mocks: bool = False,
    ) -> Dict[str, Any]:
        """Plan and execute one run. Returns the response body; raises RunFailed."""
        context = context or {}
        started = time.perf_counter()
        logger.info(f"[RUN {run_id}] started: mocks={use_mocks}, goal={goal[:30]!r}")
        self.hub.publish(run_id, "planning_start", {"runId": run_id, "goal": goal, "useMocks": use_mocks})

        try:
            spec = await planner.plan(goal, context, use_mocks=use_mocks)
            if not spec.nodes:
                raise InvalidSpecError("planner produced an empty specification")
            logger.info(f"[RUN {run_id}] planned {len(spec.nodes)} node(s)")
            self.hub.publish(run_id, "planning_complete", {"runId": run_id, "state": spec.snapshot()})

            self.hub.publish(run_id, "execution_start", {"runId": run_id})

            def forward(event: EngineEvent):
                self.hub.publish(run_id, event.event_type, {"runId": run_id, **event.data})

            record = await self.engine.execute(spec, publish=forward, use_mocks=use_mocks, context=context)

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"[RUN {run_id}] failed: {message}", exc_info=True)
            self.hub.publish(run_id, "error", {"runId": run_id, "error": message})
            self.hub.publish(run_id, "pipeline_complete", {"runId": run_id, "status": "error", "error": message})
            self.hub.close(run_id)
            raise RunFailed(run_id, message) from e

        duration_ms = int((time.perf_counter() - started) * 1000)
        response = compose_response(run_id, spec, record, duration_ms)

        self.hub.publish(run_id, "pipeline_complete", {
            "runId": run_id,
            "state": {
                **record.state,
                "summary": response["summary"],
                "correlation": response["results"]["correlation"],
            },
            "health": response["health"],
        })
        self.hub.close(run_id)
        logger.info(
            f"[RUN {run_id}] finished in {duration_ms}ms: {len(record.errors)} error(s), "
            f"{response['results']['metrics']['api_calls']} API call(s)"
        )
        return response


# Global service instance
run_service = RunService()
