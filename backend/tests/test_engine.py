import asyncio

import httpx
import pytest

from schemas.pipeline import Coordinate, NodeStatus, PipelineSpec
from workflows.engine import PipelineEngine, aggregate_outputs, build_summary
from workflows.errors import InvalidSpecError
from workflows.planner import build_default_spec


def three_node_spec(eta_url="https://eta.test/table"):
    return {
        "nodes": [
            {
                "id": "places", "type": "http", "url": "https://places.test/search",
                "map": {"name": "$.items[*].name", "lat": "$.items[*].lat", "lon": "$.items[*].lon"},
            },
            {
                "id": "eta", "type": "http", "url": eta_url,
                "map": {"eta_seconds": "$.durations[*]"},
            },
            {
                "id": "joined", "type": "transform", "fn": "join_on_index",
                "args": {"left": "outputs.places", "rightArrays": ["outputs.eta.eta_seconds"], "rightKeys": ["eta_seconds"]},
            },
        ],
        "edges": [
            {"from": "places", "to": "eta"},
            {"from": "places", "to": "joined"},
            {"from": "eta", "to": "joined"},
        ],
    }


def handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "places.test":
        return httpx.Response(200, json={"items": [
            {"name": "A", "lat": 1.0, "lon": 2.0},
            {"name": "B", "lat": 3.0, "lon": 4.0},
        ]})
    if request.url.host == "eta.test":
        return httpx.Response(200, json={"durations": [60, 120]})
    return httpx.Response(503)


def execute(make_runner, spec, **kwargs):
    events = []
    engine = PipelineEngine(http_runner=make_runner(handler))
    record = asyncio.run(engine.execute(spec, publish=events.append, **kwargs))
    return record, events


def test_runs_every_node_in_order(make_runner):
    record, events = execute(make_runner, three_node_spec())

    assert record.errors == []
    assert record.outputs["joined"] == [
        {"name": "A", "lat": 1.0, "lon": 2.0, "eta_seconds": 60},
        {"name": "B", "lat": 3.0, "lon": 4.0, "eta_seconds": 120},
    ]
    assert [e.event_type for e in events] == ["node_start", "node_complete"] * 3
    assert [e.data["nodeId"] for e in events[::2]] == ["places", "eta", "joined"]
    assert record.metrics["api_calls"] == 2
    assert [entry.status for entry in record.log] == ["ok", "ok", "ok"]
    assert all(node["status"] == "completed" for node in record.state["nodes"])
    assert all(edge["status"] == "completed" for edge in record.state["edges"])


def test_events_carry_full_snapshots(make_runner):
    _, events = execute(make_runner, three_node_spec())

    start = events[0]
    assert start.data["state"]["nodes"][0]["status"] == "running"
    assert start.data["state"]["nodes"][1]["status"] == "pending"

    done = events[1]
    assert done.data["status"] == "completed"
    assert isinstance(done.data["latency_ms"], int)
    assert done.data["state"]["nodes"][0]["status"] == "completed"
    assert done.data["state"]["edges"][0]["status"] == "completed"
    assert set(done.to_dict()) >= {"type", "timestamp", "nodeId", "status", "latency_ms", "state"}


def test_failed_middle_node_does_not_stop_the_run(make_runner):
    record, events = execute(make_runner, three_node_spec(eta_url="https://down.test/table"))

    assert len(record.errors) == 1
    assert record.errors[0].node_id == "eta"
    assert "HTTP 503" in record.errors[0].error
    # downstream join still ran, with nothing to join from the failed node
    assert record.outputs["joined"][0]["eta_seconds"] is None
    assert "eta" not in record.outputs

    fail = [e for e in events if e.event_type == "node_fail"]
    assert len(fail) == 1
    assert fail[0].data["nodeId"] == "eta"
    assert fail[0].data["status"] == "failed"
    assert fail[0].data["error"] == record.errors[0].error

    statuses = {node["id"]: node["status"] for node in record.state["nodes"]}
    assert statuses == {"places": "completed", "eta": "failed", "joined": "completed"}
    edges = {(e["from"], e["to"]): e["status"] for e in record.state["edges"]}
    assert edges[("eta", "joined")] == "failed"

    entry = next(e for e in record.log if e.node_id == "eta")
    assert entry.status == "error"
    assert entry.attempts == 1


def test_unknown_transform_fails_only_that_node(make_runner):
    spec = three_node_spec()
    spec["nodes"].insert(2, {"id": "pivot", "type": "transform", "fn": "pivot", "args": {}})
    record, _ = execute(make_runner, spec)
    assert [e.node_id for e in record.errors] == ["pivot"]
    assert len(record.outputs["joined"]) == 2


def test_unsupported_node_type_fails_only_that_node(make_runner):
    spec = three_node_spec()
    spec["nodes"].insert(1, {"id": "lookup", "type": "sql", "name": "Lookup"})
    record, events = execute(make_runner, spec)

    assert [e.node_id for e in record.errors] == ["lookup"]
    assert "Unsupported node type 'sql'" in record.errors[0].error
    assert len(record.outputs["joined"]) == 2

    statuses = {node["id"]: node["status"] for node in record.state["nodes"]}
    assert statuses == {"places": "completed", "lookup": "failed", "eta": "completed", "joined": "completed"}
    assert record.state["nodes"][1]["type"] == "sql"
    assert [e.data["nodeId"] for e in events if e.event_type == "node_fail"] == ["lookup"]


def test_spec_is_not_mutated(make_runner):
    spec = PipelineSpec.from_dict(three_node_spec())
    execute(make_runner, spec)
    assert all(node.status == NodeStatus.PENDING for node in spec.nodes)


@pytest.mark.parametrize("bad_spec", [
    {"nodes": []},
    {"edges": []},
    "not a spec",
])
def test_invalid_spec_is_fatal(make_runner, bad_spec):
    with pytest.raises(InvalidSpecError):
        execute(make_runner, bad_spec)


def test_async_publisher_is_awaited(make_runner):
    seen = []

    async def publish(event):
        await asyncio.sleep(0)
        seen.append(event.event_type)

    engine = PipelineEngine(http_runner=make_runner(handler))
    asyncio.run(engine.execute(three_node_spec(), publish=publish))
    assert len(seen) == 6


def test_broken_publisher_does_not_break_the_run(make_runner):
    def publish(event):
        raise RuntimeError("subscriber gone")

    engine = PipelineEngine(http_runner=make_runner(handler))
    record = asyncio.run(engine.execute(three_node_spec(), publish=publish))
    assert record.errors == []


# =============================================================================
# Default plan in mock mode
# =============================================================================

def test_default_plan_with_mocks(make_runner):
    spec = build_default_spec(Coordinate(lat=37.87, lon=-122.27), 800, use_mocks=True)
    record, events = execute(make_runner, spec, use_mocks=True)

    assert record.errors == []
    outputs = record.outputs
    assert outputs["count"] == 8
    assert len(outputs["ranked_list"]) == 5
    scores = [row["score"] for row in outputs["ranked_list"]]
    assert scores == sorted(scores, reverse=True)
    assert outputs["correlation"]["x"] == "quality"
    assert outputs["correlation"]["n"] == 8
    assert -1.0 <= outputs["correlation"]["pearson_r"] <= 1.0
    assert outputs["summary"].startswith("Found 8 restaurants.")
    assert outputs["summary"].endswith("Showing top 5.")
    assert record.metrics["api_calls"] == 3
    assert len([e for e in events if e.event_type == "node_complete"]) == 8


# =============================================================================
# Aggregation
# =============================================================================

def test_aggregate_without_producers():
    spec = PipelineSpec.from_dict({"nodes": [{"id": "a", "type": "http", "url": "https://x.test"}]})
    final = aggregate_outputs(spec, {"a": {"v": 1}})
    assert final["a"] == {"v": 1}
    assert final["ranked_list"] == []
    assert final["count"] == 0
    assert final["correlation"] == {"x": "quality", "y": "eta_seconds", "pearson_r": 0, "n": 0}
    assert final["summary"] == "No results."


def test_summary_text():
    summary = build_summary([{}, {}], 7, {"pearson_r": -0.4567})
    assert summary == "Found 7 restaurants. Quality vs ETA correlation r=-0.46. Showing top 2."


# =============================================================================
# Default plan against live-shaped responses
# =============================================================================

def overpass_handler(elements):
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "overpass.kumi.systems":
            return httpx.Response(200, json={"elements": elements})
        if request.url.host == "router.project-osrm.org":
            return httpx.Response(200, json={"durations": [[0, 100, 200]]})
        if request.url.host == "api.open-meteo.com":
            return httpx.Response(200, json={"current": {"temperature_2m": 21.0, "precipitation": 0.0}})
        return httpx.Response(404)
    return _handler


def run_default_plan(make_runner, elements):
    spec = build_default_spec(Coordinate(lat=37.87, lon=-122.27), 800)
    engine = PipelineEngine(http_runner=make_runner(overpass_handler(elements)))
    return asyncio.run(engine.execute(spec))


def test_default_plan_keeps_sparse_tags_on_their_rows(make_runner):
    record = run_default_plan(make_runner, [
        {"lat": 37.1, "lon": -122.1, "tags": {"name": "Corner Cafe", "addr:street": "Main St"}},
        {"lat": 37.2, "lon": -122.2, "tags": {"name": "Thai House", "cuisine": "thai"}},
    ])

    assert record.errors == []
    joined = record.outputs["t1_join"]
    assert [(row["name"], row["cuisine"], row["address"]) for row in joined] == [
        ("Corner Cafe", None, "Main St"),
        ("Thai House", "thai", None),
    ]
    assert [row["eta_seconds"] for row in joined] == [100, 200]
    assert [row["temp_c"] for row in joined] == [21.0, 21.0]
    assert record.outputs["count"] == 2


def test_default_plan_tag_absent_everywhere(make_runner):
    record = run_default_plan(make_runner, [
        {"lat": 37.1, "lon": -122.1, "tags": {"name": "Corner Cafe"}},
        {"lat": 37.2, "lon": -122.2, "tags": {"name": "Thai House"}},
    ])

    assert record.errors == []
    assert record.outputs["n1_overpass"]["cuisine"] == [None, None]
    assert record.outputs["count"] == 2
    assert record.outputs["summary"].startswith("Found 2 restaurants.")
    assert len(record.outputs["ranked_list"]) == 2
