"""
Pipeline Engine Package

Runs declarative pipelines: HTTP nodes call external APIs, transform nodes
reshape the collected data. Nodes run in declaration order and every status
change is published as an event.
"""

from schemas.pipeline import (
    # Core types
    NodeStatus,
    NodeType,
    TransformKind,
    HttpNode,
    TransformNode,
    UnsupportedNode,
    Edge,
    PipelineSpec,
    Scope,
    # Run records
    RunRecord,
    RunLogEntry,
    RunError,
)
from .errors import (
    PipelineError,
    InvalidSpecError,
    UnknownTransformError,
    HttpStatusError,
    NodeExecutionError,
    FanoutFailedError,
)
from .http_runner import HttpNodeRunner
from .engine import pipeline_engine, PipelineEngine, EngineEvent

__all__ = [
    # Core types
    "NodeStatus",
    "NodeType",
    "TransformKind",
    "HttpNode",
    "TransformNode",
    "UnsupportedNode",
    "Edge",
    "PipelineSpec",
    "Scope",
    # Run records
    "RunRecord",
    "RunLogEntry",
    "RunError",
    # Errors
    "PipelineError",
    "InvalidSpecError",
    "UnknownTransformError",
    "HttpStatusError",
    "NodeExecutionError",
    "FanoutFailedError",
    # Runner / engine
    "HttpNodeRunner",
    "pipeline_engine",
    "PipelineEngine",
    "EngineEvent",
]
