"""
Schemas package for the pipeline runner API
"""

from .pipeline import (
    PipelineSpec,
    HttpNode,
    TransformNode,
    Edge,
    RunRecord,
)
from .run import (
    RunRequest,
    RunContext,
    RunResponse,
    RunErrorResponse,
)

__all__ = [
    # Pipeline schemas
    'PipelineSpec',
    'HttpNode',
    'TransformNode',
    'Edge',
    'RunRecord',
    # Run API schemas
    'RunRequest',
    'RunContext',
    'RunResponse',
    'RunErrorResponse',
]
