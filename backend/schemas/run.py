"""
Run API Schemas

Request and response bodies for POST /run.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_OUTPUTS = ["summary", "ranked_list", "correlation", "pipeline_spec", "health"]


class RunContext(BaseModel):
    """Where and when to look. Unknown keys are kept and passed to the planner."""
    model_config = ConfigDict(extra="allow")

    origin: Optional[str] = None  # "lat,lon"
    radius_m: Optional[int] = None
    time: Optional[str] = None


class RunRequest(BaseModel):
    """
    Body of POST /run.

    `outputs` is accepted for client compatibility and is not used to filter
    anything: the response always carries the full result.
    """
    runId: Optional[str] = None
    goal: str = ""
    context: RunContext = Field(default_factory=RunContext)
    useMocks: Optional[bool] = None
    outputs: List[str] = Field(default_factory=lambda: list(DEFAULT_OUTPUTS))


class RankedRow(BaseModel):
    name: str = "(unknown)"
    quality: float = 0
    eta_min: Optional[float] = None
    temp_c: Optional[float] = None
    precip: Optional[float] = None
    score: float = 0
    address: Optional[str] = None


class Correlation(BaseModel):
    x: str = "quality"
    y: str = "eta_seconds"
    pearson_r: float = 0
    n: int = 0


class RunMetrics(BaseModel):
    total_duration_ms: int
    api_calls: int


class RunResults(BaseModel):
    ranked_list: List[RankedRow] = Field(default_factory=list)
    correlation: Correlation = Field(default_factory=Correlation)
    metrics: RunMetrics


class RunHealth(BaseModel):
    run_time_sec: float
    avg_latency_ms: int
    fail_rate_24h: float = 0
    auto_reroutes: int = 0
    recommendations: List[str] = Field(default_factory=list)


class RunLog(BaseModel):
    run: List[Dict[str, Any]] = Field(default_factory=list)
    decision: List[str] = Field(default_factory=list)


class RunResponse(BaseModel):
    status: str = "ok"
    runId: str
    summary: str
    results: RunResults
    pipeline_spec: Dict[str, Any]
    log: RunLog
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    health: RunHealth


class RunErrorResponse(BaseModel):
    status: str = "error"
    runId: str
    errors: List[Dict[str, Any]]
