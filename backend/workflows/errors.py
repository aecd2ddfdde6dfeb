"""
Pipeline errors

Resolution problems never raise (they resolve to None); everything here is
either fatal to a run (InvalidSpecError) or fatal to a single node.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class InvalidSpecError(PipelineError):
    """The specification cannot be executed at all."""

    def __init__(self, reason: str):
        super().__init__(f"invalid spec: {reason}")
        self.reason = reason


class UnknownTransformError(PipelineError):
    def __init__(self, fn: str):
        super().__init__(f"Unknown transform function: {fn}")
        self.fn = fn


class HttpStatusError(PipelineError):
    """A response outside the 2xx range."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code} from {url}")
        self.status_code = status_code
        self.url = url


class NodeExecutionError(PipelineError):
    """A node gave up after exhausting its retries."""

    def __init__(self, node_id: str, attempts: int, message: str, fallback_declared: bool = False):
        text = f"Node {node_id} failed after {attempts} attempt(s): {message}"
        if fallback_declared:
            text += " (fallback declared but fallback execution is not supported)"
        super().__init__(text)
        self.node_id = node_id
        self.attempts = attempts
        self.last_error = message


class FanoutFailedError(PipelineError):
    """Every call of a fan-out failed."""

    def __init__(self, node_id: str, calls: int, attempts: int, item_errors: Optional[List] = None):
        item_errors = item_errors or []
        text = f"All {calls} fan-out call(s) of node {node_id} failed"
        if item_errors:
            text += f"; last error: {item_errors[-1].error}"
        super().__init__(text)
        self.node_id = node_id
        self.calls = calls
        self.attempts = attempts
        # RunError entries scoped to node_id[index]
        self.item_errors = item_errors
