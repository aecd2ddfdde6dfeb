"""
HTTP Node Runner

Executes one declared HTTP call:
1. Expand `compose` templates, then url/params/body/headers against the scope
2. Send with the node's timeout; only 2xx counts as success
3. Retry failures with exponential backoff
4. Project the response body into named columns via the node's `map`

Fan-out repeats the call once per input item, all in flight together, and
merges the per-item results column-wise by item index.
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from config.settings import settings
from schemas.pipeline import HttpNode, RunError, Scope
from .errors import FanoutFailedError, HttpStatusError, NodeExecutionError
from .mocks import mock_payload
from .paths import apply_map, as_rows, interpolate, interpolate_mapping, resolve_path, to_text
from .retry import RetryExhausted, retry_with_backoff

logger = logging.getLogger(__name__)

MOCK_DELAY_SECONDS = (0.05, 0.1)
POLITE_DELAY_SECONDS = (0.05, 0.1)
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
BODYLESS_METHODS = {"GET", "HEAD", "DELETE", "OPTIONS"}

RETRYABLE_ERRORS = (httpx.HTTPError, httpx.InvalidURL, HttpStatusError)


def secret_env(prefixes: Optional[List[str]] = None) -> Dict[str, str]:
    """Process environment variables that header templates may reference as {{env.NAME}}."""
    prefixes = settings.SECRET_ENV_PREFIXES if prefixes is None else prefixes
    return {k: v for k, v in os.environ.items() if any(k.startswith(p) for p in prefixes)}


@dataclass
class CompiledRequest:
    method: str
    url: str
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, str]] = None
    body: Optional[Dict[str, str]] = None

    @property
    def is_form(self) -> bool:
        for name, value in (self.headers or {}).items():
            if name.lower() == "content-type" and FORM_CONTENT_TYPE in str(value).lower():
                return True
        return False


@dataclass
class HttpCallResult:
    data: Any
    attempts: int = 1
    fallback_used: bool = False


@dataclass
class FanoutResult:
    """Merged fan-out output: one array per column, indexed by item position."""
    data: Dict[str, List[Any]]
    attempts: int
    calls: int
    errors: List[RunError] = field(default_factory=list)
    fallback_used: bool = False


class HttpNodeRunner:
    """Runs HTTP nodes. Pass `client` to share a connection pool (or a mock transport)."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        env: Optional[Dict[str, str]] = None,
        default_timeout_ms: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        mock_delay: Tuple[float, float] = MOCK_DELAY_SECONDS,
        polite_delay: Tuple[float, float] = POLITE_DELAY_SECONDS,
    ):
        self._client = client
        self._env = None if env is None else dict(env)
        self.default_timeout_ms = default_timeout_ms or settings.DEFAULT_HTTP_TIMEOUT_MS
        self._sleep = sleep
        self.mock_delay = mock_delay
        self.polite_delay = polite_delay

    @property
    def env(self) -> Dict[str, str]:
        return secret_env() if self._env is None else self._env

    # =========================================================================
    # Request compilation
    # =========================================================================

    def compile_request(self, node: HttpNode, scope: Scope) -> CompiledRequest:
        """
        Expand every template of the node.

        Compose entries are evaluated in order, each seeing the ones before it
        as {{compose.<name>}}. Headers additionally see {{env.<NAME>}} secrets.
        """
        if node.compose:
            for name, template in node.compose.items():
                value = interpolate(to_text(template), scope)
                scope = scope.with_compose({name: value})

        return CompiledRequest(
            method=(node.method or "GET").upper(),
            url=interpolate(node.url, scope),
            headers=interpolate_mapping(node.headers, scope.with_env(self.env)),
            params=interpolate_mapping(node.params, scope),
            body=interpolate_mapping(node.body, scope),
        )

    # =========================================================================
    # Single call
    # =========================================================================

    async def run(self, node: HttpNode, scope: Scope, use_mocks: bool = False) -> HttpCallResult:
        """Run one call (with retries). Raises NodeExecutionError once retries are exhausted."""
        if use_mocks:
            await self._sleep(random.uniform(*self.mock_delay))
            logger.debug(f"[HTTP {node.label}] mock payload")
            return HttpCallResult(data=mock_payload(node.id), attempts=1)

        request = self.compile_request(node, scope)
        timeout_s = (node.timeout_ms or self.default_timeout_ms) / 1000

        async def _attempt(attempt: int) -> Any:
            logger.info(f"[HTTP {node.label}] attempt {attempt}: {request.method} {request.url}")
            return await self._send(request, timeout_s)

        try:
            outcome = await retry_with_backoff(
                _attempt,
                times=node.retry.times,
                backoff_ms=node.retry.backoff_ms,
                retry_on=RETRYABLE_ERRORS,
                label=f"HTTP {node.label}",
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            raise NodeExecutionError(
                node.id,
                e.attempts,
                str(e),
                fallback_declared=node.fallback is not None,
            ) from e.last_error

        return HttpCallResult(data=apply_map(outcome.value, node.map), attempts=outcome.attempts)

    async def _send(self, request: CompiledRequest, timeout_s: float) -> Any:
        if self._client is not None:
            return await self._request(self._client, request, timeout_s)
        async with httpx.AsyncClient() as client:
            return await self._request(client, request, timeout_s)

    async def _request(self, client: httpx.AsyncClient, request: CompiledRequest, timeout_s: float) -> Any:
        kwargs: Dict[str, Any] = {
            "headers": request.headers,
            "params": request.params,
            "timeout": timeout_s,
        }
        if request.method not in BODYLESS_METHODS and request.body is not None:
            if request.is_form:
                kwargs["data"] = request.body
            else:
                kwargs["json"] = request.body

        response = await client.request(request.method, request.url, **kwargs)
        if not 200 <= response.status_code < 300:
            raise HttpStatusError(response.status_code, request.url)

        try:
            return response.json()
        except ValueError:
            return response.text

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def run_fanout(self, node: HttpNode, scope: Scope, use_mocks: bool = False) -> FanoutResult:
        """
        Call the node once per item of `fanout.over`, up to `fanout.max` items.

        A failed item leaves None in every column at its index and yields a
        RunError scoped to `node_id[index]`. If every item fails the whole node
        fails with FanoutFailedError.
        """
        fanout = node.fanout
        items = as_rows(resolve_path(scope, fanout.over))
        count = min(fanout.max or len(items), len(items))
        logger.info(f"[FANOUT {node.label}] {count} call(s) over {fanout.over} (max {fanout.max})")

        async def _call(item: Any) -> HttpCallResult:
            if not use_mocks:
                await self._sleep(random.uniform(*self.polite_delay))
            variables = {
                var: (item.get(source) if isinstance(item, dict) else None)
                for var, source in fanout.mapping.items()
            }
            return await self.run(node, scope.with_overlay(variables), use_mocks)

        settled = await asyncio.gather(*(_call(items[i]) for i in range(count)), return_exceptions=True)

        columns: Dict[str, List[Any]] = {name: [None] * count for name in (node.map or {})}
        errors: List[RunError] = []
        attempts = 1
        fallback_used = False

        for index, result in enumerate(settled):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"[FANOUT {node.label}] call {index} failed: {result}")
                errors.append(RunError(node_id=f"{node.id}[{index}]", error=str(result)))
                failed_attempts = getattr(result, "attempts", None) or node.retry.times + 1
                attempts = max(attempts, failed_attempts)
                continue

            attempts = max(attempts, result.attempts)
            fallback_used = fallback_used or result.fallback_used
            if not isinstance(result.data, dict):
                logger.warning(f"[FANOUT {node.label}] call {index} returned unmapped data; ignored")
                continue
            for name, value in result.data.items():
                column = columns.setdefault(name, [None] * count)
                if isinstance(value, list):
                    value = value[0] if value else None
                column[index] = value

        logger.info(f"[FANOUT {node.label}] settled: {count - len(errors)} ok, {len(errors)} failed")
        if count and len(errors) == count:
            raise FanoutFailedError(node.id, count, attempts, item_errors=errors)

        return FanoutResult(data=columns, attempts=attempts, calls=count, errors=errors, fallback_used=fallback_used)
