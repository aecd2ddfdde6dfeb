"""
Shared fixtures for the pipeline runner tests.

Run from the repository root: `pytest` (pyproject.toml puts backend/ on the path).
"""

import httpx
import pytest

from schemas.pipeline import Coordinate, Scope
from workflows.http_runner import HttpNodeRunner


async def no_sleep(_seconds: float):
    return None


def _runner_with_transport(handler, **kwargs) -> HttpNodeRunner:
    """Runner whose HTTP traffic goes to `handler(request) -> httpx.Response`."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("env", {})
    return HttpNodeRunner(client=client, sleep=no_sleep, polite_delay=(0, 0), mock_delay=(0, 0), **kwargs)


@pytest.fixture
def places_scope() -> Scope:
    """Three places produced by an upstream http node, in column form."""
    return Scope(
        outputs={
            "places": {
                "name": ["A", "B", "C"],
                "lat": [1.5, 2.5, 3.5],
                "lon": [10.5, 20.5, 30.5],
            }
        },
        context={"radius_m": 500},
        origin=Coordinate(lat=0, lon=0),
    )


@pytest.fixture
def make_runner():
    return _runner_with_transport
