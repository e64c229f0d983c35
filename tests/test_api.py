"""API endpoint tests.

These requests are rejected or answered before any database access, so
they run without the application lifespan.
"""

import pytest
from litestar.status_codes import (
    HTTP_200_OK,
    HTTP_303_SEE_OTHER,
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
)
from litestar.testing import AsyncTestClient

from training_load_server.app import create_app


@pytest.fixture
def client() -> AsyncTestClient:
    """Create test client."""
    return AsyncTestClient(app=create_app())


async def test_health_check(client: AsyncTestClient) -> None:
    """Test health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == HTTP_200_OK
    data = response.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert data["scheduler"] is None


async def test_root_redirects_to_docs(client: AsyncTestClient) -> None:
    response = await client.get("/", follow_redirects=False)

    assert response.status_code == HTTP_303_SEE_OTHER
    assert response.headers["location"] == "/schema"


async def test_anchor_with_inconsistent_tsb_is_rejected(client: AsyncTestClient) -> None:
    response = await client.post(
        "/api/v1/users/athlete-1/metrics/anchor",
        json={"date": "2024-06-07", "ctl": 50.0, "atl": 40.0, "tsb": -30.0},
    )

    assert response.status_code == HTTP_400_BAD_REQUEST
    assert "tsb" in response.text


async def test_anchor_out_of_range_is_rejected(client: AsyncTestClient) -> None:
    response = await client.post(
        "/api/v1/users/athlete-1/metrics/anchor",
        json={"date": "2024-06-07", "ctl": -5.0, "atl": 40.0},
    )

    assert response.status_code == HTTP_400_BAD_REQUEST


async def test_metrics_range_must_be_ordered(client: AsyncTestClient) -> None:
    response = await client.get(
        "/api/v1/users/athlete-1/metrics",
        params={"start": "2024-06-10", "end": "2024-06-01"},
    )

    assert response.status_code == HTTP_400_BAD_REQUEST


async def test_unknown_calibration_category(client: AsyncTestClient) -> None:
    response = await client.get("/api/v1/users/athlete-1/calibration/curling")

    assert response.status_code == HTTP_404_NOT_FOUND


async def test_stress_correction_must_be_numeric(client: AsyncTestClient) -> None:
    response = await client.post(
        "/api/v1/users/athlete-1/workouts/w-1/correct",
        json={"stress": "lots"},
    )

    assert response.status_code == HTTP_400_BAD_REQUEST
