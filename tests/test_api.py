import pytest
from fastapi.testclient import TestClient

from soltrade import api_server
from soltrade.errors import (
    GatewayError,
    InsufficientBalance,
    InvalidRequest,
    NotFound,
    RateLimitExceeded,
    ValidationError,
)


@pytest.mark.parametrize(
    "exc, status",
    [
        (NotFound("Strategy", "s1"), 404),
        (ValidationError("bad"), 400),
        (InvalidRequest("busy"), 400),
        (InsufficientBalance(2.0, 1.0), 400),
        (RateLimitExceeded("w1", 10, 60), 429),
        (GatewayError("down", kind="transient"), 502),
    ],
)
def test_error_status_mapping(exc, status) -> None:
    assert api_server.status_for_error(exc) == status


def test_endpoints_report_unavailable_before_runtime_starts() -> None:
    api_server.set_runtime(None)
    client = TestClient(api_server.app)
    resp = client.get("/api/strategies")
    assert resp.status_code == 503

    events = client.get("/api/events")
    assert events.status_code == 200
    assert events.json() == {"items": []}
