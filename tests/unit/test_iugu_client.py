from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests

from billing_sync.infrastructure.external.iugu_sync.iugu_client import (
    AUTH_BEARER,
    IuguClient,
    IuguCredentials,
    build_page_params,
)
from billing_sync.infrastructure.external.iugu_sync.retry_governor import RetryGovernor, RetryPolicy
from billing_sync.infrastructure.external.iugu_sync.table_mappings import INVOICES
from billing_sync.infrastructure.external.iugu_sync.types import AXIS_CREATED, AXIS_UPDATED
from billing_sync.shared.exceptions import (
    PaginationCeilingReached,
    RateLimitedError,
    SourceApiError,
    TransientRemoteError,
)
from conftest import FakeResponse, FakeSession

START = datetime(2025, 8, 1, tzinfo=timezone.utc)
END = datetime(2025, 9, 1, tzinfo=timezone.utc)


def _client(session, **kwargs) -> IuguClient:
    return IuguClient(IuguCredentials(token="tok"), session=session, **kwargs)


def test_backfill_window_uses_created_at_filters():
    params = build_page_params(window_start=START, window_end=END, cursor=200, limit=100, axis=AXIS_CREATED)
    assert params == {
        "limit": 100,
        "start": 200,
        "sortBy": "created_at",
        "sortType": "asc",
        "created_at_from": "2025-08-01T00:00:00Z",
        "created_at_to": "2025-09-01T00:00:00Z",
    }


def test_incremental_window_filters_by_updated_at():
    params = build_page_params(window_start=START, window_end=None, cursor=0, limit=50)
    assert params["updated_at_from"] == "2025-08-01T00:00:00Z"
    assert "updated_at_to" not in params
    assert "created_at_from" not in params


def test_narrowed_incremental_window_stays_on_updated_at():
    params = build_page_params(window_start=START, window_end=END, cursor=0, limit=50, axis=AXIS_UPDATED)
    assert params["updated_at_from"] == "2025-08-01T00:00:00Z"
    assert params["updated_at_to"] == "2025-09-01T00:00:00Z"
    assert params["sortBy"] == "created_at"
    assert "created_at_to" not in params


def test_fetch_page_parses_items_and_total():
    session = FakeSession(FakeResponse(200, {"items": [{"id": "A"}, {"id": "B"}], "totalItems": 240}))
    page = _client(session, base_url="https://api.iugu.com/v1/").fetch_page(INVOICES, START, END, 100, 100)

    assert [r["id"] for r in page.records] == ["A", "B"]
    assert page.next_cursor == 102
    assert page.total_items == 240
    request = session.requests[0]
    assert request["url"] == "https://api.iugu.com/v1/invoices"
    assert request["auth"] == ("tok", "")
    assert request["timeout"] == 30
    assert request["params"]["updated_at_from"] == "2025-08-01T00:00:00Z"
    assert request["params"]["updated_at_to"] == "2025-09-01T00:00:00Z"


def test_missing_items_is_an_empty_page():
    page = _client(FakeSession(FakeResponse(200, {"totalItems": 0}))).fetch_page(INVOICES, START, None, 0, 100)
    assert page.is_empty


def test_bearer_auth_header():
    session = FakeSession(FakeResponse(200, {"items": []}))
    client = IuguClient(IuguCredentials(token="tok", auth_scheme=AUTH_BEARER), session=session)
    client.fetch_page(INVOICES, START, None, 0, 100)
    assert session.requests[0]["headers"]["Authorization"] == "Bearer tok"
    assert "auth" not in session.requests[0]


@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(429, headers={"Retry-After": "45"}), RateLimitedError),
        (FakeResponse(502, text="bad gateway"), TransientRemoteError),
        (requests.Timeout("slow"), TransientRemoteError),
        (requests.ConnectionError("reset"), TransientRemoteError),
        (FakeResponse(401, text="unauthorized"), SourceApiError),
    ],
)
def test_error_classification(response, error):
    with pytest.raises(error):
        _client(FakeSession(response)).fetch_page(INVOICES, START, None, 0, 100)


def test_retry_after_is_exposed():
    with pytest.raises(RateLimitedError) as exc_info:
        _client(FakeSession(FakeResponse(429, headers={"Retry-After": "45"}))).fetch_page(
            INVOICES, START, None, 0, 100
        )
    assert exc_info.value.retry_after_s == 45.0


def test_offset_beyond_ceiling_is_not_requested():
    session = FakeSession()
    with pytest.raises(PaginationCeilingReached):
        _client(session).fetch_page(INVOICES, START, END, 9_950, 100)
    assert session.requests == []


def test_bad_request_at_ceiling_means_ceiling_reached():
    client = _client(FakeSession(FakeResponse(400, text="start too big")), pagination_ceiling=200)
    with pytest.raises(PaginationCeilingReached):
        client.fetch_page(INVOICES, START, END, 200, 0)


def test_rate_limited_once_then_success_waits_the_cooldown():
    sleeps = []
    session = FakeSession(
        FakeResponse(429),
        FakeResponse(200, {"items": [{"id": "A"}], "totalItems": 1}),
    )
    client = _client(session)
    governor = RetryGovernor(RetryPolicy(rate_limit_cooldown_s=30.0), sleep=sleeps.append)

    result = governor.with_retry(
        lambda: client.fetch_page(INVOICES, START, None, 0, 100), description="GET /invoices"
    )

    assert result.ok
    assert result.value.records == [{"id": "A"}]
    assert sleeps and sleeps[0] >= 30.0
    assert len(session.requests) == 2
