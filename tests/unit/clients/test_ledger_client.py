from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from task_escrow_service.clients.ledger_client import LedgerClient
from task_escrow_service.core.exceptions import ServiceError


def _make_client(mock_response: httpx.Response | None = None) -> LedgerClient:
    """Create a LedgerClient with a mock HTTP transport."""
    client = LedgerClient(
        base_url="http://mock-ledger:8002",
        create_path="/escrow/entries",
        release_path="/escrow/entries/{reference}/release",
        timeout_seconds=5,
    )

    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.post = AsyncMock(return_value=mock_response)
    client._client = mock_http
    return client


def _mock_response(status_code: int, json_body: Any) -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        request=httpx.Request("POST", "http://mock-ledger:8002/escrow/entries"),
    )


@pytest.mark.unit
async def test_create_escrow_entry_returns_reference() -> None:
    client = _make_client(_mock_response(201, {"reference": "led-1"}))

    reference = await client.create_escrow_entry("t-1", Decimal("90.50"), "a-requester")

    assert reference == "led-1"
    client._client.post.assert_awaited_once_with(
        "/escrow/entries",
        json={"task_id": "t-1", "amount": "90.50", "payer_id": "a-requester"},
    )


@pytest.mark.unit
async def test_release_formats_path_with_reference() -> None:
    client = _make_client(_mock_response(200, {"reference": "led-1-release"}))

    confirmation = await client.release_escrow_entry("led-1", "a-worker")

    assert confirmation["reference"] == "led-1-release"
    client._client.post.assert_awaited_once_with(
        "/escrow/entries/led-1/release", json={"recipient_id": "a-worker"}
    )


@pytest.mark.unit
@pytest.mark.parametrize("status_code", [400, 404, 409, 500, 503])
async def test_unexpected_status_raises_ledger_unavailable(status_code: int) -> None:
    client = _make_client(
        _mock_response(status_code, {"error": "X", "message": "nope", "details": {}})
    )

    with pytest.raises(ServiceError) as exc_info:
        await client.release_escrow_entry("led-1", "a-worker")

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "LEDGER_UNAVAILABLE"
    assert exc_info.value.details["ledger_status_code"] == status_code


@pytest.mark.unit
async def test_connection_error_raises_ledger_unavailable() -> None:
    client = _make_client()
    client._client.post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

    with pytest.raises(ServiceError) as exc_info:
        await client.create_escrow_entry("t-1", Decimal("10"), "a-requester")

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "LEDGER_UNAVAILABLE"


@pytest.mark.unit
async def test_timeout_raises_ledger_unavailable() -> None:
    client = _make_client()
    client._client.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(ServiceError) as exc_info:
        await client.create_escrow_entry("t-1", Decimal("10"), "a-requester")

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"


@pytest.mark.unit
@pytest.mark.parametrize("json_body", [{"id": "led-1"}, ["led-1"], {"reference": 7}])
async def test_missing_reference_raises_ledger_unavailable(json_body: Any) -> None:
    client = _make_client(_mock_response(201, json_body))

    with pytest.raises(ServiceError) as exc_info:
        await client.create_escrow_entry("t-1", Decimal("10"), "a-requester")

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"


@pytest.mark.unit
async def test_invalid_json_raises_ledger_unavailable() -> None:
    response = httpx.Response(
        status_code=200,
        content=b"<html>",
        request=httpx.Request("POST", "http://mock-ledger:8002/escrow/entries"),
    )
    client = _make_client(response)

    with pytest.raises(ServiceError) as exc_info:
        await client.release_escrow_entry("led-1", "a-worker")

    assert exc_info.value.error == "LEDGER_UNAVAILABLE"
