"""Request validation middleware and error envelope tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.unit.routers.conftest import setup_completed_task

if TYPE_CHECKING:
    from httpx import AsyncClient


class TestRequestValidation:
    """Content-Type and body size checks that run before any route."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("POST", "/tasks"),
            ("POST", "/tasks/t-1/bids"),
            ("POST", "/disputes"),
            ("POST", "/webhooks"),
            ("PUT", "/escrow/config"),
            ("POST", "/escrow/t-1/release"),
        ],
    )
    async def test_non_json_content_type_rejected(
        self,
        client: AsyncClient,
        method: str,
        path: str,
    ) -> None:
        resp = await client.request(
            method, path, content=b'{"a": 1}', headers={"Content-Type": "text/plain"}
        )
        assert resp.status_code == 415
        assert resp.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"

    @pytest.mark.unit
    async def test_json_with_charset_accepted(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/tasks",
            content=b"{not json",
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_JSON"

    @pytest.mark.unit
    async def test_oversized_body_rejected(self, client: AsyncClient) -> None:
        # max_body_size is 1048576 in the test config
        oversized_body = b"x" * (1048576 + 1)
        resp = await client.post(
            "/tasks",
            content=oversized_body,
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 413
        assert resp.json()["error"] == "PAYLOAD_TOO_LARGE"

    @pytest.mark.unit
    async def test_bodyless_endpoints_pass_through(self, client: AsyncClient) -> None:
        task_id = await setup_completed_task(client)
        resp = await client.post(f"/tasks/{task_id}/verify")
        assert resp.status_code == 200

        resp = await client.post("/escrow/trigger-releases")
        assert resp.status_code == 200


class TestErrorEnvelope:
    """Every error response shares one envelope."""

    @pytest.mark.unit
    async def test_error_envelope_consistency(self, client: AsyncClient) -> None:
        error_responses = [
            await client.post(
                "/tasks", content=b"{not json", headers={"Content-Type": "application/json"}
            ),
            await client.post("/tasks", json={"title": "No requester"}),
            await client.get("/tasks/t-00000000-0000-0000-0000-000000000000"),
            await client.delete("/tasks"),
            await client.post(
                "/tasks", content=b"plain text", headers={"Content-Type": "text/plain"}
            ),
        ]

        assert [r.status_code for r in error_responses] == [400, 400, 404, 405, 415]
        for error_resp in error_responses:
            data = error_resp.json()
            assert isinstance(data["error"], str)
            assert isinstance(data["message"], str)
            assert isinstance(data["details"], dict)

    @pytest.mark.unit
    async def test_sql_injection_in_path_params(self, client: AsyncClient) -> None:
        resp = await client.get("/tasks/t-1' OR '1'='1")
        assert resp.status_code == 404
        assert resp.json()["error"] == "TASK_NOT_FOUND"

        listed = await client.get("/tasks")
        assert listed.status_code == 200
