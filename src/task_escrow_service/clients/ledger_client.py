"""Async HTTP client for the external settlement ledger."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger


class LedgerClient:
    """
    Client for settlement ledger escrow entries.

    Two operations:
    1. create_escrow_entry: POST {create_path} with task, amount and payer.
       Returns the ledger's reference for the new entry.
    2. release_escrow_entry: POST {release_path} formatted with the
       reference. Returns the ledger's confirmation.

    Every failure surfaces as LEDGER_UNAVAILABLE (502). Callers treat ledger
    writes as best effort and never pass this error on to API clients.
    """

    def __init__(
        self,
        base_url: str,
        create_path: str,
        release_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._create_path = create_path
        self._release_path = release_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _post(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        logger = get_logger(__name__)

        try:
            response = await self._client.post(path, json=body)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Ledger connection failed",
                extra={"error": str(exc), "base_url": self._base_url, "operation": operation},
            )
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message="Cannot connect to settlement ledger",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Ledger HTTP error",
                extra={"error": str(exc), "base_url": self._base_url, "operation": operation},
            )
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message="Settlement ledger request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code not in (200, 201):
            logger.warning(
                "Ledger unexpected status",
                extra={"status_code": response.status_code, "operation": operation},
            )
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message=f"Settlement ledger returned unexpected status {response.status_code}",
                status_code=502,
                details={"ledger_status_code": response.status_code},
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message="Settlement ledger returned invalid JSON",
                status_code=502,
                details={},
            ) from exc

        if not isinstance(result, dict) or not isinstance(result.get("reference"), str):
            raise ServiceError(
                error="LEDGER_UNAVAILABLE",
                message="Settlement ledger response is missing 'reference'",
                status_code=502,
                details={},
            )
        return result

    async def create_escrow_entry(self, task_id: str, amount: Decimal, payer_id: str) -> str:
        """
        Create an escrow entry for a task and return its ledger reference.

        Raises:
            ServiceError: LEDGER_UNAVAILABLE (502) on any failure
        """
        result = await self._post(
            self._create_path,
            {"task_id": task_id, "amount": str(amount), "payer_id": payer_id},
            "create_escrow_entry",
        )
        return str(result["reference"])

    async def release_escrow_entry(self, reference: str, recipient_id: str) -> dict[str, Any]:
        """
        Release a previously created escrow entry to the recipient.

        Raises:
            ServiceError: LEDGER_UNAVAILABLE (502) on any failure
        """
        return await self._post(
            self._release_path.format(reference=reference),
            {"recipient_id": recipient_id},
            "release_escrow_entry",
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
