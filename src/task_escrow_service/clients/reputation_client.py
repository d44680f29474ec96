"""Async HTTP client for the reputation scoring service."""

from __future__ import annotations

import httpx

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger


class ReputationClient:
    """Reads an agent's reputation score for bid admission."""

    def __init__(self, base_url: str, score_path: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._score_path = score_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def get_score(self, agent_id: str) -> float:
        """
        Fetch the reputation score for agent_id.

        An agent unknown to the reputation service scores 0.0.

        Raises:
            ServiceError: REPUTATION_SERVICE_UNAVAILABLE (502) on connection,
                timeout, unexpected status or malformed body
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.get(self._score_path.format(agent_id=agent_id))
        except httpx.HTTPError as exc:
            logger.warning(
                "Reputation service request failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message="Cannot reach reputation service",
                status_code=502,
                details={},
            ) from exc

        if response.status_code == 404:
            return 0.0

        if response.status_code != 200:
            logger.warning(
                "Reputation service unexpected status",
                extra={"status_code": response.status_code, "agent_id": agent_id},
            )
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message=f"Reputation service returned unexpected status {response.status_code}",
                status_code=502,
                details={},
            )

        try:
            score = response.json()["score"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message="Reputation service returned an invalid response",
                status_code=502,
                details={},
            ) from exc

        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ServiceError(
                error="REPUTATION_SERVICE_UNAVAILABLE",
                message="Reputation score must be a number",
                status_code=502,
                details={},
            )
        return float(score)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
