"""Authoritative engagement store behind a REST API.

Endpoints (relative to ``base_url``):
    POST /engagement/mutations   apply a mutation, ``Idempotency-Key`` header
    GET  /engagement/snapshot    records, optional ``username`` query param
    GET  /health                 liveness
"""

from typing import Any

import httpx

from engagement.challenges.schemas import Acceptance, Review, Submission
from engagement.config import get_settings
from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    EngagementStore,
    filter_records,
)
from engagement.repositories.exceptions import (
    RemoteRejectedError,
    StaleWriteError,
    StoreConnectionError,
    StoreTimeoutError,
    TransientStoreError,
)
from engagement.shared.schemas.base import ReviewStatus
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)


class HttpEngagementStore(EngagementStore):
    """
    Client for the engagement REST authority.

    Transport failures, timeouts and 5xx responses surface as
    ``TransientStoreError``; 4xx responses as ``RemoteRejectedError``, with
    409 narrowed to ``StaleWriteError``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.remote_base_url).rstrip("/")
        self._api_token = api_token if api_token is not None else settings.remote_api_token
        self._timeout = timeout or settings.remote_timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers={**self._headers(), **(headers or {})},
            )
        except httpx.TimeoutException as e:
            raise StoreTimeoutError("Remote store timed out", original_error=e) from e
        except httpx.TransportError as e:
            raise StoreConnectionError(
                "Remote store unreachable", host=httpx.URL(self._base_url).host
            ) from e

        if response.status_code >= 500:
            raise TransientStoreError(f"Remote store error (HTTP {response.status_code})")
        if response.status_code == 409:
            raise StaleWriteError("Remote store refused a write based on changed records")
        if response.status_code >= 400:
            raise RemoteRejectedError(
                f"Remote store rejected request (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        return response

    # ===========================================
    # WRITES
    # ===========================================

    async def apply(self, mutation: EngagementMutation) -> EngagementSnapshot:
        response = await self._request(
            "POST",
            "/engagement/mutations",
            json=mutation.model_dump(mode="json"),
            headers={"Idempotency-Key": mutation.operation_id},
        )
        logger.debug(
            "remote_mutation_applied",
            operation_id=mutation.operation_id,
            status_code=response.status_code,
        )
        return EngagementSnapshot.model_validate(response.json())

    # ===========================================
    # READS
    # ===========================================

    async def snapshot(self, username: str | None = None) -> EngagementSnapshot:
        params = {"username": username} if username is not None else None
        response = await self._request("GET", "/engagement/snapshot", params=params)
        return EngagementSnapshot.model_validate(response.json())

    async def get_acceptance(self, acceptance_id: str) -> Acceptance | None:
        snapshot = await self.snapshot()
        return next((a for a in snapshot.acceptances if a.id == acceptance_id), None)

    async def list_acceptances(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Acceptance]:
        snapshot = await self.snapshot(username)
        return filter_records(snapshot.acceptances, username, challenge_id)

    async def get_submission(self, acceptance_id: str) -> Submission | None:
        snapshot = await self.snapshot()
        return next((s for s in snapshot.submissions if s.acceptance_id == acceptance_id), None)

    async def list_submissions(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Submission]:
        snapshot = await self.snapshot(username)
        return filter_records(snapshot.submissions, username, challenge_id)

    async def get_review(self, acceptance_id: str) -> Review | None:
        snapshot = await self.snapshot()
        return next((r for r in snapshot.reviews if r.acceptance_id == acceptance_id), None)

    async def list_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        snapshot = await self.snapshot(username)
        reviews = filter_records(snapshot.reviews, username, challenge_id)
        if status is not None:
            reviews = [r for r in reviews if r.status == status]
        return reviews

    async def ping(self) -> bool:
        try:
            await self._request("GET", "/health")
        except (TransientStoreError, RemoteRejectedError) as e:
            logger.warning("remote_ping_failed", error_type=type(e).__name__)
            return False
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["HttpEngagementStore"]
