"""
HTTP client for the trusted node push endpoint.

Followers use it as their trusted sync component:

    POST <endpoint>/entity-storage/sync/change-set
    {"changeSetStorageId": "blob:..."}  ->  204

Error envelopes returned by the trusted node are mapped back onto the
local error types so the sync loop retries only what is retryable.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import (
    BackendUnavailableError,
    EntityStorageError,
    GuardError,
    NotFoundError,
    SignatureInvalidError,
)

logger = logging.getLogger(__name__)

SYNC_CHANGE_SET_PATH = "/entity-storage/sync/change-set"


class HttpTrustedSyncClient:
    """Trusted sync component reached over HTTP.

    Args:
        endpoint: Base URL of the trusted node
        timeout_seconds: Per-request timeout
        headers: Extra request headers
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    source = "HttpTrustedSyncClient"

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise GuardError(self.source, "endpoint")
        self._endpoint = endpoint.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._endpoint,
            timeout=timeout_seconds,
            headers=headers or {},
            transport=transport,
        )

    async def sync_change_set(self, change_set_storage_id: str) -> None:
        """Ask the trusted node to adopt a change-set.

        Raises:
            BackendUnavailableError: On transport errors and 5xx responses
            SignatureInvalidError: If the trusted node rejected the proof
            GuardError: If the trusted node refused the request
            NotFoundError: If the trusted node could not find the blob
        """
        try:
            response = await self._client.post(
                SYNC_CHANGE_SET_PATH, json={"changeSetStorageId": change_set_storage_id}
            )
        except httpx.HTTPError as err:
            raise BackendUnavailableError(
                f"Trusted node unreachable: {err}",
                operation="syncChangeSet",
                container=self._endpoint,
                inner=err,
            ) from err

        if response.status_code < 300:
            logger.debug(
                "Change-set pushed to trusted node",
                extra={"change_set": change_set_storage_id, "endpoint": self._endpoint},
            )
            return
        raise self._error(response, change_set_storage_id)

    def _error(self, response: httpx.Response, change_set_storage_id: str) -> EntityStorageError:
        try:
            envelope: dict[str, Any] = response.json()
        except ValueError:
            envelope = {}
        message = envelope.get("message") or response.text or f"HTTP {response.status_code}"
        name = envelope.get("name")

        if response.status_code >= 500:
            return BackendUnavailableError(
                f"Trusted node failed: {message}",
                operation="syncChangeSet",
                container=self._endpoint,
            )
        if name == "SignatureInvalidError" or response.status_code == 401:
            return SignatureInvalidError(change_set_storage_id)
        if response.status_code == 404:
            return NotFoundError(self.source, change_set_storage_id)
        return GuardError(self.source, "changeSetStorageId", message)

    async def close(self) -> None:
        await self._client.aclose()
