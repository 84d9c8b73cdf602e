"""
Entity Storage REST client.

Mirrors the entity storage service over HTTP:

    async with EntityStorageClient("http://localhost:8080") as client:
        await client.set({"id": "1", "value1": "aaa"}, user_identity="did:user:alice")
        entity = await client.get("1", user_identity="did:user:alice")
        page = await client.query(
            conditions={"property": "value1", "comparison": "equals", "value": "aaa"},
            order_by="id",
        )

Invariants:
    - get() returns None for a missing entity; every other error raises
    - Conditions are sent as the JSON form of a condition tree
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from .errors import ConnectionError, EntityStorageClientError, NotFoundError, error_from_response

logger = logging.getLogger(__name__)


@dataclass
class QueryPage:
    """One page of query results.

    Attributes:
        entities: Matching entities
        cursor: Continuation for the next page, None on the last page
    """

    entities: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None


class EntityStorageClient:
    """Client for an Entity Storage node's REST API.

    Example:
        >>> async with EntityStorageClient("http://localhost:8080") as client:
        ...     await client.get("1")
    """

    def __init__(
        self,
        base_url: str,
        *,
        base_route: str = "/entity-storage",
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        user_identity_header: str = "X-User-Identity",
        node_identity_header: str = "X-Node-Identity",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Server base URL
            base_route: Route prefix of the entity endpoints
            timeout: Request timeout in seconds
            headers: Extra headers sent with every request
            user_identity_header: Header carrying the user identity
            node_identity_header: Header carrying the node identity
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._route = "/" + base_route.strip("/")
        self._user_header = user_identity_header
        self._node_header = node_identity_header
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers=headers or {},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> EntityStorageClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _identity_headers(
        self, user_identity: Optional[str], node_identity: Optional[str]
    ) -> Dict[str, str]:
        headers = {}
        if user_identity:
            headers[self._user_header] = user_identity
        if node_identity:
            headers[self._node_header] = node_identity
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, f"{self._route}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise ConnectionError(f"Request failed: {e}", address=self._base_url) from e
        if response.is_error:
            try:
                envelope = response.json()
            except ValueError:
                envelope = {}
            if not isinstance(envelope, dict):
                envelope = {}
            raise error_from_response(response.status_code, envelope)
        return response

    async def set(
        self,
        entity: Dict[str, Any],
        user_identity: Optional[str] = None,
        node_identity: Optional[str] = None,
    ) -> None:
        """Store an entity."""
        await self._request(
            "POST", "", json=entity, headers=self._identity_headers(user_identity, node_identity)
        )

    async def get(
        self,
        id: Any,
        secondary_index: Optional[str] = None,
        user_identity: Optional[str] = None,
        node_identity: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get an entity by id or secondary index value.

        Returns:
            The entity, or None if it does not exist
        """
        params = {"secondaryIndex": secondary_index} if secondary_index else None
        try:
            response = await self._request(
                "GET",
                f"/{quote(str(id), safe='')}",
                params=params,
                headers=self._identity_headers(user_identity, node_identity),
            )
        except NotFoundError:
            return None
        return response.json()

    async def remove(
        self,
        id: Any,
        user_identity: Optional[str] = None,
        node_identity: Optional[str] = None,
    ) -> None:
        """Remove an entity.

        Raises:
            NotFoundError: If the entity does not exist
        """
        await self._request(
            "DELETE",
            f"/{quote(str(id), safe='')}",
            headers=self._identity_headers(user_identity, node_identity),
        )

    async def query(
        self,
        conditions: Optional[Any] = None,
        order_by: Optional[str] = None,
        order_by_direction: Optional[str] = None,
        properties: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
        user_identity: Optional[str] = None,
        node_identity: Optional[str] = None,
    ) -> QueryPage:
        """Query entities.

        Args:
            conditions: Condition tree in its JSON form
            order_by: Property to sort by
            order_by_direction: "asc" or "desc"
            properties: Properties to return
            page_size: Maximum entities in the page
            cursor: Continuation from a previous page
        """
        params: Dict[str, Any] = {}
        if conditions is not None:
            params["conditions"] = json.dumps(conditions)
        if order_by:
            params["orderBy"] = order_by
        if order_by_direction:
            params["orderByDirection"] = order_by_direction
        if properties:
            params["properties"] = ",".join(properties)
        if page_size is not None:
            params["pageSize"] = page_size
        if cursor:
            params["cursor"] = cursor
        response = await self._request(
            "GET", "", params=params, headers=self._identity_headers(user_identity, node_identity)
        )
        body = response.json()
        return QueryPage(entities=body.get("entities", []), cursor=body.get("cursor"))

    async def sync_change_set(self, change_set_storage_id: str) -> None:
        """Push a change-set to a trusted node."""
        if not change_set_storage_id:
            raise EntityStorageClientError("change_set_storage_id is required", code="VALIDATION_ERROR")
        await self._request(
            "POST", "/sync/change-set", json={"changeSetStorageId": change_set_storage_id}
        )
