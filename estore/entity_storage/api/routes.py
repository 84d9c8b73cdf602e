"""
API routes for the Entity Storage REST surface.

    POST   /entity-storage                    store an entity        -> 204
    GET    /entity-storage                    query                  -> {entities, cursor?}
    GET    /entity-storage/{id}               get by id or index     -> entity | 404
    DELETE /entity-storage/{id}               remove                 -> 204 | 404
    POST   /entity-storage/sync/change-set    trusted node push      -> 204

Identities are read from request headers whose names come from ApiSettings.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from ..conditions.model import SortProperty, condition_from_dict
from ..errors import GuardError
from ..schema import PropertyType, SortDirection
from ..service import EntityStorageService
from .settings import ApiSettings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Entity Storage"])


# --- Request/Response Models ---


class QueryResponse(BaseModel):
    """One page of query results."""

    entities: list[dict[str, Any]]
    cursor: str | None = None


class SyncChangeSetRequest(BaseModel):
    """Trusted node push request."""

    change_set_storage_id: str = Field(
        ..., alias="changeSetStorageId", description="Blob id of the signed change-set"
    )


# --- Dependencies ---


def get_service(request: Request) -> EntityStorageService:
    """Get the entity storage service from app state."""
    return request.app.state.service


def get_settings(request: Request) -> ApiSettings:
    return request.app.state.settings


def get_identities(
    request: Request, settings: ApiSettings = Depends(get_settings)
) -> tuple[str | None, str | None]:
    """User and node identity from the configured headers."""
    return (
        request.headers.get(settings.user_identity_header),
        request.headers.get(settings.node_identity_header),
    )


def _parse_json(argument: str, raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError as err:
        raise GuardError("EntityStorageRoutes", argument, f"'{argument}' is not valid JSON") from err


def _parse_properties(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    if raw.lstrip().startswith("["):
        properties = _parse_json("properties", raw)
        if not isinstance(properties, list) or not all(isinstance(p, str) for p in properties):
            raise GuardError("EntityStorageRoutes", "properties", "Expected a list of names")
        return properties
    return [p.strip() for p in raw.split(",") if p.strip()]


def _coerce_id(service: EntityStorageService, id: str, secondary_index: str | None) -> Any:
    schema = service.connector.get_schema()
    prop = schema.get_property(secondary_index) if secondary_index else schema.primary_key
    if prop is not None and prop.type == PropertyType.INTEGER and id.lstrip("-").isdigit():
        return int(id)
    return id


# --- Entity Routes ---


@router.post("", status_code=204)
async def set_entity(
    entity: dict[str, Any] = Body(...),
    service: EntityStorageService = Depends(get_service),
    identities: tuple[str | None, str | None] = Depends(get_identities),
) -> Response:
    """Store an entity."""
    user_identity, node_identity = identities
    await service.set(entity, user_identity=user_identity, node_identity=node_identity)
    return Response(status_code=204)


@router.get("", response_model=QueryResponse)
async def query_entities(
    conditions: str | None = Query(None, description="JSON condition tree"),
    order_by: str | None = Query(None, alias="orderBy"),
    order_by_direction: str | None = Query(None, alias="orderByDirection"),
    properties: str | None = Query(None, description="Comma separated or JSON array"),
    page_size: int | None = Query(None, alias="pageSize", ge=1),
    cursor: str | None = Query(None),
    service: EntityStorageService = Depends(get_service),
    settings: ApiSettings = Depends(get_settings),
    identities: tuple[str | None, str | None] = Depends(get_identities),
) -> dict[str, Any]:
    """Query entities."""
    user_identity, node_identity = identities
    condition = condition_from_dict(_parse_json("conditions", conditions))

    sort_properties = None
    if order_by:
        try:
            direction = SortDirection.from_str(order_by_direction or "asc")
        except ValueError as err:
            raise GuardError("EntityStorageRoutes", "orderByDirection", str(err)) from err
        sort_properties = [SortProperty(order_by, direction)]

    size = min(page_size or settings.default_page_size, settings.max_page_size)
    result = await service.query(
        conditions=condition,
        sort_properties=sort_properties,
        properties=_parse_properties(properties),
        cursor=cursor,
        page_size=size,
        user_identity=user_identity,
        node_identity=node_identity,
    )
    return result.to_dict()


@router.post("/sync/change-set", status_code=204)
async def sync_change_set(request: Request, body: SyncChangeSetRequest) -> Response:
    """Adopt a change-set pushed by a follower node (trusted node only)."""
    trusted = getattr(request.app.state, "trusted_sync", None)
    if trusted is None or not request.app.state.settings.trusted_sync_enabled:
        return Response(status_code=404)
    await trusted.sync_change_set(body.change_set_storage_id)
    return Response(status_code=204)


@router.get("/{id}")
async def get_entity(
    id: str,
    secondary_index: str | None = Query(None, alias="secondaryIndex"),
    service: EntityStorageService = Depends(get_service),
    identities: tuple[str | None, str | None] = Depends(get_identities),
) -> dict[str, Any]:
    """Get an entity by primary key or secondary index."""
    user_identity, node_identity = identities
    return await service.get(
        _coerce_id(service, id, secondary_index),
        secondary_index=secondary_index,
        user_identity=user_identity,
        node_identity=node_identity,
    )


@router.delete("/{id}", status_code=204)
async def remove_entity(
    id: str,
    service: EntityStorageService = Depends(get_service),
    identities: tuple[str | None, str | None] = Depends(get_identities),
) -> Response:
    """Remove an entity."""
    user_identity, node_identity = identities
    await service.remove(
        _coerce_id(service, id, None), user_identity=user_identity, node_identity=node_identity
    )
    return Response(status_code=204)
