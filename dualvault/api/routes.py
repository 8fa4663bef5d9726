"""
FastAPI routes – an HTTP surface over the Vault.

Demonstrates:
- RESTful endpoint design for split-storage entities
- Dependency injection (the Vault via Depends)
- Mapping domain errors onto HTTP status codes
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response

from dualvault.config import settings
from dualvault.errors import SchemaNotFoundError, SchemaRegistrationError
from dualvault.schemas.api import HealthResponse, SchemaResponse
from dualvault.services.schema_registry import SchemaDefinition
from dualvault.vault import Vault

logger = logging.getLogger(__name__)

router = APIRouter()


def get_vault(request: Request) -> Vault:
    """FastAPI dependency that returns the application's Vault."""
    return request.app.state.vault


def _coerce_query_value(raw: str) -> Any:
    # ?age=42 filters on the number 42, ?lastName=Doe on the string "Doe"
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
async def health_check(vault: Vault = Depends(get_vault)):
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        schemas=vault.registry.names(),
    )


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@router.post("/schemas/{name}", response_model=SchemaResponse, status_code=201)
async def register_schema(name: str, definition: SchemaDefinition, vault: Vault = Depends(get_vault)):
    try:
        schema = vault.register(name, definition)
    except SchemaRegistrationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SchemaResponse(name=name, definition=definition, required_fields=schema.required_fields())


@router.get("/schemas/{name}", response_model=SchemaResponse)
async def get_schema(name: str, vault: Vault = Depends(get_vault)):
    try:
        schema = vault.registry.get(name)
    except SchemaNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return SchemaResponse(name=name, definition=schema.definition, required_fields=schema.required_fields())


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@router.post("/entities/{entity_type}", status_code=201)
async def create_entity(
    entity_type: str,
    data: dict[str, Any] = Body(...),
    vault: Vault = Depends(get_vault),
):
    return await vault.entity_store(entity_type).create(data)


@router.get("/entities/{entity_type}")
async def find_entities(entity_type: str, request: Request, vault: Vault = Depends(get_vault)):
    """Exact-match search; every query parameter is a field filter."""
    query = {name: _coerce_query_value(value) for name, value in request.query_params.items()}
    return await vault.entity_store(entity_type).find(query)


@router.get("/entities/{entity_type}/{entity_id}")
async def get_entity(entity_type: str, entity_id: str, vault: Vault = Depends(get_vault)):
    entity = await vault.entity_store(entity_type).find_by_id(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"{entity_type} not found")
    return entity


@router.patch("/entities/{entity_type}/{entity_id}")
async def update_entity(
    entity_type: str,
    entity_id: str,
    updates: dict[str, Any] = Body(...),
    vault: Vault = Depends(get_vault),
):
    return await vault.entity_store(entity_type).update(entity_id, updates)


@router.delete("/entities/{entity_type}/{entity_id}", status_code=204)
async def delete_entity(
    entity_type: str,
    entity_id: str,
    retain_sensitive: bool = False,
    vault: Vault = Depends(get_vault),
):
    await vault.entity_store(entity_type).delete(entity_id, retain_sensitive=retain_sensitive)
    return Response(status_code=204)


@router.get("/entities/{entity_type}/clinical/{pseudonym}")
async def get_clinical_record(entity_type: str, pseudonym: str, vault: Vault = Depends(get_vault)):
    record = await vault.entity_store(entity_type).find_clinical(pseudonym)
    if record is None:
        raise HTTPException(status_code=404, detail="Clinical record not found")
    return record
