"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from pydantic import BaseModel

from dualvault.services.schema_registry import SchemaDefinition


# ---------------------------------------------------------------------------
# Schema registration
# ---------------------------------------------------------------------------

class SchemaResponse(BaseModel):
    name: str
    definition: SchemaDefinition
    required_fields: list[str] = []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ValidationErrorResponse(BaseModel):
    detail: str
    errors: list[str]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    schemas: list[str] = []
