"""
FastAPI application entrypoint.

Run locally:  uvicorn dualvault.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dualvault.api.routes import router
from dualvault.config import settings
from dualvault.errors import NotFoundError, ValidationError
from dualvault.models.database import build_engine, build_session_factory, create_tables
from dualvault.models.records import ClinicalRow, IdentityRow
from dualvault.schemas.api import ValidationErrorResponse
from dualvault.services.cache import InMemoryCache, RedisCache
from dualvault.stores.sql import SqlRecordStore
from dualvault.vault import Vault

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def build_vault_from_settings(app: FastAPI) -> Vault:
    """Open both databases and the cache described by ``settings``."""
    identity_engine = build_engine(settings.IDENTITY_DATABASE_URL)
    clinical_engine = build_engine(settings.CLINICAL_DATABASE_URL)
    await create_tables(identity_engine, clinical_engine)
    app.state.engines = (identity_engine, clinical_engine)

    identity_sessions = build_session_factory(identity_engine)
    clinical_sessions = build_session_factory(clinical_engine)

    if settings.REDIS_URL:
        cache = RedisCache(settings.REDIS_URL, default_ttl_seconds=settings.CACHE_TTL_SECONDS)
    else:
        cache = InMemoryCache(
            max_size=settings.CACHE_MAX_SIZE,
            default_ttl_seconds=settings.CACHE_TTL_SECONDS,
        )

    return Vault(
        identity_store_factory=lambda entity_type: SqlRecordStore(
            identity_sessions, IdentityRow, entity_type, indexed_fields=("pseudonym",)
        ),
        clinical_store_factory=lambda entity_type: SqlRecordStore(
            clinical_sessions, ClinicalRow, entity_type
        ),
        cache=cache,
        cache_ttl=settings.CACHE_TTL_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "vault", None) is None:
        app.state.vault = await build_vault_from_settings(app)
        logger.info("Vault ready (environment: %s)", settings.ENVIRONMENT)
    yield
    for engine in getattr(app.state, "engines", ()):
        await engine.dispose()
    if isinstance(app.state.vault.cache, RedisCache):
        await app.state.vault.cache.close()


def create_app(vault: Vault | None = None) -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title="dualvault",
        description=(
            "Stores each entity split across an identity database and a clinical "
            "database, linked only by pseudonym, behind a single merged API."
        ),
        version="0.1.0",
    )
    app.include_router(router, prefix="/api/v1")
    if vault is not None:
        app.state.vault = vault

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        body = ValidationErrorResponse(detail="Validation failed", errors=exc.errors)
        return JSONResponse(status_code=422, content=body.model_dump())

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    return app


app = create_app()
