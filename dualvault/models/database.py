from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class IdentityBase(DeclarativeBase):
    """Tables living in the identity (PII) database."""


class ClinicalBase(DeclarativeBase):
    """Tables living in the clinical (PHI) database."""


def build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        # One shared connection, otherwise every checkout sees an empty database
        return create_async_engine(url, poolclass=StaticPool)
    return create_async_engine(url, pool_pre_ping=True, pool_size=5)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


async def create_tables(identity_engine: AsyncEngine, clinical_engine: AsyncEngine) -> None:
    async with identity_engine.begin() as conn:
        await conn.run_sync(IdentityBase.metadata.create_all)
    async with clinical_engine.begin() as conn:
        await conn.run_sync(ClinicalBase.metadata.create_all)
