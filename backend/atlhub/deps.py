from __future__ import annotations

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# ---- DB ----
def build_engine(database_url: str) -> AsyncEngine:
    if not database_url:
        raise RuntimeError("DATABASE_URL not set")
    return create_async_engine(database_url, echo=False, future=True)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Import for side effect: registers the tables on Base.metadata
    from atlhub import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---- Process-wide collaborators (built in main.lifespan) ----
def get_client_manager(request: Request):
    """The ClientManager wired at startup."""
    return request.app.state.client_manager


def get_dancer(request: Request):
    return request.app.state.dancer


def get_configuration(request: Request):
    return request.app.state.configuration
