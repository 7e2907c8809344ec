# atlhub/services/auth_store.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atlhub.models import Connection
from atlhub.schemas import AccessibleResource, AuthInfo, UserInfo
from atlhub.services.crypto import InvalidToken, decrypt_token, encrypt_token
from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)


class AuthStore(Protocol):
    """Where per-provider credentials live between client builds."""

    async def get_auth_info(self, provider: str) -> Optional[AuthInfo]: ...

    async def save_auth_info(self, provider: str, info: AuthInfo) -> None: ...

    async def remove_auth_info(self, provider: str) -> None: ...


class SqlAuthStore:
    """
    One `connections` row per provider. Access and refresh tokens are
    encrypted with the process Fernet key before they reach the database.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get_auth_info(self, provider: str) -> Optional[AuthInfo]:
        async with self._sessionmaker() as db:
            row = (await db.execute(
                select(Connection).where(Connection.provider == provider)
            )).scalar_one_or_none()
        if not row or not row.access_token_enc:
            return None
        try:
            access = decrypt_token(row.access_token_enc)
            refresh = decrypt_token(row.refresh_token_enc)
        except InvalidToken:
            # Key rotated away or row corrupted: behave as if nothing is stored
            log_kv(LOG, logging.WARNING, "auth_store.decrypt_failed", provider=provider)
            return None
        return AuthInfo(
            provider=provider,
            access=access,
            refresh=refresh,
            expires_at=row.expires_at,
            scopes=row.scopes or "",
            accessible_resources=[AccessibleResource(**r) for r in row.resources or []],
            user=UserInfo(**row.user) if row.user else None,
        )

    async def save_auth_info(self, provider: str, info: AuthInfo) -> None:
        access_token_enc = encrypt_token(info.access)
        refresh_token_enc = encrypt_token(info.refresh)
        resources = [r.model_dump() for r in info.accessible_resources]
        user = info.user.model_dump() if info.user else None
        now = datetime.utcnow()

        async with self._sessionmaker() as db:
            row = (await db.execute(
                select(Connection).where(Connection.provider == provider)
            )).scalar_one_or_none()
            if row:
                row.access_token_enc = access_token_enc
                row.refresh_token_enc = refresh_token_enc
                row.scopes = info.scopes
                row.expires_at = info.expires_at
                row.resources = resources
                row.user = user
                row.updated_at = now
            else:
                db.add(Connection(
                    provider=provider,
                    access_token_enc=access_token_enc,
                    refresh_token_enc=refresh_token_enc,
                    scopes=info.scopes,
                    expires_at=info.expires_at,
                    resources=resources,
                    user=user,
                    created_at=now,
                    updated_at=now,
                ))
            await db.commit()
        log_kv(LOG, logging.DEBUG, "auth_store.saved", provider=provider)

    async def remove_auth_info(self, provider: str) -> None:
        async with self._sessionmaker() as db:
            await db.execute(delete(Connection).where(Connection.provider == provider))
            await db.commit()
        log_kv(LOG, logging.INFO, "auth_store.removed", provider=provider)
