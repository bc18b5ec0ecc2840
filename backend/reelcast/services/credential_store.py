"""
Credential store: one OAuth grant per (user, platform).

Every operation opens its own session from the factory, so concurrent
publish jobs never share a session. Storage failures surface as
PersistenceError and are not retried here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelcast.models import Platform, PlatformCredential
from reelcast.services.errors import CredentialNotFound, PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    external_user_id: str | None = None
    scope: str | None = None


class CredentialStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, user_id: int, platform: Platform) -> PlatformCredential:
        try:
            async with self._session_factory() as session:
                credential = await session.scalar(
                    select(PlatformCredential).where(
                        PlatformCredential.user_id == user_id,
                        PlatformCredential.platform == platform.value,
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"credential lookup failed: {exc}") from exc
        if credential is None:
            raise CredentialNotFound(f"No {platform.value} credential for user {user_id}")
        return credential

    async def upsert(self, user_id: int, platform: Platform, token_set: TokenSet) -> PlatformCredential:
        """Insert or overwrite the (user, platform) grant."""
        try:
            async with self._session_factory() as session:
                credential = await session.scalar(
                    select(PlatformCredential).where(
                        PlatformCredential.user_id == user_id,
                        PlatformCredential.platform == platform.value,
                    )
                )
                if credential is None:
                    credential = PlatformCredential(user_id=user_id, platform=platform.value)
                    session.add(credential)
                credential.access_token = token_set.access_token
                credential.refresh_token = token_set.refresh_token
                credential.expires_at = token_set.expires_at
                if token_set.external_user_id is not None:
                    credential.external_user_id = token_set.external_user_id
                if token_set.scope is not None:
                    credential.scope = token_set.scope
                await session.commit()
                await session.refresh(credential)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"credential upsert failed: {exc}") from exc
        logger.info(f"[credentials] Stored {platform.value} grant for user {user_id}")
        return credential

    async def delete(self, user_id: int, platform: Platform) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(PlatformCredential).where(
                        PlatformCredential.user_id == user_id,
                        PlatformCredential.platform == platform.value,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"credential delete failed: {exc}") from exc
        logger.info(f"[credentials] Deleted {platform.value} grant for user {user_id}")

    async def list_by_user(self, user_id: int) -> list[PlatformCredential]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PlatformCredential)
                    .where(PlatformCredential.user_id == user_id)
                    .order_by(PlatformCredential.platform)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"credential listing failed: {exc}") from exc

    async def bundle_for(self, user_id: int, platforms: list[Platform]) -> dict[Platform, PlatformCredential]:
        """Credentials for the requested platforms that exist; missing ones are simply absent."""
        wanted = {p.value for p in platforms}
        return {
            Platform.parse(c.platform): c
            for c in await self.list_by_user(user_id)
            if c.platform in wanted
        }
