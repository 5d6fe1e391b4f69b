"""Connection registry — encrypted directory of tenant database credentials.

Each shop has at most one ``tenant_connections`` row. The whole credential
record (host, port, database, username, password) is encrypted with
AES-256-GCM, with the shop id as associated data, so a row can only be read
back with the right key and for the shop it was written for.

Writes are atomic upserts/deletes; within one process, writes for the same
shop are additionally serialized by a per-shop lock so provisioning racing
with teardown cannot interleave a read-modify-write.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from tenancy.core.cache import TTLCache
from tenancy.core.config import Settings
from tenancy.core.database import make_session_factory, upsert_insert
from tenancy.core.exceptions import ConnectionNotFound, CredentialDecryptionError
from tenancy.core.security import CredentialCipher, DecryptionError
from tenancy.models.base import utcnow
from tenancy.models.tenant_connection import TenantConnection, TenantCredentials

logger = logging.getLogger(__name__)

SECRET_ENV_PATTERN = re.compile(r"^TENANT_(\d+)(?:_DATABASE)?_URL$")


def _associated_data(shop_id: int) -> str:
    return f"tenant_connections:{shop_id}"


@dataclass
class BootstrapResult:
    loaded: int = 0
    failed: int = 0
    errors: list[tuple[int, str]] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionCheck:
    shop_id: int
    is_valid: bool
    error: str | None = None


class ConnectionRegistry:
    def __init__(
        self,
        engine: AsyncEngine,
        cipher: CredentialCipher,
        *,
        cache_ttl: float = 300.0,
    ) -> None:
        self._session_factory = make_session_factory(engine)
        self._cipher = cipher
        self._cache = TTLCache(cache_ttl)
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(cls, engine: AsyncEngine, settings: Settings) -> ConnectionRegistry:
        cipher = CredentialCipher(settings.require_encryption_key())
        return cls(engine, cipher, cache_ttl=settings.registry_cache_ttl)

    # ── Writes ───────────────────────────────────────────────

    async def register_connection(self, shop_id: int, credentials: TenantCredentials) -> None:
        """Encrypt and store credentials for a shop. Last write wins."""
        blob = self._cipher.encrypt(credentials.as_document(), _associated_data(shop_id))
        now = utcnow()
        table = TenantConnection.__table__

        async with self._locks[shop_id]:
            async with self._session_factory() as session:
                stmt = upsert_insert(table, session.bind.dialect.name).values(
                    shop_id=shop_id,
                    encrypted_credentials=blob,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.shop_id],
                    set_={
                        "encrypted_credentials": stmt.excluded.encrypted_credentials,
                        "is_active": True,
                        "updated_at": now,
                    },
                )
                await session.execute(stmt)
                await session.commit()
            self._cache.invalidate(shop_id)

        logger.info("Registered encrypted connection for shop %s", shop_id)

    async def update_connection(
        self,
        shop_id: int,
        *,
        password: str | None = None,
        host: str | None = None,
        port: int | None = None,
        is_active: bool | None = None,
    ) -> None:
        """Change selected credential fields and re-encrypt the record."""
        async with self._locks[shop_id]:
            async with self._session_factory() as session:
                row = await session.get(TenantConnection, shop_id)
                if row is None:
                    raise ConnectionNotFound(shop_id)
                credentials = self._decrypt(row)

                changes = {}
                if password is not None:
                    changes["password"] = password
                if host is not None:
                    changes["host"] = host
                if port is not None:
                    changes["port"] = port
                if changes:
                    credentials = credentials.with_changes(**changes)
                    row.encrypted_credentials = self._cipher.encrypt(
                        credentials.as_document(), _associated_data(shop_id)
                    )
                if is_active is not None:
                    row.is_active = is_active
                row.updated_at = utcnow()
                session.add(row)
                await session.commit()
            self._cache.invalidate(shop_id)

        logger.info("Updated connection for shop %s", shop_id)

    async def remove_connection(self, shop_id: int) -> None:
        """Delete a shop's record. Removing an absent record is a no-op."""
        async with self._locks[shop_id]:
            async with self._session_factory() as session:
                await session.execute(
                    delete(TenantConnection).where(TenantConnection.shop_id == shop_id)
                )
                await session.commit()
            self._cache.invalidate(shop_id)

        logger.info("Removed connection for shop %s", shop_id)

    async def mark_connection_used(self, shop_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(TenantConnection)
                .where(TenantConnection.shop_id == shop_id)
                .values(last_used_at=utcnow())
            )
            await session.commit()
        self._cache.invalidate(shop_id)

    # ── Reads ────────────────────────────────────────────────

    async def get_connection(self, shop_id: int) -> TenantCredentials | None:
        """Return decrypted credentials, or None if the shop was never registered.

        Raises:
            CredentialDecryptionError: wrong key or corrupted ciphertext.
        """
        row = self._cache.get(shop_id)
        if row is None:
            async with self._session_factory() as session:
                row = await session.get(TenantConnection, shop_id)
            if row is None:
                return None
            self._cache.put(shop_id, row)
        return self._decrypt(row)

    async def require_connection(self, shop_id: int) -> TenantCredentials:
        credentials = await self.get_connection(shop_id)
        if credentials is None:
            raise ConnectionNotFound(shop_id)
        return credentials

    async def get_all_shop_ids(self) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantConnection.shop_id).order_by(TenantConnection.shop_id)
            )
            return list(result.scalars().all())

    async def list_connections(self) -> list[TenantConnection]:
        """Registry rows, still encrypted. Safe to expose as metadata."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantConnection).order_by(TenantConnection.shop_id)
            )
            return list(result.scalars().all())

    async def validate_all_connections(self) -> list[ConnectionCheck]:
        """Check every record decrypts, is active and is complete."""
        checks: list[ConnectionCheck] = []
        for row in await self.list_connections():
            try:
                credentials = self._decrypt(row)
            except CredentialDecryptionError as exc:
                checks.append(ConnectionCheck(row.shop_id, False, str(exc)))
                continue
            if not row.is_active:
                checks.append(ConnectionCheck(row.shop_id, False, "Connection is inactive"))
            elif not (credentials.username and credentials.database and credentials.host):
                checks.append(ConnectionCheck(row.shop_id, False, "Invalid connection data"))
            else:
                checks.append(ConnectionCheck(row.shop_id, True))
        return checks

    # ── Bootstrap ────────────────────────────────────────────

    async def bootstrap_from_environment(
        self, environ: Mapping[str, str] | None = None
    ) -> BootstrapResult:
        """Register every ``TENANT_<ID>_URL`` / ``TENANT_<ID>_DATABASE_URL`` secret."""
        environ = os.environ if environ is None else environ
        result = BootstrapResult()

        secrets = sorted(
            (int(match.group(1)), key, value)
            for key, value in environ.items()
            if value and (match := SECRET_ENV_PATTERN.match(key))
        )
        if not secrets:
            logger.info("No tenant secrets found in environment (TENANT_<ID>_URL pattern)")
            return result

        for shop_id, key, url in secrets:
            try:
                credentials = TenantCredentials.from_url(url)
                await self.register_connection(shop_id, credentials)
            except ValueError as exc:
                result.failed += 1
                result.errors.append((shop_id, str(exc)))
                logger.error("Failed to load tenant %s from %s: %s", shop_id, key, exc)
                continue
            result.loaded += 1
            logger.info("Loaded tenant %s from %s", shop_id, key)

        return result

    # ── Internals ────────────────────────────────────────────

    def _decrypt(self, row: TenantConnection) -> TenantCredentials:
        try:
            document = self._cipher.decrypt(
                row.encrypted_credentials, _associated_data(row.shop_id)
            )
        except DecryptionError as exc:
            raise CredentialDecryptionError(row.shop_id, str(exc)) from exc
        try:
            return TenantCredentials.from_document(document)
        except (KeyError, TypeError, ValueError) as exc:
            raise CredentialDecryptionError(row.shop_id, "incomplete credential record") from exc
