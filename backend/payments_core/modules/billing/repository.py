"""Database-backed inbox, idempotency ledger and provider configuration."""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payments_core.core.encryption import decrypt_credential, encrypt_credential
from payments_core.modules.billing.errors import PersistenceError
from payments_core.modules.billing.models import (
    IdempotencyKey,
    ProviderConfigRecord,
    WebhookEvent,
)
from payments_core.modules.billing.ports import (
    IdempotencyStore,
    ProviderConfigStore,
    WebhookInbox,
)
from payments_core.modules.billing.schemas import ProviderConfig, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderConfigRepository:
    """Repository for per-tenant provider configuration rows."""

    def __init__(self, session: AsyncSession, encryption_key: Optional[str] = None):
        self.session = session
        self.encryption_key = encryption_key

    async def get_record(self, tenant_id: str, provider: str) -> Optional[ProviderConfigRecord]:
        result = await self.session.execute(
            select(ProviderConfigRecord).where(
                ProviderConfigRecord.tenant_id == tenant_id,
                ProviderConfigRecord.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    async def get_enabled_records(self, tenant_id: str) -> list[ProviderConfigRecord]:
        result = await self.session.execute(
            select(ProviderConfigRecord)
            .where(
                ProviderConfigRecord.tenant_id == tenant_id,
                ProviderConfigRecord.is_enabled == True,  # noqa: E712
            )
            .order_by(ProviderConfigRecord.provider)
        )
        return list(result.scalars().all())

    async def save(self, config: ProviderConfig, is_enabled: bool = True) -> ProviderConfigRecord:
        """Create or replace the tenant's configuration for ``config.provider``."""
        encrypted = encrypt_credential(
            config.credentials.model_dump_json(), key=self.encryption_key
        )
        record = await self.get_record(config.tenant_id, config.provider)
        if record is None:
            record = ProviderConfigRecord(
                tenant_id=config.tenant_id,
                provider=config.provider,
            )
            self.session.add(record)

        record.is_enabled = is_enabled
        record.live_mode = config.live_mode
        record.default_currency = config.default_currency
        record.credentials_encrypted = encrypted
        await self.session.flush()
        return record

    async def set_enabled(self, tenant_id: str, provider: str, is_enabled: bool) -> bool:
        result = await self.session.execute(
            update(ProviderConfigRecord)
            .where(
                ProviderConfigRecord.tenant_id == tenant_id,
                ProviderConfigRecord.provider == provider,
            )
            .values(is_enabled=is_enabled)
        )
        return result.rowcount > 0

    def to_config(self, record: ProviderConfigRecord) -> Optional[ProviderConfig]:
        """Decrypt and validate a row; None when the credentials cannot be decrypted.

        Raises:
            ValueError: Decrypted credentials are not valid JSON or fail validation
        """
        plaintext = decrypt_credential(record.credentials_encrypted or "", key=self.encryption_key)
        if plaintext is None:
            logger.error(
                f"Cannot decrypt {record.provider} credentials for tenant {record.tenant_id}"
            )
            return None
        return ProviderConfig(
            provider=record.provider,
            tenant_id=record.tenant_id,
            live_mode=record.live_mode,
            credentials=json.loads(plaintext),
            default_currency=record.default_currency,
        )


class SqlProviderConfigStore(ProviderConfigStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encryption_key: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.encryption_key = encryption_key

    async def get_config(self, tenant_id: str, provider: str) -> Optional[ProviderConfig]:
        async with self.session_factory() as session:
            repo = ProviderConfigRepository(session, self.encryption_key)
            record = await repo.get_record(tenant_id, provider)
            if record is None or not record.is_enabled:
                return None
            try:
                return repo.to_config(record)
            except ValueError as e:
                logger.error(f"Invalid {provider} configuration for tenant {tenant_id}: {e}")
                return None

    async def list_enabled_providers(self, tenant_id: str) -> list[ProviderConfig]:
        async with self.session_factory() as session:
            repo = ProviderConfigRepository(session, self.encryption_key)
            configs = []
            for record in await repo.get_enabled_records(tenant_id):
                try:
                    config = repo.to_config(record)
                except ValueError as e:
                    logger.error(f"Invalid {record.provider} configuration for tenant {tenant_id}: {e}")
                    continue
                if config is not None:
                    configs.append(config)
            return configs


class SqlWebhookInbox(WebhookInbox):
    """Inbox on the ``webhook_events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def seen(self, provider: str, event_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WebhookEvent.processed_at).where(
                        WebhookEvent.provider == provider,
                        WebhookEvent.event_id == event_id,
                    )
                )
                processed_at = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inbox lookup failed for {provider}:{event_id}: {e}") from e
        return processed_at is not None

    async def mark_processed(self, provider: str, event_id: str) -> None:
        now = utcnow()
        try:
            async with self.session_factory() as session:
                session.add(WebhookEvent(provider=provider, event_id=event_id, processed_at=now))
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()

                # Row already exists: keep the first processed_at
                await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.provider == provider,
                        WebhookEvent.event_id == event_id,
                        WebhookEvent.processed_at.is_(None),
                    )
                    .values(processed_at=now)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inbox update failed for {provider}:{event_id}: {e}") from e


class SqlIdempotencyStore(IdempotencyStore):
    """Idempotency ledger on the ``idempotency_keys`` table.

    The primary key is the reservation. Results are stored as JSON, so
    callers must return JSON-serialisable values.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: Optional[int] = None,
        lease_seconds: int = 60,
        poll_interval: float = 0.1,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval

    async def with_key(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        while True:
            if await self._reserve(key):
                return await self._run(key, fn)

            row = await self._load(key)
            if row is None:
                continue
            if row.completed_at is not None:
                if self._expired(row.completed_at):
                    await self._release(key)
                    continue
                return json.loads(row.result)["result"]
            if self._expired(row.created_at, self.lease_seconds):
                logger.warning(f"Idempotency key {key} lease expired, releasing")
                await self._release(key)
                continue
            await asyncio.sleep(self.poll_interval)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await fn()
        except BaseException:
            await self._release(key)
            raise

        encoded = json.dumps({"result": result})
        async with self.session_factory() as session:
            await session.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.key == key)
                .values(
                    result=encoded,
                    result_hash=hashlib.sha256(encoded.encode()).hexdigest(),
                    completed_at=utcnow(),
                )
            )
            await session.commit()
        return result

    async def _reserve(self, key: str) -> bool:
        async with self.session_factory() as session:
            session.add(IdempotencyKey(key=key, created_at=utcnow()))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def _load(self, key: str) -> Optional[IdempotencyKey]:
        async with self.session_factory() as session:
            return await session.get(IdempotencyKey, key)

    async def _release(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key))
            await session.commit()

    def _expired(self, since: datetime, seconds: Optional[int] = None) -> bool:
        seconds = self.ttl_seconds if seconds is None else seconds
        if seconds is None:
            return False
        if since.tzinfo is None:
            # SQLite drops tzinfo
            since = since.replace(tzinfo=timezone.utc)
        return utcnow() - since > timedelta(seconds=seconds)
