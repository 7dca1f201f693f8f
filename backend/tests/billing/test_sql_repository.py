"""Tests for the database-backed inbox, idempotency ledger and config store.

Runs against an in-memory SQLite database through aiosqlite.
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payments_core.core.database import Base
from payments_core.core.encryption import encrypt_credential
from payments_core.modules.billing import models  # noqa: F401
from payments_core.modules.billing.repository import (
    ProviderConfigRepository,
    SqlIdempotencyStore,
    SqlProviderConfigStore,
    SqlWebhookInbox,
)
from payments_core.modules.billing.models import ProviderConfigRecord
from payments_core.modules.billing.schemas import ProviderConfig

ENCRYPTION_KEY = "test-encryption-key"


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


class TestSqlWebhookInbox:

    @pytest.mark.asyncio
    async def test_unseen_until_marked(self, session_factory) -> None:
        inbox = SqlWebhookInbox(session_factory)

        assert await inbox.seen("stripe", "evt_1") is False
        await inbox.mark_processed("stripe", "evt_1")

        assert await inbox.seen("stripe", "evt_1") is True
        assert await inbox.seen("lemonsqueezy", "evt_1") is False

    @pytest.mark.asyncio
    async def test_mark_processed_twice_is_harmless(self, session_factory) -> None:
        inbox = SqlWebhookInbox(session_factory)

        await inbox.mark_processed("stripe", "evt_1")
        await inbox.mark_processed("stripe", "evt_1")

        assert await inbox.seen("stripe", "evt_1") is True


class TestSqlIdempotencyStore:

    @pytest.mark.asyncio
    async def test_second_call_returns_stored_result(self, session_factory) -> None:
        store = SqlIdempotencyStore(session_factory, ttl_seconds=3600)
        calls = []

        async def create():
            calls.append(1)
            return {"checkout_url": "https://pay.example/1"}

        first = await store.with_key("checkout:t1:k1", create)
        second = await store.with_key("checkout:t1:k1", create)

        assert first == second == {"checkout_url": "https://pay.example/1"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failure_releases_key(self, session_factory) -> None:
        store = SqlIdempotencyStore(session_factory)

        async def boom():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            await store.with_key("k", boom)

        async def ok():
            return "done"

        assert await store.with_key("k", ok) == "done"

    @pytest.mark.asyncio
    async def test_expired_result_runs_again(self, session_factory) -> None:
        store = SqlIdempotencyStore(session_factory, ttl_seconds=0)
        calls = []

        async def count():
            calls.append(1)
            return len(calls)

        await store.with_key("k", count)
        await asyncio.sleep(0.01)
        assert await store.with_key("k", count) == 2


class TestSqlProviderConfigStore:

    @pytest.mark.asyncio
    async def test_saved_config_round_trips_encrypted(self, session_factory) -> None:
        config = ProviderConfig(
            provider="stripe",
            tenant_id="tenant-1",
            live_mode=True,
            credentials={"secret_key": "sk_live_1", "webhook_secret": "whsec_1"},
            default_currency="EUR",
        )
        async with session_factory() as session:
            record = await ProviderConfigRepository(session, ENCRYPTION_KEY).save(config)
            await session.commit()
            assert "sk_live_1" not in record.credentials_encrypted

        store = SqlProviderConfigStore(session_factory, ENCRYPTION_KEY)
        loaded = await store.get_config("tenant-1", "stripe")

        assert loaded == config
        assert await store.get_config("tenant-2", "stripe") is None

    @pytest.mark.asyncio
    async def test_disabled_provider_is_not_returned(self, session_factory) -> None:
        async with session_factory() as session:
            repo = ProviderConfigRepository(session, ENCRYPTION_KEY)
            await repo.save(ProviderConfig(
                provider="lemonsqueezy", tenant_id="tenant-1", credentials={"api_key": "k"}
            ))
            await repo.save(ProviderConfig(
                provider="stripe", tenant_id="tenant-1", credentials={"secret_key": "sk"}
            ))
            await repo.set_enabled("tenant-1", "stripe", False)
            await session.commit()

        store = SqlProviderConfigStore(session_factory, ENCRYPTION_KEY)

        assert await store.get_config("tenant-1", "stripe") is None
        assert [c.provider for c in await store.list_enabled_providers("tenant-1")] == ["lemonsqueezy"]

    @pytest.mark.asyncio
    async def test_wrong_key_yields_no_config(self, session_factory) -> None:
        async with session_factory() as session:
            await ProviderConfigRepository(session, ENCRYPTION_KEY).save(ProviderConfig(
                provider="stripe", tenant_id="tenant-1", credentials={"secret_key": "sk"}
            ))
            await session.commit()

        store = SqlProviderConfigStore(session_factory, "another-key")

        assert await store.get_config("tenant-1", "stripe") is None
        assert await store.list_enabled_providers("tenant-1") == []

    @pytest.mark.asyncio
    async def test_invalid_stored_credentials_are_skipped(self, session_factory) -> None:
        async with session_factory() as session:
            record = await ProviderConfigRepository(session, ENCRYPTION_KEY).save(ProviderConfig(
                provider="stripe", tenant_id="tenant-1", credentials={"secret_key": "sk"}
            ))
            assert isinstance(record, ProviderConfigRecord)
            # Credentials written for another provider fail stripe validation
            record.credentials_encrypted = encrypt_credential('{"api_key": "k"}', key=ENCRYPTION_KEY)
            await session.commit()

        store = SqlProviderConfigStore(session_factory, ENCRYPTION_KEY)

        assert await store.get_config("tenant-1", "stripe") is None
        assert await store.list_enabled_providers("tenant-1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plaintext", ["not json", "{truncated", "[1, 2]"])
    async def test_undecodable_stored_credentials_are_skipped(self, session_factory, plaintext: str) -> None:
        async with session_factory() as session:
            repo = ProviderConfigRepository(session, ENCRYPTION_KEY)
            await repo.save(ProviderConfig(
                provider="stripe", tenant_id="tenant-1", credentials={"secret_key": "sk"}
            ))
            await repo.save(ProviderConfig(
                provider="lemonsqueezy", tenant_id="tenant-1", credentials={"api_key": "k"}
            ))
            record = await repo.get_record("tenant-1", "stripe")
            record.credentials_encrypted = encrypt_credential(plaintext, key=ENCRYPTION_KEY)
            await session.commit()

        store = SqlProviderConfigStore(session_factory, ENCRYPTION_KEY)

        assert await store.get_config("tenant-1", "stripe") is None
        assert [c.provider for c in await store.list_enabled_providers("tenant-1")] == ["lemonsqueezy"]
