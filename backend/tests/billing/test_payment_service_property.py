"""Property-based tests for the Payment Service.

Tests that:
- Checkout resolves config and adapter and returns the provider URL
- Missing configuration and unknown providers raise typed errors
- Slow providers are cut off with a transient timeout error
- An idempotency key makes checkout creation run once
"""

import asyncio
import string

import pytest
from hypothesis import given, settings, strategies as st

from payments_core.modules.billing.errors import (
    ConfigNotFoundError,
    ProviderError,
    SubscriptionNotFoundError,
    UnknownProviderError,
)
from payments_core.modules.billing.idempotency import InMemoryIdempotencyStore
from payments_core.modules.billing.interface import PaymentProviderInterface
from payments_core.modules.billing.memory import StaticConfigStore
from payments_core.modules.billing.registry import ProviderRegistry
from payments_core.modules.billing.schemas import (
    CancelResult,
    CheckoutData,
    CheckoutSession,
    ProviderConfig,
    Subscription,
    SubscriptionStatus,
)
from payments_core.modules.billing.service import PaymentService


class FakeCheckoutGateway(PaymentProviderInterface):
    """Adapter answering from memory; ``delay`` simulates a slow provider."""

    name = "lemonsqueezy"

    def __init__(self, delay: float = 0.0, cancel_ok: bool = True):
        self.delay = delay
        self.cancel_ok = cancel_ok
        self.checkout_calls = 0
        self.subscriptions: dict[str, Subscription] = {}

    async def create_checkout_session(self, config, data):
        self.checkout_calls += 1
        await asyncio.sleep(self.delay)
        return CheckoutSession(
            checkout_url=f"https://pay.example/checkout/{data.plan_id}?tenant={config.tenant_id}",
            provider_session_id=f"chk_{self.checkout_calls}",
        )

    async def get_subscription(self, config, provider_subscription_id):
        await asyncio.sleep(self.delay)
        return self.subscriptions.get(provider_subscription_id)

    async def cancel_subscription(self, config, provider_subscription_id):
        if self.cancel_ok:
            return CancelResult(success=True)
        return CancelResult(success=False, error_message="subscription locked")

    def verify_signature(self, config, raw_body, headers):
        return False

    def to_canonical_events(self, config, raw_body):
        return []


def make_service(gateway=None, tenants=("tenant-1",), timeout: float = 1.0) -> PaymentService:
    gateway = gateway or FakeCheckoutGateway()
    configs = [
        ProviderConfig(provider="lemonsqueezy", tenant_id=t, credentials={"api_key": "k"})
        for t in tenants
    ]
    return PaymentService(
        registry=ProviderRegistry([gateway]).freeze(),
        config_store=StaticConfigStore(configs),
        idempotency=InMemoryIdempotencyStore(),
        default_provider="lemonsqueezy",
        timeout_seconds=timeout,
    )


def checkout(plan_id: str = "plan-1", tenant_id: str = "tenant-1", provider=None) -> CheckoutData:
    return CheckoutData(
        tenant_id=tenant_id,
        plan_id=plan_id,
        user_id="user-1",
        user_email="user@example.com",
        provider=provider,
    )


plan_id_strategy = st.text(alphabet=string.ascii_lowercase + string.digits + "-", min_size=1, max_size=30)


class TestCreateCheckout:

    @pytest.mark.asyncio
    @given(plan_id=plan_id_strategy)
    @settings(max_examples=100, deadline=None)
    async def test_checkout_url_references_plan(self, plan_id: str) -> None:
        service = make_service()

        session = await service.create_checkout(checkout(plan_id))

        assert plan_id in session.checkout_url
        assert session.checkout_url.startswith("https://")

    @pytest.mark.asyncio
    async def test_tenant_without_config(self) -> None:
        service = make_service()

        with pytest.raises(ConfigNotFoundError) as exc_info:
            await service.create_checkout(checkout(tenant_id="tenant-2"))

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_unconfigured_provider_reports_missing_config_first(self) -> None:
        service = make_service()

        with pytest.raises(ConfigNotFoundError) as exc_info:
            await service.create_checkout(checkout(provider="paddle"))

        assert exc_info.value.provider == "paddle"

    @pytest.mark.asyncio
    async def test_configured_but_unregistered_provider(self) -> None:
        service = make_service()
        service.config_store.add(ProviderConfig(provider="paddle", tenant_id="tenant-1"))

        with pytest.raises(UnknownProviderError) as exc_info:
            await service.create_checkout(checkout(provider="paddle"))

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self) -> None:
        service = make_service(FakeCheckoutGateway(delay=1.0), timeout=0.05)

        with pytest.raises(ProviderError) as exc_info:
            await service.create_checkout(checkout())

        assert exc_info.value.code == "timeout"
        assert exc_info.value.transient is True
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    @given(repeats=st.integers(min_value=2, max_value=6))
    @settings(max_examples=25, deadline=None)
    async def test_idempotency_key_creates_one_session(self, repeats: int) -> None:
        gateway = FakeCheckoutGateway(delay=0.01)
        service = make_service(gateway)

        sessions = await asyncio.gather(*(
            service.create_checkout(checkout(), idempotency_key="key-1") for _ in range(repeats)
        ))

        assert gateway.checkout_calls == 1
        assert len({s.provider_session_id for s in sessions}) == 1

    @pytest.mark.asyncio
    async def test_without_key_each_call_creates_session(self) -> None:
        gateway = FakeCheckoutGateway()
        service = make_service(gateway)

        await service.create_checkout(checkout())
        await service.create_checkout(checkout())

        assert gateway.checkout_calls == 2

    @pytest.mark.asyncio
    async def test_idempotency_keys_are_scoped_per_tenant(self) -> None:
        gateway = FakeCheckoutGateway()
        service = make_service(gateway, tenants=("tenant-1", "tenant-2"))

        a = await service.create_checkout(checkout(tenant_id="tenant-1"), idempotency_key="same")
        b = await service.create_checkout(checkout(tenant_id="tenant-2"), idempotency_key="same")

        assert gateway.checkout_calls == 2
        assert a.checkout_url != b.checkout_url


class TestSubscriptionOperations:

    @pytest.mark.asyncio
    async def test_get_subscription_not_found(self) -> None:
        service = make_service()

        with pytest.raises(SubscriptionNotFoundError):
            await service.get_subscription("tenant-1", "lemonsqueezy", "sub_missing")

    @pytest.mark.asyncio
    async def test_get_subscription_returns_snapshot(self) -> None:
        gateway = FakeCheckoutGateway()
        gateway.subscriptions["sub_1"] = Subscription(
            id="lemonsqueezy:sub_1",
            provider="lemonsqueezy",
            provider_subscription_id="sub_1",
            plan_id="plan-1",
            user_id="user-1",
            status=SubscriptionStatus.ACTIVE,
        )
        service = make_service(gateway)

        subscription = await service.get_subscription("tenant-1", "lemonsqueezy", "sub_1")

        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_refused_cancel_raises_provider_error(self) -> None:
        service = make_service(FakeCheckoutGateway(cancel_ok=False))

        with pytest.raises(ProviderError) as exc_info:
            await service.cancel_subscription("tenant-1", "lemonsqueezy", "sub_1")

        assert exc_info.value.code == "cancel_failed"
        assert "locked" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_list_providers_filters_unregistered(self) -> None:
        service = PaymentService(
            registry=ProviderRegistry([FakeCheckoutGateway()]).freeze(),
            config_store=StaticConfigStore([
                ProviderConfig(provider="lemonsqueezy", tenant_id="t1", credentials={"api_key": "k"}),
                ProviderConfig(provider="stripe", tenant_id="t1", credentials={"secret_key": "sk"}),
            ]),
        )

        providers = await service.list_providers("t1")

        assert [c.provider for c in providers] == ["lemonsqueezy"]
