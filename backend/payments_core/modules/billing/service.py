"""Payment Service: the synchronous, caller-facing billing operations.

Resolves the tenant's provider configuration and adapter, then delegates.
Nothing is persisted here; subscription state arrives through webhooks.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from payments_core.core.config import settings
from payments_core.core.logging import billing_context
from payments_core.core.metrics import record_checkout, record_provider_error
from payments_core.core.tracing import create_span
from payments_core.modules.billing.errors import (
    ConfigNotFoundError,
    ProviderError,
    SubscriptionNotFoundError,
)
from payments_core.modules.billing.interface import PaymentProviderInterface
from payments_core.modules.billing.ports import IdempotencyStore, ProviderConfigStore
from payments_core.modules.billing.registry import ProviderRegistry
from payments_core.modules.billing.schemas import (
    CancelResult,
    CheckoutData,
    CheckoutSession,
    ProviderConfig,
    Subscription,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentService:
    """Service for checkout and subscription management across providers.

    Handles:
    - Default provider selection
    - Per-tenant configuration lookup
    - Bounded provider calls (timeout mapped to a transient ProviderError)
    - Optional idempotency for checkout creation
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config_store: ProviderConfigStore,
        idempotency: Optional[IdempotencyStore] = None,
        default_provider: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.config_store = config_store
        self.idempotency = idempotency
        self.default_provider = default_provider or settings.DEFAULT_PROVIDER
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.PROVIDER_TIMEOUT_SECONDS
        )

    async def _resolve(
        self,
        tenant_id: str,
        provider: str,
    ) -> tuple[PaymentProviderInterface, ProviderConfig]:
        config = await self.config_store.get_config(tenant_id, provider)
        if config is None:
            raise ConfigNotFoundError(tenant_id, provider)
        return self.registry.require(provider), config

    async def _bounded(self, provider: str, operation: str, call: Awaitable[T]) -> T:
        """Await a provider call under the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            record_provider_error(provider, operation, "timeout")
            raise ProviderError(
                provider,
                f"{provider} {operation} timed out after {self.timeout_seconds}s",
                code="timeout",
                transient=True,
            ) from e
        except ProviderError as e:
            record_provider_error(provider, operation, e.code)
            raise

    async def create_checkout(
        self,
        data: CheckoutData,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a provider-hosted checkout.

        Args:
            data: Checkout request; ``data.provider`` falls back to the default provider
            idempotency_key: Client key; repeated calls return the first session

        Returns:
            CheckoutSession with the URL to redirect the user to

        Raises:
            UnknownProviderError: Provider not registered
            ConfigNotFoundError: Provider not enabled for the tenant
            ProviderError: Provider failed or timed out
        """
        provider = data.provider or self.default_provider
        with billing_context(provider=provider, tenant_id=data.tenant_id), create_span(
            "billing.checkout",
            attributes={"billing.provider": provider, "billing.tenant_id": data.tenant_id},
        ):
            adapter, config = await self._resolve(data.tenant_id, provider)

            async def run() -> dict:
                session = await self._bounded(
                    provider,
                    "create_checkout",
                    adapter.create_checkout_session(config, data),
                )
                logger.info(f"Checkout created for plan {data.plan_id}")
                return session.model_dump(mode="json")

            try:
                if idempotency_key and self.idempotency is not None:
                    result = await self.idempotency.with_key(
                        f"checkout:{data.tenant_id}:{idempotency_key}", run
                    )
                else:
                    result = await run()
            except ProviderError:
                record_checkout(provider, "failed")
                raise

            record_checkout(provider, "ok")
            return CheckoutSession.model_validate(result)

    async def get_subscription(
        self,
        tenant_id: str,
        provider: str,
        provider_subscription_id: str,
    ) -> Subscription:
        """Fetch a subscription snapshot from the provider.

        Raises:
            SubscriptionNotFoundError: The provider does not know the subscription
        """
        with billing_context(provider=provider, tenant_id=tenant_id):
            adapter, config = await self._resolve(tenant_id, provider)
            subscription = await self._bounded(
                provider,
                "get_subscription",
                adapter.get_subscription(config, provider_subscription_id),
            )
            if subscription is None:
                raise SubscriptionNotFoundError(provider, provider_subscription_id)
            return subscription

    async def cancel_subscription(
        self,
        tenant_id: str,
        provider: str,
        provider_subscription_id: str,
    ) -> CancelResult:
        with billing_context(provider=provider, tenant_id=tenant_id):
            adapter, config = await self._resolve(tenant_id, provider)
            result = await self._bounded(
                provider,
                "cancel_subscription",
                adapter.cancel_subscription(config, provider_subscription_id),
            )
            if not result.success:
                record_provider_error(provider, "cancel_subscription", "cancel_failed")
                raise ProviderError(
                    provider,
                    result.error_message or f"{provider} refused to cancel {provider_subscription_id}",
                    code="cancel_failed",
                )
            logger.info(f"Subscription {provider_subscription_id} cancelled")
            return result

    async def list_providers(self, tenant_id: str) -> list[ProviderConfig]:
        """Providers enabled for the tenant that also have a registered adapter."""
        configs = await self.config_store.list_enabled_providers(tenant_id)
        return [config for config in configs if config.provider in self.registry]
