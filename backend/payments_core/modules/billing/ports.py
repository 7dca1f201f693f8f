"""Ports implemented by the billing core's external collaborators.

Every persistence method must be safe to call more than once with
identical input: the webhook pipeline relies on it when a delivery is
retried after partial progress.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar

from payments_core.modules.billing.schemas import (
    Invoice,
    Plan,
    Price,
    ProviderConfig,
    Refund,
    Subscription,
)

T = TypeVar("T")


class BillingPersistencePort(ABC):
    """Upsert-only storage for billing state."""

    @abstractmethod
    async def upsert_plan(self, plan: Plan) -> None:
        pass

    @abstractmethod
    async def upsert_price(self, price: Price) -> None:
        pass

    @abstractmethod
    async def upsert_subscription(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    async def record_invoice(self, invoice: Invoice) -> None:
        """Upsert an invoice by id. Re-delivery must never duplicate it."""
        pass

    @abstractmethod
    async def record_refund(self, refund: Refund) -> None:
        pass

    @abstractmethod
    async def link_user_subscription(self, user_id: str, subscription_id: str) -> None:
        pass


class DomainEventPublisher(ABC):
    @abstractmethod
    async def publish(self, event_name: str, payload: Any) -> None:
        """Publish a domain event. Called only after the state it describes is durable."""
        pass


class ProviderConfigStore(ABC):
    @abstractmethod
    async def get_config(self, tenant_id: str, provider: str) -> Optional[ProviderConfig]:
        """Return the config, or None when the provider is disabled for the tenant."""
        pass

    @abstractmethod
    async def list_enabled_providers(self, tenant_id: str) -> list[ProviderConfig]:
        pass


class WebhookInbox(ABC):
    """Dedup ledger keyed by (provider, provider event id)."""

    @abstractmethod
    async def seen(self, provider: str, event_id: str) -> bool:
        """True only when the event was already fully applied."""
        pass

    @abstractmethod
    async def mark_processed(self, provider: str, event_id: str) -> None:
        pass


class IdempotencyStore(ABC):
    @abstractmethod
    async def with_key(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` at most once per key and return its memoized result.

        Concurrent and later callers with the same key receive the result
        of the first successful run. When ``fn`` raises, the key is
        released and the exception propagates.
        """
        pass
