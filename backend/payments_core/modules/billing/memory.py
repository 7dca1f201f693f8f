"""In-process implementations of the billing ports.

Used in development and tests, and as the default inbox and persistence
when no database backend is configured.
"""

import logging
from collections import Counter, defaultdict
from typing import Any, Iterable, Optional

from payments_core.modules.billing.ports import (
    BillingPersistencePort,
    DomainEventPublisher,
    ProviderConfigStore,
    WebhookInbox,
)
from payments_core.modules.billing.schemas import (
    Invoice,
    Plan,
    Price,
    ProviderConfig,
    Refund,
    Subscription,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryWebhookInbox(WebhookInbox):
    def __init__(self):
        self._processed: dict[tuple[str, str], Any] = {}

    async def seen(self, provider: str, event_id: str) -> bool:
        return (provider, event_id) in self._processed

    async def mark_processed(self, provider: str, event_id: str) -> None:
        self._processed.setdefault((provider, event_id), utcnow())

    def __len__(self) -> int:
        return len(self._processed)


class InMemoryBillingPersistence(BillingPersistencePort):
    """Dict-backed billing state. ``calls`` counts invocations per method."""

    def __init__(self):
        self.plans: dict[str, Plan] = {}
        self.prices: dict[str, Price] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.invoices: dict[str, Invoice] = {}
        self.refunds: dict[str, Refund] = {}
        self.user_subscriptions: dict[str, set[str]] = defaultdict(set)
        self.calls: Counter = Counter()

    async def upsert_plan(self, plan: Plan) -> None:
        self.calls["upsert_plan"] += 1
        self.plans[plan.id] = plan

    async def upsert_price(self, price: Price) -> None:
        self.calls["upsert_price"] += 1
        self.prices[price.id] = price

    async def upsert_subscription(self, subscription: Subscription) -> None:
        self.calls["upsert_subscription"] += 1
        self.subscriptions[subscription.id] = subscription

    async def record_invoice(self, invoice: Invoice) -> None:
        self.calls["record_invoice"] += 1
        self.invoices[invoice.id] = invoice

    async def record_refund(self, refund: Refund) -> None:
        self.calls["record_refund"] += 1
        self.refunds[refund.id] = refund

    async def link_user_subscription(self, user_id: str, subscription_id: str) -> None:
        self.calls["link_user_subscription"] += 1
        self.user_subscriptions[user_id].add(subscription_id)


class RecordingEventPublisher(DomainEventPublisher):
    """Keeps published events in order and mirrors them to the log."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    async def publish(self, event_name: str, payload: Any) -> None:
        self.events.append((event_name, payload))
        logger.info(f"Domain event published: {event_name}")

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class StaticConfigStore(ProviderConfigStore):
    """Fixed set of configs keyed by (tenant_id, provider)."""

    def __init__(self, configs: Optional[Iterable[ProviderConfig]] = None):
        self._configs: dict[tuple[str, str], ProviderConfig] = {}
        for config in configs or ():
            self.add(config)

    def add(self, config: ProviderConfig) -> None:
        self._configs[(config.tenant_id, config.provider)] = config

    async def get_config(self, tenant_id: str, provider: str) -> Optional[ProviderConfig]:
        return self._configs.get((tenant_id, provider))

    async def list_enabled_providers(self, tenant_id: str) -> list[ProviderConfig]:
        return [
            config
            for (config_tenant, _), config in self._configs.items()
            if config_tenant == tenant_id
        ]
