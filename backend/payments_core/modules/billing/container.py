"""Composition root for the billing core.

Builds the provider registry and every port from settings. The host
application supplies its own persistence and publisher; the in-memory ones
are used otherwise.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from payments_core.core.config import Settings, settings as default_settings
from payments_core.modules.billing.config_store import SettingsConfigStore
from payments_core.modules.billing.gateways import LemonSqueezyGateway, StripeGateway
from payments_core.modules.billing.idempotency import (
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from payments_core.modules.billing.memory import (
    InMemoryBillingPersistence,
    InMemoryWebhookInbox,
    RecordingEventPublisher,
)
from payments_core.modules.billing.pipeline import WebhookPipeline
from payments_core.modules.billing.ports import (
    BillingPersistencePort,
    DomainEventPublisher,
    IdempotencyStore,
    ProviderConfigStore,
    WebhookInbox,
)
from payments_core.modules.billing.registry import ProviderRegistry
from payments_core.modules.billing.service import PaymentService

logger = logging.getLogger(__name__)


@dataclass
class PaymentContainer:
    registry: ProviderRegistry
    config_store: ProviderConfigStore
    inbox: WebhookInbox
    idempotency: IdempotencyStore
    persistence: BillingPersistencePort
    publisher: DomainEventPublisher
    default_tenant_id: str = "default"
    service: PaymentService = field(init=False)
    pipeline: WebhookPipeline = field(init=False)
    strict_idempotency: bool = True

    def __post_init__(self):
        self.registry.freeze()
        self.service = PaymentService(self.registry, self.config_store, self.idempotency)
        self.pipeline = WebhookPipeline(
            self.registry,
            self.config_store,
            self.inbox,
            self.persistence,
            self.publisher,
            idempotency=self.idempotency,
            strict_idempotency=self.strict_idempotency,
        )


def build_registry(app_settings: Settings) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        LemonSqueezyGateway.name,
        LemonSqueezyGateway(timeout=app_settings.PROVIDER_TIMEOUT_SECONDS),
    )
    registry.register(
        StripeGateway.name,
        StripeGateway(tolerance_seconds=app_settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
    )
    return registry


def build_default_container(
    app_settings: Optional[Settings] = None,
    persistence: Optional[BillingPersistencePort] = None,
    publisher: Optional[DomainEventPublisher] = None,
) -> PaymentContainer:
    """Assemble a container from settings.

    Raises:
        ValueError: If a backend setting names an unknown backend
    """
    s = app_settings or default_settings

    if s.CONFIG_BACKEND == "settings":
        config_store: ProviderConfigStore = SettingsConfigStore(s)
    elif s.CONFIG_BACKEND == "database":
        from payments_core.core.database import get_session_factory
        from payments_core.modules.billing.repository import SqlProviderConfigStore

        config_store = SqlProviderConfigStore(
            get_session_factory(), encryption_key=s.CREDENTIALS_ENCRYPTION_KEY or None
        )
    else:
        raise ValueError(f"Unknown CONFIG_BACKEND: {s.CONFIG_BACKEND}")

    if s.INBOX_BACKEND == "memory":
        inbox: WebhookInbox = InMemoryWebhookInbox()
    elif s.INBOX_BACKEND == "database":
        from payments_core.core.database import get_session_factory
        from payments_core.modules.billing.repository import SqlWebhookInbox

        inbox = SqlWebhookInbox(get_session_factory())
    else:
        raise ValueError(f"Unknown INBOX_BACKEND: {s.INBOX_BACKEND}")

    if s.IDEMPOTENCY_BACKEND == "memory":
        idempotency: IdempotencyStore = InMemoryIdempotencyStore(ttl_seconds=s.IDEMPOTENCY_TTL_SECONDS)
    elif s.IDEMPOTENCY_BACKEND == "redis":
        from payments_core.core.redis import get_redis

        idempotency = RedisIdempotencyStore(get_redis(), ttl_seconds=s.IDEMPOTENCY_TTL_SECONDS)
    elif s.IDEMPOTENCY_BACKEND == "database":
        from payments_core.core.database import get_session_factory
        from payments_core.modules.billing.repository import SqlIdempotencyStore

        idempotency = SqlIdempotencyStore(get_session_factory(), ttl_seconds=s.IDEMPOTENCY_TTL_SECONDS)
    else:
        raise ValueError(f"Unknown IDEMPOTENCY_BACKEND: {s.IDEMPOTENCY_BACKEND}")

    if persistence is None:
        logger.warning("No billing persistence supplied, using in-memory persistence")
        persistence = InMemoryBillingPersistence()

    container = PaymentContainer(
        registry=build_registry(s),
        config_store=config_store,
        inbox=inbox,
        idempotency=idempotency,
        persistence=persistence,
        publisher=publisher or RecordingEventPublisher(),
        default_tenant_id=s.DEFAULT_TENANT_ID,
        strict_idempotency=s.WEBHOOK_STRICT_IDEMPOTENCY,
    )
    logger.info(
        f"Billing container ready: providers={container.registry.names()} "
        f"config={s.CONFIG_BACKEND} inbox={s.INBOX_BACKEND} idempotency={s.IDEMPOTENCY_BACKEND}"
    )
    return container
