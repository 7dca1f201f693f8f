"""Billing module: provider adapters, webhook pipeline and payment service."""

from payments_core.modules.billing.container import (
    PaymentContainer,
    build_default_container,
    build_registry,
)
from payments_core.modules.billing.errors import (
    BillingError,
    ConfigNotFoundError,
    PersistenceError,
    ProviderError,
    SignatureInvalidError,
    SubscriptionNotFoundError,
    UnknownProviderError,
)
from payments_core.modules.billing.interface import PaymentProviderInterface
from payments_core.modules.billing.pipeline import WebhookOutcome, WebhookPipeline
from payments_core.modules.billing.registry import ProviderRegistry
from payments_core.modules.billing.service import PaymentService

__all__ = [
    "PaymentContainer",
    "build_default_container",
    "build_registry",
    "BillingError",
    "ConfigNotFoundError",
    "PersistenceError",
    "ProviderError",
    "SignatureInvalidError",
    "SubscriptionNotFoundError",
    "UnknownProviderError",
    "PaymentProviderInterface",
    "WebhookOutcome",
    "WebhookPipeline",
    "ProviderRegistry",
    "PaymentService",
]
