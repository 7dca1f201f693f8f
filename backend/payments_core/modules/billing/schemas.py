"""Pydantic schemas for the billing core.

Domain entities (plans, prices, subscriptions, invoices, refunds), the
canonical event, per-tenant provider configuration and the HTTP request /
response bodies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class SubscriptionStatus(str, Enum):
    """Subscription status values shared by every provider."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class InvoiceStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    OPEN = "open"


class CanonicalEventName(str, Enum):
    """Provider-agnostic event names. Adapters map their own taxonomy onto these."""
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    REFUND_CREATED = "refund.created"
    PLAN_UPDATED = "plan.updated"
    PRICE_UPDATED = "price.updated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Catalog and Billing Entities ====================

class Plan(BaseModel):
    id: str
    name: str
    is_active: bool = True


class Price(BaseModel):
    id: str
    plan_id: str
    amount_cents: int = Field(..., ge=0)
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH
    is_active: bool = True


class Subscription(BaseModel):
    """Subscription snapshot. Upserted by ``id``, last write wins."""
    id: str
    provider: str
    provider_subscription_id: str
    plan_id: str
    user_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None


class Invoice(BaseModel):
    id: str
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "USD"
    status: InvoiceStatus
    provider: str
    issued_at: datetime


class Refund(BaseModel):
    id: str
    invoice_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "USD"
    provider: Optional[str] = None
    created_at: datetime


class CanonicalEvent(BaseModel):
    """Unit of idempotent delivery; deduplicated by (provider, provider_event_id)."""
    model_config = ConfigDict(frozen=True)

    name: str
    provider: str
    provider_event_id: str
    tenant_id: str
    occurred_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)


# ==================== Provider Configuration ====================

class ProviderCredentials(BaseModel):
    """Credentials of a provider without a dedicated model: no fields allowed."""
    model_config = ConfigDict(frozen=True, extra="forbid")


class LemonSqueezyCredentials(ProviderCredentials):
    api_key: str = Field(..., min_length=1)
    store_id: str = ""
    signing_secret: str = ""
    # Provider variant id -> internal plan id
    variant_mapping: dict[str, str] = Field(default_factory=dict)


class StripeCredentials(ProviderCredentials):
    secret_key: str = Field(..., min_length=1)
    webhook_secret: str = ""
    # Stripe price id -> internal plan id
    price_mapping: dict[str, str] = Field(default_factory=dict)


CREDENTIAL_MODELS: dict[str, type[ProviderCredentials]] = {
    "lemonsqueezy": LemonSqueezyCredentials,
    "stripe": StripeCredentials,
}


class ProviderConfig(BaseModel):
    """Per (tenant, provider) configuration, immutable for a request.

    ``credentials`` is validated against the provider's credential model when
    the config is loaded, so a missing api key fails at load time rather than
    on the first provider call.
    """
    model_config = ConfigDict(frozen=True)

    provider: str
    tenant_id: str
    live_mode: bool = False
    credentials: ProviderCredentials = Field(default_factory=ProviderCredentials)
    default_currency: str = "USD"

    @model_validator(mode="before")
    @classmethod
    def _validate_credentials(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        model = CREDENTIAL_MODELS.get(data.get("provider", ""), ProviderCredentials)
        credentials = data.get("credentials")
        if credentials is None:
            credentials = {}
        if isinstance(credentials, ProviderCredentials):
            credentials = credentials.model_dump()
        return {**data, "credentials": model.model_validate(credentials)}


# ==================== Checkout / Cancel Results ====================

class CheckoutData(BaseModel):
    """Input to a provider's checkout session creation."""
    tenant_id: str
    plan_id: str
    user_id: str
    user_email: str
    user_name: Optional[str] = None
    price_id: Optional[str] = None
    provider: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(BaseModel):
    checkout_url: str
    provider_session_id: Optional[str] = None


class CancelResult(BaseModel):
    success: bool
    error_message: Optional[str] = None


# ==================== HTTP Schemas ====================

class CamelModel(BaseModel):
    """Request/response body using camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(CamelModel):
    tenant_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_email: str = Field(..., min_length=3)
    user_name: Optional[str] = None
    price_id: Optional[str] = None
    provider: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    def to_checkout_data(self) -> CheckoutData:
        return CheckoutData(**self.model_dump())


class CheckoutResponse(CamelModel):
    checkout_url: str
    provider_session_id: Optional[str] = None


class SubscriptionResponse(CamelModel):
    id: str
    provider: str
    provider_subscription_id: str
    plan_id: str
    user_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None


class CancelResponse(CamelModel):
    success: bool
    provider_subscription_id: str


class ProviderInfo(CamelModel):
    """Enabled provider as shown to clients (no credentials)."""
    provider: str
    live_mode: bool
    default_currency: str


class WebhookStatusResponse(CamelModel):
    status: str = "active"
    endpoint_hint: str = "/billing/webhook/{provider}"
    providers: list[str]
    timestamp: datetime
