"""Stripe provider adapter.

API calls go through the official SDK, run in a worker thread and keyed
per call with the tenant's secret key. Webhook signatures (``t=<timestamp>,v1=<hmac>``)
are checked with the SDK's ``WebhookSignature``.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe

from payments_core.core.config import settings
from payments_core.modules.billing.errors import ProviderError, SubscriptionNotFoundError
from payments_core.modules.billing.interface import PaymentProviderInterface
from payments_core.modules.billing.schemas import (
    BillingInterval,
    CancelResult,
    CanonicalEvent,
    CanonicalEventName,
    CheckoutData,
    CheckoutSession,
    Invoice,
    InvoiceStatus,
    Plan,
    Price,
    ProviderConfig,
    Refund,
    StripeCredentials,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
}

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": CanonicalEventName.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": CanonicalEventName.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": CanonicalEventName.SUBSCRIPTION_CANCELED,
}


class StripeGateway(PaymentProviderInterface):
    """Stripe adapter.

    Supports:
    - Subscription Checkout Sessions
    - Subscription retrieve and cancel
    - Subscription, invoice, refund and catalog webhooks
    """

    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(
        self,
        client: Any = None,
        tolerance_seconds: Optional[int] = None,
    ):
        # ``client`` defaults to the stripe module itself
        self._stripe = client or stripe
        self.tolerance_seconds = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call in a thread; SDK errors become ProviderError."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.APIConnectionError as e:
            raise ProviderError(
                self.name, f"Stripe {operation} failed: {e}", code="unreachable", transient=True
            ) from e
        except stripe.StripeError as e:
            status_code = getattr(e, "http_status", None)
            logger.error(f"Stripe {operation} error: {e}")
            raise ProviderError(
                self.name,
                f"Stripe {operation} failed: {e.user_message or e}",
                code=getattr(e, "code", None) or "stripe_error",
                transient=bool(status_code and (status_code == 429 or status_code >= 500)),
                upstream_status=status_code,
            ) from e

    async def create_checkout_session(
        self,
        config: ProviderConfig,
        data: CheckoutData,
    ) -> CheckoutSession:
        """Create a subscription-mode Checkout Session.

        Args:
            config: Tenant configuration for Stripe
            data: Checkout request

        Returns:
            CheckoutSession with the hosted checkout URL
        """
        creds = self.credentials(config, StripeCredentials)
        price_id = data.price_id or self._price_for_plan(creds, data.plan_id)
        metadata = {
            **data.metadata,
            "user_id": data.user_id,
            "plan_id": data.plan_id,
            "tenant_id": data.tenant_id,
        }

        session_params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": data.user_id,
            "customer_email": data.user_email,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if data.success_url:
            session_params["success_url"] = data.success_url
        if data.cancel_url:
            session_params["cancel_url"] = data.cancel_url

        session = _as_dict(
            await self._call(
                "create checkout",
                self._stripe.checkout.Session.create,
                api_key=creds.secret_key,
                **session_params,
            )
        )
        if not session.get("url"):
            raise ProviderError(self.name, "Stripe session has no checkout URL", code="invalid_response")
        return CheckoutSession(checkout_url=session["url"], provider_session_id=session.get("id"))

    async def get_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        creds = self.credentials(config, StripeCredentials)
        try:
            obj = await self._call(
                "get subscription",
                self._stripe.Subscription.retrieve,
                provider_subscription_id,
                api_key=creds.secret_key,
            )
        except ProviderError as e:
            if e.upstream_status == 404:
                return None
            raise
        return self._map_subscription(creds.price_mapping, _as_dict(obj))

    async def cancel_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> CancelResult:
        creds = self.credentials(config, StripeCredentials)
        current = await self.get_subscription(config, provider_subscription_id)
        if current is None:
            raise SubscriptionNotFoundError(self.name, provider_subscription_id)
        if current.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED):
            return CancelResult(success=True)

        await self._call(
            "cancel subscription",
            self._stripe.Subscription.cancel,
            provider_subscription_id,
            api_key=creds.secret_key,
        )
        return CancelResult(success=True)

    def verify_signature(
        self,
        config: ProviderConfig,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        try:
            secret = getattr(config.credentials, "webhook_secret", "")
            if not secret:
                return not config.live_mode

            header = self.get_header(headers, self.signature_header)
            if not header:
                return False
            return stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                header,
                secret,
                tolerance=self.tolerance_seconds or None,
            )
        except stripe.SignatureVerificationError as e:
            logger.debug(f"Stripe signature rejected: {e}")
            return False
        except Exception:
            logger.debug("Stripe signature check raised", exc_info=True)
            return False

    def to_canonical_events(
        self,
        config: ProviderConfig,
        raw_body: bytes,
    ) -> list[CanonicalEvent]:
        body = self.parse_json(raw_body)
        if body is None:
            logger.warning("Stripe webhook body is not a JSON object")
            return []

        event_type = body.get("type")
        event_id = body.get("id")
        obj = self.as_object(body.get("data")).get("object")
        if not isinstance(event_type, str) or not event_id or not isinstance(obj, dict):
            return []

        mapper = self._mapper_for(event_type)
        if mapper is None:
            logger.debug(f"Ignoring Stripe event type {event_type}")
            return []

        occurred_at = _from_timestamp(body.get("created")) or datetime.now(timezone.utc)
        try:
            name, data = mapper(config, event_type, obj, occurred_at)
        except Exception as e:
            logger.warning(f"Dropping malformed Stripe {event_type} event {event_id}: {e}")
            return []

        return [
            CanonicalEvent(
                name=name.value,
                provider=self.name,
                provider_event_id=str(event_id),
                tenant_id=config.tenant_id,
                occurred_at=occurred_at,
                data=data,
            )
        ]

    # ==================== Mapping ====================

    def _mapper_for(self, event_type: str) -> Optional[Callable]:
        if event_type in SUBSCRIPTION_EVENTS:
            return self._subscription_event
        return {
            "invoice.paid": self._invoice_event,
            "invoice.payment_succeeded": self._invoice_event,
            "invoice.payment_failed": self._invoice_event,
            "charge.refunded": self._refund_event,
            "product.created": self._product_event,
            "product.updated": self._product_event,
            "price.created": self._price_event,
            "price.updated": self._price_event,
        }.get(event_type)

    def _price_for_plan(self, creds: StripeCredentials, plan_id: str) -> str:
        for price_id, mapped_plan in creds.price_mapping.items():
            if mapped_plan == plan_id:
                return price_id
        return plan_id

    def _map_subscription(self, price_mapping: Mapping[str, str], obj: dict) -> Subscription:
        provider_subscription_id = obj["id"]
        metadata = obj.get("metadata") or {}
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price_id = (first_item.get("price") or {}).get("id", "")

        plan_id = metadata.get("plan_id") or price_mapping.get(price_id, price_id)
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        return Subscription(
            id=f"{self.name}:{provider_subscription_id}",
            provider=self.name,
            provider_subscription_id=provider_subscription_id,
            plan_id=plan_id,
            user_id=metadata.get("user_id") or str(obj.get("customer") or ""),
            status=STATUS_MAP.get(obj.get("status"), SubscriptionStatus.INCOMPLETE),
            current_period_end=_from_timestamp(period_end),
        )

    def _subscription_event(self, config, event_type, obj, occurred_at):
        price_mapping = getattr(config.credentials, "price_mapping", {})
        subscription = self._map_subscription(price_mapping, obj)
        return SUBSCRIPTION_EVENTS[event_type], subscription.model_dump(mode="json")

    def _invoice_event(self, config, event_type, obj, occurred_at):
        failed = event_type == "invoice.payment_failed"
        # Newer API versions nest subscription details under ``parent``
        details = obj.get("subscription_details") or (
            (obj.get("parent") or {}).get("subscription_details") or {}
        )
        subscription_id = obj.get("subscription") or details.get("subscription")
        invoice = Invoice(
            id=f"{self.name}:invoice:{obj['id']}",
            subscription_id=f"{self.name}:{subscription_id}" if subscription_id else None,
            user_id=(details.get("metadata") or {}).get("user_id"),
            amount_cents=int(obj.get("amount_due" if failed else "amount_paid") or 0),
            currency=str(obj.get("currency") or config.default_currency).upper(),
            status=InvoiceStatus.FAILED if failed else InvoiceStatus.PAID,
            provider=self.name,
            issued_at=_from_timestamp(obj.get("created")) or occurred_at,
        )
        name = CanonicalEventName.INVOICE_PAYMENT_FAILED if failed else CanonicalEventName.INVOICE_PAID
        return name, invoice.model_dump(mode="json")

    def _refund_event(self, config, event_type, obj, occurred_at):
        refunds = (obj.get("refunds") or {}).get("data") or []
        refund_id = refunds[0]["id"] if refunds else f"charge:{obj['id']}"
        invoice_id = obj.get("invoice")
        refund = Refund(
            id=f"{self.name}:refund:{refund_id}",
            invoice_id=f"{self.name}:invoice:{invoice_id}" if invoice_id else None,
            amount_cents=int(obj.get("amount_refunded") or 0),
            currency=str(obj.get("currency") or config.default_currency).upper(),
            provider=self.name,
            created_at=(_from_timestamp(refunds[0].get("created")) if refunds else None) or occurred_at,
        )
        return CanonicalEventName.REFUND_CREATED, refund.model_dump(mode="json")

    def _product_event(self, config, event_type, obj, occurred_at):
        metadata = obj.get("metadata") or {}
        plan = Plan(
            id=metadata.get("plan_id") or obj["id"],
            name=obj.get("name") or obj["id"],
            is_active=bool(obj.get("active", True)),
        )
        return CanonicalEventName.PLAN_UPDATED, plan.model_dump(mode="json")

    def _price_event(self, config, event_type, obj, occurred_at):
        price_mapping = getattr(config.credentials, "price_mapping", {})
        recurring = obj.get("recurring") or {}
        interval = BillingInterval.YEAR if recurring.get("interval") == "year" else BillingInterval.MONTH
        product = obj.get("product")
        if isinstance(product, dict):
            product = product.get("id")
        price = Price(
            id=obj["id"],
            plan_id=price_mapping.get(obj["id"]) or str(product or ""),
            amount_cents=int(obj.get("unit_amount") or 0),
            currency=str(obj.get("currency") or config.default_currency).upper(),
            interval=interval,
            is_active=bool(obj.get("active", True)),
        )
        return CanonicalEventName.PRICE_UPDATED, price.model_dump(mode="json")


def _as_dict(obj: Any) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _from_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds to an aware datetime; None when absent or not a timestamp."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
