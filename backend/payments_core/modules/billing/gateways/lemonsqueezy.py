"""LemonSqueezy provider adapter.

Talks to the LemonSqueezy JSON:API with httpx. Webhooks are signed with
HMAC-SHA256 over the raw body, hex encoded in the ``X-Signature`` header.
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from payments_core.core.config import settings
from payments_core.modules.billing.errors import ProviderError
from payments_core.modules.billing.interface import PaymentProviderInterface
from payments_core.modules.billing.schemas import (
    CancelResult,
    CanonicalEvent,
    CanonicalEventName,
    CheckoutData,
    CheckoutSession,
    Invoice,
    InvoiceStatus,
    LemonSqueezyCredentials,
    ProviderConfig,
    Refund,
    Subscription,
    SubscriptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"

STATUS_MAP = {
    "on_trial": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.PAUSED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}

SUBSCRIPTION_EVENTS = {
    "subscription_created": CanonicalEventName.SUBSCRIPTION_CREATED,
    "subscription_updated": CanonicalEventName.SUBSCRIPTION_UPDATED,
    "subscription_resumed": CanonicalEventName.SUBSCRIPTION_UPDATED,
    "subscription_paused": CanonicalEventName.SUBSCRIPTION_UPDATED,
    "subscription_unpaused": CanonicalEventName.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": CanonicalEventName.SUBSCRIPTION_CANCELED,
    "subscription_expired": CanonicalEventName.SUBSCRIPTION_CANCELED,
}


class LemonSqueezyGateway(PaymentProviderInterface):
    """LemonSqueezy adapter.

    Supports:
    - Hosted checkouts for subscription variants
    - Subscription fetch and cancel
    - Subscription, subscription invoice, order and refund webhooks
    """

    name = "lemonsqueezy"
    signature_header = "x-signature"

    BASE_URL = "https://api.lemonsqueezy.com/v1"

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url or self.BASE_URL
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    # ==================== HTTP ====================

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Accept": JSONAPI_CONTENT_TYPE,
            "Content-Type": JSONAPI_CONTENT_TYPE,
        }

    async def _request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        api_key: str,
        payload: Optional[dict] = None,
    ) -> httpx.Response:
        """Send one request; transport failures become ProviderError."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                return await client.request(
                    method,
                    endpoint,
                    headers=self._headers(api_key),
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(
                self.name, f"LemonSqueezy {operation} timed out", code="timeout", transient=True
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(
                self.name, f"LemonSqueezy {operation} failed: {e}", code="unreachable", transient=True
            ) from e

    def _rejected(self, operation: str, response: httpx.Response) -> ProviderError:
        status_code = response.status_code
        return ProviderError(
            self.name,
            f"LemonSqueezy {operation} failed: {status_code} {response.text[:500]}",
            code=f"http_{status_code}",
            transient=status_code == 429 or status_code >= 500,
            upstream_status=status_code,
        )

    # ==================== Capabilities ====================

    async def create_checkout_session(
        self,
        config: ProviderConfig,
        data: CheckoutData,
    ) -> CheckoutSession:
        """Create a LemonSqueezy checkout for the plan's variant.

        The user, plan and tenant ids travel as checkout custom data and come
        back in every webhook for the resulting subscription.
        """
        creds = self.credentials(config, LemonSqueezyCredentials)
        if not creds.store_id:
            raise ProviderError(
                self.name,
                "LemonSqueezy store_id missing in provider configuration",
                code="credentials_not_configured",
            )

        variant_id = data.price_id or self._variant_for_plan(creds, data.plan_id)
        custom = {
            **data.metadata,
            "user_id": data.user_id,
            "plan_id": data.plan_id,
            "tenant_id": data.tenant_id,
        }
        product_options: dict[str, Any] = {"enabled_variants": [variant_id]}
        if data.success_url:
            product_options["redirect_url"] = data.success_url

        payload = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": {
                        "email": data.user_email,
                        "name": data.user_name or data.user_email,
                        "custom": custom,
                    },
                    "product_options": product_options,
                    "test_mode": not config.live_mode,
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": creds.store_id}},
                    "variant": {"data": {"type": "variants", "id": variant_id}},
                },
            }
        }

        response = await self._request("create checkout", "POST", "/checkouts", creds.api_key, payload)
        if response.is_error:
            raise self._rejected("create checkout", response)

        body = response.json()
        checkout_url = (body.get("data") or {}).get("attributes", {}).get("url")
        if not checkout_url:
            raise ProviderError(
                self.name, "LemonSqueezy response missing checkout URL", code="invalid_response"
            )
        session_id = (body.get("data") or {}).get("id")
        return CheckoutSession(
            checkout_url=checkout_url,
            provider_session_id=str(session_id) if session_id else None,
        )

    async def get_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        creds = self.credentials(config, LemonSqueezyCredentials)
        response = await self._request(
            "get subscription", "GET", f"/subscriptions/{provider_subscription_id}", creds.api_key
        )
        if response.status_code == 404:
            return None
        if response.is_error:
            raise self._rejected("get subscription", response)

        return self._map_subscription(creds.variant_mapping, response.json().get("data") or {}, custom={})

    async def cancel_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> CancelResult:
        """Cancel at period end. LemonSqueezy answers 200 for already-cancelled subscriptions."""
        creds = self.credentials(config, LemonSqueezyCredentials)
        response = await self._request(
            "cancel subscription", "DELETE", f"/subscriptions/{provider_subscription_id}", creds.api_key
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise self._rejected("cancel subscription", response)
        if response.is_error:
            return CancelResult(
                success=False,
                error_message=f"LemonSqueezy cancel failed: {response.status_code}",
            )
        return CancelResult(success=True)

    def verify_signature(
        self,
        config: ProviderConfig,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        try:
            creds = config.credentials
            secret = getattr(creds, "signing_secret", "")
            if not secret:
                # Unsigned webhooks are accepted in test mode only
                return not config.live_mode

            signature = self.get_header(headers, self.signature_header).strip().lower()
            if not signature:
                return False
            expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
            return hmac.compare_digest(expected, signature)
        except Exception:
            logger.debug("LemonSqueezy signature check raised", exc_info=True)
            return False

    def to_canonical_events(
        self,
        config: ProviderConfig,
        raw_body: bytes,
    ) -> list[CanonicalEvent]:
        body = self.parse_json(raw_body)
        if body is None:
            logger.warning("LemonSqueezy webhook body is not a JSON object")
            return []

        meta = self.as_object(body.get("meta"))
        event_type = meta.get("event_name")
        resource = body.get("data")
        if not isinstance(event_type, str) or not event_type or not isinstance(resource, dict):
            return []

        mapper = self._mapper_for(event_type)
        if mapper is None:
            logger.debug(f"Ignoring LemonSqueezy event type {event_type}")
            return []

        attributes = self.as_object(resource.get("attributes"))
        event_id = meta.get("event_id") or (
            f"{event_type}:{resource.get('id')}:{attributes.get('updated_at') or attributes.get('created_at')}"
        )
        occurred_at = (
            _parse_datetime(meta.get("created_at"))
            or _parse_datetime(attributes.get("updated_at"))
            or utcnow()
        )

        try:
            name, data = mapper(
                config, event_type, resource, self.as_object(meta.get("custom_data")), occurred_at
            )
        except Exception as e:
            logger.warning(f"Dropping malformed LemonSqueezy {event_type} event {event_id}: {e}")
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
            "subscription_payment_success": self._subscription_invoice_event,
            "subscription_payment_failed": self._subscription_invoice_event,
            "order_created": self._order_event,
            "order_refunded": self._refund_event,
        }.get(event_type)

    def _variant_for_plan(self, creds: LemonSqueezyCredentials, plan_id: str) -> str:
        for variant_id, mapped_plan in creds.variant_mapping.items():
            if mapped_plan == plan_id:
                return variant_id
        # Plan ids are LemonSqueezy variant ids unless a mapping says otherwise
        return plan_id

    def _map_subscription(
        self,
        variant_mapping: Mapping[str, str],
        resource: dict,
        custom: dict,
    ) -> Subscription:
        attributes = self.as_object(resource.get("attributes"))
        provider_subscription_id = str(resource.get("id") or "")
        if not provider_subscription_id:
            raise ValueError("subscription id missing")

        variant_id = str(attributes.get("variant_id") or "")
        plan_id = custom.get("plan_id") or variant_mapping.get(variant_id, variant_id)
        user_id = custom.get("user_id") or str(attributes.get("customer_id") or "")

        return Subscription(
            id=f"{self.name}:{provider_subscription_id}",
            provider=self.name,
            provider_subscription_id=provider_subscription_id,
            plan_id=str(plan_id),
            user_id=str(user_id),
            status=STATUS_MAP.get(attributes.get("status"), SubscriptionStatus.ACTIVE),
            current_period_end=_parse_datetime(attributes.get("ends_at"))
            or _parse_datetime(attributes.get("renews_at")),
        )

    def _subscription_event(self, config, event_type, resource, custom, occurred_at):
        variant_mapping = getattr(config.credentials, "variant_mapping", {})
        subscription = self._map_subscription(variant_mapping, resource, custom)
        return SUBSCRIPTION_EVENTS[event_type], subscription.model_dump(mode="json")

    def _subscription_invoice_event(self, config, event_type, resource, custom, occurred_at):
        attributes = self.as_object(resource.get("attributes"))
        paid = event_type == "subscription_payment_success"
        subscription_id = attributes.get("subscription_id")
        invoice = Invoice(
            id=f"{self.name}:invoice:{resource['id']}",
            subscription_id=f"{self.name}:{subscription_id}" if subscription_id else None,
            user_id=custom.get("user_id"),
            amount_cents=int(attributes.get("total") or 0),
            currency=str(attributes.get("currency") or config.default_currency).upper(),
            status=InvoiceStatus.PAID if paid else InvoiceStatus.FAILED,
            provider=self.name,
            issued_at=_parse_datetime(attributes.get("created_at")) or occurred_at,
        )
        name = CanonicalEventName.INVOICE_PAID if paid else CanonicalEventName.INVOICE_PAYMENT_FAILED
        return name, invoice.model_dump(mode="json")

    def _order_event(self, config, event_type, resource, custom, occurred_at):
        attributes = self.as_object(resource.get("attributes"))
        subscription_id = attributes.get("subscription_id")
        status = attributes.get("status")
        invoice = Invoice(
            id=f"{self.name}:order:{resource['id']}",
            subscription_id=f"{self.name}:{subscription_id}" if subscription_id else None,
            user_id=custom.get("user_id"),
            amount_cents=int(attributes.get("total") or 0),
            currency=str(attributes.get("currency") or config.default_currency).upper(),
            status=InvoiceStatus.FAILED if status == "failed" else (
                InvoiceStatus.OPEN if status == "pending" else InvoiceStatus.PAID
            ),
            provider=self.name,
            issued_at=_parse_datetime(attributes.get("created_at")) or occurred_at,
        )
        name = (
            CanonicalEventName.INVOICE_PAYMENT_FAILED
            if invoice.status == InvoiceStatus.FAILED
            else CanonicalEventName.INVOICE_PAID
        )
        return name, invoice.model_dump(mode="json")

    def _refund_event(self, config, event_type, resource, custom, occurred_at):
        attributes = self.as_object(resource.get("attributes"))
        order_id = resource["id"]
        refund = Refund(
            id=f"{self.name}:refund:{order_id}",
            invoice_id=f"{self.name}:order:{order_id}",
            amount_cents=int(attributes.get("refunded_amount") or attributes.get("refund_amount") or 0),
            currency=str(attributes.get("currency") or config.default_currency).upper(),
            provider=self.name,
            created_at=_parse_datetime(attributes.get("refunded_at")) or occurred_at,
        )
        return CanonicalEventName.REFUND_CREATED, refund.model_dump(mode="json")


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); None when absent or invalid."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
