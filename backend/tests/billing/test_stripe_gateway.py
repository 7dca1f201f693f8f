"""Tests for the Stripe adapter.

The stripe SDK client is replaced by an in-file fake; signatures are built
with Stripe's ``t=<timestamp>,v1=<hmac>`` scheme and checked by the real SDK.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from hypothesis import given, settings, strategies as st

from payments_core.modules.billing.errors import ProviderError, SubscriptionNotFoundError
from payments_core.modules.billing.gateways.stripe import StripeGateway
from payments_core.modules.billing.schemas import (
    CanonicalEventName,
    CheckoutData,
    ProviderConfig,
    SubscriptionStatus,
)

WEBHOOK_SECRET = "whsec_test"
NOW = 1_760_000_000


def make_config(**credentials) -> ProviderConfig:
    creds = {"secret_key": "sk_test_1", "webhook_secret": WEBHOOK_SECRET}
    creds.update(credentials)
    return ProviderConfig(provider="stripe", tenant_id="tenant-1", credentials=creds)


def stripe_header(body: bytes, timestamp=None, secret: str = WEBHOOK_SECRET) -> str:
    if timestamp is None:
        timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_body(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "created": NOW, "data": {"object": obj}}).encode()


SUBSCRIPTION = {
    "id": "sub_1",
    "customer": "cus_1",
    "status": "active",
    "metadata": {"user_id": "user-1"},
    "items": {"data": [{"price": {"id": "price_pro"}, "current_period_end": NOW + 86400}]},
}


class FakeStripe:
    """Records SDK calls; each resource method returns a canned dict."""

    def __init__(self, subscription=None, session=None, retrieve_error=None):
        self.calls = []
        self._subscription = subscription or dict(SUBSCRIPTION)
        self._session = session or {"id": "cs_1", "url": "https://checkout.stripe.com/c/pay/cs_1"}
        self._retrieve_error = retrieve_error
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._create_session))
        self.Subscription = SimpleNamespace(retrieve=self._retrieve, cancel=self._cancel)

    def _create_session(self, **kwargs):
        self.calls.append(("checkout.Session.create", kwargs))
        return self._session

    def _retrieve(self, subscription_id, api_key=None):
        self.calls.append(("Subscription.retrieve", subscription_id, api_key))
        if self._retrieve_error:
            raise self._retrieve_error
        return self._subscription

    def _cancel(self, subscription_id, api_key=None):
        self.calls.append(("Subscription.cancel", subscription_id, api_key))
        return {**self._subscription, "status": "canceled"}


class TestStripeApi:

    @pytest.mark.asyncio
    async def test_checkout_uses_mapped_price_and_metadata(self) -> None:
        client = FakeStripe()
        gateway = StripeGateway(client=client)

        session = await gateway.create_checkout_session(
            make_config(price_mapping={"price_pro": "plan-pro"}),
            CheckoutData(
                tenant_id="tenant-1",
                plan_id="plan-pro",
                user_id="user-1",
                user_email="a@b.co",
                success_url="https://app.example/ok",
            ),
        )

        assert session.checkout_url == "https://checkout.stripe.com/c/pay/cs_1"
        _, kwargs = client.calls[0]
        assert kwargs["api_key"] == "sk_test_1"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert kwargs["subscription_data"]["metadata"]["plan_id"] == "plan-pro"
        assert kwargs["success_url"] == "https://app.example/ok"
        assert "cancel_url" not in kwargs

    @pytest.mark.asyncio
    async def test_get_subscription_maps_fields(self) -> None:
        gateway = StripeGateway(client=FakeStripe())

        subscription = await gateway.get_subscription(
            make_config(price_mapping={"price_pro": "plan-pro"}), "sub_1"
        )

        assert subscription.id == "stripe:sub_1"
        assert subscription.plan_id == "plan-pro"
        assert subscription.user_id == "user-1"
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end is not None

    @pytest.mark.asyncio
    async def test_missing_subscription_returns_none(self) -> None:
        error = stripe.InvalidRequestError("No such subscription", "id", http_status=404)
        gateway = StripeGateway(client=FakeStripe(retrieve_error=error))

        assert await gateway.get_subscription(make_config(), "sub_missing") is None

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self) -> None:
        gateway = StripeGateway(client=FakeStripe(retrieve_error=stripe.APIConnectionError("down")))

        with pytest.raises(ProviderError) as exc_info:
            await gateway.get_subscription(make_config(), "sub_1")

        assert exc_info.value.transient is True
        assert exc_info.value.code == "unreachable"

    @pytest.mark.asyncio
    async def test_cancel_already_canceled_is_success_without_cancel_call(self) -> None:
        client = FakeStripe(subscription={**SUBSCRIPTION, "status": "canceled"})
        gateway = StripeGateway(client=client)

        result = await gateway.cancel_subscription(make_config(), "sub_1")

        assert result.success is True
        assert [c[0] for c in client.calls] == ["Subscription.retrieve"]

    @pytest.mark.asyncio
    async def test_cancel_active_subscription(self) -> None:
        client = FakeStripe()
        result = await StripeGateway(client=client).cancel_subscription(make_config(), "sub_1")

        assert result.success is True
        assert client.calls[-1] == ("Subscription.cancel", "sub_1", "sk_test_1")

    @pytest.mark.asyncio
    async def test_cancel_missing_subscription_raises_not_found(self) -> None:
        error = stripe.InvalidRequestError("No such subscription", "id", http_status=404)
        client = FakeStripe(retrieve_error=error)

        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await StripeGateway(client=client).cancel_subscription(make_config(), "sub_missing")

        assert exc_info.value.status_code == 404
        assert [c[0] for c in client.calls] == ["Subscription.retrieve"]


class TestStripeSignature:

    def test_valid_signature(self) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)

        assert StripeGateway().verify_signature(make_config(), body, {"Stripe-Signature": stripe_header(body)})

    @given(position=st.integers(min_value=0, max_value=10_000), flip=st.integers(min_value=1, max_value=255))
    @settings(max_examples=100, deadline=None)
    def test_flipped_byte_rejected(self, position: int, flip: int) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)
        header = stripe_header(body)
        index = position % len(body)
        tampered = body[:index] + bytes([body[index] ^ flip]) + body[index + 1:]

        assert not StripeGateway().verify_signature(make_config(), tampered, {"stripe-signature": header})

    def test_wrong_secret_rejected(self) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)
        header = stripe_header(body, secret="whsec_other")

        assert not StripeGateway().verify_signature(make_config(), body, {"stripe-signature": header})

    def test_stale_timestamp_rejected(self) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)
        header = stripe_header(body, timestamp=int(time.time()) - 301)

        assert not StripeGateway(tolerance_seconds=300).verify_signature(
            make_config(), body, {"stripe-signature": header}
        )

    def test_any_matching_v1_signature_accepted(self) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)
        signed = stripe_header(body)
        timestamp, valid = signed.split(",v1=")
        header = f"{timestamp},v1={'0' * 64},v1={valid}"

        assert StripeGateway().verify_signature(make_config(), body, {"stripe-signature": header})

    @pytest.mark.parametrize("header", ["", "garbage", "t=abc,v1=ff", "v1=ff"])
    def test_malformed_header_rejected(self, header: str) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)

        assert not StripeGateway().verify_signature(make_config(), body, {"stripe-signature": header})

    def test_non_utf8_body_rejected(self) -> None:
        body = b"\xff\xfe" + event_body("customer.subscription.created", SUBSCRIPTION)

        assert not StripeGateway().verify_signature(
            make_config(), body, {"stripe-signature": stripe_header(body)}
        )

    def test_missing_secret_accepted_only_in_test_mode(self) -> None:
        body = event_body("customer.subscription.created", SUBSCRIPTION)
        test_mode = ProviderConfig(provider="stripe", tenant_id="t", credentials={"secret_key": "sk"})
        live = ProviderConfig(provider="stripe", tenant_id="t", live_mode=True, credentials={"secret_key": "sk"})

        assert StripeGateway().verify_signature(test_mode, body, {})
        assert not StripeGateway().verify_signature(live, body, {})


class TestStripeCanonicalEvents:

    @pytest.mark.parametrize(
        "event_type,canonical",
        [
            ("customer.subscription.created", CanonicalEventName.SUBSCRIPTION_CREATED),
            ("customer.subscription.updated", CanonicalEventName.SUBSCRIPTION_UPDATED),
            ("customer.subscription.deleted", CanonicalEventName.SUBSCRIPTION_CANCELED),
        ],
    )
    def test_subscription_events(self, event_type, canonical) -> None:
        [event] = StripeGateway().to_canonical_events(make_config(), event_body(event_type, SUBSCRIPTION))

        assert event.name == canonical.value
        assert event.provider_event_id == "evt_1"
        assert event.data["provider_subscription_id"] == "sub_1"

    def test_invoice_paid(self) -> None:
        invoice = {"id": "in_1", "subscription": "sub_1", "amount_paid": 2900, "currency": "usd", "created": NOW}

        [event] = StripeGateway().to_canonical_events(make_config(), event_body("invoice.paid", invoice))

        assert event.name == CanonicalEventName.INVOICE_PAID.value
        assert event.data["amount_cents"] == 2900
        assert event.data["subscription_id"] == "stripe:sub_1"

    def test_invoice_payment_failed_uses_amount_due(self) -> None:
        invoice = {"id": "in_2", "amount_due": 2900, "amount_paid": 0, "currency": "usd"}

        [event] = StripeGateway().to_canonical_events(make_config(), event_body("invoice.payment_failed", invoice))

        assert event.name == CanonicalEventName.INVOICE_PAYMENT_FAILED.value
        assert event.data["amount_cents"] == 2900
        assert event.data["status"] == "failed"

    def test_charge_refunded(self) -> None:
        charge = {
            "id": "ch_1",
            "invoice": "in_1",
            "amount_refunded": 500,
            "currency": "usd",
            "refunds": {"data": [{"id": "re_1", "created": NOW}]},
        }

        [event] = StripeGateway().to_canonical_events(make_config(), event_body("charge.refunded", charge))

        assert event.name == CanonicalEventName.REFUND_CREATED.value
        assert event.data["id"] == "stripe:refund:re_1"
        assert event.data["invoice_id"] == "stripe:invoice:in_1"

    def test_catalog_events(self) -> None:
        gateway = StripeGateway()
        [plan] = gateway.to_canonical_events(
            make_config(), event_body("product.updated", {"id": "prod_1", "name": "Pro", "active": True})
        )
        [price] = gateway.to_canonical_events(
            make_config(price_mapping={"price_1": "plan-pro"}),
            event_body(
                "price.created",
                {"id": "price_1", "product": "prod_1", "unit_amount": 1000, "currency": "usd",
                 "recurring": {"interval": "year"}},
                event_id="evt_2",
            ),
        )

        assert plan.name == CanonicalEventName.PLAN_UPDATED.value
        assert plan.data == {"id": "prod_1", "name": "Pro", "is_active": True}
        assert price.name == CanonicalEventName.PRICE_UPDATED.value
        assert price.data["plan_id"] == "plan-pro"
        assert price.data["interval"] == "year"

    def test_unhandled_type_is_omitted(self) -> None:
        body = event_body("payment_intent.created", {"id": "pi_1"})

        assert StripeGateway().to_canonical_events(make_config(), body) == []


json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False) | st.text(max_size=10),
    lambda children: st.lists(children, max_size=3) | st.dictionaries(st.text(max_size=8), children, max_size=3),
    max_leaves=10,
)


class TestStripeMalformedPayloads:

    @given(
        event_type=st.sampled_from(
            ["customer.subscription.updated", "invoice.paid", "charge.refunded", "price.updated", "product.created"]
        ),
        data=json_values,
        obj=json_values,
        created=json_values,
    )
    @settings(max_examples=200, deadline=None)
    def test_arbitrary_field_types_never_raise(self, event_type, data, obj, created) -> None:
        for data_field in (data, {"object": obj}):
            body = json.dumps({"id": "evt_1", "type": event_type, "created": created, "data": data_field}).encode()

            events = StripeGateway().to_canonical_events(make_config(), body)

            assert isinstance(events, list)

    @given(obj=st.dictionaries(st.sampled_from(["id", "customer", "status", "metadata", "items", "subscription",
                                                "amount_paid", "currency", "refunds", "product", "recurring"]),
                               json_values, max_size=8))
    @settings(max_examples=200, deadline=None)
    def test_arbitrary_object_fields_never_raise(self, obj) -> None:
        for event_type in ("customer.subscription.created", "invoice.payment_failed", "charge.refunded", "price.created"):
            events = StripeGateway().to_canonical_events(make_config(), event_body(event_type, obj))

            assert isinstance(events, list)
