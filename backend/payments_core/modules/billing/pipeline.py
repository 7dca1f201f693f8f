"""Webhook pipeline.

received -> signature checked -> {rejected | deduped | normalized}
-> persisted -> published -> marked processed -> acknowledged.

Each canonical event is applied at most once per (provider, event id):
the inbox filters replays, and in strict mode the idempotency store closes
the window between two concurrent deliveries of the same event. The inbox
is marked only after persistence and publish both succeed, so a failed
event is retried in full on the provider's next delivery.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from payments_core.core.config import settings
from payments_core.core.logging import billing_context, log_error
from payments_core.core.metrics import record_webhook_delivery, record_webhook_event
from payments_core.core.tracing import add_span_attributes, create_span, record_exception
from payments_core.modules.billing.errors import (
    BillingError,
    ConfigNotFoundError,
    PersistenceError,
    SignatureInvalidError,
)
from payments_core.modules.billing.ports import (
    BillingPersistencePort,
    DomainEventPublisher,
    IdempotencyStore,
    ProviderConfigStore,
    WebhookInbox,
)
from payments_core.modules.billing.registry import ProviderRegistry
from payments_core.modules.billing.schemas import (
    CanonicalEvent,
    CanonicalEventName,
    Invoice,
    Plan,
    Price,
    Refund,
    Subscription,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
IGNORED = "ignored"
FAILED = "failed"


@dataclass
class EventResult:
    provider_event_id: str
    name: str
    outcome: str
    error: Optional[str] = None


@dataclass
class WebhookOutcome:
    """Result of one delivery. ``http_status`` is what the provider should see."""

    provider: str
    tenant_id: str
    events: list[EventResult] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(1 for e in self.events if e.outcome == APPLIED)

    @property
    def skipped(self) -> int:
        return sum(1 for e in self.events if e.outcome in (SKIPPED, IGNORED))

    @property
    def failed(self) -> int:
        return sum(1 for e in self.events if e.outcome == FAILED)

    @property
    def status(self) -> str:
        return "failed" if self.failed else "ok"

    @property
    def http_status(self) -> int:
        return 500 if self.failed else 200


Handler = Callable[[CanonicalEvent], Awaitable[None]]


class WebhookPipeline:
    """Turns a raw provider webhook into applied, published canonical events."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config_store: ProviderConfigStore,
        inbox: WebhookInbox,
        persistence: BillingPersistencePort,
        publisher: DomainEventPublisher,
        idempotency: Optional[IdempotencyStore] = None,
        strict_idempotency: Optional[bool] = None,
    ):
        self.registry = registry
        self.config_store = config_store
        self.inbox = inbox
        self.persistence = persistence
        self.publisher = publisher
        self.idempotency = idempotency
        if strict_idempotency is None:
            strict_idempotency = settings.WEBHOOK_STRICT_IDEMPOTENCY
        if strict_idempotency and idempotency is None:
            raise ValueError("Strict webhook idempotency requires an idempotency store")
        self.strict_idempotency = strict_idempotency
        # Apply tasks still running, including ones whose request was cancelled
        self._inflight: set[asyncio.Task] = set()

        self._handlers: dict[str, Handler] = {
            CanonicalEventName.SUBSCRIPTION_CREATED.value: self._apply_subscription,
            CanonicalEventName.SUBSCRIPTION_UPDATED.value: self._apply_subscription,
            CanonicalEventName.SUBSCRIPTION_CANCELED.value: self._apply_subscription,
            CanonicalEventName.INVOICE_PAID.value: self._apply_invoice,
            CanonicalEventName.INVOICE_PAYMENT_FAILED.value: self._apply_invoice,
            CanonicalEventName.REFUND_CREATED.value: self._apply_refund,
            CanonicalEventName.PLAN_UPDATED.value: self._apply_plan,
            CanonicalEventName.PRICE_UPDATED.value: self._apply_price,
        }

    async def handle(
        self,
        provider: str,
        tenant_id: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            provider: Provider name from the route
            tenant_id: Tenant the delivery belongs to
            raw_body: Exact request bytes, as signed by the provider
            headers: Request headers

        Returns:
            WebhookOutcome; ``http_status`` 500 when any event failed

        Raises:
            UnknownProviderError: No adapter registered for ``provider``
            ConfigNotFoundError: Provider not enabled for the tenant
            SignatureInvalidError: Signature did not verify
        """
        started = time.perf_counter()
        with billing_context(provider=provider, tenant_id=tenant_id), create_span(
            "billing.webhook",
            attributes={"billing.provider": provider, "billing.tenant_id": tenant_id},
        ):
            try:
                adapter = self.registry.require(provider)
                config = await self.config_store.get_config(tenant_id, provider)
                if config is None:
                    raise ConfigNotFoundError(tenant_id, provider)
                if not adapter.verify_signature(config, raw_body, headers):
                    raise SignatureInvalidError(provider)
            except BillingError as e:
                logger.warning(f"Webhook rejected: {e.message}")
                record_webhook_delivery(provider, "rejected", time.perf_counter() - started)
                raise

            try:
                events = adapter.to_canonical_events(config, raw_body)
            except Exception as e:
                log_error(logger, f"Normalizing {provider} webhook failed: {e}", e)
                record_exception(e)
                record_webhook_delivery(provider, "malformed", time.perf_counter() - started)
                return WebhookOutcome(provider=provider, tenant_id=tenant_id)

            logger.info(f"Webhook received with {len(events)} canonical event(s)")
            add_span_attributes({"billing.event_count": len(events)})

            outcome = WebhookOutcome(provider=provider, tenant_id=tenant_id)
            for index, event in enumerate(events):
                result = await self._process_event(event)
                outcome.events.append(result)
                if result.outcome == FAILED:
                    remaining = len(events) - index - 1
                    if remaining:
                        logger.warning(f"Deferring {remaining} event(s) to the provider's retry")
                    break

            record_webhook_delivery(provider, outcome.status, time.perf_counter() - started)
            return outcome

    async def _process_event(self, event: CanonicalEvent) -> EventResult:
        with billing_context(event_id=event.provider_event_id, event=event.name), create_span(
            "billing.webhook.event",
            attributes={"billing.event": event.name, "billing.event_id": event.provider_event_id},
        ):
            try:
                if await self.inbox.seen(event.provider, event.provider_event_id):
                    logger.info("Event already processed, skipping")
                    outcome = SKIPPED
                else:
                    outcome = await self._shielded_apply(event)
            except BillingError as e:
                log_error(logger, f"Event apply failed: {e.message}", e)
                record_exception(e)
                record_webhook_event(event.provider, event.name, FAILED)
                return EventResult(event.provider_event_id, event.name, FAILED, e.code)
            except Exception as e:
                log_error(logger, f"Unexpected error applying event: {e}", e)
                record_exception(e)
                record_webhook_event(event.provider, event.name, FAILED)
                return EventResult(event.provider_event_id, event.name, FAILED, "unexpected_error")

            record_webhook_event(event.provider, event.name, outcome)
            return EventResult(event.provider_event_id, event.name, outcome)

    async def _shielded_apply(self, event: CanonicalEvent) -> str:
        """Run the apply in its own task so a cancelled request cannot abort it."""
        task = asyncio.ensure_future(self._guarded_apply(event))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_detached_failure)
            raise

    async def drain(self) -> None:
        """Wait for apply tasks that outlived their request."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _guarded_apply(self, event: CanonicalEvent) -> str:
        if not self.strict_idempotency:
            return await self._apply_once(event)

        ran = False

        async def run() -> str:
            nonlocal ran
            ran = True
            return await self._apply_once(event)

        result = await self.idempotency.with_key(
            f"webhook:{event.provider}:{event.provider_event_id}", run
        )
        # A concurrent delivery applied it first
        return result if ran else SKIPPED

    async def _apply_once(self, event: CanonicalEvent) -> str:
        """Persist, publish, then mark processed."""
        handler = self._handlers.get(event.name)
        if handler is None:
            logger.warning(f"No handler for canonical event {event.name}, marking processed")
            await self.inbox.mark_processed(event.provider, event.provider_event_id)
            return IGNORED

        try:
            await handler(event)
        except BillingError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Persisting {event.name} {event.provider_event_id} failed: {e}"
            ) from e

        try:
            await self.publisher.publish(event.name, event.model_dump(mode="json"))
        except Exception as e:
            raise PersistenceError(
                f"Publishing {event.name} {event.provider_event_id} failed: {e}",
                code="publish_failed",
            ) from e

        await self.inbox.mark_processed(event.provider, event.provider_event_id)
        logger.info("Event applied")
        return APPLIED

    # ==================== Handlers ====================

    async def _apply_subscription(self, event: CanonicalEvent) -> None:
        subscription = Subscription.model_validate(event.data)
        await self.persistence.upsert_subscription(subscription)
        if subscription.user_id:
            await self.persistence.link_user_subscription(subscription.user_id, subscription.id)

    async def _apply_invoice(self, event: CanonicalEvent) -> None:
        await self.persistence.record_invoice(Invoice.model_validate(event.data))

    async def _apply_refund(self, event: CanonicalEvent) -> None:
        await self.persistence.record_refund(Refund.model_validate(event.data))

    async def _apply_plan(self, event: CanonicalEvent) -> None:
        await self.persistence.upsert_plan(Plan.model_validate(event.data))

    async def _apply_price(self, event: CanonicalEvent) -> None:
        await self.persistence.upsert_price(Price.model_validate(event.data))


def _log_detached_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        log_error(logger, f"Apply failed after its request was cancelled: {error}", error)
