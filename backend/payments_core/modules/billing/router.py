"""Billing HTTP API.

Provides endpoints for:
- Provider webhooks (raw body, signature verified per tenant)
- Checkout creation with optional Idempotency-Key
- Subscription fetch and cancel
- Enabled providers per tenant
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from payments_core.modules.billing.container import PaymentContainer
from payments_core.modules.billing.errors import BillingError, UnknownProviderError
from payments_core.modules.billing.schemas import (
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    ProviderInfo,
    SubscriptionResponse,
    WebhookStatusResponse,
    utcnow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_container(request: Request) -> PaymentContainer:
    """Billing container attached to the application at startup."""
    return request.app.state.billing


def _to_http(error: BillingError, status_code: Optional[int] = None) -> HTTPException:
    return HTTPException(status_code=status_code or error.status_code, detail=error.to_detail())


# ==================== Webhooks ====================

@router.post("/webhook/{provider}", response_class=PlainTextResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    x_tenant_id: Optional[str] = Header(None),
    container: PaymentContainer = Depends(get_container),
):
    """Receive a provider webhook.

    The tenant comes from the ``tenantId`` query parameter, then the
    ``X-Tenant-ID`` header, then the configured default tenant. Returns
    ``ok`` once every event is applied or skipped; 500 asks the provider
    to retry.
    """
    if provider not in container.registry:
        raise _to_http(UnknownProviderError(provider), status.HTTP_404_NOT_FOUND)

    raw_body = await request.body()
    if not raw_body:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "empty_body", "message": "Webhook body is empty"},
        )

    tenant = tenant_id or x_tenant_id or container.default_tenant_id
    try:
        outcome = await container.pipeline.handle(provider, tenant, raw_body, request.headers)
    except UnknownProviderError as e:
        raise _to_http(e, status.HTTP_404_NOT_FOUND)
    except BillingError as e:
        raise _to_http(e)

    if outcome.http_status != status.HTTP_200_OK:
        return PlainTextResponse("retry", status_code=outcome.http_status)
    return PlainTextResponse("ok")


@router.get("/webhook-status", response_model=WebhookStatusResponse)
async def webhook_status(container: PaymentContainer = Depends(get_container)):
    """Development helper: registered providers and the webhook URL shape."""
    return WebhookStatusResponse(
        providers=container.registry.names(),
        timestamp=utcnow(),
    )


# ==================== Checkout ====================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    data: CheckoutRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    container: PaymentContainer = Depends(get_container),
):
    """Create a provider-hosted checkout and return its URL."""
    try:
        session = await container.service.create_checkout(
            data.to_checkout_data(), idempotency_key=idempotency_key
        )
    except BillingError as e:
        raise _to_http(e)

    return CheckoutResponse(
        checkout_url=session.checkout_url,
        provider_session_id=session.provider_session_id,
    )


# ==================== Subscriptions ====================

@router.get(
    "/subscriptions/{provider}/{provider_subscription_id}",
    response_model=SubscriptionResponse,
)
async def get_subscription(
    provider: str,
    provider_subscription_id: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    container: PaymentContainer = Depends(get_container),
):
    try:
        subscription = await container.service.get_subscription(
            tenant_id or container.default_tenant_id, provider, provider_subscription_id
        )
    except BillingError as e:
        raise _to_http(e)
    return SubscriptionResponse(**subscription.model_dump())


@router.delete(
    "/subscriptions/{provider}/{provider_subscription_id}",
    response_model=CancelResponse,
)
async def cancel_subscription(
    provider: str,
    provider_subscription_id: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    container: PaymentContainer = Depends(get_container),
):
    try:
        result = await container.service.cancel_subscription(
            tenant_id or container.default_tenant_id, provider, provider_subscription_id
        )
    except BillingError as e:
        raise _to_http(e)
    return CancelResponse(success=result.success, provider_subscription_id=provider_subscription_id)


# ==================== Providers ====================

@router.get("/providers", response_model=list[ProviderInfo])
async def list_providers(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    container: PaymentContainer = Depends(get_container),
):
    """Providers enabled for the tenant. Credentials are not exposed."""
    configs = await container.service.list_providers(tenant_id or container.default_tenant_id)
    return [
        ProviderInfo(
            provider=c.provider,
            live_mode=c.live_mode,
            default_currency=c.default_currency,
        )
        for c in configs
    ]
