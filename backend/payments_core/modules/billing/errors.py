"""Billing error taxonomy.

Every error carries a machine-readable ``code`` and the HTTP status the API
boundary translates it to.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing core errors."""

    status_code: int = 500
    default_code: str = "billing_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConfigNotFoundError(BillingError):
    """No configuration for this provider and tenant (provider disabled)."""

    status_code = 404
    default_code = "config_not_found"

    def __init__(self, tenant_id: str, provider: str):
        super().__init__(f"No {provider} configuration for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.provider = provider


class UnknownProviderError(BillingError):
    """Provider name is not in the registry."""

    status_code = 400
    default_code = "unknown_provider"

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider: {provider}")
        self.provider = provider


class SignatureInvalidError(BillingError):
    """Webhook signature verification failed."""

    status_code = 401
    default_code = "signature_invalid"

    def __init__(self, provider: str):
        super().__init__(f"Invalid {provider} webhook signature")
        self.provider = provider


class ProviderError(BillingError):
    """Provider API unreachable, timed out, or rejected the request.

    ``transient`` marks failures the caller may retry with backoff.
    """

    status_code = 502
    default_code = "provider_error"

    def __init__(
        self,
        provider: str,
        message: str,
        code: Optional[str] = None,
        transient: bool = False,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message, code)
        self.provider = provider
        self.transient = transient
        self.upstream_status = upstream_status
        if self.code == "timeout":
            self.status_code = 504


class PersistenceError(BillingError):
    """Storage failed while applying a canonical event."""

    status_code = 500
    default_code = "persistence_error"


class SubscriptionNotFoundError(BillingError):
    status_code = 404
    default_code = "subscription_not_found"

    def __init__(self, provider: str, provider_subscription_id: str):
        super().__init__(f"Subscription {provider_subscription_id} not found at {provider}")
        self.provider = provider
        self.provider_subscription_id = provider_subscription_id
