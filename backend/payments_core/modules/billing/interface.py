"""Payment Provider Interface - abstract base class for all provider adapters.

Defines the five capabilities every provider adapter implements against its
provider's wire protocol. Adapters hold no per-tenant state: the tenant's
ProviderConfig is passed into every call, so one adapter instance serves
every tenant concurrently.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Optional, TypeVar

from payments_core.modules.billing.errors import ProviderError
from payments_core.modules.billing.schemas import (
    CancelResult,
    CanonicalEvent,
    CheckoutData,
    CheckoutSession,
    ProviderConfig,
    ProviderCredentials,
    Subscription,
)

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=ProviderCredentials)


class PaymentProviderInterface(ABC):
    """Abstract interface for all payment provider adapters.

    ``create_checkout_session``, ``get_subscription`` and
    ``cancel_subscription`` raise ProviderError on transport or API failure
    and never retry. ``verify_signature`` and ``to_canonical_events`` are
    pure and never raise.
    """

    #: Registry key and the ``provider`` field of emitted events
    name: str = ""

    #: Header carrying the webhook signature
    signature_header: str = "x-signature"

    @abstractmethod
    async def create_checkout_session(
        self,
        config: ProviderConfig,
        data: CheckoutData,
    ) -> CheckoutSession:
        """Create a provider-hosted checkout.

        Args:
            config: Tenant configuration for this provider
            data: Checkout request

        Returns:
            CheckoutSession with the URL to redirect the user to

        Raises:
            ProviderError: Provider unreachable or request rejected
        """
        pass

    @abstractmethod
    async def get_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        """Fetch a subscription snapshot; None when the provider does not know it."""
        pass

    @abstractmethod
    async def cancel_subscription(
        self,
        config: ProviderConfig,
        provider_subscription_id: str,
    ) -> CancelResult:
        """Cancel a subscription. Cancelling twice reports success."""
        pass

    @abstractmethod
    def verify_signature(
        self,
        config: ProviderConfig,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        """Check the webhook signature over the exact raw bytes.

        Must compare in constant time and return False on any parsing error.
        """
        pass

    @abstractmethod
    def to_canonical_events(
        self,
        config: ProviderConfig,
        raw_body: bytes,
    ) -> list[CanonicalEvent]:
        """Convert a verified webhook body to canonical events.

        Unknown event types are omitted, never raised.
        """
        pass

    # ==================== Shared helpers ====================

    def credentials(self, config: ProviderConfig, model: type[C]) -> C:
        """Return the config's credentials, checked against the adapter's model."""
        if not isinstance(config.credentials, model):
            raise ProviderError(
                self.name,
                f"{self.name} credentials missing from configuration",
                code="credentials_not_configured",
            )
        return config.credentials

    @staticmethod
    def get_header(headers: Mapping[str, str], name: str) -> str:
        """Case-insensitive header lookup returning '' when absent."""
        wanted = name.lower()
        for key, value in headers.items():
            if key.lower() == wanted:
                return value or ""
        return ""

    @staticmethod
    def parse_json(raw_body: bytes) -> Optional[dict[str, Any]]:
        """Decode a JSON object body, or None when it is not one."""
        try:
            body = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def as_object(value: Any) -> dict[str, Any]:
        """``value`` when it is a JSON object, else an empty dict."""
        return value if isinstance(value, dict) else {}
