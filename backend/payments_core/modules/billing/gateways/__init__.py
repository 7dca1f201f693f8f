"""Provider adapter implementations."""

from payments_core.modules.billing.gateways.lemonsqueezy import LemonSqueezyGateway
from payments_core.modules.billing.gateways.stripe import StripeGateway

__all__ = [
    "LemonSqueezyGateway",
    "StripeGateway",
]
