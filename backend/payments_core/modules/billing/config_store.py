"""Environment-backed provider configuration.

Every tenant shares the provider credentials found in settings. A provider
is enabled when its API key is set.
"""

import logging
from typing import Optional

from payments_core.core.config import Settings, settings as default_settings
from payments_core.modules.billing.ports import ProviderConfigStore
from payments_core.modules.billing.schemas import ProviderConfig

logger = logging.getLogger(__name__)


class SettingsConfigStore(ProviderConfigStore):
    def __init__(self, app_settings: Optional[Settings] = None):
        self.settings = app_settings or default_settings

    def _credentials(self, provider: str) -> Optional[dict]:
        s = self.settings
        if provider == "lemonsqueezy" and s.LEMONSQUEEZY_API_KEY:
            if not s.LEMONSQUEEZY_WEBHOOK_SECRET:
                logger.warning("LEMONSQUEEZY_WEBHOOK_SECRET not set; webhooks verify only in test mode")
            return {
                "api_key": s.LEMONSQUEEZY_API_KEY,
                "store_id": s.LEMONSQUEEZY_STORE_ID,
                "signing_secret": s.LEMONSQUEEZY_WEBHOOK_SECRET,
                "variant_mapping": s.LEMONSQUEEZY_VARIANT_MAPPING,
            }
        if provider == "stripe" and s.STRIPE_SECRET_KEY:
            return {
                "secret_key": s.STRIPE_SECRET_KEY,
                "webhook_secret": s.STRIPE_WEBHOOK_SECRET,
                "price_mapping": s.STRIPE_PRICE_MAPPING,
            }
        return None

    async def get_config(self, tenant_id: str, provider: str) -> Optional[ProviderConfig]:
        credentials = self._credentials(provider)
        if credentials is None:
            return None
        return ProviderConfig(
            provider=provider,
            tenant_id=tenant_id,
            live_mode=self.settings.LIVE_MODE,
            credentials=credentials,
            default_currency=self.settings.DEFAULT_CURRENCY,
        )

    async def list_enabled_providers(self, tenant_id: str) -> list[ProviderConfig]:
        configs = []
        for provider in ("lemonsqueezy", "stripe"):
            config = await self.get_config(tenant_id, provider)
            if config is not None:
                configs.append(config)
        return configs
