"""Provider registry: provider name -> adapter instance.

Populated once while the container is built, then frozen. Lookups are
plain dict reads and safe from concurrent requests.
"""

import logging
from typing import Iterable, Optional

from payments_core.modules.billing.errors import UnknownProviderError
from payments_core.modules.billing.interface import PaymentProviderInterface

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Mapping from provider name to PaymentProviderInterface."""

    def __init__(self, providers: Optional[Iterable[PaymentProviderInterface]] = None):
        self._providers: dict[str, PaymentProviderInterface] = {}
        self._frozen = False
        for provider in providers or ():
            self.register(provider.name, provider)

    def register(self, name: str, provider: PaymentProviderInterface) -> None:
        """Register an adapter under ``name``.

        Raises:
            RuntimeError: If the registry is already frozen
            ValueError: If the name is empty or already registered
        """
        if self._frozen:
            raise RuntimeError(f"Cannot register provider {name}: registry is frozen")
        if not name:
            raise ValueError("Provider name must not be empty")
        if name in self._providers:
            raise ValueError(f"Provider {name} is already registered")
        self._providers[name] = provider
        logger.info(f"Registered payment provider {name}")

    def freeze(self) -> "ProviderRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[PaymentProviderInterface]:
        return self._providers.get(name)

    def require(self, name: str) -> PaymentProviderInterface:
        """Look up an adapter.

        Raises:
            UnknownProviderError: If no adapter is registered under ``name``
        """
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name)
        return provider

    def names(self) -> list[str]:
        return list(self._providers.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)
