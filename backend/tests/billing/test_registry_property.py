"""Property-based tests for the provider registry.

Tests that:
- Registered adapters are returned by name
- Unknown names raise UnknownProviderError
- A frozen registry rejects registration
"""

import string

import pytest
from hypothesis import given, settings, strategies as st

from payments_core.modules.billing.errors import UnknownProviderError
from payments_core.modules.billing.gateways import LemonSqueezyGateway, StripeGateway
from payments_core.modules.billing.registry import ProviderRegistry


provider_name_strategy = st.text(
    alphabet=string.ascii_lowercase + string.digits + "_",
    min_size=1,
    max_size=30,
)


class TestProviderRegistry:
    """Property tests for provider lookup."""

    @given(names=st.lists(provider_name_strategy, min_size=1, max_size=8, unique=True))
    @settings(max_examples=100)
    def test_registered_providers_are_returned_by_name(self, names: list[str]) -> None:
        registry = ProviderRegistry()
        adapters = {}
        for name in names:
            adapters[name] = LemonSqueezyGateway()
            registry.register(name, adapters[name])

        assert sorted(registry.names()) == sorted(names)
        assert len(registry) == len(names)
        for name in names:
            assert registry.require(name) is adapters[name]
            assert name in registry

    @given(name=provider_name_strategy)
    @settings(max_examples=100)
    def test_unknown_provider_raises(self, name: str) -> None:
        registry = ProviderRegistry([StripeGateway()])
        if name == "stripe":
            return

        assert registry.get(name) is None
        with pytest.raises(UnknownProviderError) as exc_info:
            registry.require(name)
        assert exc_info.value.provider == name
        assert exc_info.value.status_code == 400

    def test_frozen_registry_rejects_registration(self) -> None:
        registry = ProviderRegistry([LemonSqueezyGateway()]).freeze()

        assert registry.frozen
        with pytest.raises(RuntimeError):
            registry.register("stripe", StripeGateway())
        assert registry.names() == ["lemonsqueezy"]

    def test_duplicate_and_empty_names_rejected(self) -> None:
        registry = ProviderRegistry([LemonSqueezyGateway()])

        with pytest.raises(ValueError):
            registry.register("lemonsqueezy", LemonSqueezyGateway())
        with pytest.raises(ValueError):
            registry.register("", StripeGateway())

    def test_adapters_register_under_their_own_name(self) -> None:
        registry = ProviderRegistry([LemonSqueezyGateway(), StripeGateway()])

        assert isinstance(registry.require("lemonsqueezy"), LemonSqueezyGateway)
        assert isinstance(registry.require("stripe"), StripeGateway)
