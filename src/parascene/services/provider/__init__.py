"""Provider server integration."""

from parascene.services.provider.client import ProviderClient, ProviderImage

__all__ = ["ProviderClient", "ProviderImage"]
