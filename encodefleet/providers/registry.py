"""Provider selection by configuration."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from encodefleet.core.config import Settings, get_settings
from encodefleet.core.errors import ConfigurationError
from encodefleet.providers.base import ProviderAdapter

ProviderFactory = Callable[[Settings], ProviderAdapter]

_FACTORIES: Dict[str, ProviderFactory] = {}


def register_provider(name: str, factory: ProviderFactory) -> None:
    _FACTORIES[name] = factory


def _builtin_factories() -> Dict[str, ProviderFactory]:
    # Imported lazily so a deployment only needs the SDK of the provider it uses.
    def aws(settings: Settings) -> ProviderAdapter:
        from encodefleet.providers.aws import AWSProvider

        return AWSProvider.from_settings(settings)

    def digitalocean(settings: Settings) -> ProviderAdapter:
        from encodefleet.providers.digitalocean import DigitalOceanProvider

        return DigitalOceanProvider.from_settings(settings)

    return {"aws": aws, "digitalocean": digitalocean}


def get_provider(settings: Optional[Settings] = None) -> ProviderAdapter:
    """Build the provider adapter named by ``settings.PROVIDER``."""
    settings = settings or get_settings()
    factories = {**_builtin_factories(), **_FACTORIES}
    factory = factories.get(settings.PROVIDER)
    if factory is None:
        raise ConfigurationError(f"Unknown provider '{settings.PROVIDER}'")
    return factory(settings)
