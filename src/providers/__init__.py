"""Provider implementations.

Only the local simulated provider ships with the engine; real cloud providers
implement the Provider protocol in providers/base.py.
"""

from config import ConfigError, EngineConfig
from providers.base import Provider, ProviderError, TransientProviderError
from providers.local import LocalCloudProvider

PROVIDERS = {'local': LocalCloudProvider}


def get_provider(config: EngineConfig) -> Provider:
    """Build the configured provider.

    Raises:
        ConfigError: If the provider name is not known
    """
    if config.provider not in PROVIDERS:
        raise ConfigError(
            f"Unknown provider '{config.provider}'. "
            f"Supported: {', '.join(sorted(PROVIDERS))}"
        )
    return PROVIDERS[config.provider](config.cloud_path())


__all__ = [
    'PROVIDERS',
    'LocalCloudProvider',
    'Provider',
    'ProviderError',
    'TransientProviderError',
    'get_provider',
]
