"""Provider abstraction layer for multi-vendor API access.

Re-exports the public interface and the ``create_provider`` factory,
which picks the wire-format adapter for a provider type once, at
registration time::

    from switchboard.providers import create_provider

    adapter = create_provider(config.providers[ProviderType.GROQ])
"""

from switchboard.config import ProviderConfig
from switchboard.providers.anthropic import AnthropicProvider
from switchboard.providers.base import Provider
from switchboard.providers.google import GoogleProvider
from switchboard.providers.openai_compat import OpenAICompatibleProvider
from switchboard.types import ProviderType


def create_provider(config: ProviderConfig) -> Provider:
    """Build the adapter for a provider's wire format.

    Args:
        config: Provider configuration.

    Returns:
        An unopened adapter; enter it with ``async with`` before use.

    Raises:
        ValueError: If the provider needs an API key and has none.
    """
    if config.type == ProviderType.ANTHROPIC:
        return AnthropicProvider(
            config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            headers=config.headers,
        )
    if config.type == ProviderType.GOOGLE:
        return GoogleProvider(
            config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            headers=config.headers,
        )
    return OpenAICompatibleProvider(
        config.type,
        config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        headers=config.headers,
    )


__all__ = [
    "AnthropicProvider",
    "GoogleProvider",
    "OpenAICompatibleProvider",
    "Provider",
    "create_provider",
]
