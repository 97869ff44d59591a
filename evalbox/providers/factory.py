"""Create providers from configuration."""

from collections.abc import Iterable

from evalbox.config import ProviderConfig, ToolConfig
from evalbox.exceptions import UnknownProviderError
from evalbox.providers import Provider
from evalbox.providers.conversation import ExecutorFactory
from evalbox.providers.mock import MockProvider
from evalbox.providers.openai_compatible import DEFAULT_BASE_URLS, OpenAICompatibleProvider


def create_provider(
    provider_config: ProviderConfig,
    available_tools: Iterable[ToolConfig] = (),
    executor_factory: ExecutorFactory | None = None,
) -> Provider:
    """Create a provider for the configured name.

    Args:
        provider_config: Provider settings
        available_tools: Tool configurations tasks may enable
        executor_factory: Optional factory for tool executors (defaults to Docker from env)

    Returns:
        Configured Provider instance
    """
    name = provider_config.name
    if name == "mock":
        return MockProvider(provider_config)
    if name in DEFAULT_BASE_URLS:
        return OpenAICompatibleProvider(
            provider_config,
            available_tools=available_tools,
            executor_factory=executor_factory,
        )
    raise UnknownProviderError(name)
