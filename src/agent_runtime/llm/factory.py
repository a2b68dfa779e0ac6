"""
Provider routing for model clients.

``anthropic`` uses the native Anthropic SDK; ``openai`` and ``openrouter``
share the OpenAI SDK, OpenRouter through its OpenAI-compatible endpoint.
"""

from ..config import LLMConfig, Settings
from ..errors import ErrorKind, ModelCallError
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .openai import OpenAILLM

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# provider -> (client class, endpoint used when the config has none)
PROVIDERS: dict[str, tuple[type[BaseLLM], str | None]] = {
    "anthropic": (AnthropicLLM, None),
    "openai": (OpenAILLM, None),
    "openrouter": (OpenAILLM, OPENROUTER_BASE_URL),
}


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Build the model client for ``config`` (the default provider when omitted).

    Raises ``ModelCallError(PROVIDER_NOT_CONFIGURED)`` for an unknown
    provider or a missing API key.
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    try:
        llm_class, default_base_url = PROVIDERS[config.provider]
    except KeyError:
        raise ModelCallError(
            ErrorKind.PROVIDER_NOT_CONFIGURED,
            f"Unknown LLM provider: {config.provider}",
            provider=config.provider,
        ) from None

    if not config.api_key:
        raise ModelCallError(
            ErrorKind.PROVIDER_NOT_CONFIGURED,
            f"No API key configured for provider '{config.provider}'",
            provider=config.provider,
        )

    return llm_class(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url or default_base_url,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )
