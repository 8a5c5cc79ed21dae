"""Upstream generation provider adapters.

``build_registry`` wires every bundled adapter into a ProviderRegistry.
Adapters are constructed from application settings only when asked for.
"""

from ..streaming.provider import ProviderRegistry, StreamProvider
from ..utils.config import Settings
from .anthropic import AnthropicProvider
from .ollama import OllamaProvider
from .openai_compat import OpenAICompatibleProvider


def _create_anthropic(settings: Settings) -> StreamProvider:
    cfg = settings.llm.anthropic
    return AnthropicProvider(
        api_key=settings.anthropic_api_key,
        model=cfg.model,
        max_tokens=cfg.max_tokens,
        timeout=cfg.timeout,
        temperature=cfg.temperature,
    )


def _create_openrouter(settings: Settings) -> StreamProvider:
    cfg = settings.llm.openrouter
    # Free tier routes to openrouter/free with reasoning enabled
    return OpenAICompatibleProvider(
        name="openrouter",
        api_key=settings.openrouter_api_key,
        base_url=cfg.base_url,
        model="openrouter/free" if cfg.use_free_models else cfg.model,
        max_tokens=cfg.max_tokens,
        timeout=cfg.timeout,
        temperature=cfg.temperature,
        extra_body={"reasoning": {"enabled": True}} if cfg.use_free_models else None,
    )


def _create_nvidia(settings: Settings) -> StreamProvider:
    cfg = settings.llm.nvidia
    return OpenAICompatibleProvider(
        name="nvidia",
        api_key=settings.nvidia_api_key,
        base_url=cfg.base_url,
        model=cfg.model,
        max_tokens=cfg.max_tokens,
        timeout=cfg.timeout,
        temperature=cfg.temperature,
        extra_body={"chat_template_kwargs": {"thinking": True}},
    )


def _create_ollama(settings: Settings) -> StreamProvider:
    cfg = settings.llm.ollama
    return OllamaProvider(
        base_url=cfg.base_url,
        model=cfg.model,
        timeout=cfg.timeout,
        temperature=cfg.temperature,
    )


def build_registry() -> ProviderRegistry:
    """Registry with all bundled adapters."""
    registry = ProviderRegistry()
    registry.register("anthropic", _create_anthropic, aliases=("claude",))
    registry.register("openrouter", _create_openrouter)
    registry.register("nvidia", _create_nvidia, aliases=("nim",))
    registry.register("ollama", _create_ollama, aliases=("local",))
    return registry


__all__ = [
    "AnthropicProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "build_registry",
]
