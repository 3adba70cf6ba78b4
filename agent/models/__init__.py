"""
Model backends and provider selection.
"""
from typing import Tuple

from config import APIKeysConfig

from .types import ModelBackend, ModelMessage, ModelStreamEvent, ToolDefinition

PROVIDERS = ("anthropic", "openai", "deepseek", "zhipu")


def split_model_id(model: str) -> Tuple[str, str]:
    """``"deepseek/deepseek-chat"`` -> ``("deepseek", "deepseek-chat")``; no prefix -> ``("", model)``."""
    prefix, sep, rest = (model or "").partition("/")
    if sep and prefix in PROVIDERS:
        return prefix, rest
    return "", model


def resolve_provider(model: str, keys: APIKeysConfig) -> str:
    """An explicit provider prefix wins; otherwise pick from available keys."""
    provider, _ = split_model_id(model)
    if provider:
        return provider
    for name in PROVIDERS:
        if getattr(keys, name):
            return name
    return "anthropic"


def create_backend(model: str, keys: APIKeysConfig) -> ModelBackend:
    """Factory: create a ModelBackend for the configured model id."""
    provider = resolve_provider(model, keys)
    if provider == "anthropic":
        from .anthropic_backend import AnthropicBackend
        return AnthropicBackend(keys.anthropic)

    from .openai_backend import DEEPSEEK_BASE_URL, ZHIPU_BASE_URL, OpenAIBackend
    if provider == "deepseek":
        return OpenAIBackend(keys.deepseek, base_url=DEEPSEEK_BASE_URL, name="deepseek")
    if provider == "zhipu":
        return OpenAIBackend(keys.zhipu, base_url=ZHIPU_BASE_URL, name="zhipu")
    return OpenAIBackend(keys.openai)


__all__ = [
    "ModelBackend",
    "ModelMessage",
    "ModelStreamEvent",
    "ToolDefinition",
    "create_backend",
    "resolve_provider",
    "split_model_id",
]
