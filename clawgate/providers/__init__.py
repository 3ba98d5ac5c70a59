"""Backend providers for clawgate."""

from pathlib import Path
from typing import TYPE_CHECKING

from clawgate.providers.base import (
    BaseProvider,
    CanUseTool,
    ModelOption,
    ProviderError,
    ProviderEvent,
    ProviderUnavailableError,
    ToolDecision,
)
from clawgate.providers.claude_provider import ClaudeProvider
from clawgate.providers.litellm_provider import LiteLLMProvider
from clawgate.providers.opencode_provider import OpencodeProvider
from clawgate.session.manager import SessionRegistry

if TYPE_CHECKING:
    from clawgate.config.schema import Config

PROVIDERS = ("claude", "opencode", "litellm")


def available_providers() -> list[str]:
    """Provider names in menu order."""
    return list(PROVIDERS)


def get_provider(name: str, config: "Config", sessions: SessionRegistry) -> BaseProvider:
    """Build a provider variant from the shared configuration."""
    name = name.strip().lower()
    if name == "claude":
        return ClaudeProvider(config.providers.claude, sessions, workspace=Path(config.workspace_path))
    if name == "opencode":
        return OpencodeProvider(config.providers.opencode, sessions)
    if name == "litellm":
        return LiteLLMProvider(config.providers.litellm, sessions)
    raise ValueError(f"Unknown provider: {name}. Available: {', '.join(PROVIDERS)}")


__all__ = [
    "BaseProvider",
    "CanUseTool",
    "ClaudeProvider",
    "LiteLLMProvider",
    "ModelOption",
    "OpencodeProvider",
    "ProviderError",
    "ProviderEvent",
    "ProviderUnavailableError",
    "ToolDecision",
    "available_providers",
    "get_provider",
]
