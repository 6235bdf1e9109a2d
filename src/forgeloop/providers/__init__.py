"""Backend adapters and provider routing."""

from forgeloop.providers.backends import AiderAdapter, ClaudeAdapter, CodexAdapter
from forgeloop.providers.base import (
    COMPLETION_MARKER,
    AdapterResponse,
    BaseProviderAdapter,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderHealth,
    SendOptions,
)
from forgeloop.providers.manager import ProviderManager, ProviderSwitch
from forgeloop.providers.mock import MockProviderAdapter
from forgeloop.providers.registry import ProviderRegistry, create_adapters
from forgeloop.providers.subprocess_adapter import SubprocessProviderAdapter
from forgeloop.providers.taxonomy import ErrorClassifier, classify_message

__all__ = [
    "COMPLETION_MARKER",
    "AdapterResponse",
    "AiderAdapter",
    "BaseProviderAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "ErrorClassifier",
    "MockProviderAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderHealth",
    "ProviderManager",
    "ProviderRegistry",
    "ProviderSwitch",
    "SendOptions",
    "SubprocessProviderAdapter",
    "classify_message",
    "create_adapters",
]
