"""Backend registry: builds adapters from configuration."""

from __future__ import annotations

import logging
from typing import Any

from forgeloop.errors import ConfigurationError
from forgeloop.providers.backends import AiderAdapter, ClaudeAdapter, CodexAdapter
from forgeloop.providers.base import BaseProviderAdapter
from forgeloop.providers.mock import MockProviderAdapter
from forgeloop.providers.subprocess_adapter import SubprocessProviderAdapter
from forgeloop.providers.taxonomy import patterns_from_mapping

logger = logging.getLogger(__name__)

BACKENDS: dict[str, type[BaseProviderAdapter]] = {
    "claude": ClaudeAdapter,
    "codex": CodexAdapter,
    "aider": AiderAdapter,
    "command": SubprocessProviderAdapter,
    "mock": MockProviderAdapter,
}


class ProviderRegistry:
    """Registry of backend adapter classes."""

    def __init__(self) -> None:
        self._backends: dict[str, type[BaseProviderAdapter]] = dict(BACKENDS)

    def register(self, backend: str, adapter_cls: type[BaseProviderAdapter]) -> None:
        self._backends[backend] = adapter_cls

    def get(self, backend: str) -> type[BaseProviderAdapter] | None:
        return self._backends.get(backend)

    def list_backends(self) -> list[str]:
        return list(self._backends.keys())

    def detect_available(self) -> list[str]:
        """Built-in CLI backends whose binary is on PATH."""
        found: list[str] = []
        for backend, adapter_cls in self._backends.items():
            if not issubclass(adapter_cls, SubprocessProviderAdapter):
                continue
            if adapter_cls.default_binary and adapter_cls().available():
                found.append(backend)
        return found

    def create(self, spec: dict[str, Any]) -> BaseProviderAdapter:
        """Create an adapter from a provider config mapping.

        Recognised keys: ``name``, ``backend``, ``binary``, ``args``,
        ``model``, ``timeout``, ``env``, ``dangerous``, ``error_patterns``.
        """
        backend = str(spec.get("backend") or spec.get("name") or "")
        adapter_cls = self._backends.get(backend)
        if adapter_cls is None:
            raise ConfigurationError(f"Unknown provider backend: {backend!r}")

        problems = adapter_cls.validate_config(spec)
        if problems:
            raise ConfigurationError(
                f"Invalid config for provider {spec.get('name') or backend!r}: "
                + "; ".join(problems)
            )

        kwargs: dict[str, Any] = {"name": str(spec.get("name") or backend)}
        patterns = spec.get("error_patterns") or {}
        if patterns:
            kwargs["extra_error_patterns"] = patterns_from_mapping(patterns)
        if issubclass(adapter_cls, SubprocessProviderAdapter):
            for key in ("binary", "model", "timeout", "env", "cwd", "dangerous"):
                if spec.get(key) is not None:
                    kwargs[key] = spec[key]
            if spec.get("args"):
                kwargs["args"] = list(spec["args"])
            if spec.get("prompt_via_stdin") is not None:
                kwargs["prompt_via_stdin"] = bool(spec["prompt_via_stdin"])
        adapter = adapter_cls(**kwargs)
        logger.debug("Created provider %s (%s)", adapter.name, backend)
        return adapter


def create_adapters(specs: list[dict[str, Any]]) -> list[BaseProviderAdapter]:
    registry = ProviderRegistry()
    adapters = [registry.create(spec) for spec in specs]
    names = [adapter.name for adapter in adapters]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise ConfigurationError(f"Duplicate provider names: {sorted(duplicates)}")
    return adapters
