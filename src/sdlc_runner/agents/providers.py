"""Provider registry: maps provider names to invoker factories.

A registry is an ordinary object owned by the composition root
(`sdlc_runner.app.Runtime`); nothing here is module-global, so tests
can build, mutate and `reset()` their own instance.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from ..config import AgentConfig
from ..constants import DEFAULT_PROVIDER, PROVIDER_ENV_VAR
from ..errors import UnknownProviderError
from .base import AgentInvoker, DryRunInvoker
from .command import CommandAgentInvoker

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[AgentConfig], AgentInvoker]


class ProviderRegistry:
    """Name -> factory mapping with lazily cached instances."""

    def __init__(self, config: Optional[AgentConfig] = None):
        self.config = config or AgentConfig()
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, AgentInvoker] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        if name in self._factories:
            logger.debug("Replacing provider factory %s", name)
            self._instances.pop(name, None)
        self._factories[name] = factory

    def get(self, name: str) -> AgentInvoker:
        if name not in self._factories:
            available = ", ".join(sorted(self._factories)) or "none"
            raise UnknownProviderError(f"Unknown provider '{name}' (available: {available})")
        if name not in self._instances:
            self._instances[name] = self._factories[name](self.config)
        return self._instances[name]

    def get_default(self) -> AgentInvoker:
        """Return the provider named by `SDLC_PROVIDER`, else the configured one."""
        name = os.environ.get(PROVIDER_ENV_VAR) or self.config.provider or DEFAULT_PROVIDER
        return self.get(name)

    def list_providers(self) -> list[str]:
        return sorted(self._factories)

    def has_provider(self, name: str) -> bool:
        return name in self._factories

    def clear_instances(self) -> None:
        self._instances.clear()

    def reset(self) -> None:
        """Drop every factory and cached instance."""
        self._factories.clear()
        self._instances.clear()


def build_provider_registry(
    config: Optional[AgentConfig] = None,
    extra: Optional[dict[str, ProviderFactory]] = None,
) -> ProviderRegistry:
    """Create a registry with the built-in providers registered."""
    registry = ProviderRegistry(config)
    registry.register("command", lambda cfg: CommandAgentInvoker(cfg))
    registry.register("dry-run", lambda cfg: DryRunInvoker(cfg))
    for name, factory in (extra or {}).items():
        registry.register(name, factory)
    return registry
