"""
Provider registry.

A process-wide catalog of interchangeable backends, keyed by
(provider type, provider name). The inventory core looks up its database
backend and file storage here instead of importing concrete classes.

Invariants:
    - Re-registering the same (type, name) replaces the instance silently;
      the info log fires only the first time a pair is seen
    - get(type) with no name returns the default for that type
    - The registry is mutated only during startup

How to change safely:
    - New provider kinds get a new ProviderType member
    - Keep register_default_providers() the only place that reads
      DB_PROVIDER / STORAGE_PROVIDER
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..config import AppConfig

logger = logging.getLogger(__name__)

_global_registry: Optional[ProviderRegistry] = None
_registry_lock = threading.Lock()


class ProviderType(Enum):
    """Kinds of provider held by the registry."""

    DATABASE = "database"
    STORAGE = "storage"
    MONITORING = "monitoring"
    CACHE = "cache"


class ProviderRegistry:
    """Name-keyed catalog of provider instances.

    Example:
        >>> registry = ProviderRegistry()
        >>> registry.register(ProviderType.DATABASE, "otherdoc", backend)
        >>> registry.set_default(ProviderType.DATABASE, "otherdoc")
        >>> registry.get(ProviderType.DATABASE) is backend
        True
    """

    def __init__(self) -> None:
        self._providers: Dict[Tuple[ProviderType, str], Any] = {}
        self._defaults: Dict[ProviderType, str] = {}
        self._seen: set[Tuple[ProviderType, str]] = set()
        self._lock = threading.Lock()

    def register(self, provider_type: ProviderType, name: str, instance: Any) -> None:
        """Register (or replace) a provider instance."""
        key = (provider_type, name)
        with self._lock:
            self._providers[key] = instance
            first_sight = key not in self._seen
            self._seen.add(key)
        if first_sight:
            logger.info(
                "Registered provider",
                extra={"provider_type": provider_type.value, "provider_name": name},
            )

    def get(self, provider_type: ProviderType, name: Optional[str] = None) -> Any:
        """Look up a provider; None selects the default for the type.

        Raises:
            ConfigurationError: If nothing is registered under that key
        """
        if name is None:
            name = self._defaults.get(provider_type)
            if name is None:
                raise ConfigurationError(
                    f"No default {provider_type.value} provider configured"
                )
        try:
            return self._providers[(provider_type, name)]
        except KeyError:
            raise ConfigurationError(
                f"{provider_type.value} provider '{name}' is not registered"
            ) from None

    def get_all_of_type(self, provider_type: ProviderType) -> Dict[str, Any]:
        """All providers of one type, by name."""
        return {
            name: instance
            for (kind, name), instance in self._providers.items()
            if kind == provider_type
        }

    def is_registered(self, provider_type: ProviderType, name: str) -> bool:
        """Whether a (type, name) pair has an instance."""
        return (provider_type, name) in self._providers

    def set_default(self, provider_type: ProviderType, name: str) -> None:
        """Select the default provider of a type.

        Raises:
            ConfigurationError: If the name is not registered
        """
        if not self.is_registered(provider_type, name):
            raise ConfigurationError(
                f"Cannot select unregistered {provider_type.value} provider '{name}'"
            )
        self._defaults[provider_type] = name

    def unregister(self, provider_type: ProviderType, name: str) -> None:
        """Drop a provider (used on shutdown)."""
        with self._lock:
            self._providers.pop((provider_type, name), None)
            if self._defaults.get(provider_type) == name:
                del self._defaults[provider_type]


def get_provider_registry() -> ProviderRegistry:
    """Get the process-wide provider registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = ProviderRegistry()
        return _global_registry


def reset_provider_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None


def register_default_providers(
    config: AppConfig, registry: Optional[ProviderRegistry] = None
) -> ProviderRegistry:
    """Create the configured backend and storage and mark them default.

    Args:
        config: Loaded application configuration
        registry: Target registry (defaults to the process-wide one)

    Returns:
        The registry the providers were registered in

    Raises:
        ConfigurationError: If the configuration names an unknown provider
    """
    from ..backends import create_backend
    from .storage import create_storage_provider

    registry = registry or get_provider_registry()

    backend = create_backend(config)
    db_name = config.db_provider.value
    registry.register(ProviderType.DATABASE, db_name, backend)
    registry.set_default(ProviderType.DATABASE, db_name)

    storage = create_storage_provider(config.storage)
    storage_name = config.storage.provider.value
    registry.register(ProviderType.STORAGE, storage_name, storage)
    registry.set_default(ProviderType.STORAGE, storage_name)

    return registry
