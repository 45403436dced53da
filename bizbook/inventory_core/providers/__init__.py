"""
Provider module for the inventory core.

Holds the process-wide provider registry and the file storage providers.

Invariants:
    - The registry is populated at startup and read-only afterwards
    - Exactly one default provider per type once startup completes
"""

from .registry import (
    ProviderRegistry,
    ProviderType,
    get_provider_registry,
    register_default_providers,
    reset_provider_registry,
)
from .storage import (
    LocalStorageProvider,
    S3StorageProvider,
    StorageProvider,
    create_storage_provider,
)

__all__ = [
    "ProviderRegistry",
    "ProviderType",
    "get_provider_registry",
    "register_default_providers",
    "reset_provider_registry",
    "StorageProvider",
    "S3StorageProvider",
    "LocalStorageProvider",
    "create_storage_provider",
]
