"""
Process-level state holder.

InventoryCore wires every component of the core once, at startup:

    config -> provider registry -> backend, storage
           -> coordinator -> repositories (optionally cached)
           -> engines -> services

Invariants:
    - One backend (and so one connection pool) per core
    - The provider registry is only written during init()
    - shutdown() releases the backend and the storage provider and
      unregisters both

How to change safely:
    - New components are built in init() after the ones they depend on
    - Anything holding a connection must be closed in shutdown()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .backends import create_backend
from .config import AppConfig
from .inventory import DerivationEngine, InventoryMutationEngine, InventoryRebuilder
from .providers import (
    ProviderRegistry,
    ProviderType,
    create_storage_provider,
    get_provider_registry,
    register_default_providers,
)
from .repositories import (
    AssetRepository,
    CachedRepository,
    ItemRepository,
    PurchaseRepository,
    RelationshipRepository,
    SaleRepository,
)
from .schema import get_registry
from .services import ItemService, PurchaseService, SaleService
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)


class InventoryCore:
    """Owns the backend, repositories, engines and services of one process.

    Example:
        >>> core = InventoryCore(AppConfig.from_env())
        >>> await core.init()
        >>> await core.purchase_service.receive(purchase_id)
        >>> await core.shutdown()
    """

    def __init__(
        self,
        config: AppConfig,
        registry: Optional[ProviderRegistry] = None,
        backend: Any = None,
        storage: Any = None,
    ) -> None:
        """Initialize the core.

        Args:
            config: Application configuration
            registry: Provider registry (defaults to the process-wide one)
            backend: Pre-built backend, registered in place of the configured one
            storage: Pre-built storage provider
        """
        self.config = config
        self.registry = registry or get_provider_registry()
        self._backend_override = backend
        self._storage_override = storage
        self._initialized = False

        self.backend: Any = None
        self.storage: Any = None
        self.coordinator: Optional[TransactionCoordinator] = None
        self.repositories: Dict[str, Any] = {}
        self.mutations: Optional[InventoryMutationEngine] = None
        self.derivation: Optional[DerivationEngine] = None
        self.rebuilder: Optional[InventoryRebuilder] = None
        self.item_service: Optional[ItemService] = None
        self.purchase_service: Optional[PurchaseService] = None
        self.sale_service: Optional[SaleService] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _register_providers(self) -> None:
        if self._backend_override is None and self._storage_override is None:
            register_default_providers(self.config, self.registry)
            return
        backend = self._backend_override or create_backend(self.config)
        storage = self._storage_override or create_storage_provider(self.config.storage)
        self.registry.register(ProviderType.DATABASE, backend.name, backend)
        self.registry.set_default(ProviderType.DATABASE, backend.name)
        storage_name = self.config.storage.provider.value
        self.registry.register(ProviderType.STORAGE, storage_name, storage)
        self.registry.set_default(ProviderType.STORAGE, storage_name)

    def _wrap(self, repository: Any, methods: tuple = ("find_by_id", "find_all")) -> Any:
        if not self.config.cache.enabled:
            return repository
        return CachedRepository(repository, methods=methods, ttl=self.config.cache.ttl_seconds)

    async def init(self) -> None:
        """Connect the backend and build every component."""
        if self._initialized:
            return

        schema = get_registry()
        if not schema.frozen:
            schema.freeze()
        self._register_providers()
        self.backend = self.registry.get(ProviderType.DATABASE)
        self.storage = self.registry.get(ProviderType.STORAGE)
        await self.backend.connect()
        await self.storage.connect()

        self.coordinator = TransactionCoordinator(
            self.backend, logging_enabled=self.config.observability.transaction_logging
        )

        items = ItemRepository(self.backend, self.coordinator)
        purchases = PurchaseRepository(self.backend, self.coordinator)
        sales = SaleRepository(self.backend, self.coordinator)
        assets = AssetRepository(self.backend, self.coordinator)
        relationships = RelationshipRepository(self.backend, self.coordinator)

        self.repositories = {
            "Item": self._wrap(items),
            "Purchase": self._wrap(purchases),
            "Sale": self._wrap(sales),
            "Asset": self._wrap(assets),
            "Relationship": self._wrap(relationships),
        }
        for entity_type, repository in self.repositories.items():
            if entity_type != "Relationship":
                relationships.register_entity_repository(entity_type, repository)

        self.mutations = InventoryMutationEngine(
            self.repositories["Item"],
            self.coordinator,
            assets=self.repositories["Asset"],
            relationships=self.repositories["Relationship"],
        )
        self.derivation = DerivationEngine(
            self.repositories["Item"], self.repositories["Relationship"], self.coordinator
        )
        self.rebuilder = InventoryRebuilder(
            self.repositories["Item"],
            self.repositories["Purchase"],
            self.repositories["Sale"],
            self.coordinator,
        )
        self.item_service = ItemService(
            self.repositories["Item"],
            self.repositories["Relationship"],
            self.derivation,
            self.coordinator,
            storage=self.storage,
        )
        self.purchase_service = PurchaseService(
            self.repositories["Purchase"],
            self.repositories["Relationship"],
            self.mutations,
            self.coordinator,
        )
        self.sale_service = SaleService(
            self.repositories["Sale"],
            self.repositories["Relationship"],
            self.mutations,
            self.coordinator,
        )

        self._initialized = True
        logger.info(
            "Inventory core initialized",
            extra={
                "db_provider": self.backend.name,
                "cache_enabled": self.config.cache.enabled,
            },
        )

    async def shutdown(self) -> None:
        """Close the backend and storage provider."""
        if not self._initialized:
            return
        if self.backend is not None:
            await self.backend.close()
            self.registry.unregister(ProviderType.DATABASE, self.backend.name)
        if self.storage is not None:
            await self.storage.close()
            self.registry.unregister(ProviderType.STORAGE, self.config.storage.provider.value)
        self.repositories = {}
        self._initialized = False
        logger.info("Inventory core shut down")

    def repository(self, entity_type: str) -> Any:
        """Repository for an entity type ("Item", "Purchase", ...)."""
        return self.repositories[entity_type]

    async def health(self) -> Dict[str, Any]:
        status = await self.backend.health_check()
        status["schema"] = get_registry().fingerprint
        return status
