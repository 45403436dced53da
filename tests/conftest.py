"""
Shared fixtures.

Every backend-parametrized fixture runs once per persistence provider:
SQLite on a temporary file, DynamoDB against the in-memory client double
and the in-process document store.
"""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from bizbook.inventory_core.backends.documentstore import DocumentStoreBackend
from bizbook.inventory_core.backends.keyvalue import KeyValueBackend
from bizbook.inventory_core.backends.otherdoc import OtherDocBackend
from bizbook.inventory_core.config import (
    AppConfig,
    CacheConfig,
    DatabaseProvider,
    DocumentStoreConfig,
    KeyValueConfig,
    OtherDocConfig,
    StorageConfig,
)
from bizbook.inventory_core.core import InventoryCore
from bizbook.inventory_core.providers import ProviderRegistry, reset_provider_registry
from bizbook.inventory_core.providers.storage import LocalStorageProvider
from bizbook.inventory_core.schema import reset_registry
from bizbook.inventory_core.transactions import RetryPolicy, TransactionCoordinator

from .fakes import FakeDynamoDB, no_sleep

BACKENDS = ("documentstore", "keyvalue", "otherdoc")


def make_backend(name: str, tmp_path: Any, fake: FakeDynamoDB) -> Any:
    """Unconnected backend of the given provider name."""
    if name == "documentstore":
        return DocumentStoreBackend(
            DocumentStoreConfig(path=str(tmp_path / "inventory.db"), wal_mode=False),
            connect_policy=RetryPolicy.never(),
        )
    if name == "keyvalue":
        return KeyValueBackend(
            KeyValueConfig(table_prefix="test_"),
            client_factory=fake.client_factory,
            connect_policy=RetryPolicy.never(),
            sleep=no_sleep,
        )
    return OtherDocBackend(OtherDocConfig())


@pytest.fixture(autouse=True)
def fresh_registries():
    """Each test starts from the built-in schema and an empty provider registry."""
    reset_registry()
    reset_provider_registry()
    yield
    reset_registry()
    reset_provider_registry()


@pytest.fixture
def fake_dynamodb() -> FakeDynamoDB:
    return FakeDynamoDB()


@pytest.fixture(params=BACKENDS)
def backend_name(request) -> str:
    return request.param


@pytest_asyncio.fixture
async def backend(backend_name, tmp_path, fake_dynamodb):
    """Connected backend, once per provider."""
    instance = make_backend(backend_name, tmp_path, fake_dynamodb)
    await instance.connect()
    yield instance
    await instance.close()


@pytest.fixture
def coordinator(backend) -> TransactionCoordinator:
    return TransactionCoordinator(backend, sleep=no_sleep, rand=lambda: 0.5)


def make_config(backend_name: str, tmp_path: Any, cache: bool = True) -> AppConfig:
    return AppConfig(
        db_provider=DatabaseProvider(backend_name),
        db_uri=str(tmp_path / "inventory.db"),
        storage=StorageConfig(bucket=str(tmp_path / "uploads")),
        cache=CacheConfig(enabled=cache),
    )


@pytest_asyncio.fixture
async def core(backend_name, tmp_path, fake_dynamodb):
    """Initialized InventoryCore, once per provider."""
    config = make_config(backend_name, tmp_path)
    instance = InventoryCore(
        config,
        registry=ProviderRegistry(),
        backend=make_backend(backend_name, tmp_path, fake_dynamodb),
        storage=LocalStorageProvider(config.storage),
    )
    await instance.init()
    yield instance
    await instance.shutdown()
