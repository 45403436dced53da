"""
Unit tests for the provider registry and file storage.

Tests cover:
- Registration, defaults and lookup errors
- Default provider wiring from configuration
- Local disk storage upload/delete/URL round trip
"""

import pytest

from bizbook.inventory_core.backends.documentstore import DocumentStoreBackend
from bizbook.inventory_core.backends.otherdoc import OtherDocBackend
from bizbook.inventory_core.config import (
    AppConfig,
    DatabaseProvider,
    DocumentStoreConfig,
    StorageConfig,
    StorageProviderKind,
)
from bizbook.inventory_core.errors import ConfigurationError
from bizbook.inventory_core.providers import (
    LocalStorageProvider,
    ProviderRegistry,
    ProviderType,
    S3StorageProvider,
    StorageProvider,
    create_storage_provider,
    get_provider_registry,
    register_default_providers,
    reset_provider_registry,
)


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_register_and_get(self):
        """Named lookup returns the registered instance."""
        registry = ProviderRegistry()
        backend = object()
        registry.register(ProviderType.DATABASE, "otherdoc", backend)

        assert registry.get(ProviderType.DATABASE, "otherdoc") is backend
        assert registry.is_registered(ProviderType.DATABASE, "otherdoc")
        assert not registry.is_registered(ProviderType.STORAGE, "otherdoc")

    def test_default_lookup(self):
        """get() without a name returns the default."""
        registry = ProviderRegistry()
        first, second = object(), object()
        registry.register(ProviderType.DATABASE, "a", first)
        registry.register(ProviderType.DATABASE, "b", second)
        registry.set_default(ProviderType.DATABASE, "b")

        assert registry.get(ProviderType.DATABASE) is second
        assert registry.get_all_of_type(ProviderType.DATABASE) == {"a": first, "b": second}

    def test_missing_default(self):
        """No default raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            ProviderRegistry().get(ProviderType.CACHE)

    def test_unregistered_name(self):
        """Unknown names raise ConfigurationError."""
        registry = ProviderRegistry()

        with pytest.raises(ConfigurationError):
            registry.get(ProviderType.STORAGE, "s3")
        with pytest.raises(ConfigurationError):
            registry.set_default(ProviderType.STORAGE, "s3")

    def test_reregister_replaces(self):
        """Registering the same pair again replaces the instance."""
        registry = ProviderRegistry()
        registry.register(ProviderType.STORAGE, "local", "old")
        registry.register(ProviderType.STORAGE, "local", "new")

        assert registry.get(ProviderType.STORAGE, "local") == "new"

    def test_unregister_clears_default(self):
        """Dropping the default provider clears the default."""
        registry = ProviderRegistry()
        registry.register(ProviderType.MONITORING, "log", object())
        registry.set_default(ProviderType.MONITORING, "log")

        registry.unregister(ProviderType.MONITORING, "log")

        with pytest.raises(ConfigurationError):
            registry.get(ProviderType.MONITORING)

    def test_global_registry(self):
        """The process-wide registry is a singleton until reset."""
        registry = get_provider_registry()
        assert get_provider_registry() is registry

        reset_provider_registry()
        assert get_provider_registry() is not registry


class TestRegisterDefaultProviders:
    """Tests for register_default_providers()."""

    def test_document_store_and_local(self, tmp_path):
        """The configured backend and storage become the defaults."""
        config = AppConfig(
            db_provider=DatabaseProvider.DOCUMENT_STORE,
            document_store=DocumentStoreConfig(path=str(tmp_path / "db.sqlite")),
            storage=StorageConfig(bucket=str(tmp_path / "uploads")),
        )

        registry = register_default_providers(config, ProviderRegistry())

        assert isinstance(registry.get(ProviderType.DATABASE), DocumentStoreBackend)
        assert isinstance(registry.get(ProviderType.STORAGE), LocalStorageProvider)
        assert registry.is_registered(ProviderType.DATABASE, "documentstore")

    def test_other_doc_and_s3(self):
        """S3 storage is selected by provider kind."""
        config = AppConfig(
            db_provider=DatabaseProvider.OTHER_DOC,
            storage=StorageConfig(provider=StorageProviderKind.S3, bucket="images"),
        )

        registry = register_default_providers(config)

        assert registry is get_provider_registry()
        assert isinstance(registry.get(ProviderType.DATABASE), OtherDocBackend)
        assert isinstance(registry.get(ProviderType.STORAGE), S3StorageProvider)


class TestLocalStorage:
    """Tests for LocalStorageProvider."""

    @pytest.fixture
    def storage(self, tmp_path):
        return LocalStorageProvider(StorageConfig(bucket=str(tmp_path / "uploads")))

    @pytest.mark.asyncio
    async def test_upload_and_delete(self, storage):
        """Uploaded files are addressable by URL and deletable once."""
        await storage.connect()

        url = await storage.upload_file(b"\x89PNG", "Photo.PNG", "image/png")

        assert url.startswith(storage.base_url + "/uploads/")
        assert url.endswith(".png")
        key = storage.key_from_url(url)
        assert (storage.root / key).read_bytes() == b"\x89PNG"

        assert await storage.delete_file(url) is True
        assert await storage.delete_file(url) is False

    @pytest.mark.asyncio
    async def test_foreign_url(self, storage):
        """URLs from elsewhere are left alone."""
        await storage.connect()

        assert storage.key_from_url("https://cdn.example.com/a.png") is None
        assert await storage.delete_file("https://cdn.example.com/a.png") is False

    @pytest.mark.asyncio
    async def test_public_base_url(self, tmp_path):
        """A public base URL replaces the file URI in returned links."""
        storage = LocalStorageProvider(
            StorageConfig(bucket=str(tmp_path), public_base_url="https://img.example.com/")
        )
        await storage.connect()

        url = await storage.upload_file(b"data", "scan.jpg")

        assert url.startswith("https://img.example.com/uploads/")
        assert await storage.delete_file(url) is True

    def test_factory(self, tmp_path):
        """create_storage_provider() honors the provider kind."""
        local = create_storage_provider(StorageConfig(bucket=str(tmp_path)))
        s3 = create_storage_provider(StorageConfig(provider=StorageProviderKind.S3, bucket="b"))

        assert isinstance(local, StorageProvider)
        assert isinstance(s3, S3StorageProvider)
        assert s3.base_url == "https://b.s3.us-east-1.amazonaws.com"
        assert s3.key_from_url(s3.base_url + "/uploads/x.png") == "uploads/x.png"
