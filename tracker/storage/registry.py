from __future__ import annotations

import logging
import threading

from tracker.config import TrackerConfig
from tracker.errors import ConfigurationError, ProviderNotInitialized
from tracker.storage.base import StorageProvider
from tracker.storage.embedded import EmbeddedFileStorageProvider
from tracker.storage.relational import RelationalStorageProvider
from tracker.storage.remote import RemoteTableStorageProvider

logger = logging.getLogger(__name__)


def create_provider(config: TrackerConfig) -> StorageProvider:
    if config.provider == "relational":
        return RelationalStorageProvider(
            config.relational,
            default_admin=config.default_admin,
            default_staff=config.default_staff,
        )
    if config.provider == "embedded-file":
        return EmbeddedFileStorageProvider(config.embedded_file)
    if config.provider == "remote-table":
        return RemoteTableStorageProvider(config.remote_table)
    raise ConfigurationError(f"Unknown storage provider: {config.provider}")


class StorageRegistry:
    """Holds the single live storage provider.

    A new provider is initialized before it replaces the current one, so a
    failed reconfiguration leaves the previous provider serving requests.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._provider: StorageProvider | None = None
        self._provider_type: str | None = None

    @property
    def provider(self) -> StorageProvider:
        provider = self._provider
        if provider is None:
            raise ProviderNotInitialized()
        return provider

    @property
    def provider_type(self) -> str | None:
        return self._provider_type

    def configure(self, config: TrackerConfig) -> StorageProvider:
        with self._lock:
            candidate = create_provider(config)
            try:
                candidate.init()
            except Exception:
                candidate.dispose()
                logger.exception("Failed to initialize %s storage; keeping %s", config.provider, self._provider_type)
                raise
            previous, self._provider = self._provider, candidate
            self._provider_type = candidate.provider_type
        if previous is not None:
            previous.dispose()
        logger.info("Storage provider switched to %s", candidate.provider_type)
        return candidate

    def dispose(self) -> None:
        with self._lock:
            provider, self._provider = self._provider, None
            self._provider_type = None
        if provider is not None:
            provider.dispose()


default_registry = StorageRegistry()


def init_provider(config: TrackerConfig) -> StorageProvider:
    return default_registry.configure(config)


def get_provider() -> StorageProvider:
    return default_registry.provider


def get_active_provider_type() -> str | None:
    return default_registry.provider_type
