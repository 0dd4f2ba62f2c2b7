from __future__ import annotations

import pytest

from tracker.config import EmbeddedFileConfig, RelationalConfig
from tracker.storage.embedded import EmbeddedFileStorageProvider
from tracker.storage.relational import RelationalStorageProvider

ENV_OVERRIDES = ("DATABASE_URL", "TRACKER_STORAGE_PROVIDER", "TRACKER_ADMIN_EMAIL", "TRACKER_ADMIN_PASSWORD")


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRACKER_CONFIG", str(tmp_path / "config" / "app-config.json"))


@pytest.fixture
def make_relational(tmp_path):
    providers: list[RelationalStorageProvider] = []

    def factory(**overrides) -> RelationalStorageProvider:
        # Every test gets its own writable SQLite file.
        options = {"url": f"sqlite:///{tmp_path / 'tracker.db'}", "seed_defaults": False, "archive_on_init": False}
        options.update(overrides)
        provider = RelationalStorageProvider(RelationalConfig(**options))
        provider.init()
        providers.append(provider)
        return provider

    yield factory
    for provider in providers:
        provider.dispose()


@pytest.fixture
def relational(make_relational):
    return make_relational()


@pytest.fixture
def embedded(tmp_path):
    provider = EmbeddedFileStorageProvider(EmbeddedFileConfig(filename=str(tmp_path / "data" / "shows.sqlite")))
    provider.init()
    yield provider
    provider.dispose()
