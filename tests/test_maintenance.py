from __future__ import annotations

import time

from tracker.config import TrackerConfig
from tracker.maintenance import ArchiveMaintenance
from tracker.normalize import now_ms
from tracker.storage.registry import StorageRegistry

DAY_MS = 24 * 60 * 60 * 1000


class FlakyProvider:
    supports_archive = True

    def __init__(self) -> None:
        self.calls = 0

    def run_archive_maintenance(self, now=None):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database went away")
        return []


class StaticRegistry:
    def __init__(self, provider) -> None:
        self.provider = provider


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def configured_registry(tmp_path, provider: str = "relational") -> StorageRegistry:
    registry = StorageRegistry()
    registry.configure(
        TrackerConfig(
            provider=provider,
            relational={"url": f"sqlite:///{tmp_path / 'tracker.db'}", "seed_defaults": False, "archive_on_init": False},
            embedded_file={"filename": str(tmp_path / "shows.sqlite")},
        )
    )
    return registry


def test_run_once_archives_stale_shows(tmp_path):
    registry = configured_registry(tmp_path)
    old = registry.provider.create_show({"createdAt": now_ms() - 65 * DAY_MS})
    try:
        assert ArchiveMaintenance(registry).run_once() == [old.id]
    finally:
        registry.dispose()


def test_run_once_is_a_no_op_without_archive_support(tmp_path):
    registry = configured_registry(tmp_path, provider="embedded-file")
    try:
        assert ArchiveMaintenance(registry).run_once() == []
    finally:
        registry.dispose()


def test_zero_interval_disables_the_thread():
    maintenance = ArchiveMaintenance(StaticRegistry(FlakyProvider()), interval_seconds=0)
    maintenance.start()
    assert maintenance.running is False
    maintenance.stop()


def test_background_loop_sweeps_on_interval(tmp_path):
    registry = configured_registry(tmp_path)
    old = registry.provider.create_show({"createdAt": now_ms() - 65 * DAY_MS})
    maintenance = ArchiveMaintenance(registry, interval_seconds=0.05)
    maintenance.start()
    try:
        assert maintenance.running
        assert wait_for(lambda: registry.provider.get_archived_show(old.id) is not None)
    finally:
        maintenance.stop()
        registry.dispose()
    assert maintenance.running is False


def test_loop_survives_a_failed_pass():
    provider = FlakyProvider()
    maintenance = ArchiveMaintenance(StaticRegistry(provider), interval_seconds=0.02)
    maintenance.start()
    try:
        assert wait_for(lambda: provider.calls >= 2)
    finally:
        maintenance.stop()
