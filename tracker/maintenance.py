from __future__ import annotations

import logging
import threading
from datetime import datetime

from tracker.errors import ProviderNotInitialized
from tracker.storage.registry import StorageRegistry

logger = logging.getLogger(__name__)


class ArchiveMaintenance:
    """Runs the archive sweep against the registry's current provider on an interval."""

    def __init__(self, registry: StorageRegistry, interval_seconds: float = 3600) -> None:
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: datetime | None = None) -> list[str]:
        provider = self.registry.provider
        if not provider.supports_archive:
            return []
        return provider.run_archive_maintenance(now)

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="archive-maintenance", daemon=True)
        self._thread.start()
        logger.info("Archive maintenance scheduled every %s seconds", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                archived = self.run_once()
            except ProviderNotInitialized:
                logger.warning("Archive maintenance skipped: no storage provider configured")
                continue
            except Exception:
                logger.exception("Archive maintenance pass failed")
                continue
            if archived:
                logger.info("Archive maintenance moved %d show(s) to the archive", len(archived))
