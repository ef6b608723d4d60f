"""Serialization of administrative operations and the periodic retention run."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

from chitchat.config import Settings, settings
from chitchat.db import StoreHandle
from chitchat.errors import MaintenanceBusyError
from chitchat.services import retention

logger = logging.getLogger(__name__)

# Backup, restore, relocation and retention never run concurrently.
maintenance_lock = threading.Lock()


@contextmanager
def maintenance_window(*, blocking: bool = False):
    if not maintenance_lock.acquire(blocking=blocking):
        raise MaintenanceBusyError("Another maintenance operation is in progress")
    try:
        yield
    finally:
        maintenance_lock.release()


class RetentionScheduler:
    def __init__(self, config: Settings = settings, *, handle: StoreHandle | None = None):
        self._config = config
        self._handle = handle
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval_seconds(self) -> float:
        return max(1, int(self._config.retention_interval_minutes)) * 60.0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-scheduler", daemon=True)
        self._thread.start()
        logger.info("Retention scheduler started (every %s minutes)", self.interval_seconds / 60)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            # Keep the handle so start() cannot spawn a second loop beside it.
            logger.warning("Retention scheduler did not stop within %s seconds", timeout)
            return
        self._thread = None

    def run_once(self) -> retention.RetentionResult | None:
        try:
            with maintenance_window():
                return retention.run(self._config, handle=self._handle)
        except MaintenanceBusyError:
            logger.info("Skipping scheduled retention run; maintenance already in progress")
            return None

    def _loop(self) -> None:
        # Run once on start, then on every interval.
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.warning("Scheduled retention run failed; retrying next interval.", exc_info=True)
            self._stop.wait(self.interval_seconds)
