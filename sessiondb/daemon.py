from __future__ import annotations

import logging
import threading

from .coordination import HEALTH_ALIVE, ROLE_READER
from .errors import CoordinationError
from .ingest.collector import CollectResult
from .ingest.sources import TranscriptSource
from .store import SessionStore

logger = logging.getLogger(__name__)

DAEMON_WRITER_TYPE = "daemon"


class CollectorDaemon:
    """Keeps the database current from one process among many.

    Each tick either collects (while this handle holds the lease) or, as a
    reader, watches the lease and takes it over once the holder stops
    heartbeating.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        interval_ms: int | None = None,
        role_hint: str = DAEMON_WRITER_TYPE,
        sources: list[TranscriptSource] | None = None,
    ) -> None:
        self.store = store
        self.interval_ms = interval_ms if interval_ms is not None else store.config.collect_interval_ms
        self.role_hint = role_hint
        self.sources = sources
        self._stop = threading.Event()

    def _ensure_writer(self) -> bool:
        if self.store.is_writer:
            self.store.heartbeat()
            return True
        if self.store.role != ROLE_READER:
            try:
                self.store.register_writer(self.role_hint)
            except CoordinationError as exc:
                logger.info("running as reader: %s", exc)
                return False
            return True
        health = self.store.check_writer_health()
        if health == HEALTH_ALIVE:
            return False
        logger.info("writer lease is %s; attempting takeover", health)
        return self.store.try_takeover(self.role_hint)

    def tick(self) -> CollectResult | None:
        try:
            if not self._ensure_writer():
                return None
            return self.store.collect(self.sources)
        except CoordinationError as exc:
            logger.warning("writer lease lost: %s", exc)
            return None

    def run(self) -> None:
        """Run ticks on the calling thread until `stop()` is called."""

        self._stop.clear()
        interval = max(100, self.interval_ms) / 1000.0
        while True:
            try:
                self.tick()
            except Exception as exc:
                logger.exception("collector tick failed", exc_info=exc)
            if self._stop.wait(interval):
                return

    def stop(self) -> None:
        self._stop.set()
