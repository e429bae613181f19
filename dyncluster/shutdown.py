from __future__ import annotations

import logging
from threading import Lock
from typing import Protocol

logger = logging.getLogger(__name__)


class Listener(Protocol):
    def close(self) -> None: ...

    def wait_closed(self) -> None: ...


class Stoppable(Protocol):
    def stop(self) -> None: ...


class Closeable(Protocol):
    def close(self) -> None: ...


class ShutdownCoordinator:
    """Stops the daemon's parts in a fixed order.

    listener closed -> reconciler acknowledged -> registry closed. The
    reconciler must never sweep against a closed registry, and the registry
    must not close while a sweep is still running.
    """

    def __init__(self, listener: Listener, reconciler: Stoppable, store: Closeable):
        self.listener = listener
        self.reconciler = reconciler
        self.store = store
        self._lock = Lock()
        self._done = False

    def shutdown(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True

            # No drain: in-flight requests are dropped with the listener.
            self.listener.close()
            self.listener.wait_closed()
            logger.info("REST listener stopped")

            self.reconciler.stop()
            logger.info("Cleanup routine stopped")

            try:
                self.store.close()
            except Exception as e:
                logger.error("Failed to close meta db: %s", e)

            logger.info("Graceful shutdown completed.")
