"""
dyncluster daemon service.

Owns every long-lived dependency (registry, docker client, system context)
and wires them into the cluster service, the expiry reconciler and the REST
listener. Nothing here is global: tests build a Daemon around doubles.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .clusters import ClusterService, log_clusters
from .context import system_context
from .db import MetaDataStore
from .docker_ops import EngineClient
from .errors import DynClusterError, StartupError
from .reconciler import Reconciler
from .settings import Settings, settings as default_settings
from .shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


class RestListener:
    """Runs a uvicorn server on a background thread."""

    def __init__(self, app: FastAPI, host: str, port: int, on_exit: Callable[[], None] | None = None):
        config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        self.server = uvicorn.Server(config)
        self.on_exit = on_exit
        self._thr: threading.Thread | None = None

    @property
    def address(self) -> str:
        return f"{self.server.config.host}:{self.server.config.port}"

    def start(self) -> None:
        self._thr = threading.Thread(target=self._serve, name="rest-listener", daemon=True)
        self._thr.start()

    def _serve(self) -> None:
        try:
            # uvicorn leaves signal handling to the main thread when run off it.
            self.server.run()
        except Exception as e:
            logger.error("REST listener error: %s", e, exc_info=True)
        finally:
            if self.on_exit is not None:
                self.on_exit()

    def close(self) -> None:
        self.server.should_exit = True
        self.server.force_exit = True

    def wait_closed(self) -> None:
        if self._thr is not None:
            self._thr.join()


class Daemon:
    def __init__(
        self,
        cfg: Settings | None = None,
        store: MetaDataStore | None = None,
        engine: EngineClient | None = None,
    ):
        self.settings = cfg or default_settings
        self.store = store or MetaDataStore()
        self.engine = engine or EngineClient(self.settings)
        self.system_ctx = None
        self.service: ClusterService | None = None
        self.reconciler: Reconciler | None = None
        self.listener: RestListener | None = None
        self.coordinator: ShutdownCoordinator | None = None
        self._terminate = threading.Event()

    def start(self) -> None:
        """Acquire dependencies, then start the reconciler and the listener.

        Any failure before the listener starts raises StartupError, after
        stopping whatever had already started.
        """
        self._open_dependencies()

        try:
            # One long-lived system actor for all background work.
            self.system_ctx = system_context()
            self.service = ClusterService(self.store, self.engine, self.settings)
            self.reconciler = Reconciler(
                self.service,
                self.system_ctx,
                interval_s=self.settings.cleanup_interval_s,
                events=self.store,
            )
            self.reconciler.start()

            log_clusters(self.service, self.system_ctx)

            listener = RestListener(
                create_app(self.service),
                self.settings.listen_host,
                self.settings.listen_port,
                on_exit=self._terminate.set,
            )
            logger.info("Daemon is starting on %s", listener.address)
            self.store.log_event("INFO", f"Daemon started on {listener.address}")
            self.listener = listener
            self.coordinator = ShutdownCoordinator(listener, self.reconciler, self.store)
            listener.start()
        except Exception as e:
            logger.error("Failed to start daemon: %s", e, exc_info=True)
            self._abort_start()
            raise StartupError(f"failed to start daemon: {e}") from e

    def _abort_start(self) -> None:
        self.listener = None
        self.coordinator = None
        if self.reconciler is not None:
            self.reconciler.stop()
        self.store.close()

    def _open_dependencies(self) -> None:
        try:
            self.store.open(self.settings.db_path)
        except Exception as e:
            logger.error("Failed to open meta db: %s", e)
            raise StartupError(f"failed to open meta db: {e}") from e

        try:
            self.engine.connect()
            if self.settings.docker_registry_user:
                self.engine.registry_login(self.settings.docker_registry_user, self.settings.docker_registry_password)
            # Without this network the nodes are unreachable from outside the docker host.
            if not self.engine.has_network(self.settings.docker_network):
                raise StartupError(f"failed to locate `{self.settings.docker_network}` network on docker host")
        except DynClusterError as e:
            logger.error("Failed to prepare docker: %s", e)
            self.store.close()
            if isinstance(e, StartupError):
                raise
            raise StartupError(str(e)) from e

    def request_termination(self, *_args) -> None:
        if not self._terminate.is_set():
            logger.info("Received shutdown signal.  Shutting down daemon.")
        self._terminate.set()

    def shutdown(self) -> None:
        if self.coordinator is not None:
            self.coordinator.shutdown()

    def run(self) -> None:
        """Start, block until SIGINT/SIGTERM (or listener exit), then shut down in order."""
        # A signal during startup is held until start() returns.
        signal.signal(signal.SIGINT, self.request_termination)
        signal.signal(signal.SIGTERM, self.request_termination)
        try:
            self.start()
            self._terminate.wait()
        finally:
            self.shutdown()
