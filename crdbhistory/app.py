"""Application bootstrap for crdbhistory.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → history store → collector supervisor
              → collector task → REST

Shutdown sets the shared stop event, waits for every collector to finish its
in-flight cycle, then stops the remaining components in reverse order.  Each
component's stop error is caught and logged independently.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from crdbhistory.config import ConfigError, load_config
from crdbhistory.models.config import CRDBHistoryConfig
from crdbhistory.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from crdbhistory.collector.supervisor import CollectorSupervisor
    from crdbhistory.storage.store import SnapshotStore

_SHUTDOWN_GRACE_SECONDS = 30


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class CRDBHistoryApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    ``stop()`` is safe to call on an app that never started or already
    stopped.
    """

    def __init__(self, config: CRDBHistoryConfig | None = None) -> None:
        self.config = config
        self._store: SnapshotStore | None = None
        self._supervisor: CollectorSupervisor | None = None
        self._rest_server: object | None = None

        # Shared, read-only cancellation token for every collector.
        self._stop_event = asyncio.Event()
        self._collector_task: asyncio.Task[None] | None = None
        self._rest_task: asyncio.Task[None] | None = None

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            try:
                self.config = load_config()
            except ConfigError as exc:
                raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "crdbhistory starting",
            version=_crdbhistory_version(),
            sources=self.config.source_ids(),
            poll_interval_seconds=self.config.poll_interval.total_seconds(),
            retention_seconds=self.config.retention.total_seconds(),
        )

        # --- 3. History store -------------------------------------------
        await self._start_store()

        # --- 4. Collector supervisor ------------------------------------
        await self._start_supervisor()

        # --- 5. Collection loops ----------------------------------------
        self._start_collectors()

        # --- 6. REST API ------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("crdbhistory started", port=self.config.api.port)

    async def _start_store(self) -> None:
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting history store")
        try:
            from crdbhistory.storage.store import SnapshotStore

            self._store = await SnapshotStore.connect(self.config.history_database_url)
            self._log.info("history store started")
        except Exception as exc:
            raise _ComponentError("store", exc) from exc

    async def _start_supervisor(self) -> None:
        """Connect to every monitored source.  Any failure aborts startup."""
        assert self._log is not None
        assert self.config is not None
        assert self._store is not None
        self._log.debug("starting collector supervisor")
        try:
            from crdbhistory.collector.supervisor import CollectorSupervisor

            self._supervisor = await CollectorSupervisor.create(self.config, self._store)
            if len(self._supervisor) > 1:
                self._log.info("multi-source mode", sources=self._supervisor.source_ids())
            else:
                self._log.info("single-source mode", sources=self._supervisor.source_ids())
        except Exception as exc:
            raise _ComponentError("supervisor", exc) from exc

    def _start_collectors(self) -> None:
        assert self._log is not None
        assert self._supervisor is not None
        self._collector_task = asyncio.create_task(
            self._supervisor.run(self._stop_event),
            name="collector-supervisor",
        )
        self._log.info("collectors started")

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server.  Non-fatal: collection keeps running."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from crdbhistory.api import create_app

            fastapi_app = create_app(
                store=self._store,
                supervisor=self._supervisor,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            self._rest_task = asyncio.create_task(server.serve(), name="rest-server")
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            self._log.warning("rest api failed to start; collection continues", error=str(exc))
            self._rest_server = None

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop collectors first, then REST, supervisor and store."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("crdbhistory shutting down")
        self._running = False

        self._stop_event.set()
        if self._collector_task is not None:
            try:
                await asyncio.wait_for(self._collector_task, timeout=_SHUTDOWN_GRACE_SECONDS)
            except TimeoutError:
                log.warning("collectors did not stop in time", timeout=_SHUTDOWN_GRACE_SECONDS)
            except Exception as exc:
                log.error("collector task raised during shutdown", error=str(exc))
            self._collector_task = None

        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]
        if self._rest_task is not None:
            await asyncio.gather(self._rest_task, return_exceptions=True)
            self._rest_task = None
        self._rest_server = None

        await self._close_component("supervisor", self._supervisor)
        self._supervisor = None
        await self._close_component("store", self._store)
        self._store = None

        log.info("crdbhistory stopped")

    async def _close_component(self, name: str, component: object | None) -> None:
        """Await ``close()`` on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        close_fn = getattr(component, "close", None)
        if close_fn is None:
            return
        try:
            await asyncio.wait_for(close_fn(), timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component close timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component close raised an error", component=name, error=str(exc))


def _crdbhistory_version() -> str:
    from crdbhistory import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = CRDBHistoryApp()
    loop = asyncio.get_running_loop()
    shutdown_requested = asyncio.Event()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_requested.set)

    try:
        await app.start()
        await shutdown_requested.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()


def run() -> None:
    """Console-script entry point."""
    asyncio.run(main())
