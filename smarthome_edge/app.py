"""Main application entry-point for smarthome-edge."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from .adapters import MemoryStore, SqlStore
from .analytics import SensorAnalytics
from .api import ApiServer
from .buffer import TelemetryBuffer
from .config import EdgeConfig, PersistenceConfig, load_config
from .core import EdgeError, PersistenceStore, StreamOpener
from .health import HealthReporter
from .link import LinkSupervisor
from .logging import configure_logging
from .rules import RuleEngine

LOGGER = logging.getLogger(__name__)


class AppState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class SmartHomeEdgeApp:
    """Coordinates application startup and shutdown.

    Wires the persistence store, rule engine, link supervisor and HTTP API
    together. The store and the serial opener can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[EdgeConfig] = None,
        *,
        store: Optional[PersistenceStore] = None,
        opener: Optional[StreamOpener] = None,
    ) -> None:
        self._config = config or load_config()
        self._store: PersistenceStore = (
            store if store is not None else create_store(self._config.persistence)
        )
        self._health = HealthReporter()
        self._rules = RuleEngine(self._store)
        self._analytics = SensorAnalytics(self._store)

        buffer_config = self._config.buffer
        serial_config = self._config.serial
        self._link = LinkSupervisor(
            rule_engine=self._rules,
            store=self._store,
            opener=opener,
            buffer=TelemetryBuffer(
                high_water=buffer_config.high_water,
                low_water=buffer_config.low_water,
            ),
            health=self._health,
            settle_seconds=serial_config.settle_seconds,
            flush_interval=buffer_config.flush_interval_seconds,
            command_delay=serial_config.command_delay_seconds,
        )

        self._api: Optional[ApiServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = AppState.STARTING

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def link(self) -> LinkSupervisor:
        return self._link

    @property
    def rules(self) -> RuleEngine:
        return self._rules

    @property
    def analytics(self) -> SensorAnalytics:
        return self._analytics

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Start services, wait for a shutdown request, then stop everything."""

        self._shutdown_event = asyncio.Event()

        LOGGER.info("smarthome-edge starting with config: %s", self._config.path)
        started = await self._start_services()
        if not started:
            LOGGER.warning("Service startup incomplete; running in degraded mode")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("smarthome-edge received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[EdgeConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_serial=instance._config.logging.log_serial,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("smarthome-edge received shutdown signal")

    async def _transition_state(
        self, state: AppState, *, detail: Optional[str] = None
    ) -> None:
        previous = self._state
        self._state = state
        LOGGER.info(
            "App state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_app_state(
            state.value,
            healthy=state in (AppState.STARTING, AppState.ACTIVE),
            detail=detail,
        )

    async def _start_services(self) -> bool:
        await self._transition_state(AppState.STARTING, detail="initialising")
        await self._health.update("serial", False, "not connected")
        healthy = await self._start_store()

        if healthy and self._config.rules.seed_defaults:
            try:
                seeded = await self._rules.bootstrap_defaults()
            except EdgeError as exc:
                LOGGER.error("Failed to initialize default rules: %s", exc)
                await self._health.update("persistence", False, str(exc))
                healthy = False
            else:
                if seeded:
                    LOGGER.info("Seeded %d default rules", seeded)

        if self._config.http.enabled:
            self._api = ApiServer(
                link=self._link,
                rules=self._rules,
                analytics=self._analytics,
                reporter=self._health,
                host=self._config.http.host,
                port=self._config.http.port,
            )
            try:
                await self._api.start()
            except OSError as exc:
                LOGGER.error("Failed to start HTTP API: %s", exc)
                await self._health.update("http", False, str(exc))
                self._api = None
                healthy = False

        serial_config = self._config.serial
        if serial_config.auto_connect:
            if not serial_config.port:
                LOGGER.warning("auto_connect is enabled but no serial port is configured")
                healthy = False
            else:
                try:
                    await self._link.connect(serial_config.port, serial_config.baud_rate)
                except EdgeError as exc:
                    LOGGER.error(
                        "Auto-connect to %s failed: %s", serial_config.port, exc
                    )
                    healthy = False

        if healthy:
            await self._transition_state(AppState.ACTIVE, detail="services ready")
        else:
            await self._transition_state(
                AppState.DEGRADED, detail="startup incomplete"
            )
        return healthy

    async def _stop_services(self) -> None:
        await self._transition_state(AppState.STOPPING, detail="shutdown requested")

        await self._link.disconnect()
        # Telemetry received while no link was open is still buffered.
        await self._link.flush()

        if self._api is not None:
            await self._api.stop()
            self._api = None

        await self._store.close()

    async def _start_store(self) -> bool:
        try:
            await self._store.initialize()
            await self._store.ping()
        except Exception as exc:
            LOGGER.error(
                "Persistence store %s unavailable: %s", self._store.describe(), exc
            )
            await self._health.update("persistence", False, str(exc))
            return False

        await self._health.update("persistence", True, self._store.describe())
        return True


def create_store(config: PersistenceConfig) -> PersistenceStore:
    """Build the store named by ``[persistence] uri``; no uri keeps data in memory."""

    if config.uri is None:
        LOGGER.warning("No persistence uri configured; rules and history are kept in memory only")
        return MemoryStore()
    return SqlStore.from_uri(config.uri)
