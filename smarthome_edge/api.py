"""HTTP API exposing the link, telemetry, analytics and rule management."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from aiohttp import web

from .adapters.serial_port import list_serial_ports
from .analytics import SensorAnalytics
from .constants import DEFAULT_BAUD_RATE
from .core.errors import (
    AlreadyConnected,
    EdgeError,
    InvalidIdentifier,
    InvalidSensor,
    NotConnected,
    NotFound,
    PersistenceFailure,
    RuleValidationError,
    TransportFailure,
)
from .health import HealthReporter
from .link import LinkSupervisor
from .rules import RuleEngine, build_rule

LOGGER = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

ERROR_STATUS: tuple[tuple[type[EdgeError], int], ...] = (
    (AlreadyConnected, 409),
    (NotFound, 404),
    (TransportFailure, 502),
    (PersistenceFailure, 500),
    (NotConnected, 400),
    (InvalidIdentifier, 400),
    (InvalidSensor, 400),
    (RuleValidationError, 400),
)


def error_response(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def status_for(exc: EdgeError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EdgeError as exc:
        status = status_for(exc)
        if status >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.path, exc)
        return error_response(str(exc), status)
    except Exception:
        LOGGER.exception("Unhandled error serving %s %s", request.method, request.path)
        return error_response("internal server error", 500)


def query_int(request: web.Request, name: str, default: int) -> int:
    """Integer query parameter; missing or malformed values use ``default``."""

    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def query_datetime(request: web.Request, name: str) -> Optional[datetime]:
    """RFC 3339 query parameter; malformed values are ignored."""

    raw = request.query.get(name)
    if not raw:
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        LOGGER.debug("Ignoring malformed %s=%r", name, raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


async def read_json_object(request: web.Request) -> Mapping[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RuleValidationError(f"invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuleValidationError("request body must be a JSON object")
    return payload


class ApiServer:
    """aiohttp application serving the ``/api`` routes."""

    def __init__(
        self,
        *,
        link: LinkSupervisor,
        rules: RuleEngine,
        analytics: SensorAnalytics,
        reporter: HealthReporter,
        host: str,
        port: int,
        port_lister: Callable[[], list[str]] = list_serial_ports,
    ) -> None:
        self._link = link
        self._rules = rules
        self._analytics = analytics
        self._reporter = reporter
        self._host = host
        self._port = port
        self._port_lister = port_lister
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        router = app.router
        router.add_get("/api/health", self._handle_health)

        router.add_post("/api/serial/connect", self._handle_connect)
        router.add_post("/api/serial/disconnect", self._handle_disconnect)
        router.add_post("/api/serial/command", self._handle_command)
        router.add_get("/api/serial/status", self._handle_status)
        router.add_get("/api/serial/ports", self._handle_ports)

        router.add_get("/api/sensors/current", self._handle_current)
        router.add_get("/api/sensors/history", self._handle_history)

        router.add_get("/api/actuators/states", self._handle_actuator_states)
        router.add_post("/api/actuators/sync", self._handle_actuator_sync)

        router.add_get("/api/analytics/statistics", self._handle_statistics)
        router.add_get("/api/analytics/trends", self._handle_trends)

        router.add_get("/api/rules", self._handle_list_rules)
        router.add_post("/api/rules", self._handle_create_rule)
        router.add_put("/api/rules/{id}", self._handle_update_rule)
        router.add_delete("/api/rules/{id}", self._handle_delete_rule)

        router.add_get("/api/alerts", self._handle_alerts)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("HTTP API listening on http://%s:%s/api", self._host, self._port)
        await self._reporter.update("http", True, f"{self._host}:{self._port}")

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None
        await self._reporter.update("http", False, "stopped")

    # ------------------------------------------------------------------
    # Health and serial link
    # ------------------------------------------------------------------
    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        snapshot["arduinoConnected"] = self._link.is_connected
        snapshot["time"] = datetime.now(timezone.utc).isoformat(timespec="seconds")
        return web.json_response(snapshot)

    async def _handle_connect(self, request: web.Request) -> web.Response:
        payload = await read_json_object(request)
        port = payload.get("port")
        if not isinstance(port, str) or not port.strip():
            return error_response("port is required", 400)

        baud_rate = payload.get("baudRate")
        if baud_rate is None:
            baud_rate = DEFAULT_BAUD_RATE
        if isinstance(baud_rate, bool) or not isinstance(baud_rate, int) or baud_rate <= 0:
            return error_response("baudRate must be a positive integer", 400)

        await self._link.connect(port.strip(), baud_rate)
        return web.json_response(
            {"message": "Connected to Arduino", "port": port.strip()}
        )

    async def _handle_disconnect(self, request: web.Request) -> web.Response:
        await self._link.disconnect()
        return web.json_response({"message": "Disconnected from Arduino"})

    async def _handle_command(self, request: web.Request) -> web.Response:
        payload = await read_json_object(request)
        command = payload.get("command")
        if not isinstance(command, str) or not command.strip():
            return error_response("command is required", 400)

        try:
            sent = await self._link.send_command(command)
        except ValueError as exc:
            return error_response(str(exc), 400)

        return web.json_response(
            {
                "message": "Command sent" if sent else "Command queued",
                "command": command,
                "queued": not sent,
            }
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._link.status())

    async def _handle_ports(self, request: web.Request) -> web.Response:
        ports = await asyncio.to_thread(self._port_lister)
        return web.json_response([{"name": name} for name in ports])

    # ------------------------------------------------------------------
    # Telemetry and actuators
    # ------------------------------------------------------------------
    async def _handle_current(self, request: web.Request) -> web.Response:
        sample = self._link.current_sample()
        return web.json_response(sample.as_dict() if sample is not None else {})

    async def _handle_history(self, request: web.Request) -> web.Response:
        limit = query_int(request, "limit", 100)
        skip = query_int(request, "skip", 0)
        records, total = await self._analytics.history(
            limit=limit,
            skip=skip,
            start=query_datetime(request, "startDate"),
            end=query_datetime(request, "endDate"),
        )
        return web.json_response(
            {
                "data": [record.as_dict() for record in records],
                "total": total,
                "limit": limit,
                "skip": skip,
            }
        )

    async def _handle_actuator_states(self, request: web.Request) -> web.Response:
        return web.json_response(self._link.actuator_states().as_dict())

    async def _handle_actuator_sync(self, request: web.Request) -> web.Response:
        payload = await read_json_object(request)
        actuator = payload.get("actuator")
        if not isinstance(actuator, str) or not actuator:
            return error_response("actuator is required", 400)
        if payload.get("value") is None:
            return error_response("value is required", 400)

        value = payload["value"]
        if not self._link.sync_actuator(actuator, value):
            return error_response(
                f"unknown actuator or invalid value: {actuator}={value!r}", 400
            )

        return web.json_response(
            {"message": "Actuator state updated", "actuator": actuator, "value": value}
        )

    # ------------------------------------------------------------------
    # Analytics and alerts
    # ------------------------------------------------------------------
    async def _handle_statistics(self, request: web.Request) -> web.Response:
        sensor = request.query.get("sensor") or None
        stats = await self._analytics.statistics(
            sensor, hours=query_int(request, "hours", 24)
        )
        return web.json_response(stats.as_dict())

    async def _handle_trends(self, request: web.Request) -> web.Response:
        points = await self._analytics.trends(hours=query_int(request, "hours", 24))
        return web.json_response([point.as_dict() for point in points])

    async def _handle_alerts(self, request: web.Request) -> web.Response:
        records = await self._analytics.alerts(limit=query_int(request, "limit", 50))
        return web.json_response([record.as_dict() for record in records])

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    async def _handle_list_rules(self, request: web.Request) -> web.Response:
        rules = await self._rules.list_rules()
        return web.json_response([rule.as_dict() for rule in rules])

    async def _handle_create_rule(self, request: web.Request) -> web.Response:
        payload = await read_json_object(request)
        rule = await self._rules.create(build_rule(payload))
        return web.json_response(rule.as_dict(), status=201)

    async def _handle_update_rule(self, request: web.Request) -> web.Response:
        payload = await read_json_object(request)
        rule = await self._rules.update(request.match_info["id"], payload)
        return web.json_response(rule.as_dict())

    async def _handle_delete_rule(self, request: web.Request) -> web.Response:
        await self._rules.delete(request.match_info["id"])
        return web.json_response({"message": "Rule deleted"})
