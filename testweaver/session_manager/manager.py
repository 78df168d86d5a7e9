"""Protocol server: WebSocket front door to the session scheduler.

Runs as a local aiohttp service. Clients connect to the WebSocket endpoint,
submit runs, and receive session events tagged with the ``requestId`` of the
``run_test`` that started them.

Endpoints:
    GET /mcp     - WebSocket protocol endpoint
    GET /health  - Server status as JSON
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from ..config import (
    CLEANUP_INTERVAL_SECONDS,
    PROTOCOL_HOST,
    PROTOCOL_PATH,
    PROTOCOL_PORT,
    SESSION_RETENTION_SECONDS,
    ensure_dirs,
)
from ..constants import (
    BROWSER_ACTIONS,
    CAPABILITIES,
    NETWORK_MONITOR_ACTIONS,
    PROTOCOL_VERSION,
    SERVER_NAME,
    SERVER_VERSION,
    SUPPORTED_BROWSERS,
)
from ..errors import GenerationError, ProtocolError
from ..models.message import (
    BrowserActionRequest,
    Envelope,
    SessionRef,
    error_envelope,
    make_envelope,
)
from ..models.run import RunRequest
from ..models.session import Session, utcnow
from ..scripting.generator import generate_from_instructions
from .browser import BrowserSession
from .scheduler import CancelOutcome, SessionScheduler

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def validation_details(error: ValidationError) -> str:
    """Flatten a pydantic error into one line: "config.retries: ...; name: ..."."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "payload"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


@dataclass
class ClientConnection:
    """One connected client. Outbound messages go through ``outbox`` in order."""

    id: str
    ws: web.WebSocketResponse
    connected_at: datetime = field(default_factory=utcnow)
    active_session_count: int = 0
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: Optional[asyncio.Task] = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    network_monitor: bool = False

    def send(self, message: dict[str, Any]):
        self.outbox.put_nowait(message)


Handler = Callable[[ClientConnection, Envelope], Awaitable[None]]

# Handlers that may wait on the live browser run beside the read loop
BACKGROUND_TYPES = {"browser_action"}


class ProtocolServer:
    """Owns the client table and bridges protocol messages to the scheduler."""

    def __init__(
        self,
        scheduler: Optional[SessionScheduler] = None,
        browser: Optional[BrowserSession] = None,
    ):
        self.scheduler = scheduler or SessionScheduler()
        self.scheduler.listener = self.on_session_event
        self.browser = browser or BrowserSession()
        self.clients: dict[str, ClientConnection] = {}
        self.started_at = utcnow()
        self.state = "running"
        self._prune_task: Optional[asyncio.Task] = None
        self._handlers: dict[str, Handler] = {
            "handshake": self.handle_handshake,
            "run_test": self.handle_run_test,
            "cancel_test": self.handle_cancel_test,
            "get_status": self.handle_get_status,
            "list_capabilities": self.handle_list_capabilities,
            "ping": self.handle_ping,
            "get_server_status": self.handle_get_server_status,
            "browser_action": self.handle_browser_action,
            "network_monitor": self.handle_network_monitor,
        }

    def start(self):
        self._prune_task = asyncio.create_task(self._prune_loop())

    async def stop(self):
        """Cancel every session, notify and close every client, then stop the browser."""
        if self.state != "running":
            return
        self.state = "stopping"
        if self._prune_task:
            self._prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._prune_task

        await self.scheduler.shutdown(reason="server_shutdown")

        for client in list(self.clients.values()):
            await self._cancel_tasks(client)
            client.send(make_envelope("server_shutdown", message="Server is shutting down"))
            await self._flush(client)
            await client.ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

        await self.browser.stop()
        self.state = "stopped"

    async def _prune_loop(self):
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            self.scheduler.prune(SESSION_RETENTION_SECONDS)

    # ── Server Info ──────────────────────────────────────────────────────────

    def server_info(self) -> dict[str, Any]:
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": CAPABILITIES,
            "supportedBrowsers": SUPPORTED_BROWSERS,
            "maxConcurrentTests": self.scheduler.max_concurrency,
            "status": self.state,
        }

    def status(self) -> dict[str, Any]:
        return {
            **self.server_info(),
            "uptimeSeconds": int((utcnow() - self.started_at).total_seconds()),
            "clients": len(self.clients),
            "queue": self.scheduler.metrics(),
            "browserRunning": self.browser.is_running,
        }

    # ── Connections ──────────────────────────────────────────────────────────

    def connect(self, ws: web.WebSocketResponse) -> ClientConnection:
        client = ClientConnection(id=f"client-{uuid.uuid4().hex[:12]}", ws=ws)
        client.writer = asyncio.create_task(self._writer(client))
        self.clients[client.id] = client
        logger.info(f"[PROTOCOL] Client connected: {client.id} ({len(self.clients)} total)")
        client.send(
            make_envelope(
                "connection_established", clientId=client.id, serverInfo=self.server_info()
            )
        )
        return client

    async def disconnect(self, client: ClientConnection):
        if self.clients.pop(client.id, None) is None:
            return
        cancelled = self.scheduler.cancel_client(client.id)
        await self._cancel_tasks(client)
        if client.network_monitor:
            client.network_monitor = False
            self.browser.stop_network_monitor(client.id)
        await self._flush(client)
        logger.info(
            f"[PROTOCOL] Client disconnected: {client.id} (cancelled {len(cancelled)} sessions)"
        )

    async def _writer(self, client: ClientConnection):
        while True:
            message = await client.outbox.get()
            if message is None:
                return
            if client.ws.closed:
                continue
            try:
                await client.ws.send_json(message)
            except (ConnectionError, RuntimeError) as e:
                logger.warning(f"[PROTOCOL] Send to {client.id} failed: {e}")

    async def _cancel_tasks(self, client: ClientConnection):
        tasks = list(client.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        client.tasks.clear()

    async def _flush(self, client: ClientConnection):
        """Stop the writer after it has delivered everything already queued."""
        if client.writer is None or client.writer.done():
            return
        client.outbox.put_nowait(None)
        await client.writer

    # ── Dispatch ─────────────────────────────────────────────────────────────

    async def dispatch(self, client: ClientConnection, raw: str):
        """Decode one inbound frame and route it. Never closes the connection."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            client.send(error_envelope("Invalid message format", str(e)))
            return
        if not isinstance(payload, dict):
            client.send(error_envelope("Invalid message format", "expected a JSON object"))
            return

        try:
            envelope = Envelope.model_validate(payload)
        except ValidationError as e:
            request_id = payload.get("requestId")
            client.send(
                error_envelope(
                    "Invalid message format",
                    validation_details(e),
                    request_id if isinstance(request_id, str) else None,
                )
            )
            return

        handler = self._handlers.get(envelope.type)
        if handler is None:
            client.send(
                error_envelope(f"Unknown message type: {envelope.type}", None, envelope.request_id)
            )
            return

        logger.info(
            f"[PROTOCOL] {client.id}: {envelope.type}"
            + (f" ({envelope.request_id})" if envelope.request_id else "")
        )
        if envelope.type in BACKGROUND_TYPES:
            task = asyncio.create_task(self._handle(handler, client, envelope))
            client.tasks.add(task)
            task.add_done_callback(client.tasks.discard)
            return
        await self._handle(handler, client, envelope)

    async def _handle(self, handler: Handler, client: ClientConnection, envelope: Envelope):
        try:
            await handler(client, envelope)
        except ProtocolError as e:
            client.send(error_envelope(e.message, e.details, envelope.request_id))
        except Exception as e:
            logger.error(f"[PROTOCOL] Error handling {envelope.type}: {e}", exc_info=True)
            client.send(error_envelope(f"Error processing {envelope.type}", str(e), envelope.request_id))

    # ── Handlers ─────────────────────────────────────────────────────────────

    async def handle_handshake(self, client: ClientConnection, envelope: Envelope):
        client.send(
            make_envelope(
                "handshake_response",
                {
                    **self.server_info(),
                    "clientId": client.id,
                    "clientCapabilities": envelope.data or {},
                    "protocols": [PROTOCOL_VERSION],
                    "features": {
                        "parallelExecution": self.scheduler.max_concurrency > 1,
                        "videoRecording": True,
                        "tracing": True,
                        "crossBrowserTesting": True,
                        "instructions": True,
                    },
                },
                envelope.request_id,
            )
        )

    async def handle_run_test(self, client: ClientConnection, envelope: Envelope):
        try:
            request = RunRequest.model_validate(envelope.data or {})
        except ValidationError as e:
            raise ProtocolError("Invalid run_test payload", validation_details(e)) from e

        if not (request.script_source and request.script_source.strip()):
            try:
                script = generate_from_instructions(request.name, request.instructions, request.config)
            except GenerationError as e:
                raise ProtocolError("Script generation failed", str(e)) from e
            request = request.model_copy(update={"script_source": script})

        self.scheduler.submit(request, client.id, envelope.request_id)

    async def handle_cancel_test(self, client: ClientConnection, envelope: Envelope):
        ref = self._session_ref(envelope)
        outcome = self.scheduler.cancel(
            ref.session_id,
            client.id,
            reason="cancelled_by_client",
            context={"cancelRequestId": envelope.request_id},
        )
        if outcome != CancelOutcome.OK:
            raise ProtocolError(
                "Failed to cancel test", {"reason": outcome.value, "sessionId": ref.session_id}
            )

    async def handle_get_status(self, client: ClientConnection, envelope: Envelope):
        ref = self._session_ref(envelope)
        outcome, session = self.scheduler.status(ref.session_id, client.id)
        if session is None:
            raise ProtocolError(
                "Session not available", {"reason": outcome.value, "sessionId": ref.session_id}
            )
        client.send(
            make_envelope(
                "test_status",
                {**session.describe(), "queuePosition": self.scheduler.queue_position(session.id)},
                envelope.request_id,
            )
        )

    async def handle_list_capabilities(self, client: ClientConnection, envelope: Envelope):
        client.send(
            make_envelope(
                "capabilities",
                {
                    "capabilities": CAPABILITIES,
                    "supportedBrowsers": SUPPORTED_BROWSERS,
                    "browserActions": list(BROWSER_ACTIONS),
                    "networkMonitorActions": list(NETWORK_MONITOR_ACTIONS),
                    "protocols": [PROTOCOL_VERSION],
                    "maxConcurrentTests": self.scheduler.max_concurrency,
                },
                envelope.request_id,
            )
        )

    async def handle_ping(self, client: ClientConnection, envelope: Envelope):
        client.send(make_envelope("pong", request_id=envelope.request_id))

    async def handle_get_server_status(self, client: ClientConnection, envelope: Envelope):
        client.send(make_envelope("server_status", self.status(), envelope.request_id))

    async def handle_browser_action(self, client: ClientConnection, envelope: Envelope):
        try:
            action = BrowserActionRequest.model_validate(envelope.data or {})
        except ValidationError as e:
            raise ProtocolError("Invalid browser_action payload", validation_details(e)) from e

        try:
            result = await self.browser.perform(action.action, action.params, action.browser_kind)
        except ValueError as e:
            raise ProtocolError("Invalid browser action", str(e)) from e

        client.send(
            make_envelope(
                "browser_event",
                {"action": action.action, "result": result},
                envelope.request_id,
            )
        )

    async def handle_network_monitor(self, client: ClientConnection, envelope: Envelope):
        action = (envelope.data or {}).get("action") or (envelope.model_extra or {}).get("action")
        if action not in NETWORK_MONITOR_ACTIONS:
            raise ProtocolError(
                "Invalid network_monitor action", f"expected one of {list(NETWORK_MONITOR_ACTIONS)}"
            )

        if action == "stop":
            client.network_monitor = False
            self.browser.stop_network_monitor(client.id)
            client.send(make_envelope("network_monitor_result", {"status": "stopped"}, envelope.request_id))
            return

        def forward(event: dict[str, Any]):
            client.send(make_envelope("network_event", event))

        try:
            self.browser.start_network_monitor(client.id, forward)
        except ValueError as e:
            raise ProtocolError("Network monitor failed", str(e)) from e
        client.network_monitor = True
        client.send(make_envelope("network_monitor_result", {"status": "started"}, envelope.request_id))

    @staticmethod
    def _session_ref(envelope: Envelope) -> SessionRef:
        try:
            return SessionRef.model_validate(envelope.data or {})
        except ValidationError as e:
            raise ProtocolError("sessionId is required", validation_details(e)) from e

    # ── Session Events ───────────────────────────────────────────────────────

    def on_session_event(self, event: str, session: Session, data: dict):
        """Scheduler listener: translate a session event into an envelope for its owner."""
        client = self.clients.get(session.client_id)
        if client is None:
            return

        request_id = session.correlation_id
        base = {"sessionId": session.id}

        if event == "queued":
            client.active_session_count += 1
            message = make_envelope("test_queued", {**base, **data}, request_id)
        elif event == "started":
            message = make_envelope("test_started", {**base, **data}, request_id)
        elif event == "log":
            message = make_envelope("test_log", {**base, **data}, request_id)
        elif event == "completed":
            client.active_session_count -= 1
            message = make_envelope(
                "test_completed",
                {**base, **session.result.to_wire()},
                request_id,
                status=data["status"],
            )
        elif event == "cancelled":
            client.active_session_count -= 1
            context = {k: v for k, v in data.items() if v is not None}
            message = make_envelope(
                "test_cancelled", {**base, "status": "cancelled", **context}, request_id
            )
        else:
            logger.warning(f"[PROTOCOL] Ignoring unknown session event {event!r}")
            return

        client.send(message)


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
    server: ProtocolServer = request.app["server"]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    client = server.connect(ws)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await server.dispatch(client, msg.data)
            elif msg.type == WSMsgType.BINARY:
                client.send(error_envelope("Invalid message format", "binary frames are not supported"))
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"[PROTOCOL] Connection error for {client.id}: {ws.exception()}")
    finally:
        await server.disconnect(client)
    return ws


async def handle_health(request: web.Request) -> web.Response:
    server: ProtocolServer = request.app["server"]
    return web.json_response(server.status())


# ── App Factory ──────────────────────────────────────────────────────────────


def create_app(
    scheduler: Optional[SessionScheduler] = None,
    browser: Optional[BrowserSession] = None,
) -> web.Application:
    app = web.Application()

    async def on_startup(app: web.Application):
        ensure_dirs()
        server = ProtocolServer(scheduler, browser)
        server.start()
        app["server"] = server
        app["scheduler"] = server.scheduler
        logger.info(f"Protocol server started on {PROTOCOL_HOST}:{PROTOCOL_PORT}{PROTOCOL_PATH}")

    async def on_shutdown(app: web.Application):
        server: ProtocolServer = app["server"]
        await server.stop()
        logger.info("Protocol server stopped.")

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)

    app.router.add_get(PROTOCOL_PATH, handle_websocket)
    app.router.add_get("/health", handle_health)

    return app


def main():
    """Run the protocol server as a standalone service."""
    app = create_app()
    web.run_app(app, host=PROTOCOL_HOST, port=PROTOCOL_PORT)


if __name__ == "__main__":
    main()
