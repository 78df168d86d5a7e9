"""Async WebSocket client for the protocol server.

Replies are matched to requests through a registry of one-shot futures keyed
by ``requestId``. A run's future resolves only on its terminal event
(``test_completed`` or ``test_cancelled``); intermediate events go to the
optional progress callback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Callable, Optional, Union

import aiohttp
from aiohttp import WSMsgType

from ..config import BATCH_DELAY_MS, PROTOCOL_URL
from ..constants import TERMINAL_EVENT_TYPES
from ..models.message import make_envelope
from ..models.run import RunConfig

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

PROGRESS_TYPES = ("test_queued", "test_started", "test_log")

ProgressCallback = Callable[[dict], None]


class ProtocolClient:
    """Connects to the protocol server and correlates replies with requests.

    Usage::

        async with ProtocolClient() as client:
            envelope = await client.run(instructions="Navigate to https://example.com")
    """

    def __init__(
        self,
        url: str = PROTOCOL_URL,
        timeout: float = 30.0,
        run_timeout: float = 600.0,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.run_timeout = run_timeout
        self.on_progress = on_progress
        self.client_id: Optional[str] = None
        self.server_info: dict[str, Any] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._established: Optional[asyncio.Future] = None
        self._pending: dict[str, asyncio.Future] = {}

    async def __aenter__(self) -> "ProtocolClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Connection ───────────────────────────────────────────────────────────

    async def connect(self):
        """Open the socket and wait for ``connection_established``."""
        loop = asyncio.get_running_loop()
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30)
            self._established = loop.create_future()
            self._reader = asyncio.create_task(self._read_loop())
            await asyncio.wait_for(asyncio.shield(self._established), self.timeout)
        except BaseException:
            await self.close()
            raise
        logger.info(f"[CLIENT] Connected to {self.url} as {self.client_id}")

    async def close(self):
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_pending(ConnectionError("Client closed"))

    async def _read_loop(self):
        try:
            async for msg in self._ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        envelope = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("[CLIENT] Dropping undecodable frame")
                        continue
                    if isinstance(envelope, dict):
                        self._route(envelope)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"[CLIENT] Connection error: {self._ws.exception()}")
                    break
        finally:
            self._fail_pending(ConnectionError("Connection to protocol server closed"))

    def _fail_pending(self, error: Exception):
        if self._established is not None and not self._established.done():
            self._established.set_exception(error)
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # ── Routing ──────────────────────────────────────────────────────────────

    def _route(self, envelope: dict):
        kind = envelope.get("type")
        request_id = envelope.get("requestId")
        data = envelope.get("data") or {}

        if kind == "connection_established":
            self.client_id = envelope.get("clientId")
            self.server_info = envelope.get("serverInfo") or {}
            if self._established is not None and not self._established.done():
                self._established.set_result(envelope)
            return

        if kind == "server_shutdown":
            logger.info("[CLIENT] Server is shutting down")
            return

        if kind in PROGRESS_TYPES:
            if self.on_progress:
                try:
                    self.on_progress(envelope)
                except Exception as e:
                    logger.warning(f"[CLIENT] Progress callback failed: {e}")
            return

        if kind in TERMINAL_EVENT_TYPES:
            cancel_request_id = data.get("cancelRequestId")
            if cancel_request_id:
                self._resolve(cancel_request_id, envelope)

        if request_id:
            self._resolve(request_id, envelope)
        elif kind == "error":
            logger.warning(f"[CLIENT] Server error: {envelope.get('message')}")

    def _resolve(self, request_id: str, envelope: dict):
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.set_result(envelope)

    # ── Requests ─────────────────────────────────────────────────────────────

    async def request(
        self, type: str, data: Optional[dict[str, Any]] = None, timeout: Optional[float] = None
    ) -> dict:
        """Send one message and wait for the envelope that answers it.

        Raises:
            ConnectionError: Not connected, or the connection dropped while waiting.
            asyncio.TimeoutError: No reply within ``timeout`` seconds.
        """
        if not self.connected:
            raise ConnectionError("Not connected to protocol server")

        request_id = f"req-{uuid.uuid4().hex[:12]}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json(make_envelope(type, data, request_id))
            return await asyncio.wait_for(future, timeout or self.timeout)
        finally:
            self._pending.pop(request_id, None)

    async def handshake(self, capabilities: Optional[dict[str, Any]] = None) -> dict:
        envelope = await self.request("handshake", capabilities or {"client": "testweaver"})
        return envelope.get("data") or {}

    async def ping(self) -> dict:
        return await self.request("ping")

    async def list_capabilities(self) -> dict:
        envelope = await self.request("list_capabilities")
        return envelope.get("data") or {}

    async def server_status(self) -> dict:
        return await self.request("get_server_status")

    async def get_status(self, session_id: str) -> dict:
        return await self.request("get_status", {"sessionId": session_id})

    async def cancel(self, session_id: str) -> dict:
        """Cancel a session. Resolves with ``test_cancelled`` or an ``error``."""
        return await self.request("cancel_test", {"sessionId": session_id})

    async def browser_action(
        self, action: str, params: Optional[dict[str, Any]] = None, browser_kind: str = "chromium"
    ) -> dict:
        return await self.request(
            "browser_action",
            {"action": action, "params": params or {}, "browserKind": browser_kind},
        )

    async def run(
        self,
        script_source: Optional[str] = None,
        config: Union[RunConfig, dict[str, Any], None] = None,
        instructions: Optional[str] = None,
        name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Submit a run and wait for its terminal envelope.

        Returns ``test_completed``, ``test_cancelled``, or an ``error`` envelope
        when the server rejected the request.
        """
        if isinstance(config, RunConfig):
            config = config.model_dump(by_alias=True, exclude_none=True)

        data: dict[str, Any] = {"config": config or {}}
        if script_source is not None:
            data["scriptSource"] = script_source
        if instructions is not None:
            data["instructions"] = instructions
        if name is not None:
            data["name"] = name

        return await self.request("run_test", data, timeout or self.run_timeout)

    async def run_batch(
        self,
        requests: list[dict[str, Any]],
        parallel: bool = False,
        delay_ms: int = BATCH_DELAY_MS,
    ) -> list[dict]:
        """Run several requests (keyword arguments for ``run``).

        Parallel batches are submitted together and left to the server's
        concurrency cap. Sequential batches pause ``delay_ms`` between runs.
        Failures are returned as ``error`` envelopes in place.
        """
        if parallel:
            outcomes = await asyncio.gather(
                *(self.run(**item) for item in requests), return_exceptions=True
            )
            return [_as_envelope(o) for o in outcomes]

        results = []
        for position, item in enumerate(requests):
            if position and delay_ms:
                await asyncio.sleep(delay_ms / 1000)
            try:
                results.append(await self.run(**item))
            except (ConnectionError, asyncio.TimeoutError, aiohttp.ClientError) as e:
                results.append(_as_envelope(e))
        return results


def _as_envelope(outcome: Union[dict, BaseException]) -> dict:
    if isinstance(outcome, BaseException):
        message = str(outcome) or type(outcome).__name__
        return make_envelope("error", message=message, details=type(outcome).__name__)
    return outcome
