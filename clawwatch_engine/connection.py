"""
Connection Manager — the single duplex channel to the agent gateway.

Lifecycle per attempt (each attempt gets a new connection id):
  1. open ``ws(s)://<gateway>`` via aiohttp
  2. gateway sends ``connect.challenge`` → we send one connect request
  3. ``res`` for our request id: ok → authenticated, backoff reset, poller
     started; not ok → logged and the socket is closed
  4. any close or error → poller stopped, exactly one reconnect scheduled
     after the current backoff delay, delay doubled (1s → 60s cap)

Reconnect timers are ``asyncio.TimerHandle``s tagged with the connection id
that scheduled them; a timer fired for a superseded attempt, or after a newer
attempt authenticated, does nothing.

Inbound event frames go onto a single-consumer queue drained by one
dispatcher task, so handlers run strictly in arrival order.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import aiohttp

from clawwatch_engine import __version__
from clawwatch_engine.config import CollectorConfig
from clawwatch_engine.db.models import utcnow
from clawwatch_engine.ingest import Ingestor
from clawwatch_engine.logging_config import bind_connection_id
from clawwatch_engine.metrics import METRICS, CollectorMetrics
from clawwatch_engine.normalizer import normalize_event

logger = logging.getLogger("clawwatch.engine.connection")

CONNECT_REQUEST_ID = "clawwatch-1"
CLIENT_ID = "clawwatch-collector"
PROTOCOL_VERSION = 3

INITIAL_DELAY_MS = 1_000
MAX_DELAY_MS = 60_000

# Streaming events are too chatty to log one line each
QUIET_EVENTS = frozenset({"agent", "chat", "tick"})


class Poller(Protocol):
    def start(self) -> None: ...
    async def stop(self) -> None: ...


@dataclass
class ConnectionState:
    """Backoff and identity of the current connection attempt."""

    initial_delay_ms: int = INITIAL_DELAY_MS
    max_delay_ms: int = MAX_DELAY_MS
    delay_ms: int = INITIAL_DELAY_MS
    connection_id: int = 0
    authenticated: bool = False

    def begin_attempt(self) -> int:
        self.connection_id += 1
        self.authenticated = False
        return self.connection_id

    def next_delay(self) -> int:
        """Return the delay for the next reconnect and double it for the one after."""
        delay = self.delay_ms
        self.delay_ms = min(delay * 2, self.max_delay_ms)
        return delay

    def reset(self) -> None:
        self.delay_ms = self.initial_delay_ms

    def mark_authenticated(self, connection_id: int) -> bool:
        if connection_id != self.connection_id:
            return False
        self.authenticated = True
        self.reset()
        return True

    def is_current(self, connection_id: int) -> bool:
        return connection_id == self.connection_id


def build_connect_request(token: str) -> dict[str, Any]:
    return {
        "type": "req",
        "id": CONNECT_REQUEST_ID,
        "method": "connect",
        "params": {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "version": __version__,
                "platform": "linux",
                "mode": "operator",
            },
            "role": "operator",
            "scopes": ["operator.read"],
            "caps": [],
            "commands": [],
            "permissions": {},
            "auth": {"token": token},
            "locale": "en-US",
            "userAgent": f"{CLIENT_ID}/{__version__}",
        },
    }


class ConnectionManager:
    """Owns the gateway push channel, its reconnect timer and the dispatcher."""

    def __init__(
        self,
        config: CollectorConfig,
        ingestor: Ingestor,
        poller: Poller,
        *,
        metrics: CollectorMetrics | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.config = config
        self.ingestor = ingestor
        self.poller = poller
        self.metrics = metrics or METRICS
        self.state = ConnectionState()
        self._session_factory = session_factory
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._queue: asyncio.Queue[tuple[int, dict[str, Any]]] = asyncio.Queue()
        self._dispatcher: asyncio.Task | None = None
        self._conn_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._stopping = False

    @property
    def is_connected(self) -> bool:
        return self.state.authenticated

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._stopping = False
        self._http = self._session_factory()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="gateway-dispatcher")
        self._connect_now()

    async def stop(self) -> None:
        """Cancel timers and tasks, close the socket and the HTTP session."""
        self._stopping = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        await self.poller.stop()
        self.state.authenticated = False
        self.metrics.gateway_connected.set(0)

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        for task in (self._conn_task, self._dispatcher):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._conn_task = None
        self._dispatcher = None
        if self._http is not None:
            await self._http.close()
            self._http = None
        logger.info("Gateway connection manager stopped")

    def _connect_now(self) -> None:
        connection_id = self.state.begin_attempt()
        self._conn_task = asyncio.create_task(
            self._run_connection(connection_id), name=f"gateway-conn-{connection_id}",
        )

    async def _run_connection(self, connection_id: int) -> None:
        bind_connection_id(connection_id)
        url = self.config.ws_url
        logger.info("Connecting to %s (connection %d)", url, connection_id)
        try:
            async with self._http.ws_connect(url, heartbeat=30.0) as ws:
                self._ws = ws
                logger.info("Connected to gateway (connection %d)", connection_id)
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self._on_text(connection_id, msg.data, ws)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning("Socket error on connection %d: %s", connection_id, ws.exception())
                        break
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning("Connection %d failed: %s: %s", connection_id, type(e).__name__, e)
        finally:
            self._ws = None
        await self._handle_close(connection_id)

    # ── Frames ───────────────────────────────────────────────────────────────

    async def _on_text(self, connection_id: int, data: str, ws) -> None:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Dropping non-JSON frame: %s", data[:200])
            return
        if not isinstance(frame, dict):
            return
        await self.on_frame(connection_id, frame, ws)

    async def on_frame(self, connection_id: int, frame: dict[str, Any], ws) -> None:
        """Handle handshake frames inline, queue everything else."""
        frame_type = frame.get("type")

        if frame_type == "event" and frame.get("event") == "connect.challenge":
            logger.info("Received connect challenge, sending connect request")
            await ws.send_json(build_connect_request(self.config.gateway_token))
            return

        if frame_type == "res" and frame.get("id") == CONNECT_REQUEST_ID:
            if frame.get("ok"):
                if self.state.mark_authenticated(connection_id):
                    logger.info("Authenticated with gateway (connection %d)", connection_id)
                    self.metrics.gateway_connected.set(1)
                    self.poller.start()
            else:
                logger.error("Gateway rejected connect request: %s", frame.get("error"))
                await ws.close()
            return

        if frame_type == "event":
            self._queue.put_nowait((connection_id, frame))

    async def _handle_close(self, connection_id: int) -> None:
        if self._stopping:
            return
        if not self.state.is_current(connection_id):
            logger.debug("Ignoring close of superseded connection %d", connection_id)
            return

        logger.info("Disconnected from gateway (connection %d)", connection_id)
        self.state.authenticated = False
        self.metrics.gateway_connected.set(0)
        await self.poller.stop()
        self.schedule_reconnect(connection_id)

    def schedule_reconnect(self, connection_id: int) -> int:
        """Arm the single reconnect timer; returns the delay used (ms)."""
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
        delay_ms = self.state.next_delay()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay_ms / 1000, self._on_reconnect_timer, connection_id)
        self.metrics.reconnects_total.inc()
        logger.info("Reconnecting in %.1fs", delay_ms / 1000)
        return delay_ms

    def _on_reconnect_timer(self, connection_id: int) -> None:
        self._reconnect_handle = None
        if self._stopping:
            return
        if not self.state.is_current(connection_id) or self.state.authenticated:
            logger.debug("Stale reconnect timer from connection %d ignored", connection_id)
            return
        self._connect_now()

    # ── Dispatch ─────────────────────────────────────────────────────────────

    async def _dispatch_loop(self) -> None:
        while True:
            connection_id, frame = await self._queue.get()
            try:
                await self.handle_event(frame)
            except Exception as e:
                logger.error(
                    "Error handling %s event (connection %d): %s",
                    frame.get("event"), connection_id, e, exc_info=True,
                )
                self.metrics.errors_total.labels(
                    error_type=type(e).__name__, component="dispatcher",
                ).inc()
            finally:
                self._queue.task_done()

    async def handle_event(self, frame: dict[str, Any]) -> None:
        """Route one event frame to the normalizer and the ingest pipeline."""
        event = frame.get("event")
        payload = frame.get("payload")
        if not event or not isinstance(payload, dict):
            return

        self.metrics.frames_total.labels(event=event).inc()
        if event == "tick":
            return
        if event not in QUIET_EVENTS:
            logger.info("Received event: %s", event)

        batch = normalize_event(event, payload, utcnow())
        if batch is None:
            logger.info("Unhandled event type: %s %s", event, json.dumps(payload, default=str)[:200])
            return
        if batch:
            await self.ingestor.ingest(batch)
