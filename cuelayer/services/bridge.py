import asyncio
import contextlib
import logging
import socket
from pathlib import Path
from time import perf_counter
from typing import Any, Optional, Protocol, Union

import orjson
import websockets
from websockets.exceptions import WebSocketException

from cuelayer.config import CueConfig
from cuelayer.errors import BridgeSendError
from cuelayer.models.envelope import Envelope

log = logging.getLogger(__name__)

BRIDGE_HOST = "127.0.0.1"
BRIDGE_PORT = 7070

MAX_RECONNECT_DELAY = 8.0


class BridgeTransport(Protocol):
    def send(self, envelope: Envelope) -> None:
        ...


class _DebugDump:
    debug: bool
    debug_file_path: Optional[Path]

    def _init_debug(self, debug: bool, debug_file: Optional[str]) -> None:
        self.debug = bool(debug)
        self.debug_file_path = Path(debug_file) if debug_file else None
        if self.debug_file_path is not None:
            self.debug_file_path.parent.mkdir(parents=True, exist_ok=True)

    def _debug_dump(self, payload: bytes) -> None:
        line = f"[{perf_counter():.3f}] bridge {payload.decode('utf-8')}\n"
        if self.debug_file_path is None:
            log.debug(line.rstrip())
            return
        try:
            with self.debug_file_path.open("a", encoding="utf-8") as debug_file:
                debug_file.write(line)
        except OSError as e:
            log.warning("Bridge debug write error: %s", e)


class UdpBridgeTransport(_DebugDump):
    """Fire-and-forget JSON datagrams for bridges that listen on UDP.

    One envelope per datagram. Nothing is acknowledged or retried. The stock
    bridge app speaks websocket on the same port; use
    ``WebSocketBridgeTransport`` for it.
    """

    def __init__(
        self,
        host: str = BRIDGE_HOST,
        port: int = BRIDGE_PORT,
        debug: bool = False,
        debug_file: Optional[str] = None,
    ):
        self.address = (host, int(port))
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._init_debug(debug, debug_file)
        self.sent_count = 0

    def send(self, envelope: Envelope) -> None:
        payload = orjson.dumps(envelope.to_wire())
        if self.debug:
            self._debug_dump(payload)
        try:
            self.sock.sendto(payload, self.address)
        except OSError as e:
            raise BridgeSendError(
                "bridge_send_failed",
                f"could not send {envelope.type} to {self.address[0]}:{self.address[1]}",
                {"error": str(e)},
            ) from e
        self.sent_count += 1

    async def start(self) -> None:
        return None

    async def wait_connected(self, timeout: float = 2.0) -> bool:
        return True

    async def flush(self) -> None:
        return None

    def close(self) -> None:
        self.sock.close()

    async def aclose(self) -> None:
        self.close()


class WebSocketBridgeTransport(_DebugDump):
    """JSON text frames over a websocket to the bridge app (``ws://host:7070``).

    A background task keeps the connection open and reconnects with backoff.
    ``send`` never blocks: it queues the frame while connected and raises
    ``BridgeSendError`` while the bridge is unreachable.
    """

    def __init__(
        self,
        url: str = f"ws://{BRIDGE_HOST}:{BRIDGE_PORT}",
        debug: bool = False,
        debug_file: Optional[str] = None,
        reconnect_delay: float = 0.5,
    ):
        self.url = url
        self.reconnect_delay = float(reconnect_delay)
        self._init_debug(debug, debug_file)
        self.sent_count = 0
        self._ws: Optional[Any] = None
        self._queue: Optional["asyncio.Queue[str]"] = None
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        if self._task is None:
            self._queue = asyncio.Queue()
            self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.connected and loop.time() < deadline:
            await asyncio.sleep(0.02)
        return self.connected

    def send(self, envelope: Envelope) -> None:
        if self._ws is None or self._queue is None:
            raise BridgeSendError(
                "bridge_not_connected",
                f"could not send {envelope.type}: bridge at {self.url} is not connected",
                {"url": self.url},
            )
        payload = orjson.dumps(envelope.to_wire())
        if self.debug:
            self._debug_dump(payload)
        self._queue.put_nowait(payload.decode("utf-8"))
        self.sent_count += 1

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the socket."""
        if self._queue is not None and self._task is not None:
            await self._queue.join()

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def aclose(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while True:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    delay = self.reconnect_delay
                    log.info("Bridge connected: %s", self.url)
                    await self._serve(ws)
                    log.info("Bridge disconnected: %s", self.url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                log.warning("Bridge connection error (%s): %s", self.url, e)
            finally:
                self._ws = None
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, MAX_RECONNECT_DELAY)

    async def _serve(self, ws: Any) -> None:
        tasks = {asyncio.ensure_future(self._pump(ws)), asyncio.ensure_future(self._listen(ws))}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
        for task in done:
            task.result()

    async def _pump(self, ws: Any) -> None:
        assert self._queue is not None
        while True:
            payload = await self._queue.get()
            try:
                await ws.send(payload)
            finally:
                self._queue.task_done()

    async def _listen(self, ws: Any) -> None:
        async for message in ws:
            log.debug("Bridge message: %s", message)


AnyBridgeTransport = Union[UdpBridgeTransport, WebSocketBridgeTransport]


def make_bridge_transport(config: CueConfig) -> AnyBridgeTransport:
    if config.bridge_transport == "udp":
        return UdpBridgeTransport(config.bridge_host, config.bridge_port, debug=config.bridge_debug)
    return WebSocketBridgeTransport(
        f"ws://{config.bridge_host}:{config.bridge_port}",
        debug=config.bridge_debug,
    )
