"""
Update Channel
==============

Duplex push transport carrying order updates from the backend.

UpdateChannel is the abstract interface the SyncEngine drives; it owns the
listener lists and the connect/disconnect bookkeeping so transports only
implement ``_open``, ``_close`` and ``_send``.

WebSocketUpdateChannel is the production transport: one ``websockets``
connection plus a reader task that hands every frame to the message
handlers in arrival order. An unexpected close is reported to connection
handlers as ``ConnectionChange(connected=False, error=...)``, and so is a
reader that dies on any other error.

Connection lifecycle:
  1. connect(): open the socket (optional X-API-Key header), start the reader
  2. frames -> on_message handlers, one at a time, errors isolated
  3. server/network close -> on_connection_change(False, error)
  4. disconnect(): listeners detached first, then the socket is closed
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ordersync.config import Settings
from ordersync.core.errors import TransportError

logger = logging.getLogger(__name__)

RawMessage = Union[str, bytes]
MessageHandler = Callable[[RawMessage], Awaitable[Any]]


@dataclass(frozen=True)
class ConnectionChange:
    connected: bool
    error: Optional[str] = None


ConnectionHandler = Callable[[ConnectionChange], Awaitable[Any]]


class UpdateChannel(ABC):
    """Abstract push transport."""

    def __init__(self) -> None:
        self._message_handlers: List[MessageHandler] = []
        self._connection_handlers: List[ConnectionHandler] = []
        self._connect_task: Optional[asyncio.Task] = None

    # -- transport hooks ------------------------------------------------------

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def _open(self) -> None:
        """Establish the connection; raise TransportError on failure."""

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    async def _send(self, message: Dict[str, Any]) -> None:
        ...

    # -- public API -----------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection. No-op when connected; joins an attempt in flight."""
        if self.connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._open())
        await asyncio.shield(self._connect_task)

    async def disconnect(self) -> None:
        # Listeners go first so nothing is delivered once disconnect() is called
        self._message_handlers.clear()
        self._connection_handlers.clear()
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except TransportError:
                pass
        await self._close()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.connected:
            raise TransportError(detail="push channel is not connected")
        await self._send(message)

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        self._message_handlers.append(handler)
        return lambda: self._discard(self._message_handlers, handler)

    def on_connection_change(self, handler: ConnectionHandler) -> Callable[[], None]:
        self._connection_handlers.append(handler)
        return lambda: self._discard(self._connection_handlers, handler)

    # -- dispatch helpers for subclasses -------------------------------------

    async def _dispatch_message(self, raw: RawMessage) -> None:
        for handler in list(self._message_handlers):
            await self._safe_handle("message", handler, raw)

    async def _notify_connection(self, change: ConnectionChange) -> None:
        for handler in list(self._connection_handlers):
            await self._safe_handle("connection", handler, change)

    @staticmethod
    def _discard(handlers: list, handler: Any) -> None:
        if handler in handlers:
            handlers.remove(handler)

    @staticmethod
    async def _safe_handle(kind: str, handler: Callable, arg: Any) -> None:
        """Run a handler with error isolation."""
        try:
            await handler(arg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Update channel %s handler raised: %s", kind, e, exc_info=True)


class WebSocketUpdateChannel(UpdateChannel):
    """UpdateChannel over a single WebSocket connection."""

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        ping_interval: Optional[float] = 30.0,
        ping_timeout: Optional[float] = 10.0,
        max_size: int = 1024 * 1024,
    ) -> None:
        super().__init__()
        self.url = url
        self._api_key = api_key
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._max_size = max_size
        self._ws: Optional[Any] = None  # websockets connection
        self._reader: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebSocketUpdateChannel":
        return cls(
            settings.push_url,
            api_key=settings.api_key,
            ping_interval=settings.ws_ping_interval_s,
            ping_timeout=settings.ws_ping_timeout_s,
            max_size=settings.ws_max_size,
        )

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def _open(self) -> None:
        headers = {"X-API-Key": self._api_key} if self._api_key else None
        logger.info("Connecting to push channel: %s", self.url)
        try:
            ws = await websockets.connect(
                self.url,
                additional_headers=headers,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                max_size=self._max_size,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(
                detail=f"{type(e).__name__}: {e}", context={"url": self.url}
            ) from e
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("Push channel connected")
        await self._notify_connection(ConnectionChange(connected=True))

    async def _read_loop(self, ws: Any) -> None:
        error: Optional[str] = None
        try:
            async for raw in ws:
                await self._dispatch_message(raw)
            error = "closed by server"
        except ConnectionClosed as e:
            error = f"connection closed: {e}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Push channel reader failed: %s", e, exc_info=True)
            error = f"reader failed: {type(e).__name__}: {e}"
            await ws.close()

        # Closed by disconnect(): nothing to report
        if self._ws is not ws:
            return
        self._ws = None
        self._reader = None
        logger.warning("Push channel lost: %s", error)
        await self._notify_connection(ConnectionChange(connected=False, error=error))

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            logger.info("Push channel disconnected")

    async def _send(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError(detail="push channel is not connected")
        async with self._send_lock:
            try:
                await ws.send(json.dumps(message, default=str))
            except ConnectionClosed as e:
                raise TransportError(detail=f"send failed: {e}") from e
