"""
WebSocket signaling transport.

One transport carries every control frame for one session: presence,
negotiation, media state, collection mutations and file chunks.  Frames are
validated into :mod:`livestage.signaling.messages` models and dispatched to
handlers registered per model class, one handler at a time in receipt order.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type, TypeVar
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

from ..errors import TransportAuthError, TransportError
from . import messages
from .messages import SignalMessage, UnknownMessage, ValidationError, parse_message

LOG = logging.getLogger(__name__)

AUTH_CLOSE_CODES = {4401, 4403}
AUTH_HTTP_STATUS = {401, 403}

M = TypeVar("M", bound=SignalMessage)
Handler = Callable[[Any], Optional[Awaitable[None]]]
CloseCallback = Callable[[], Optional[Awaitable[None]]]
ConnectivityListener = Callable[[bool], None]
Connector = Callable[[str], Awaitable[Any]]


class SignalingChannel(Protocol):
    """Surface the mesh, transfer and collection components depend on."""

    session_id: Optional[str]
    user_id: str

    async def send(self, message: SignalMessage) -> None: ...

    def on(self, kind: Type[M], handler: Callable[[M], Any]) -> Callable[[], None]: ...

    def off(self, kind: Type[SignalMessage], handler: Handler) -> None: ...

    def on_close(self, callback: CloseCallback) -> None: ...


def _default_connector(url: str) -> Awaitable[Any]:
    return websockets.connect(url, open_timeout=10, max_size=2**22)


class SignalingTransport:
    """Persistent client connection to the relay for a single session."""

    def __init__(
        self,
        relay_url: str,
        *,
        user_id: str,
        display_name: Optional[str] = None,
        role: str = "attendee",
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        queue_size: int = 256,
        connector: Optional[Connector] = None,
    ) -> None:
        self.relay_url = relay_url.rstrip("/")
        self.user_id = user_id
        self.display_name = display_name or user_id
        self.role = role
        self.reconnect_attempts = max(1, int(reconnect_attempts))
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.queue_size = max(1, int(queue_size))
        self._connector: Connector = connector or _default_connector

        self.session_id: Optional[str] = None
        self._token: Optional[str] = None
        self._ws: Any = None
        self._send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=self.queue_size)
        self._retry: Optional[Dict[str, Any]] = None
        self._handlers: Dict[Type[SignalMessage], List[Handler]] = {}
        self._close_callbacks: List[CloseCallback] = []
        self._connectivity_listeners: List[ConnectivityListener] = []
        self._runner: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._fatal: Optional[TransportError] = None
        self.connected = False
        self.logger = LOG.getChild(f"user.{user_id[:8]}")

    # ------------------------------------------------------------------ public API

    @property
    def is_open(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def connect(self, session_id: str, auth_token: str) -> "SignalingTransport":
        async with self._connect_lock:
            if self.is_open:
                if session_id == self.session_id:
                    return self
                raise TransportError(
                    f"transport already bound to session {self.session_id}; disconnect first"
                )
            self.session_id = session_id
            self._token = auth_token
            self._closing = False
            self._fatal = None
            await self._open()
            self._runner = asyncio.create_task(self._run(), name=f"signaling-{session_id}")
        return self

    async def send(self, message: SignalMessage) -> None:
        if self._closing or self._fatal is not None:
            raise TransportError("signaling transport is closed")
        await self._send_queue.put(message.to_wire())

    def on(self, kind: Type[M], handler: Callable[[M], Any]) -> Callable[[], None]:
        registered = self._handlers.setdefault(kind, [])
        if handler not in registered:
            registered.append(handler)

        def unsubscribe() -> None:
            self.off(kind, handler)

        return unsubscribe

    def off(self, kind: Type[SignalMessage], handler: Handler) -> None:
        registered = self._handlers.get(kind)
        if not registered:
            return
        self._handlers[kind] = [item for item in registered if item != handler]

    def on_close(self, callback: CloseCallback) -> None:
        if callback not in self._close_callbacks:
            self._close_callbacks.append(callback)

    def on_connectivity(self, listener: ConnectivityListener) -> None:
        if listener not in self._connectivity_listeners:
            self._connectivity_listeners.append(listener)

    def handler_count(self, kind: Type[SignalMessage]) -> int:
        return len(self._handlers.get(kind, ()))

    async def disconnect(self) -> None:
        if self._closing:
            return
        self._closing = True
        ws = self._ws
        if ws is not None and self.session_id and self.connected:
            leave = messages.LeaveSession(session_id=self.session_id)
            with contextlib.suppress(ConnectionClosed, WebSocketException, OSError, RuntimeError):
                await ws.send(leave.model_dump_json(by_alias=True, exclude_none=True))
        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        await self._teardown()

    async def wait_closed(self) -> None:
        """Wait for the transport to stop.  Re-raises a fatal transport error."""

        runner = self._runner
        if runner is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        if self._fatal is not None:
            raise self._fatal

    async def dispatch(self, message: SignalMessage) -> None:
        for handler in list(self._handlers.get(type(message), ())):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Handler %r failed for %s", handler, message.type)

    # ------------------------------------------------------------------ connection loop

    def _url(self) -> str:
        session = quote(self.session_id or "", safe="")
        token = quote(self._token or "", safe="")
        return f"{self.relay_url}/{session}?token={token}"

    async def _open(self) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.reconnect_attempts + 1):
            try:
                self._ws = await self._connector(self._url())
                await self._announce()
            except InvalidHandshake as exc:
                status = getattr(exc, "status_code", None)
                if status is None:
                    status = getattr(getattr(exc, "response", None), "status_code", None)
                if status in AUTH_HTTP_STATUS:
                    raise TransportAuthError(f"relay rejected credentials ({status})") from exc
                last_error = exc
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                last_error = exc
            else:
                self._set_connected(True)
                return
            self.logger.warning(
                "Signaling connect attempt %s/%s failed: %s",
                attempt,
                self.reconnect_attempts,
                last_error,
            )
            if attempt < self.reconnect_attempts:
                await asyncio.sleep(self.reconnect_delay)
        raise TransportError(f"could not reach relay at {self.relay_url}") from last_error

    async def _announce(self) -> None:
        join = messages.JoinSession(
            session_id=self.session_id or "",
            user_id=self.user_id,
            display_name=self.display_name,
            role=self.role,
        )
        await self._ws.send(join.model_dump_json(by_alias=True, exclude_none=True))

    async def _run(self) -> None:
        try:
            while not self._closing:
                close_code = await self._serve_connection()
                self._set_connected(False)
                if self._closing or self._fatal is not None:
                    break
                if close_code in AUTH_CLOSE_CODES:
                    self._fatal = TransportAuthError(f"relay closed the session ({close_code})")
                    break
                self.logger.info("Signaling connection lost (code=%s); reconnecting", close_code)
                try:
                    await self._open()
                except TransportError as exc:
                    self._fatal = exc
                    break
        finally:
            self._set_connected(False)
            if not self._closing:
                self._closing = True
                await self._teardown()

    async def _serve_connection(self) -> Optional[int]:
        ws = self._ws
        sender = asyncio.create_task(self._send_loop(ws))
        try:
            async for raw in ws:
                await self._handle_raw(raw)
                if self._fatal is not None:
                    break
        except ConnectionClosed:
            pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionClosed):
                await sender
        if self._fatal is not None:
            with contextlib.suppress(ConnectionClosed, WebSocketException, OSError):
                await ws.close()
        return getattr(ws, "close_code", None)

    async def _send_loop(self, ws: Any) -> None:
        while True:
            if self._retry is not None:
                frame, self._retry = self._retry, None
                queued = False
            else:
                frame = await self._send_queue.get()
                queued = True
            try:
                await ws.send(json.dumps(frame))
            except ConnectionClosed:
                # Goes out first on the next connection.
                self._retry = frame
                raise
            finally:
                if queued:
                    self._send_queue.task_done()

    async def _handle_raw(self, raw: Any) -> None:
        try:
            message = parse_message(raw)
        except (UnknownMessage, ValidationError) as exc:
            self.logger.debug("Ignoring frame: %s", exc)
            return

        if isinstance(message, messages.Ping):
            await self._send_queue.put(messages.Pong(ts=message.ts).to_wire())
            return
        if isinstance(message, messages.ErrorMessage) and message.code == "auth":
            self._fatal = TransportAuthError(message.message or "authentication failed")
            return
        await self.dispatch(message)

    def _set_connected(self, value: bool) -> None:
        if self.connected == value:
            return
        self.connected = value
        for listener in list(self._connectivity_listeners):
            try:
                listener(value)
            except Exception:  # pragma: no cover
                self.logger.exception("Connectivity listener failed")

    async def _teardown(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(ConnectionClosed, WebSocketException, OSError, RuntimeError):
                await ws.close()
        callbacks, self._close_callbacks = list(self._close_callbacks), []
        self._send_queue = asyncio.Queue(maxsize=self.queue_size)
        self._retry = None
        self._handlers.clear()
        self._connectivity_listeners.clear()
        for callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("Close callback failed")
        LOG.info("Signaling transport for session %s closed", self.session_id)
