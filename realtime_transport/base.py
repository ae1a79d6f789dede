# =============================================================================
# Realtime Transport -- Adapter Base
# =============================================================================
#
# State, events, resumption cursor, latency accounting and backoff shared by
# the socket, push-stream and polling adapters.  Each adapter instance owns
# its asyncio tasks; every timer is a task so cancellation is uniform.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, ClassVar, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ._logging import logger as _default_logger
from .backoff import compute_backoff
from .config import TransportConfig
from .constants import MSG_PING, MSG_PONG
from .errors import (
    HeartbeatTimeoutError,
    TransportDestroyedError,
    TransportError,
    wrap_error,
)
from .events import EventEmitter
from .latency import LatencySampler
from .types import (
    ConnectionQuality,
    ConnectionState,
    ConnectionStatus,
    EventName,
    Handler,
    TransportEvent,
    TransportKind,
    Unsubscribe,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def build_url(
    base: str,
    path: str | None = None,
    params: Mapping[str, str | None] | None = None,
) -> str:
    """Append a path segment and non-empty query params to *base*."""
    scheme, netloc, url_path, query, fragment = urlsplit(base)
    if path:
        url_path = url_path.rstrip("/") + "/" + path
    pairs = dict(parse_qsl(query, keep_blank_values=True))
    for key, value in (params or {}).items():
        if value:
            pairs[key] = value
    return urlunsplit((scheme, netloc, url_path, urlencode(pairs), fragment))


def stamp_message(message: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of *message* with a millisecond ``timestamp`` if it has none."""
    stamped = dict(message)
    if not stamped.get("timestamp"):
        stamped["timestamp"] = now_ms()
    return stamped


class TaskOwner:
    """Strong references to the asyncio tasks an instance starts."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> asyncio.Task[Any]:
        loop = asyncio.get_running_loop()
        task = loop.create_task(fn(*args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _cancel(task: asyncio.Task[Any] | None) -> None:
        if task is not None and not task.done():
            task.cancel()

    async def _drain_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class BaseTransport(TaskOwner):
    """Common adapter surface: connect/disconnect/destroy/send/on/get_state."""

    kind: ClassVar[TransportKind]
    label: ClassVar[str] = "Transport"
    # server pongs answer our pings; polling has no ping channel
    intercepts_pong: ClassVar[bool] = True

    def __init__(self, config: TransportConfig) -> None:
        super().__init__()
        self._config = config
        self._logger = config.logger or _default_logger
        self._emitter = EventEmitter(self._logger, label=self.label)
        self._sampler = LatencySampler()
        self._pending_pings: dict[int, float] = {}
        self._destroyed = False
        self._explicit_disconnect = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._state = ConnectionState(last_event_id=self._load_last_event_id())

    # -- Capability -------------------------------------------------------------

    @classmethod
    def is_supported(cls) -> bool:
        return True

    # -- Properties -------------------------------------------------------------

    @property
    def config(self) -> TransportConfig:
        return self._config

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    # -- Public API -------------------------------------------------------------

    def connect(self) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        """Stop without auto-reconnect.  Safe to call repeatedly."""
        was_active = self._state.status != ConnectionStatus.DISCONNECTED
        self._explicit_disconnect = True
        self._set_state(status=ConnectionStatus.DISCONNECTED)
        self._cleanup()
        if was_active and not self._destroyed:
            self._emit(EventName.CLOSE, {})

    def destroy(self) -> None:
        """Release everything; the instance cannot be connected again."""
        if self._destroyed:
            return
        self._destroyed = True
        self._explicit_disconnect = True
        self._cleanup()
        self._set_state(status=ConnectionStatus.DISCONNECTED)
        self._emitter.clear()

    async def aclose(self) -> None:
        """Destroy and wait for the instance's tasks to finish."""
        self.destroy()
        await self._drain_tasks()

    async def send(self, message: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def on(self, event: str, handler: Handler) -> Unsubscribe:
        return self._emitter.on(event, handler)

    def get_state(self) -> ConnectionState:
        return self._state

    def average_latency(self) -> int | None:
        return self._sampler.average

    def connection_quality(self) -> ConnectionQuality:
        return self._sampler.quality

    async def __aenter__(self) -> BaseTransport:
        self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- Lifecycle helpers ------------------------------------------------------

    def _ensure_usable(self) -> None:
        if self._destroyed:
            raise TransportDestroyedError(f"{self.label} has been destroyed")

    def _cleanup(self) -> None:
        self._cancel(self._reconnect_task)
        self._reconnect_task = None

    def _set_state(self, **updates: Any) -> None:
        old = self._state.status
        self._state = replace(self._state, **updates)
        if self._state.status != old:
            self._logger.debug(
                "%s state: %s -> %s", self.label, old.value, self._state.status.value
            )

    def _emit(self, name: str, data: Any = None, error: BaseException | None = None) -> None:
        key = name.value if isinstance(name, EventName) else name
        self._emitter.emit(TransportEvent(type=key, data=data, error=error))

    def _handle_error(self, exc: BaseException) -> TransportError:
        """Record a transport error in state and emit it; never raises."""
        err = wrap_error(exc)
        self._set_state(error=err)
        self._logger.error("%s transport error: %s", self.label, err)
        self._emit(EventName.ERROR, {"error": err}, err)
        return err

    # -- Reconnection -----------------------------------------------------------

    def _next_reconnect_delay(self, attempt: int) -> float:
        cfg = self._config
        return compute_backoff(
            attempt,
            cfg.initial_reconnect_delay,
            cfg.max_reconnect_delay,
            cfg.jitter_factor,
        )

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None or self._destroyed:
            return

        attempts = self._state.reconnect_attempts
        if not self._config.attempts_remaining(attempts):
            self._logger.error(
                "%s: max reconnect attempts (%d) reached",
                self.label,
                self._config.max_reconnect_attempts,
            )
            self._on_reconnect_exhausted()
            return

        attempt = attempts + 1
        delay = self._next_reconnect_delay(attempt)
        self._set_state(reconnect_attempts=attempt)
        max_attempts = self._config.max_reconnect_attempts
        self._logger.info(
            "%s reconnecting in %.3fs (attempt %d/%s)",
            self.label,
            delay,
            attempt,
            max_attempts if max_attempts >= 0 else "inf",
        )
        self._emit(EventName.RECONNECTING, {"attempt": attempt, "delay": delay})
        self._reconnect_task = self._spawn(self._reconnect_after, delay)

    async def _reconnect_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        if self._destroyed or self._explicit_disconnect:
            return
        self._reconnect()

    def _reconnect(self) -> None:
        self.connect()

    def _on_reconnect_exhausted(self) -> None:
        self._set_state(status=ConnectionStatus.DISCONNECTED)

    # -- Inbound messages -------------------------------------------------------

    def _dispatch_message(self, message: dict[str, Any]) -> None:
        """Route one inbound record: pong, cursor, generic + typed events."""
        msg_type = message.get("type")
        if self.intercepts_pong and msg_type == MSG_PONG:
            self._handle_pong(message)
            return

        event_id = message.get("id")
        if event_id:
            self._update_last_event_id(str(event_id))

        self._emit(EventName.MESSAGE, message)

        if isinstance(msg_type, str) and msg_type and "data" in message:
            self._emit(msg_type, message["data"])

    # -- Latency ----------------------------------------------------------------

    def _new_ping(self) -> dict[str, Any]:
        timestamp = now_ms()
        self._pending_pings[timestamp] = time.monotonic()
        return {"type": MSG_PING, "timestamp": timestamp}

    def _handle_pong(self, message: Mapping[str, Any]) -> None:
        self._clear_heartbeat_timeout()
        timestamp = message.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return
        sent_at = self._pending_pings.pop(int(timestamp), None)
        if sent_at is None:
            return
        self._record_latency(round((time.monotonic() - sent_at) * 1000))

    def _record_latency(self, latency: int) -> None:
        self._set_state(latency=latency)
        self._sampler.record(latency)
        self._emit(EventName.LATENCY, {"latency": latency})

    def _clear_heartbeat_timeout(self) -> None:
        """Overridden by adapters that run a heartbeat."""

    # -- Resumption cursor ------------------------------------------------------

    def _load_last_event_id(self) -> str | None:
        storage = self._config.storage
        if storage is None:
            return None
        try:
            value = storage.get(self._config.last_event_id_key)
        except Exception as exc:
            self._logger.debug("%s: cursor load failed: %s", self.label, exc)
            return None
        return str(value) if value else None

    def _update_last_event_id(self, event_id: str) -> None:
        self._set_state(last_event_id=event_id)
        storage = self._config.storage
        if storage is None:
            return
        try:
            storage.set(self._config.last_event_id_key, event_id)
        except Exception as exc:
            self._logger.debug("%s: cursor save failed: %s", self.label, exc)


class ConnectionTransport(BaseTransport):
    """Adapters holding one long-lived connection (socket, push stream).

    Subclasses implement :meth:`_open_and_read`, which establishes the
    connection, calls :meth:`_handle_open` and reads until the connection
    ends, plus :meth:`_transmit_ping`.
    """

    def __init__(self, config: TransportConfig) -> None:
        super().__init__(config)
        self._run_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._sampling_task: asyncio.Task[None] | None = None
        self._heartbeat_timeout: asyncio.TimerHandle | None = None
        self._forced_close = False
        self._was_open = False

    @property
    def is_connected(self) -> bool:
        return self._state.status == ConnectionStatus.CONNECTED and not self._destroyed

    def connect(self) -> None:
        self._ensure_usable()
        if self.is_connected:
            return

        self._explicit_disconnect = False
        self._cleanup()
        self._set_state(status=ConnectionStatus.CONNECTING, error=None)
        self._forced_close = False
        self._was_open = False
        self._run_task = self._spawn(self._run)

    # -- Connection task --------------------------------------------------------

    async def _open_and_read(self) -> dict[str, Any] | None:
        raise NotImplementedError

    async def _transmit_ping(self, ping: dict[str, Any]) -> None:
        raise NotImplementedError

    async def _run(self) -> None:
        info: dict[str, Any] | None = None
        try:
            info = await self._open_and_read()
        except asyncio.CancelledError:
            if not self._forced_close:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except Exception as exc:
            self._handle_error(exc)
        self._run_task = None
        self._handle_close(info)

    def _force_close(self) -> None:
        """Drop the live connection and go through the normal close path."""
        if self._run_task is None:
            return
        self._forced_close = True
        self._cancel(self._run_task)

    def _handle_open(self) -> None:
        was_reconnecting = self._state.reconnect_attempts > 0
        self._was_open = True
        self._set_state(
            status=ConnectionStatus.CONNECTED,
            reconnect_attempts=0,
            error=None,
        )
        self._start_heartbeat()
        if getattr(self._config, "enable_latency_sampling", False):
            self._start_latency_sampling()

        self._emit(EventName.OPEN, {})
        if was_reconnecting:
            self._emit(EventName.RECONNECTED, {})

    def _handle_close(self, info: dict[str, Any] | None = None) -> None:
        self._cleanup()

        if not self._destroyed and not self._explicit_disconnect:
            if not self._was_open:
                self._logger.debug("%s: connection failed before opening", self.label)
            if self._config.attempts_remaining(self._state.reconnect_attempts):
                self._set_state(status=ConnectionStatus.RECONNECTING)
                self._schedule_reconnect()
            else:
                self._set_state(status=ConnectionStatus.DISCONNECTED)

        self._emit(EventName.CLOSE, info or {})

    def _cleanup(self) -> None:
        super()._cleanup()
        self._cancel(self._run_task)
        self._run_task = None
        self._stop_heartbeat()
        self._stop_latency_sampling()

    # -- Heartbeat --------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = self._spawn(self._heartbeat_loop)

    def _stop_heartbeat(self) -> None:
        self._cancel(self._heartbeat_task)
        self._heartbeat_task = None
        self._clear_heartbeat_timeout()
        self._pending_pings.clear()

    async def _heartbeat_loop(self) -> None:
        interval = getattr(self._config, "heartbeat_interval")
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                return

            if not self.is_connected:
                continue

            ping = self._new_ping()
            try:
                await self._transmit_ping(ping)
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._handle_error(exc)
                continue
            self._arm_heartbeat_timeout()

    def _arm_heartbeat_timeout(self) -> None:
        # measured from the oldest unanswered ping
        if self._heartbeat_timeout is not None:
            return
        timeout = getattr(self._config, "heartbeat_timeout")
        loop = asyncio.get_running_loop()
        self._heartbeat_timeout = loop.call_later(timeout, self._on_heartbeat_timeout)

    def _clear_heartbeat_timeout(self) -> None:
        if self._heartbeat_timeout is not None:
            self._heartbeat_timeout.cancel()
            self._heartbeat_timeout = None

    def _on_heartbeat_timeout(self) -> None:
        self._heartbeat_timeout = None
        self._logger.warning("%s: heartbeat timeout, closing connection", self.label)
        self._handle_error(HeartbeatTimeoutError())
        self._force_close()

    # -- Latency sampling -------------------------------------------------------

    def _start_latency_sampling(self) -> None:
        self._stop_latency_sampling()
        self._sampling_task = self._spawn(self._latency_sampling_loop)

    def _stop_latency_sampling(self) -> None:
        self._cancel(self._sampling_task)
        self._sampling_task = None

    async def _latency_sampling_loop(self) -> None:
        interval = getattr(self._config, "latency_sampling_interval")
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                return

            if not self.is_connected:
                continue

            ping = self._new_ping()
            try:
                await self._transmit_ping(ping)
            except asyncio.CancelledError:
                return
            except Exception as exc:
                # sampling must never destabilize the connection
                self._logger.debug("%s latency sampling ping failed: %s", self.label, exc)
