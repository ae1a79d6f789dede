# =============================================================================
# Realtime Transport -- Socket Pool
# =============================================================================
#
# Shared websockets connections keyed by URL.  Callers acquire and release
# connections by reference count; unreferenced connections are evicted LRU
# when the pool is full and closed after an idle timeout.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger as _default_logger
from .base import TaskOwner
from .constants import (
    MAX_MESSAGE_SIZE,
    MSG_PING,
    POOL_CLEANUP_INTERVAL,
    POOL_CONNECTION_TIMEOUT,
    POOL_HEARTBEAT_INTERVAL,
    POOL_IDLE_TIMEOUT,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_RECONNECT_ATTEMPTS,
    POOL_RECONNECT_DELAY,
)
from .errors import TransportConnectionError, TransportStateError, TransportTimeoutError
from .types import Unsubscribe

MessageHandler = Callable[[Any], Any]


class PoolConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class PoolConfig:
    """Socket pool settings (durations in seconds)."""

    max_connections: int = POOL_MAX_CONNECTIONS
    connection_timeout: float = POOL_CONNECTION_TIMEOUT
    heartbeat_interval: float = POOL_HEARTBEAT_INTERVAL
    max_reconnect_attempts: int = POOL_MAX_RECONNECT_ATTEMPTS
    reconnect_delay: float = POOL_RECONNECT_DELAY
    idle_timeout: float = POOL_IDLE_TIMEOUT
    cleanup_interval: float = POOL_CLEANUP_INTERVAL
    logger: Any = None


@dataclass
class PooledConnection:
    """One shared connection and its bookkeeping."""

    url: str
    ws: Any = None
    state: PoolConnectionState = PoolConnectionState.CONNECTING
    ref_count: int = 1
    last_activity: float = 0.0
    reconnect_attempts: int = 0
    opened: asyncio.Event = field(default_factory=asyncio.Event)
    recv_task: asyncio.Task[None] | None = None
    heartbeat_task: asyncio.Task[None] | None = None
    reconnect_task: asyncio.Task[None] | None = None


class SocketPool(TaskOwner):
    """Reference-counted pool of websockets connections.

    Messages received on a pooled connection are fanned out to every
    handler subscribed for its URL.  Handlers receive the raw frame.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        *,
        connector: Callable[..., Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._config = config or PoolConfig()
        self._logger = self._config.logger or _default_logger
        self._connector = connector or websockets.asyncio.client.connect
        self._clock = clock
        self._connections: dict[str, PooledConnection] = {}
        self._handlers: dict[str, dict[MessageHandler, None]] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> PoolConfig:
        return self._config

    def get(self, url: str) -> PooledConnection | None:
        return self._connections.get(url)

    # -- Acquire / release ------------------------------------------------------

    async def acquire(self, url: str) -> PooledConnection:
        """Return a connected entry for *url*, opening one if needed."""
        self._start_cleanup()
        existing = self._connections.get(url)

        if existing is not None:
            if existing.state == PoolConnectionState.CONNECTED:
                existing.ref_count += 1
                existing.last_activity = self._clock()
                return existing
            if existing.state == PoolConnectionState.CONNECTING:
                return await self._join_pending(existing)
            if existing.reconnect_task is not None:
                return await self._reconnect_now(existing)
            del self._connections[url]
            self._stop_connection(existing)

        if len(self._connections) >= self._config.max_connections:
            if not self._evict_lru():
                raise TransportStateError("Socket pool exhausted")

        conn = PooledConnection(url=url, last_activity=self._clock())
        self._connections[url] = conn
        try:
            await self._open(conn)
        except BaseException:
            if self._connections.get(url) is conn:
                del self._connections[url]
            raise
        return conn

    async def _join_pending(self, conn: PooledConnection) -> PooledConnection:
        conn.ref_count += 1
        try:
            await asyncio.wait_for(conn.opened.wait(), timeout=self._config.connection_timeout)
        except asyncio.TimeoutError:
            conn.ref_count = max(0, conn.ref_count - 1)
            raise TransportTimeoutError("WebSocket connection timeout") from None
        if conn.state != PoolConnectionState.CONNECTED:
            conn.ref_count = max(0, conn.ref_count - 1)
            raise TransportConnectionError(f"WebSocket connection failed for {conn.url}")
        conn.last_activity = self._clock()
        return conn

    async def _reconnect_now(self, conn: PooledConnection) -> PooledConnection:
        """Skip the rest of *conn*'s reconnect delay; current holders keep the entry."""
        self._cancel(conn.reconnect_task)
        conn.reconnect_task = None
        conn.ref_count += 1
        try:
            await self._open(conn)
        except Exception:
            conn.ref_count = max(0, conn.ref_count - 1)
            if self._connections.get(conn.url) is conn:
                if conn.ref_count > 0:
                    self._schedule_reconnect(conn)
                else:
                    del self._connections[conn.url]
            raise
        return conn

    def release(self, url: str) -> None:
        """Drop one reference.  The connection stays open until idle cleanup."""
        conn = self._connections.get(url)
        if conn is None:
            return
        conn.ref_count = max(0, conn.ref_count - 1)
        conn.last_activity = self._clock()

    # -- Messaging --------------------------------------------------------------

    def subscribe(self, url: str, handler: MessageHandler) -> Unsubscribe:
        self._handlers.setdefault(url, {})[handler] = None

        def unsubscribe() -> None:
            handlers = self._handlers.get(url)
            if handlers is None:
                return
            handlers.pop(handler, None)
            if not handlers:
                del self._handlers[url]

        return unsubscribe

    async def send(self, url: str, data: str | bytes) -> None:
        conn = self._connections.get(url)
        if conn is None:
            raise TransportStateError(f"No connection found for {url}")
        if conn.state != PoolConnectionState.CONNECTED or conn.ws is None:
            raise TransportStateError(f"Connection not ready: {conn.state.value}")
        try:
            await conn.ws.send(data)
        except ConnectionClosed as exc:
            raise TransportConnectionError(f"Send failed: {exc}") from exc
        conn.last_activity = self._clock()

    def _dispatch(self, url: str, raw: Any) -> None:
        for handler in list(self._handlers.get(url, {})):
            try:
                handler(raw)
            except Exception:
                self._logger.exception("Error in socket pool message handler for %s", url)

    # -- Close ------------------------------------------------------------------

    def close(self, url: str) -> None:
        conn = self._connections.pop(url, None)
        self._handlers.pop(url, None)
        if conn is not None:
            self._stop_connection(conn)

    def close_all(self) -> None:
        for url in list(self._connections):
            self.close(url)
        self._cancel(self._cleanup_task)
        self._cleanup_task = None

    async def aclose(self) -> None:
        self.close_all()
        await self._drain_tasks()

    def cleanup_idle(self) -> list[str]:
        """Close unreferenced connections idle longer than ``idle_timeout``."""
        now = self._clock()
        idle = [
            url
            for url, conn in self._connections.items()
            if conn.ref_count == 0 and now - conn.last_activity > self._config.idle_timeout
        ]
        for url in idle:
            self._logger.info("Closing idle pooled connection %s", url)
            self.close(url)
        return idle

    def get_stats(self) -> dict[str, int]:
        active = sum(1 for c in self._connections.values() if c.ref_count > 0)
        return {
            "total_connections": len(self._connections),
            "active_connections": active,
            "idle_connections": len(self._connections) - active,
            "total_ref_count": sum(c.ref_count for c in self._connections.values()),
        }

    # -- Internal: connection lifecycle -----------------------------------------

    async def _open(self, conn: PooledConnection) -> None:
        conn.state = PoolConnectionState.CONNECTING
        conn.opened.clear()
        try:
            ws = await asyncio.wait_for(
                self._connector(conn.url, max_size=MAX_MESSAGE_SIZE, open_timeout=None),
                timeout=self._config.connection_timeout,
            )
        except asyncio.TimeoutError:
            conn.state = PoolConnectionState.DISCONNECTED
            conn.opened.set()
            raise TransportTimeoutError("WebSocket connection timeout") from None
        except Exception as exc:
            conn.state = PoolConnectionState.DISCONNECTED
            conn.opened.set()
            raise TransportConnectionError(f"Failed to connect: {exc}") from exc

        conn.ws = ws
        conn.state = PoolConnectionState.CONNECTED
        conn.reconnect_attempts = 0
        conn.last_activity = self._clock()
        conn.opened.set()
        conn.recv_task = self._spawn(self._recv_loop, conn)
        conn.heartbeat_task = self._spawn(self._heartbeat_loop, conn)
        self._logger.debug("Pooled connection open: %s", conn.url)

    async def _recv_loop(self, conn: PooledConnection) -> None:
        ws = conn.ws
        try:
            async for raw in ws:
                conn.last_activity = self._clock()
                self._dispatch(conn.url, raw)
        except ConnectionClosed as exc:
            self._logger.debug("Pooled connection %s closed: %s", conn.url, exc)
        except Exception as exc:
            self._logger.error("WebSocket error on %s: %s", conn.url, exc)
        self._on_connection_lost(conn)

    async def _heartbeat_loop(self, conn: PooledConnection) -> None:
        ping = json.dumps({"type": MSG_PING})
        while True:
            try:
                await asyncio.sleep(self._config.heartbeat_interval)
            except asyncio.CancelledError:
                return
            if conn.state != PoolConnectionState.CONNECTED or conn.ws is None:
                continue
            try:
                await conn.ws.send(ping)
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._logger.error("Heartbeat failed on %s: %s", conn.url, exc)
                # the receive loop sees the close and takes the reconnect path
                await self._close_ws(conn.ws)
                return

    def _on_connection_lost(self, conn: PooledConnection) -> None:
        if conn.state != PoolConnectionState.CONNECTED:
            return
        conn.state = PoolConnectionState.DISCONNECTED
        conn.ws = None
        self._cancel(conn.heartbeat_task)
        conn.heartbeat_task = None

        if self._connections.get(conn.url) is not conn or conn.ref_count == 0:
            return
        self._schedule_reconnect(conn)

    def _schedule_reconnect(self, conn: PooledConnection) -> None:
        if conn.reconnect_attempts >= self._config.max_reconnect_attempts:
            self._logger.error("Max reconnection attempts reached for %s", conn.url)
            if self._connections.get(conn.url) is conn:
                del self._connections[conn.url]
            return
        conn.reconnect_attempts += 1
        conn.reconnect_task = self._spawn(self._reconnect, conn)

    async def _reconnect(self, conn: PooledConnection) -> None:
        try:
            await asyncio.sleep(self._config.reconnect_delay)
        except asyncio.CancelledError:
            return
        conn.reconnect_task = None
        if self._connections.get(conn.url) is not conn:
            return
        self._logger.info(
            "Reconnecting pooled connection %s (attempt %d/%d)",
            conn.url,
            conn.reconnect_attempts,
            self._config.max_reconnect_attempts,
        )
        try:
            await self._open(conn)
        except Exception as exc:
            self._logger.error("Reconnection failed for %s: %s", conn.url, exc)
            self._schedule_reconnect(conn)

    def _stop_connection(self, conn: PooledConnection) -> None:
        conn.state = PoolConnectionState.DISCONNECTING
        for task in (conn.recv_task, conn.heartbeat_task, conn.reconnect_task):
            self._cancel(task)
        conn.recv_task = conn.heartbeat_task = conn.reconnect_task = None
        ws, conn.ws = conn.ws, None
        if ws is not None:
            try:
                self._spawn(self._close_ws, ws)
            except RuntimeError:
                self._logger.debug("No running loop, %s not closed cleanly", conn.url)
        conn.state = PoolConnectionState.DISCONNECTED
        conn.opened.set()

    async def _close_ws(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as exc:
            self._logger.error("Error closing pooled connection: %s", exc)

    def _evict_lru(self) -> bool:
        idle = [c for c in self._connections.values() if c.ref_count == 0]
        if not idle:
            return False
        lru = min(idle, key=lambda c: c.last_activity)
        self._logger.info("Evicting least recently used connection %s", lru.url)
        self.close(lru.url)
        return True

    # -- Internal: idle cleanup -------------------------------------------------

    def _start_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = self._spawn(self._cleanup_loop)

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.cleanup_interval)
            except asyncio.CancelledError:
                return
            self.cleanup_idle()


_global_pool: SocketPool | None = None


def get_global_pool(config: PoolConfig | None = None) -> SocketPool:
    """Process-wide pool, created on first use with *config*."""
    global _global_pool
    if _global_pool is None:
        _global_pool = SocketPool(config)
    return _global_pool


def reset_global_pool() -> None:
    global _global_pool
    if _global_pool is not None:
        _global_pool.close_all()
        _global_pool = None
