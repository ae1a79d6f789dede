# =============================================================================
# Realtime Transport -- Socket Adapter
# =============================================================================
#
# Persistent bidirectional connection over websockets.  JSON text frames in
# both directions; application-level ping/pong for heartbeat and latency.
# =============================================================================

from __future__ import annotations

import asyncio
import importlib.util
import json
from typing import Any, Callable, Mapping

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from .base import ConnectionTransport, build_url, stamp_message
from .config import SocketConfig
from .constants import MAX_MESSAGE_SIZE
from .errors import (
    TransportConnectionError,
    TransportProtocolError,
    TransportStateError,
    TransportTimeoutError,
)
from .types import TransportKind

# Abnormal closure (no close frame received)
CLOSE_ABNORMAL = 1006


class SocketTransport(ConnectionTransport):
    """Socket adapter.

    Usage::

        transport = SocketTransport(SocketConfig(url="wss://example.com/ws"))
        transport.on("chat", handle_chat)
        transport.connect()
        await transport.send({"type": "chat", "data": {"text": "hi"}})

    *connector* opens the connection; it is called as
    ``connector(url, additional_headers=..., max_size=..., open_timeout=None)``
    and must return an awaitable yielding an object with ``send()``,
    ``close()`` and async iteration over inbound frames.
    """

    kind = TransportKind.SOCKET
    label = "SocketTransport"

    def __init__(
        self,
        config: SocketConfig,
        *,
        connector: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(config)
        self._connector = connector or websockets.asyncio.client.connect
        self._ws: Any = None

    @classmethod
    def is_supported(cls) -> bool:
        return importlib.util.find_spec("websockets") is not None

    # -- Send -------------------------------------------------------------------

    async def send(self, message: Mapping[str, Any]) -> None:
        """Serialize and send *message*, stamping ``timestamp`` if absent."""
        ws = self._ws
        if ws is None or not self.is_connected:
            raise TransportStateError("SocketTransport is not connected")
        try:
            await ws.send(json.dumps(stamp_message(message)))
        except ConnectionClosed as exc:
            raise TransportConnectionError(f"Send failed: {exc}") from exc

    async def _transmit_ping(self, ping: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransportStateError("SocketTransport is not connected")
        await ws.send(json.dumps(ping))

    # -- Connection -------------------------------------------------------------

    def _build_url(self) -> str:
        cfg = self._config
        return build_url(
            cfg.url,
            params={"token": cfg.auth_token, "lastEventId": self._state.last_event_id},
        )

    async def _open_and_read(self) -> dict[str, Any] | None:
        cfg: SocketConfig = self._config
        url = self._build_url()
        headers = dict(cfg.extra_headers)

        try:
            ws = await asyncio.wait_for(
                self._connector(
                    url,
                    additional_headers=headers or None,
                    max_size=MAX_MESSAGE_SIZE,
                    open_timeout=None,  # asyncio.wait_for handles timeout
                ),
                timeout=cfg.open_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"Connection timed out after {cfg.open_timeout}s"
            ) from exc

        self._ws = ws
        try:
            self._handle_open()
            async for raw in ws:
                self._handle_raw_message(raw)
        except ConnectionClosedError as exc:
            code = exc.rcvd.code if exc.rcvd is not None else CLOSE_ABNORMAL
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            self._handle_error(
                TransportConnectionError(f"Connection closed abnormally (code {code})")
            )
            return {"code": code, "reason": reason}
        finally:
            self._ws = None
            try:
                await ws.close()
            except Exception as exc:
                self._logger.debug("%s: close failed: %s", self.label, exc)

        return {
            "code": getattr(ws, "close_code", None),
            "reason": getattr(ws, "close_reason", None) or "",
        }

    def _handle_raw_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError as exc:
            self._handle_error(TransportProtocolError(f"Failed to parse message: {exc}"))
            return
        if not isinstance(message, dict):
            self._handle_error(
                TransportProtocolError("Failed to parse message: expected a JSON object")
            )
            return
        self._dispatch_message(message)
