# =============================================================================
# Realtime Transport -- Polling Adapter
# =============================================================================
#
# Repeated GET requests on a fixed cadence.  Works wherever plain HTTP does,
# at the cost of latency and request overhead.
# =============================================================================

from __future__ import annotations

import asyncio
import importlib.util
import time
from typing import Any, Mapping

import httpx

from ._http import HTTPClientOwner, auth_headers
from .backoff import polling_delay
from .base import BaseTransport, build_url, stamp_message
from .config import PollingConfig
from .constants import PATH_POLL, PATH_SEND
from .errors import TransportHTTPError, TransportProtocolError, TransportStateError
from .types import ConnectionStatus, EventName, TransportKind

_ACTIVE = (ConnectionStatus.POLLING, ConnectionStatus.WAITING)


class PollingTransport(BaseTransport):
    """Polling adapter.

    One poll loop task per connection: poll, wait ``polling_interval`` (plus
    up to 10% jitter), repeat.  ``max_consecutive_errors`` failed polls in a
    row hand over to the backoff reconnect path.
    """

    kind = TransportKind.POLLING
    label = "PollingTransport"
    intercepts_pong = False

    def __init__(
        self,
        config: PollingConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config)
        self._http = HTTPClientOwner(client, with_credentials=config.with_credentials)
        self._poll_task: asyncio.Task[None] | None = None
        self._consecutive_errors = 0
        # set by a reconnect until its first successful poll
        self._resuming = False

    @classmethod
    def is_supported(cls) -> bool:
        return importlib.util.find_spec("httpx") is not None

    @property
    def is_active(self) -> bool:
        return self._state.status in _ACTIVE and not self._destroyed

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    # -- Lifecycle --------------------------------------------------------------

    def connect(self) -> None:
        self._ensure_usable()
        if self.is_active:
            return

        self._explicit_disconnect = False
        self._consecutive_errors = 0
        self._resuming = False
        self._cleanup()
        self._set_state(status=ConnectionStatus.POLLING, error=None)
        self._emit(EventName.OPEN, {})

        # an open handler may have disconnected us already
        if self._destroyed or self._explicit_disconnect:
            return
        self._poll_task = self._spawn(self._poll_loop)

    def destroy(self) -> None:
        if self._destroyed:
            return
        super().destroy()
        try:
            self._spawn(self._http.aclose)
        except RuntimeError:
            self._logger.debug("%s: no running loop, HTTP client not closed", self.label)

    async def aclose(self) -> None:
        await super().aclose()
        await self._http.aclose()

    def _cleanup(self) -> None:
        super()._cleanup()
        # cancelling the loop aborts the in-flight request
        self._cancel(self._poll_task)
        self._poll_task = None

    def _reconnect(self) -> None:
        self.connect()
        if self.is_active:
            self._resuming = True

    def _on_reconnect_exhausted(self) -> None:
        self._set_state(status=ConnectionStatus.DISCONNECTED)
        self._emit(EventName.CLOSE, {})

    # -- Poll loop --------------------------------------------------------------

    async def _poll_loop(self) -> None:
        cfg: PollingConfig = self._config
        while not (self._destroyed or self._explicit_disconnect):
            if await self._poll_once():
                self._set_state(status=ConnectionStatus.WAITING)
            elif self._consecutive_errors >= cfg.max_consecutive_errors:
                self._handle_disconnection()
                return

            await asyncio.sleep(polling_delay(cfg.polling_interval))
            if self._destroyed or self._explicit_disconnect:
                return
            self._set_state(status=ConnectionStatus.POLLING)

    async def _poll_once(self) -> bool:
        """One poll request.  Returns False on failure (already reported)."""
        cfg: PollingConfig = self._config
        url = build_url(
            cfg.url,
            PATH_POLL,
            {"token": cfg.auth_token, "lastEventId": self._state.last_event_id},
        )
        started = time.monotonic()
        try:
            response = await self._http.http_client().get(
                url,
                headers={"Accept": "application/json", **cfg.headers},
                timeout=cfg.request_timeout,
            )
            if not response.is_success:
                raise TransportHTTPError(
                    response.status_code, response.reason_phrase, context="Polling failed"
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise TransportProtocolError(f"Invalid poll response: {exc}") from exc
        except Exception as exc:
            self._consecutive_errors += 1
            self._logger.warning(
                "%s: poll failed (%d/%d): %s",
                self.label,
                self._consecutive_errors,
                cfg.max_consecutive_errors,
                exc,
            )
            self._handle_error(exc)
            return False

        if cfg.enable_latency_sampling:
            self._record_latency(round((time.monotonic() - started) * 1000))
        self._consecutive_errors = 0
        self._set_state(reconnect_attempts=0)
        if self._resuming:
            self._resuming = False
            self._emit(EventName.RECONNECTED, {})

        if isinstance(payload, list):
            messages = payload
        elif payload:
            messages = [payload]
        else:
            messages = []
        for message in messages:
            if not isinstance(message, dict):
                self._handle_error(
                    TransportProtocolError("Failed to process message: expected a JSON object")
                )
                continue
            self._dispatch_message(message)
        return True

    def _handle_disconnection(self) -> None:
        self._cleanup()
        if self._destroyed or self._explicit_disconnect:
            return
        if self._config.attempts_remaining(self._state.reconnect_attempts):
            self._set_state(status=ConnectionStatus.RECONNECTING)
            self._schedule_reconnect()
        else:
            self._set_state(status=ConnectionStatus.DISCONNECTED)
            self._emit(EventName.CLOSE, {})

    # -- Outbound ---------------------------------------------------------------

    async def send(self, message: Mapping[str, Any]) -> None:
        """POST *message* to ``<url>/send``; errors are emitted and re-raised."""
        if not self.is_active:
            raise TransportStateError("PollingTransport is not connected")
        cfg: PollingConfig = self._config
        try:
            response = await self._http.http_client().post(
                build_url(cfg.url, PATH_SEND),
                json=stamp_message(message),
                headers=auth_headers(cfg.auth_token, cfg.headers),
                timeout=cfg.request_timeout,
            )
            if not response.is_success:
                raise TransportHTTPError(
                    response.status_code,
                    response.reason_phrase,
                    context="Failed to send message",
                )
        except Exception as exc:
            raise self._handle_error(exc)
