# =============================================================================
# Realtime Transport -- Push-Stream Adapter
# =============================================================================
#
# Server-to-client event stream over a streaming HTTP GET.  Pings and
# outbound messages travel as separate POST requests.
# =============================================================================

from __future__ import annotations

import importlib.util
from typing import Any, AsyncIterator, Mapping, Protocol

import httpx

from ._http import HTTPClientOwner, auth_headers
from .backoff import apply_jitter
from .base import ConnectionTransport, build_url, stamp_message
from .config import PushStreamConfig
from .constants import PATH_PING, PATH_SEND
from .errors import TransportHTTPError, TransportStateError
from .stream_parser import EventStreamParser, LineBuffer, decode_payload
from .types import TransportKind


# -- Stream sources ------------------------------------------------------------


class StreamSource(Protocol):
    """How a stream request is built and how its body becomes lines."""

    mode: str

    def build_request(
        self, config: PushStreamConfig, last_event_id: str | None
    ) -> tuple[str, dict[str, str]]: ...

    def iter_lines(self, response: httpx.Response) -> AsyncIterator[str]: ...


def _stream_url(config: PushStreamConfig, last_event_id: str | None) -> str:
    return build_url(
        config.url,
        params={"token": config.auth_token, "lastEventId": last_event_id},
    )


class LineStreamSource:
    """Credentials in the query string; httpx decodes the lines."""

    mode = "native"

    def build_request(
        self, config: PushStreamConfig, last_event_id: str | None
    ) -> tuple[str, dict[str, str]]:
        return _stream_url(config, last_event_id), {"Accept": "text/event-stream"}

    async def iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            yield line


class ByteStreamSource:
    """Custom headers; the body is read as raw chunks and split here."""

    mode = "manual"

    def build_request(
        self, config: PushStreamConfig, last_event_id: str | None
    ) -> tuple[str, dict[str, str]]:
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **auth_headers(config.auth_token, config.headers),
        }
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        return _stream_url(config, last_event_id), headers

    async def iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        buffer = LineBuffer()
        async for chunk in response.aiter_bytes():
            for line in buffer.feed(chunk):
                yield line


def select_stream_source(config: PushStreamConfig) -> StreamSource:
    """Manual byte reading is needed only when custom headers must be sent."""
    if config.headers:
        return ByteStreamSource()
    return LineStreamSource()


# -- Adapter -------------------------------------------------------------------


class PushStreamTransport(ConnectionTransport):
    """Push-stream adapter.

    The stream request is made with *client* (an ``httpx.AsyncClient``),
    created on first use when not given.  Only clients the adapter created
    itself are closed on destroy.
    """

    kind = TransportKind.PUSH_STREAM
    label = "PushStreamTransport"

    def __init__(
        self,
        config: PushStreamConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config)
        self._http = HTTPClientOwner(client, with_credentials=config.with_credentials)
        self._parser = EventStreamParser()
        self._server_retry: int | None = None

    @classmethod
    def is_supported(cls) -> bool:
        return importlib.util.find_spec("httpx") is not None

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

    # -- Outbound ---------------------------------------------------------------

    async def send(self, message: Mapping[str, Any]) -> None:
        """POST *message* to ``<url>/send``; errors are emitted and re-raised."""
        if not self.is_connected:
            raise TransportStateError("PushStreamTransport is not connected")
        cfg: PushStreamConfig = self._config
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

    async def _transmit_ping(self, ping: dict[str, Any]) -> None:
        # best-effort; a lost ping is caught by the heartbeat timeout
        cfg: PushStreamConfig = self._config
        try:
            await self._http.http_client().post(
                build_url(cfg.url, PATH_PING),
                json=ping,
                headers=auth_headers(cfg.auth_token, cfg.headers),
                timeout=cfg.request_timeout,
            )
        except httpx.HTTPError as exc:
            self._logger.debug("%s: ping failed: %s", self.label, exc)

    # -- Stream -----------------------------------------------------------------

    def _next_reconnect_delay(self, attempt: int) -> float:
        if self._server_retry is None:
            return super()._next_reconnect_delay(attempt)
        retry, self._server_retry = self._server_retry, None
        return apply_jitter(retry / 1000, self._config.jitter_factor)

    async def _open_and_read(self) -> dict[str, Any] | None:
        cfg: PushStreamConfig = self._config
        source = select_stream_source(cfg)
        url, headers = source.build_request(cfg, self._state.last_event_id)
        self._parser.reset()
        self._logger.debug("%s: opening %s stream", self.label, source.mode)

        async with self._http.http_client().stream(
            "GET",
            url,
            headers=headers,
            timeout=httpx.Timeout(cfg.request_timeout, read=None),
        ) as response:
            if not response.is_success:
                raise TransportHTTPError(
                    response.status_code,
                    response.reason_phrase,
                    context="Push-stream connection failed",
                )
            self._handle_open()
            async for line in source.iter_lines(response):
                self._process_line(line)

        self._logger.info("%s: stream ended by server", self.label)
        return None

    def _process_line(self, line: str) -> None:
        field = self._parser.parse_line(line)
        if field is None:
            return
        if field.name == "data":
            self._dispatch_message(decode_payload(field.value, field.event_type))
        elif field.name == "id":
            if field.value:
                self._update_last_event_id(field.value)
        elif field.name == "retry":
            self._server_retry = field.value
