"""Shared fakes and fixtures for realtime_transport tests."""

import asyncio
import json

import httpx
import pytest

from realtime_transport.base import BaseTransport
from realtime_transport.types import ConnectionStatus, EventName, TransportKind

_END = object()


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.close_code = None
        self.close_reason = ""
        self._incoming = asyncio.Queue()

    @property
    def sent_json(self):
        return [json.loads(s) for s in self.sent]

    async def send(self, data):
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def feed(self, message):
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def fail(self, exc):
        self._incoming.put_nowait(exc)

    def end(self, code=1000, reason=""):
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_END)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Callable replacing ``websockets.asyncio.client.connect``."""

    def __init__(self):
        self.calls = []
        self.sockets = []
        self.fail_with = None

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self):
        return self.sockets[-1]


class OpenStream(httpx.AsyncByteStream):
    """Response body that yields *chunks* then stays open until closed."""

    def __init__(self, chunks=()):
        self._chunks = list(chunks)
        self._closed = asyncio.Event()

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        await self._closed.wait()

    async def aclose(self):
        self._closed.set()


class Recorder:
    """Event handler that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]

    def of(self, event_type):
        return [e for e in self.events if e.type == event_type]


async def eventually(condition, timeout=1.0):
    """Wait until *condition()* is truthy or fail."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def recorder():
    return Recorder()


class FakeAdapter(BaseTransport):
    """Adapter double driven by the test: open(), fail(), close()."""

    label = "FakeAdapter"

    def __init__(self, config, kind):
        super().__init__(config)
        self.kind = kind
        self.connect_calls = 0
        self.sent = []
        self.send_error = None
        # socket-style adapters raise send failures without emitting them
        self.report_send_errors = True

    def connect(self):
        self._ensure_usable()
        self.connect_calls += 1
        self._explicit_disconnect = False
        self._set_state(status=ConnectionStatus.CONNECTING)

    def open(self):
        status = (
            ConnectionStatus.POLLING if self.kind == TransportKind.POLLING
            else ConnectionStatus.CONNECTED
        )
        self._set_state(status=status)
        self._emit(EventName.OPEN, {})

    def fail(self, exc):
        self._handle_error(exc)

    def close(self, status=ConnectionStatus.RECONNECTING):
        self._set_state(status=status)
        self._emit(EventName.CLOSE, {})

    def deliver(self, message):
        self._dispatch_message(message)

    def set_latency(self, latency):
        self._record_latency(latency)

    async def send(self, message):
        if self.send_error is not None:
            if not self.report_send_errors:
                raise self.send_error
            raise self._handle_error(self.send_error)
        self.sent.append(dict(message))


class FakeFactory:
    """Adapter factory for one transport kind, recording what it built."""

    def __init__(self, kind):
        self.kind = kind
        self.created = []
        self.calls = 0
        self.fail_with = None
        self.failures_left = None

    def __call__(self, config):
        self.calls += 1
        if self.fail_with is not None and self.failures_left != 0:
            if self.failures_left is not None:
                self.failures_left -= 1
            raise self.fail_with
        adapter = FakeAdapter(config, self.kind)
        self.created.append(adapter)
        return adapter

    @property
    def latest(self):
        return self.created[-1]


class Features:
    """Mutable feature detector."""

    def __init__(self, **support):
        self.support = {kind: True for kind in TransportKind}
        for name, value in support.items():
            self.support[TransportKind[name.upper()]] = value

    def __call__(self):
        return dict(self.support)


@pytest.fixture
def factories():
    return {kind: FakeFactory(kind) for kind in TransportKind}
