"""Client-side realtime transports with automatic fallback.

Three interchangeable adapters (persistent socket, push stream, polling)
share one event/state surface; two orchestrators pick between them.

Usage::

    from realtime_transport import connect

    async with connect(
        socket_url="wss://example.com/ws",
        push_stream_url="https://example.com/events",
        polling_url="https://example.com/api",
        auth_token="your-jwt",
    ) as manager:
        manager.on("chat", lambda event: print(event.transport, event.data))
        await manager.send({"type": "chat", "data": {"text": "hi"}})

Single adapter::

    from realtime_transport import SocketConfig, SocketTransport

    transport = SocketTransport(SocketConfig(url="wss://example.com/ws"))
    transport.on("message", handle)
    transport.connect()
"""

from ._version import __version__
from .config import (
    FallbackConfig,
    ManagerConfig,
    PollingConfig,
    PushStreamConfig,
    SocketConfig,
    TransportConfig,
)
from .errors import (
    ErrorKind,
    HeartbeatTimeoutError,
    TransportConfigError,
    TransportConnectionError,
    TransportDestroyedError,
    TransportError,
    TransportHTTPError,
    TransportProtocolError,
    TransportStateError,
    TransportTimeoutError,
    TransportUnsupportedError,
    classify_error,
    is_fatal_for_fallback,
    is_immediately_fatal,
)
from .fallback import TwoLevelFallback
from .manager import PriorityManager
from .orchestrator import detect_feature_support
from .polling import PollingTransport
from .pool import PoolConfig, SocketPool, get_global_pool, reset_global_pool
from .push_stream import PushStreamTransport, select_stream_source
from .socket_transport import SocketTransport
from .storage import CursorStore, MemoryCursorStore
from .types import (
    ConnectionQuality,
    ConnectionState,
    ConnectionStatus,
    EventName,
    FallbackState,
    ManagerState,
    SwitchReason,
    TransportEvent,
    TransportKind,
)


def connect(
    *,
    socket_url: str,
    push_stream_url: str,
    polling_url: str,
    auth_token: str = "",
    storage: CursorStore | None = None,
    **kwargs,
) -> PriorityManager:
    """Create a :class:`PriorityManager` over all three transports.

    The manager is returned unconnected so handlers registered before
    ``connect()`` also see the initial ``transport_switch``.  It can also be
    used as an async context manager; entering connects, leaving closes.
    Keyword arguments are forwarded to :class:`ManagerConfig` -- common
    ones: ``force_transport``, ``enable_upgrade_attempts``,
    ``max_failures_before_switch``, ``logger``.

    Args:
        socket_url: ``ws://`` or ``wss://`` endpoint of the socket adapter.
        push_stream_url: Stream endpoint of the push-stream adapter.
        polling_url: Base URL of the polling adapter (``/poll``, ``/send``).
        auth_token: Credential passed to every adapter.
        storage: Shared resumption-cursor store.

    Example::

        manager = connect(socket_url=..., push_stream_url=..., polling_url=...)
        manager.on("transport_switch", print)
        manager.connect()
    """
    common = {"auth_token": auth_token, "storage": storage}
    config = ManagerConfig(
        socket=SocketConfig(url=socket_url, **common),
        push_stream=PushStreamConfig(url=push_stream_url, **common),
        polling=PollingConfig(url=polling_url, **common),
        **kwargs,
    )
    return PriorityManager(config)


__all__ = [
    "__version__",
    "connect",
    "SocketTransport",
    "PushStreamTransport",
    "PollingTransport",
    "TwoLevelFallback",
    "PriorityManager",
    "SocketPool",
    "PoolConfig",
    "get_global_pool",
    "reset_global_pool",
    "select_stream_source",
    "detect_feature_support",
    "TransportConfig",
    "SocketConfig",
    "PushStreamConfig",
    "PollingConfig",
    "FallbackConfig",
    "ManagerConfig",
    "CursorStore",
    "MemoryCursorStore",
    "TransportEvent",
    "TransportKind",
    "ConnectionStatus",
    "ConnectionState",
    "ConnectionQuality",
    "FallbackState",
    "ManagerState",
    "SwitchReason",
    "EventName",
    "ErrorKind",
    "classify_error",
    "is_fatal_for_fallback",
    "is_immediately_fatal",
    "TransportError",
    "TransportStateError",
    "TransportDestroyedError",
    "TransportConfigError",
    "TransportUnsupportedError",
    "TransportConnectionError",
    "TransportTimeoutError",
    "HeartbeatTimeoutError",
    "TransportProtocolError",
    "TransportHTTPError",
]
