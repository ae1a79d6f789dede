# =============================================================================
# Realtime Transport -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union


class ConnectionStatus(str, Enum):
    """Adapter / orchestrator lifecycle status.

    Socket and push-stream: DISCONNECTED -> CONNECTING -> CONNECTED, with
    RECONNECTING between attempts.  Polling: DISCONNECTED -> POLLING <->
    WAITING, with RECONNECTING after repeated poll failures.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    POLLING = "polling"
    WAITING = "waiting"


class TransportKind(str, Enum):
    """Wire mechanism, listed from most to least capable."""

    SOCKET = "socket"
    PUSH_STREAM = "push-stream"
    POLLING = "polling"


# Standard priority: persistent socket > push stream > polling
TRANSPORT_PRIORITY: tuple[TransportKind, ...] = (
    TransportKind.SOCKET,
    TransportKind.PUSH_STREAM,
    TransportKind.POLLING,
)


class SwitchReason(str, Enum):
    """Why an orchestrator moved to a different transport."""

    FEATURE_DETECTION = "feature_detection"
    FALLBACK = "fallback"
    UPGRADE = "upgrade"
    FORCED = "forced"


class ConnectionQuality(str, Enum):
    """Network quality derived from latency and jitter."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"


class EventName(str, Enum):
    """Fixed lifecycle event names.

    Message types received from the server are routed under their own
    free-form names in addition to ``message``.
    """

    OPEN = "open"
    CLOSE = "close"
    ERROR = "error"
    MESSAGE = "message"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    LATENCY = "latency"
    TRANSPORT_SWITCH = "transport_switch"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class TransportEvent:
    """An event delivered to handlers.

    Attributes:
        type: Event name, e.g. ``"open"``, ``"message"`` or a message type.
        data: Event payload (message dict, ``{"latency": 12}``, ...).
        error: The exception for ``error`` events.
        transport: Active transport kind, set when delivered through an
            orchestrator.
        switch_reason: Reason of the orchestrator's last transport switch.
    """

    type: str
    data: Any = None
    error: BaseException | None = None
    transport: TransportKind | None = None
    switch_reason: SwitchReason | None = None


EventHandler = Callable[[TransportEvent], Any]
AsyncEventHandler = Callable[[TransportEvent], Awaitable[Any]]
Handler = Union[EventHandler, AsyncEventHandler]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True, slots=True)
class LatencySample:
    """One round-trip measurement (``timestamp`` is wall-clock ms)."""

    timestamp: int
    latency: int


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of a single adapter's state."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    latency: int | None = None
    error: BaseException | None = None
    last_event_id: str | None = None


@dataclass(frozen=True)
class FallbackState(ConnectionState):
    """Adapter state plus the transport the two-level wrapper is using."""

    transport: TransportKind | None = None


@dataclass(frozen=True)
class ManagerState:
    """Snapshot of the priority manager's state."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    active_transport: TransportKind | None = None
    failure_count: int = 0
    can_fallback: bool = False
    reconnect_attempts: int = 0
    latency: int | None = None
    error: BaseException | None = None
    last_event_id: str | None = None
    transport_priority: tuple[TransportKind, ...] = ()


@dataclass(frozen=True, slots=True)
class TransportSwitch:
    """Payload of ``transport_switch`` events."""

    from_: TransportKind | None
    to: TransportKind
    reason: SwitchReason
    error: BaseException | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "from": self.from_,
            "to": self.to,
            "reason": self.reason,
        }
        if self.error is not None:
            data["error"] = self.error
        return data
