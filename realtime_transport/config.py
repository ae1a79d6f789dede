# =============================================================================
# Realtime Transport -- Configuration
# =============================================================================
#
# One immutable config per adapter instance.  Orchestrators derive the
# per-adapter configs with dataclasses.replace() and never mutate the
# objects they were given.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping

from .constants import (
    CONNECTION_TIMEOUT,
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT,
    LATENCY_SAMPLING_INTERVAL,
    MAX_FAILURES_BEFORE_SWITCH,
    POLLING_CURSOR_KEY,
    POLLING_INTERVAL,
    POLLING_MAX_CONSECUTIVE_ERRORS,
    PUSH_STREAM_CURSOR_KEY,
    RECONNECT_INITIAL_DELAY,
    RECONNECT_JITTER_FACTOR,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    REQUEST_TIMEOUT,
    SOCKET_CURSOR_KEY,
    UPGRADE_ATTEMPT_INTERVAL,
    UPGRADE_GRACE_PERIOD,
)
from .types import TransportKind

if TYPE_CHECKING:
    from .storage import CursorStore


@dataclass(frozen=True)
class TransportConfig:
    """Settings shared by every adapter.

    Attributes:
        url: Endpoint base URL (``ws://``/``wss://`` for the socket adapter,
            ``http://``/``https://`` for the others).
        auth_token: Sent as a ``token`` query parameter (and as a bearer
            header where custom headers are possible).
        initial_reconnect_delay: First backoff delay in seconds.
        max_reconnect_delay: Backoff cap in seconds.
        jitter_factor: Extra random delay, as a fraction of the base delay.
        max_reconnect_attempts: Retries before giving up, ``-1`` for infinite.
        last_event_id_key: Key of the resumption cursor in *storage*.
        storage: Resumption-cursor store, ``None`` disables persistence.
        logger: Logger for this adapter, defaults to the package logger.
    """

    url: str
    auth_token: str = ""
    initial_reconnect_delay: float = RECONNECT_INITIAL_DELAY
    max_reconnect_delay: float = RECONNECT_MAX_DELAY
    jitter_factor: float = RECONNECT_JITTER_FACTOR
    max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS
    last_event_id_key: str = ""
    storage: CursorStore | None = None
    logger: Any = None

    def attempts_remaining(self, attempts: int) -> bool:
        return self.max_reconnect_attempts < 0 or attempts < self.max_reconnect_attempts


@dataclass(frozen=True)
class SocketConfig(TransportConfig):
    """Persistent socket adapter settings."""

    heartbeat_interval: float = HEARTBEAT_INTERVAL
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT
    enable_latency_sampling: bool = True
    latency_sampling_interval: float = LATENCY_SAMPLING_INTERVAL
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    open_timeout: float = CONNECTION_TIMEOUT
    last_event_id_key: str = SOCKET_CURSOR_KEY


@dataclass(frozen=True)
class PushStreamConfig(TransportConfig):
    """Push-stream adapter settings.

    Non-empty *headers* select the manual byte-stream reader, since the
    line-stream source only carries credentials in the query string.
    """

    heartbeat_interval: float = HEARTBEAT_INTERVAL
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT
    enable_latency_sampling: bool = True
    latency_sampling_interval: float = LATENCY_SAMPLING_INTERVAL
    headers: Mapping[str, str] = field(default_factory=dict)
    with_credentials: bool = False
    request_timeout: float = REQUEST_TIMEOUT
    last_event_id_key: str = PUSH_STREAM_CURSOR_KEY


@dataclass(frozen=True)
class PollingConfig(TransportConfig):
    """Request/response polling adapter settings."""

    polling_interval: float = POLLING_INTERVAL
    headers: Mapping[str, str] = field(default_factory=dict)
    with_credentials: bool = False
    request_timeout: float = REQUEST_TIMEOUT
    enable_latency_sampling: bool = True
    max_consecutive_errors: int = POLLING_MAX_CONSECUTIVE_ERRORS
    last_event_id_key: str = POLLING_CURSOR_KEY


@dataclass(frozen=True)
class FallbackConfig:
    """Two-level wrapper: push-stream primary, polling secondary.

    Attributes:
        force_transport: ``None`` for automatic selection, or the kind to
            always use.
        auto_fallback: Switch to the secondary on a fatal primary error.
    """

    primary: PushStreamConfig
    secondary: PollingConfig
    auto_fallback: bool = True
    force_transport: TransportKind | None = None
    logger: Any = None


@dataclass(frozen=True)
class ManagerConfig:
    """Priority manager over all three transports.

    Attributes:
        max_failures_before_switch: Consecutive failures that trigger
            escalation to the next transport.
        enable_upgrade_attempts: Periodically try higher-priority transports.
        upgrade_attempt_interval: Seconds between upgrade attempts.
        upgrade_grace_period: Seconds the replaced adapter is kept alive
            after a successful upgrade.
    """

    socket: SocketConfig
    push_stream: PushStreamConfig
    polling: PollingConfig
    auto_fallback: bool = True
    force_transport: TransportKind | None = None
    max_failures_before_switch: int = MAX_FAILURES_BEFORE_SWITCH
    enable_upgrade_attempts: bool = False
    upgrade_attempt_interval: float = UPGRADE_ATTEMPT_INTERVAL
    upgrade_grace_period: float = UPGRADE_GRACE_PERIOD
    logger: Any = None


def with_logger(config: TransportConfig, logger: Any) -> TransportConfig:
    """Copy of *config* using *logger* unless it already names one."""
    if config.logger is not None:
        return config
    return replace(config, logger=logger)
