# =============================================================================
# Realtime Transport -- Error Types
# =============================================================================
#
# Usage errors (bad call for the current state) are raised to the caller.
# Transport errors are captured into adapter state and emitted as ``error``
# events; each one carries an ErrorKind so orchestrators can decide whether
# to retry locally or escalate to another transport.
# =============================================================================

from __future__ import annotations

from enum import Enum

import httpx
from websockets.exceptions import InvalidStatus, WebSocketException

from .constants import FATAL_HTTP_STATUSES


class ErrorKind(str, Enum):
    """Structured classification of a transport failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"
    HTTP_STATUS = "http_status"
    PROTOCOL = "protocol"
    HEARTBEAT = "heartbeat"
    UNKNOWN = "unknown"


class TransportError(Exception):
    """Base exception for all realtime-transport errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


# -- Usage errors --------------------------------------------------------------


class TransportStateError(TransportError):
    """Operation is invalid in the current state (e.g. send while disconnected)."""


class TransportDestroyedError(TransportStateError):
    """The instance was destroyed and can no longer be used."""


class TransportConfigError(TransportError):
    """Invalid configuration."""


class TransportUnsupportedError(TransportConfigError):
    """Requested transport is not available in this environment."""

    kind = ErrorKind.UNSUPPORTED


# -- Transport errors ----------------------------------------------------------


class TransportConnectionError(TransportError):
    """Network-level failure (refused, reset, DNS, lost connection)."""

    kind = ErrorKind.NETWORK


class TransportTimeoutError(TransportError):
    """A request or connection attempt timed out."""

    kind = ErrorKind.TIMEOUT


class HeartbeatTimeoutError(TransportTimeoutError):
    """No pong arrived within the heartbeat timeout."""

    kind = ErrorKind.HEARTBEAT

    def __init__(self, message: str = "Heartbeat timeout") -> None:
        super().__init__(message)


class TransportProtocolError(TransportError):
    """Malformed inbound data."""

    kind = ErrorKind.PROTOCOL


class TransportHTTPError(TransportError):
    """Endpoint answered with a non-success HTTP status."""

    kind = ErrorKind.HTTP_STATUS

    def __init__(self, status_code: int, reason: str = "", *, context: str = "Request failed") -> None:
        self.status_code = status_code
        self.reason = reason
        text = f"{context}: {status_code}"
        if reason:
            text = f"{text} {reason}"
        super().__init__(text)


# -- Classification ------------------------------------------------------------


def classify_error(exc: BaseException | None) -> ErrorKind:
    """Map an exception to an :class:`ErrorKind`."""
    if exc is None:
        return ErrorKind.UNKNOWN
    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, (InvalidStatus, httpx.HTTPStatusError)):
        return ErrorKind.HTTP_STATUS
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (httpx.TransportError, WebSocketException, OSError)):
        return ErrorKind.NETWORK
    if isinstance(exc, NotImplementedError):
        return ErrorKind.UNSUPPORTED
    return ErrorKind.UNKNOWN


def status_code_of(exc: BaseException | None) -> int | None:
    """HTTP status carried by *exc*, if any."""
    if isinstance(exc, TransportHTTPError):
        return exc.status_code
    if isinstance(exc, InvalidStatus):
        return exc.response.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_immediately_fatal(exc: BaseException | None) -> bool:
    """Failures that no amount of local retrying will fix.

    The transport is unsupported, or the endpoint answered 404/405/501.
    """
    kind = classify_error(exc)
    if kind == ErrorKind.UNSUPPORTED:
        return True
    if kind == ErrorKind.HTTP_STATUS:
        return status_code_of(exc) in FATAL_HTTP_STATUSES
    return False


def is_fatal_for_fallback(exc: BaseException | None) -> bool:
    """Conditions that make the two-level wrapper abandon its primary."""
    return classify_error(exc) == ErrorKind.NETWORK or is_immediately_fatal(exc)


def wrap_error(exc: BaseException) -> TransportError:
    """Convert a third-party exception into the package hierarchy."""
    if isinstance(exc, TransportError):
        return exc
    kind = classify_error(exc)
    if kind == ErrorKind.HTTP_STATUS:
        err: TransportError = TransportHTTPError(status_code_of(exc) or 0, str(exc))
    elif kind == ErrorKind.TIMEOUT:
        err = TransportTimeoutError(str(exc) or "Request timed out")
    elif kind == ErrorKind.NETWORK:
        err = TransportConnectionError(str(exc) or "Network error")
    elif kind == ErrorKind.UNSUPPORTED:
        err = TransportUnsupportedError(str(exc) or "Not supported")
    else:
        err = TransportError(str(exc) or exc.__class__.__name__)
    err.__cause__ = exc
    return err
