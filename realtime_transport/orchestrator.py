# =============================================================================
# Realtime Transport -- Orchestrator Base
# =============================================================================
#
# Shared plumbing of TwoLevelFallback and PriorityManager: consumer
# subscriptions forwarded to whichever adapter is current, adapter
# construction through a factory mapping, and feature detection.
# =============================================================================

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Mapping

from ._logging import logger as _default_logger
from .base import BaseTransport, TaskOwner
from .errors import TransportDestroyedError, TransportStateError
from .events import EventEmitter, _key
from .polling import PollingTransport
from .push_stream import PushStreamTransport
from .socket_transport import SocketTransport
from .types import (
    ConnectionStatus,
    Handler,
    SwitchReason,
    TransportEvent,
    TransportKind,
    Unsubscribe,
)

AdapterFactory = Callable[[Any], BaseTransport]
FeatureDetector = Callable[[], Mapping[TransportKind, bool]]

DEFAULT_FACTORIES: dict[TransportKind, Any] = {
    TransportKind.SOCKET: SocketTransport,
    TransportKind.PUSH_STREAM: PushStreamTransport,
    TransportKind.POLLING: PollingTransport,
}


def detect_feature_support() -> dict[TransportKind, bool]:
    """Which transports can run in this environment."""
    return {kind: cls.is_supported() for kind, cls in DEFAULT_FACTORIES.items()}


def state_field(snapshot: Any, name: str) -> Any:
    """Read *name* from a state dataclass or a mapping; ``None`` if absent."""
    if isinstance(snapshot, Mapping):
        return snapshot.get(name)
    return getattr(snapshot, name, None)


class BaseOrchestrator(TaskOwner):
    """Holds at most one current adapter and relays consumer handlers to it.

    Consumer handlers are registered locally and forwarded to the current
    adapter through wrappers that annotate each event with the active
    transport and the reason of the last switch.  Before an adapter is torn
    down every forwarded registration is removed, so a replaced adapter can
    never deliver events to consumers.
    """

    label = "Orchestrator"

    def __init__(
        self,
        *,
        logger: Any = None,
        factories: Mapping[TransportKind, AdapterFactory] | None = None,
        feature_detector: FeatureDetector | None = None,
    ) -> None:
        super().__init__()
        self._logger = logger or _default_logger
        self._emitter = EventEmitter(self._logger, label=self.label)
        self._factories = {**DEFAULT_FACTORIES, **(factories or {})}
        self._feature_detector = feature_detector or detect_feature_support
        self._destroyed = False
        self._current: BaseTransport | None = None
        self._current_kind: TransportKind | None = None
        self._switch_reason: SwitchReason | None = None
        # (event, consumer handler) -> unsubscribe on the current adapter
        self._forwarded: dict[tuple[str, Handler], Unsubscribe] = {}
        # orchestrator's own observers on the current adapter
        self._observers: list[Unsubscribe] = []

    # -- Public API -------------------------------------------------------------

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def on(self, event: str, handler: Handler) -> Unsubscribe:
        key = _key(event)
        unsubscribe_local = self._emitter.on(key, handler)
        if self._current is not None and (key, handler) not in self._forwarded:
            self._forward(self._current, key, handler)

        def unsubscribe() -> None:
            unsubscribe_local()
            remove = self._forwarded.pop((key, handler), None)
            if remove is not None:
                remove()

        return unsubscribe

    def get_feature_support(self) -> dict[TransportKind, bool]:
        return dict(self._feature_detector())

    def is_transport_supported(self, kind: TransportKind) -> bool:
        try:
            return bool(self._feature_detector().get(kind, False))
        except Exception as exc:
            self._logger.warning("Feature detection failed: %s", exc)
            return False

    async def send(self, message: Mapping[str, Any]) -> None:
        adapter = self._current
        send = getattr(adapter, "send", None)
        if adapter is None or not callable(send):
            raise TransportStateError(f"{self.label} has no transport to send with")
        await send(message)

    async def aclose(self) -> None:
        adapter = self._current
        self.destroy()
        if adapter is not None:
            await adapter.aclose()
        await self._drain_tasks()

    async def __aenter__(self) -> BaseOrchestrator:
        self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    def connect(self) -> None:
        raise NotImplementedError

    def destroy(self) -> None:
        raise NotImplementedError

    # -- Adapter wiring ---------------------------------------------------------

    def _ensure_usable(self) -> None:
        if self._destroyed:
            raise TransportDestroyedError(f"{self.label} has been destroyed")

    def _create_adapter(self, kind: TransportKind, config: Any) -> BaseTransport:
        factory = self._factories.get(kind)
        if factory is None:
            raise TransportStateError(f"No factory registered for transport {kind.value}")
        return factory(config)

    def _install(self, adapter: BaseTransport, kind: TransportKind) -> None:
        """Make *adapter* current and forward every consumer handler to it."""
        self._current = adapter
        self._current_kind = kind
        for event, handler in self._emitter.items():
            self._forward(adapter, event, handler)
        self._observe(adapter)

    def _observe(self, adapter: BaseTransport) -> None:
        """Hook for subclasses to register their own observers."""

    def _forward(self, adapter: BaseTransport, event: str, handler: Handler) -> None:
        def relay(ev: TransportEvent) -> Any:
            return handler(
                replace(ev, transport=self._current_kind, switch_reason=self._switch_reason)
            )

        self._forwarded[(event, handler)] = adapter.on(event, relay)

    def _detach(self) -> None:
        """Remove forwarded handlers and observers from the current adapter."""
        for remove in self._forwarded.values():
            remove()
        self._forwarded.clear()
        for remove in self._observers:
            remove()
        self._observers.clear()

    def _release_current(self) -> BaseTransport | None:
        """Detach the current adapter and destroy it."""
        adapter = self._current
        self._detach()
        self._current = None
        self._current_kind = None
        if adapter is not None:
            adapter.destroy()
        return adapter

    def _emit(
        self,
        name: str,
        data: Any = None,
        error: BaseException | None = None,
        *,
        transport: TransportKind | None = None,
    ) -> None:
        self._emitter.emit(
            TransportEvent(
                type=_key(name),
                data=data,
                error=error,
                transport=transport or self._current_kind,
                switch_reason=self._switch_reason,
            )
        )

    def _adapter_status(self, adapter: BaseTransport | None) -> ConnectionStatus | None:
        return self._adapter_field(adapter, "status")

    def _adapter_error(self, adapter: BaseTransport | None) -> BaseException | None:
        return self._adapter_field(adapter, "error")

    def _adapter_field(self, adapter: BaseTransport | None, name: str) -> Any:
        if adapter is None:
            return None
        try:
            return state_field(adapter.get_state(), name)
        except Exception as exc:
            self._logger.debug("%s: adapter state unavailable: %s", self.label, exc)
            return None
