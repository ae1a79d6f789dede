# =============================================================================
# Realtime Transport -- Priority Manager
# =============================================================================
#
# Chooses among socket, push stream and polling by capability, escalates to
# the next transport on repeated or fatal failures, and optionally probes
# back up the priority list while running on a lower transport.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Mapping

from .base import BaseTransport
from .config import ManagerConfig, with_logger
from .errors import (
    TransportConnectionError,
    TransportStateError,
    TransportUnsupportedError,
    is_immediately_fatal,
)
from .orchestrator import AdapterFactory, BaseOrchestrator, FeatureDetector, state_field
from .types import (
    TRANSPORT_PRIORITY,
    ConnectionStatus,
    EventName,
    ManagerState,
    SwitchReason,
    TransportEvent,
    TransportKind,
    TransportSwitch,
)


class PriorityManager(BaseOrchestrator):
    """Runs the best available transport and falls back down the list.

    Usage::

        manager = PriorityManager(ManagerConfig(
            socket=SocketConfig(url="wss://example.com/ws"),
            push_stream=PushStreamConfig(url="https://example.com/events"),
            polling=PollingConfig(url="https://example.com/api"),
        ))
        manager.on("transport_switch", on_switch)
        manager.on("chat", on_chat)
        manager.connect()

    Adapter events reach consumer handlers directly, annotated with the
    active transport; the manager itself emits ``transport_switch``, the
    final ``close`` when no transport is left, and ``error`` for failures
    that happen before an adapter exists.
    """

    label = "PriorityManager"

    def __init__(
        self,
        config: ManagerConfig,
        *,
        factories: Mapping[TransportKind, AdapterFactory] | None = None,
        feature_detector: FeatureDetector | None = None,
    ) -> None:
        super().__init__(
            logger=config.logger,
            factories=factories,
            feature_detector=feature_detector,
        )
        self._config = config
        self._configs = {
            TransportKind.SOCKET: with_logger(config.socket, self._logger),
            TransportKind.PUSH_STREAM: with_logger(config.push_stream, self._logger),
            TransportKind.POLLING: with_logger(config.polling, self._logger),
        }
        self._explicit_disconnect = False
        self._consecutive_failures = 0
        self._upgrade_task: asyncio.Task[None] | None = None
        # live adapter replaced by the last upgrade, kept for the grace period
        self._backup: tuple[TransportKind, BaseTransport] | None = None
        self._backup_task: asyncio.Task[None] | None = None

        priority = self._detect_transport_priority()
        self._state = ManagerState(
            can_fallback=len(priority) > 1,
            last_event_id=self._load_last_event_id(),
            transport_priority=priority,
        )
        self._logger.info(
            "%s: transport priority %s", self.label, [k.value for k in priority]
        )

    # -- Public API -------------------------------------------------------------

    def connect(self) -> None:
        self._ensure_usable()
        if self._current is not None:
            return

        kind, reason = self._select_optimal_transport()
        self._explicit_disconnect = False
        self._set_state(status=ConnectionStatus.CONNECTING, error=None)
        self._connect_with_transport(kind, reason)

    def disconnect(self) -> None:
        self._explicit_disconnect = True
        self._stop_upgrade_timer()
        self._discard_backup()
        # every connect builds a fresh adapter, so the released one is destroyed
        self._release_current()
        self._set_state(status=ConnectionStatus.DISCONNECTED, active_transport=None)
        self._emit(EventName.CLOSE, {})

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._explicit_disconnect = True
        self._stop_upgrade_timer()
        self._discard_backup()
        self._release_current()
        self._set_state(status=ConnectionStatus.DISCONNECTED)
        self._emitter.clear()

    async def send(self, message: Mapping[str, Any]) -> None:
        adapter = self._current
        if adapter is None:
            raise TransportStateError("PriorityManager has no active transport")
        try:
            await adapter.send(message)
        except Exception as exc:
            # adapters that emit the failure as an error event were counted already
            if adapter is self._current and exc is not self._adapter_error(adapter):
                self._handle_transport_error(exc, emit=False)
            raise

    def get_state(self) -> ManagerState:
        """Manager state merged with the adapter's latency and cursor."""
        state = self._state
        adapter = self._current
        if adapter is None:
            return state

        latency, last_event_id = state.latency, state.last_event_id
        try:
            snapshot = adapter.get_state()
        except Exception as exc:
            self._logger.debug("%s: adapter state unavailable: %s", self.label, exc)
            return state

        adapter_latency = state_field(snapshot, "latency")
        if isinstance(adapter_latency, (int, float)) and not isinstance(adapter_latency, bool):
            latency = int(adapter_latency)
        adapter_cursor = state_field(snapshot, "last_event_id")
        if isinstance(adapter_cursor, str) and adapter_cursor:
            last_event_id = adapter_cursor
        return replace(state, latency=latency, last_event_id=last_event_id)

    def get_active_transport(self) -> TransportKind | None:
        return self._state.active_transport

    def switch_transport(
        self,
        kind: TransportKind,
        reason: SwitchReason = SwitchReason.FORCED,
    ) -> None:
        """Move to *kind* now, regardless of priority."""
        self._ensure_usable()
        if not self.is_transport_supported(kind):
            raise TransportUnsupportedError(f"Transport {kind.value} is not supported")
        if self._state.active_transport == kind and self._current is not None:
            return

        self._logger.info(
            "%s: switching transport %s -> %s (%s)",
            self.label,
            _value(self._state.active_transport),
            kind.value,
            reason.value,
        )
        self._explicit_disconnect = False
        self._release_current()
        self._consecutive_failures = 0
        self._set_state(failure_count=0)
        self._connect_with_transport(kind, reason)

    # -- Selection --------------------------------------------------------------

    def _detect_transport_priority(self) -> tuple[TransportKind, ...]:
        return tuple(k for k in TRANSPORT_PRIORITY if self.is_transport_supported(k))

    def _select_optimal_transport(self) -> tuple[TransportKind, SwitchReason]:
        forced = self._config.force_transport
        if forced is not None:
            if not self.is_transport_supported(forced):
                raise TransportUnsupportedError(
                    f"Forced transport {forced.value} is not supported"
                )
            return forced, SwitchReason.FORCED

        for kind in self._state.transport_priority:
            if self.is_transport_supported(kind):
                return kind, SwitchReason.FEATURE_DETECTION
        raise TransportUnsupportedError("No supported transports available")

    def _select_fallback_transport(self) -> TransportKind | None:
        active = self._state.active_transport
        priority = self._state.transport_priority
        if not self._config.auto_fallback or active not in priority:
            return None
        for kind in priority[priority.index(active) + 1:]:
            if self.is_transport_supported(kind):
                return kind
        return None

    # -- Connection -------------------------------------------------------------

    def _connect_with_transport(
        self,
        kind: TransportKind,
        reason: SwitchReason,
        *,
        propagate: bool = False,
    ) -> None:
        previous = self._state.active_transport
        self._switch_reason = reason
        self._set_state(active_transport=kind, status=ConnectionStatus.CONNECTING)
        self._logger.info(
            "%s: connecting with %s (%s)", self.label, kind.value, reason.value
        )
        try:
            adapter = self._create_adapter(kind, self._configs[kind])
            self._install(adapter, kind)
            adapter.connect()
        except Exception as exc:
            self._logger.error("%s: failed to start %s: %s", self.label, kind.value, exc)
            self._release_current()
            if propagate:
                raise
            self._handle_transport_error(exc, emit=True, escalate=False)
            self._attempt_fallback(exc)
            return

        self._emit(
            EventName.TRANSPORT_SWITCH,
            TransportSwitch(from_=previous, to=kind, reason=reason).as_dict(),
        )

    def _observe(self, adapter: BaseTransport) -> None:
        def guard(fn):
            def observer(event: TransportEvent) -> None:
                if adapter is self._current:
                    fn(adapter, event)
            return observer

        observers = {
            EventName.OPEN: self._on_transport_open,
            EventName.ERROR: self._on_transport_error,
            EventName.RECONNECTING: self._on_transport_reconnecting,
            EventName.RECONNECTED: self._on_transport_reconnected,
            EventName.CLOSE: self._on_transport_close,
        }
        for name, fn in observers.items():
            self._observers.append(adapter.on(name, guard(fn)))

    # -- Adapter observers ------------------------------------------------------

    def _on_transport_open(self, adapter: BaseTransport, event: TransportEvent) -> None:
        self._consecutive_failures = 0
        self._set_state(
            status=ConnectionStatus.CONNECTED,
            failure_count=0,
            reconnect_attempts=0,
            error=None,
        )
        if self._config.enable_upgrade_attempts:
            self._start_upgrade_timer()

    def _on_transport_error(self, adapter: BaseTransport, event: TransportEvent) -> None:
        if event.error is not None:
            self._handle_transport_error(event.error, emit=False)

    def _on_transport_reconnecting(self, adapter: BaseTransport, event: TransportEvent) -> None:
        attempt = state_field(event.data or {}, "attempt")
        updates: dict[str, Any] = {"status": ConnectionStatus.RECONNECTING}
        if isinstance(attempt, int):
            updates["reconnect_attempts"] = attempt
        self._set_state(**updates)

    def _on_transport_reconnected(self, adapter: BaseTransport, event: TransportEvent) -> None:
        self._consecutive_failures = 0
        self._set_state(
            status=ConnectionStatus.CONNECTED,
            failure_count=0,
            reconnect_attempts=0,
        )

    def _on_transport_close(self, adapter: BaseTransport, event: TransportEvent) -> None:
        if self._explicit_disconnect or self._destroyed:
            return
        gave_up = self._adapter_status(adapter) == ConnectionStatus.DISCONNECTED
        if gave_up or self._consecutive_failures >= self._config.max_failures_before_switch:
            self._attempt_fallback(TransportConnectionError("Too many connection failures"))
        else:
            self._set_state(status=ConnectionStatus.RECONNECTING)

    # -- Failure handling -------------------------------------------------------

    def _handle_transport_error(
        self,
        error: BaseException,
        *,
        emit: bool,
        escalate: bool = True,
    ) -> None:
        self._consecutive_failures += 1
        self._set_state(error=error, failure_count=self._consecutive_failures)
        self._logger.warning(
            "%s: transport error (%d/%d): %s",
            self.label,
            self._consecutive_failures,
            self._config.max_failures_before_switch,
            error,
        )
        if emit:
            self._emit(EventName.ERROR, {"error": error}, error)
        if escalate and self._should_attempt_fallback(error):
            self._attempt_fallback(error)

    def _should_attempt_fallback(self, error: BaseException) -> bool:
        if not self._config.auto_fallback:
            return False
        return (
            is_immediately_fatal(error)
            or self._consecutive_failures >= self._config.max_failures_before_switch
        )

    def _attempt_fallback(self, error: BaseException | None = None) -> None:
        if self._destroyed or self._explicit_disconnect:
            return
        current = self._state.active_transport
        target = self._select_fallback_transport()

        if target is None:
            self._logger.error(
                "%s: no fallback transport available after %s",
                self.label,
                _value(current),
            )
            self._stop_upgrade_timer()
            self._discard_backup()
            self._release_current()
            self._set_state(status=ConnectionStatus.DISCONNECTED, active_transport=None)
            self._emit(EventName.CLOSE, {})
            return

        self._logger.warning(
            "%s: falling back %s -> %s: %s", self.label, _value(current), target.value, error
        )
        self._release_current()
        self._consecutive_failures = 0
        self._set_state(failure_count=0)

        backup = self._take_backup(target)
        if backup is not None:
            self._reinstate(backup, target, SwitchReason.FALLBACK, previous=current)
            return
        self._connect_with_transport(target, SwitchReason.FALLBACK)

    # -- Upgrade ----------------------------------------------------------------

    def _start_upgrade_timer(self) -> None:
        if self._upgrade_task is not None or self._destroyed:
            return
        self._upgrade_task = self._spawn(self._upgrade_after)

    def _stop_upgrade_timer(self) -> None:
        self._cancel(self._upgrade_task)
        self._upgrade_task = None

    async def _upgrade_after(self) -> None:
        try:
            await asyncio.sleep(self._config.upgrade_attempt_interval)
        except asyncio.CancelledError:
            return
        self._upgrade_task = None
        self._attempt_transport_upgrade()

    def _attempt_transport_upgrade(self) -> None:
        if self._destroyed or self._explicit_disconnect:
            return
        if self._state.status == ConnectionStatus.CONNECTED:
            self._try_upgrade()
        if self._config.enable_upgrade_attempts:
            self._start_upgrade_timer()

    def _try_upgrade(self) -> None:
        active = self._state.active_transport
        priority = self._state.transport_priority
        if active is None or active not in priority or self._current is None:
            return

        for candidate in priority[: priority.index(active)]:
            if not self.is_transport_supported(candidate):
                continue

            self._logger.info(
                "%s: attempting upgrade %s -> %s", self.label, active.value, candidate.value
            )
            backup = self._current
            previous_reason = self._switch_reason
            self._detach()
            self._current = None
            self._current_kind = None
            self._consecutive_failures = 0
            try:
                self._connect_with_transport(candidate, SwitchReason.UPGRADE, propagate=True)
            except Exception as exc:
                self._logger.warning(
                    "%s: upgrade to %s failed, staying on %s: %s",
                    self.label,
                    candidate.value,
                    active.value,
                    exc,
                )
                self._switch_reason = previous_reason
                self._reinstate(backup, active, previous_reason, previous=None)
                return

            self._park_backup(active, backup)
            return

    def _reinstate(
        self,
        adapter: BaseTransport,
        kind: TransportKind,
        reason: SwitchReason | None,
        *,
        previous: TransportKind | None,
    ) -> None:
        """Make a still-live adapter current again without reconnecting it."""
        self._switch_reason = reason
        self._install(adapter, kind)
        status = self._adapter_status(adapter)
        if status in (
            ConnectionStatus.CONNECTED,
            ConnectionStatus.POLLING,
            ConnectionStatus.WAITING,
        ):
            manager_status = ConnectionStatus.CONNECTED
        elif status == ConnectionStatus.RECONNECTING:
            manager_status = ConnectionStatus.RECONNECTING
        else:
            manager_status = ConnectionStatus.CONNECTING
        self._set_state(active_transport=kind, status=manager_status)
        if previous is not None and reason is not None:
            self._emit(
                EventName.TRANSPORT_SWITCH,
                TransportSwitch(from_=previous, to=kind, reason=reason).as_dict(),
            )

    def _park_backup(self, kind: TransportKind, adapter: BaseTransport) -> None:
        self._discard_backup()
        self._backup = (kind, adapter)
        self._backup_task = self._spawn(self._expire_backup)

    def _take_backup(self, kind: TransportKind) -> BaseTransport | None:
        if self._backup is None or self._backup[0] != kind:
            return None
        adapter = self._backup[1]
        self._backup = None
        self._cancel(self._backup_task)
        self._backup_task = None
        if adapter.destroyed:
            return None
        return adapter

    def _discard_backup(self) -> None:
        self._cancel(self._backup_task)
        self._backup_task = None
        backup, self._backup = self._backup, None
        if backup is not None and backup[1] is not self._current:
            backup[1].destroy()

    async def _expire_backup(self) -> None:
        try:
            await asyncio.sleep(self._config.upgrade_grace_period)
        except asyncio.CancelledError:
            return
        self._backup_task = None
        backup, self._backup = self._backup, None
        if backup is not None and backup[1] is not self._current:
            self._logger.debug("%s: grace period over, destroying %s", self.label, backup[0].value)
            backup[1].destroy()

    # -- State ------------------------------------------------------------------

    def _set_state(self, **updates: Any) -> None:
        old = self._state.status
        self._state = replace(self._state, **updates)
        if self._state.status != old:
            self._logger.debug(
                "%s state: %s -> %s", self.label, old.value, self._state.status.value
            )

    def _load_last_event_id(self) -> str | None:
        for config in self._configs.values():
            storage = config.storage
            if storage is None:
                continue
            try:
                value = storage.get(config.last_event_id_key)
            except Exception as exc:
                self._logger.debug("%s: cursor load failed: %s", self.label, exc)
                continue
            if value:
                return str(value)
        return None


def _value(kind: TransportKind | None) -> str:
    return kind.value if kind is not None else "none"
