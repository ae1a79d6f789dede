# =============================================================================
# Realtime Transport -- Two-Level Fallback
# =============================================================================
#
# Push stream first, polling when the push stream cannot work.  The switch
# is one-way for the lifetime of the instance.
# =============================================================================

from __future__ import annotations

from dataclasses import fields
from typing import Any, Mapping

from .config import FallbackConfig, with_logger
from .errors import is_fatal_for_fallback
from .orchestrator import AdapterFactory, BaseOrchestrator, FeatureDetector, state_field
from .types import (
    ConnectionState,
    ConnectionStatus,
    EventName,
    FallbackState,
    SwitchReason,
    TransportEvent,
    TransportKind,
)


class TwoLevelFallback(BaseOrchestrator):
    """Push-stream primary with a polling secondary.

    Usage::

        transport = TwoLevelFallback(FallbackConfig(
            primary=PushStreamConfig(url="https://example.com/events"),
            secondary=PollingConfig(url="https://example.com/api"),
        ))
        transport.on("fallback", lambda ev: print(ev.data))
        transport.connect()

    In auto mode a network failure, an unsupported environment or a
    404/405/501 answer from the primary switches to polling once.  With
    ``auto_fallback=False`` the primary is constructed up to twice and a
    persistent failure propagates to the caller.
    """

    label = "TwoLevelFallback"

    def __init__(
        self,
        config: FallbackConfig,
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
        self._primary_config = with_logger(config.primary, self._logger)
        self._secondary_config = with_logger(config.secondary, self._logger)
        self._fallback_attempted = False

    @property
    def transport_type(self) -> TransportKind | None:
        return self._current_kind

    @property
    def fallback_attempted(self) -> bool:
        return self._fallback_attempted

    def is_push_stream_supported(self) -> bool:
        return self.is_transport_supported(TransportKind.PUSH_STREAM)

    # -- Lifecycle --------------------------------------------------------------

    def connect(self) -> None:
        self._ensure_usable()
        if self._current is not None:
            return

        if self._select_transport() == TransportKind.PUSH_STREAM:
            self._connect_primary()
        else:
            self._start(TransportKind.POLLING)

    def disconnect(self) -> None:
        """Tear down the current adapter; consumers get one ``close`` if it was live."""
        adapter = self._current
        if adapter is None:
            return
        kind = self._current_kind
        was_active = self._adapter_status(adapter) != ConnectionStatus.DISCONNECTED
        # destroyed rather than disconnected so its owned HTTP client is closed
        self._release_current()
        if was_active:
            self._emit(EventName.CLOSE, {}, transport=kind)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._release_current()
        self._emitter.clear()

    def get_state(self) -> FallbackState:
        adapter = self._current
        if adapter is None:
            return FallbackState()
        try:
            snapshot = adapter.get_state()
        except Exception as exc:
            self._logger.debug("%s: adapter state unavailable: %s", self.label, exc)
            return FallbackState(transport=self._current_kind)
        values = {}
        for f in fields(ConnectionState):
            value = state_field(snapshot, f.name)
            if value is not None:
                values[f.name] = value
        return FallbackState(**values, transport=self._current_kind)

    # -- Selection --------------------------------------------------------------

    def _select_transport(self) -> TransportKind:
        forced = self._config.force_transport
        if forced is not None:
            return forced
        if self.is_push_stream_supported() and not self._fallback_attempted:
            return TransportKind.PUSH_STREAM
        return TransportKind.POLLING

    def _config_for(self, kind: TransportKind) -> Any:
        if kind == TransportKind.PUSH_STREAM:
            return self._primary_config
        return self._secondary_config

    def _start(self, kind: TransportKind) -> None:
        adapter = self._create_adapter(kind, self._config_for(kind))
        self._switch_reason = (
            SwitchReason.FORCED if self._config.force_transport is not None
            else SwitchReason.FALLBACK if self._fallback_attempted
            else SwitchReason.FEATURE_DETECTION
        )
        self._install(adapter, kind)
        adapter.connect()

    def _connect_primary(self) -> None:
        tries = 1 if self._config.auto_fallback else 2
        for attempt in range(1, tries + 1):
            try:
                self._start(TransportKind.PUSH_STREAM)
                return
            except Exception as exc:
                self._release_current()
                if self._config.auto_fallback:
                    self._fallback_to_secondary(exc, previous=TransportKind.PUSH_STREAM)
                    return
                if attempt == tries:
                    raise
                self._logger.warning(
                    "%s: push-stream start failed, retrying: %s", self.label, exc
                )

    # -- Fallback ---------------------------------------------------------------

    def _observe(self, adapter: Any) -> None:
        if self._current_kind != TransportKind.PUSH_STREAM or not self._config.auto_fallback:
            return

        def on_error(event: TransportEvent) -> None:
            if adapter is self._current and is_fatal_for_fallback(event.error):
                self._fallback_to_secondary(event.error)

        self._observers.append(adapter.on(EventName.ERROR, on_error))

    def _fallback_to_secondary(
        self,
        error: BaseException | None,
        *,
        previous: TransportKind | None = None,
    ) -> None:
        if self._fallback_attempted or self._current_kind == TransportKind.POLLING:
            return
        self._fallback_attempted = True
        source = previous or self._current_kind or TransportKind.PUSH_STREAM
        self._logger.warning(
            "%s: push stream failed, falling back to polling: %s", self.label, error
        )
        self._release_current()
        self._start(TransportKind.POLLING)
        self._emit(EventName.FALLBACK, {"from": source, "to": TransportKind.POLLING})
