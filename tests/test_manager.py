"""Tests for PriorityManager (fake adapters via factories)."""

import asyncio

import httpx
import pytest

from conftest import Features, OpenStream, eventually
from realtime_transport.config import ManagerConfig, PollingConfig, PushStreamConfig, SocketConfig
from realtime_transport.errors import (
    TransportDestroyedError,
    TransportHTTPError,
    TransportStateError,
    TransportUnsupportedError,
)
from realtime_transport.manager import PriorityManager
from realtime_transport.polling import PollingTransport
from realtime_transport.push_stream import PushStreamTransport
from realtime_transport.storage import MemoryCursorStore
from realtime_transport.types import ConnectionStatus, SwitchReason, TransportKind

SOCKET = TransportKind.SOCKET
PUSH = TransportKind.PUSH_STREAM
POLL = TransportKind.POLLING


def make_config(**overrides):
    options = dict(
        socket=SocketConfig(url="ws://test/ws"),
        push_stream=PushStreamConfig(url="http://test/events"),
        polling=PollingConfig(url="http://test/api"),
    )
    options.update(overrides)
    return ManagerConfig(**options)


def make_manager(factories, features=None, **overrides):
    return PriorityManager(
        make_config(**overrides),
        factories=factories,
        feature_detector=features or Features(),
    )


class TestPriority:
    def test_all_supported(self, factories):
        state = make_manager(factories).get_state()
        assert state.transport_priority == (SOCKET, PUSH, POLL)
        assert state.can_fallback
        assert state.status == ConnectionStatus.DISCONNECTED

    def test_unsupported_excluded(self, factories):
        manager = make_manager(factories, Features(socket=False, push_stream=False))
        state = manager.get_state()
        assert state.transport_priority == (POLL,)
        assert not state.can_fallback

    def test_connect_picks_highest(self, factories, recorder):
        manager = make_manager(factories, Features(socket=False))
        manager.on("transport_switch", recorder)
        manager.connect()

        assert manager.get_active_transport() == PUSH
        assert recorder.events[0].data == {
            "from": None,
            "to": PUSH,
            "reason": SwitchReason.FEATURE_DETECTION,
        }

    def test_forced_transport(self, factories, recorder):
        manager = make_manager(factories, force_transport=POLL)
        manager.on("transport_switch", recorder)
        manager.connect()
        assert manager.get_active_transport() == POLL
        assert recorder.events[0].data["reason"] == SwitchReason.FORCED

    def test_forced_unsupported_raises(self, factories):
        manager = make_manager(factories, Features(socket=False), force_transport=SOCKET)
        with pytest.raises(TransportUnsupportedError, match="Forced transport socket"):
            manager.connect()
        assert manager.get_state().status == ConnectionStatus.DISCONNECTED
        assert factories[SOCKET].created == []

    def test_cursor_loaded_from_storage(self, factories):
        store = MemoryCursorStore({"sse_last_event_id": "e3"})
        manager = make_manager(
            factories, push_stream=PushStreamConfig(url="http://test/events", storage=store)
        )
        assert manager.get_state().last_event_id == "e3"


class TestStatusMirroring:
    def test_open_marks_connected(self, factories):
        manager = make_manager(factories)
        manager.connect()
        assert manager.get_state().status == ConnectionStatus.CONNECTING
        factories[SOCKET].latest.open()
        assert manager.get_state().status == ConnectionStatus.CONNECTED

    def test_reconnecting_mirrors_attempt(self, factories):
        manager = make_manager(factories)
        manager.connect()
        adapter = factories[SOCKET].latest
        adapter.open()
        adapter._emit("reconnecting", {"attempt": 2, "delay": 1.0})
        state = manager.get_state()
        assert state.status == ConnectionStatus.RECONNECTING
        assert state.reconnect_attempts == 2

        adapter._emit("reconnected", {})
        assert manager.get_state().status == ConnectionStatus.CONNECTED

    def test_close_while_retrying_is_reconnecting(self, factories):
        manager = make_manager(factories)
        manager.connect()
        factories[SOCKET].latest.open()
        factories[SOCKET].latest.close(ConnectionStatus.RECONNECTING)
        assert manager.get_state().status == ConnectionStatus.RECONNECTING
        assert manager.get_active_transport() == SOCKET


class TestEscalation:
    def test_threshold_escalates(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("transport_switch", recorder)
        manager.connect()
        socket = factories[SOCKET].latest
        for _ in range(3):
            socket.fail(TransportHTTPError(503))

        assert manager.get_active_transport() == PUSH
        assert socket.destroyed
        switch = recorder.events[-1].data
        assert switch == {"from": SOCKET, "to": PUSH, "reason": SwitchReason.FALLBACK}
        assert manager.get_state().failure_count == 0

    def test_open_resets_failures(self, factories):
        manager = make_manager(factories)
        manager.connect()
        socket = factories[SOCKET].latest
        socket.fail(TransportHTTPError(503))
        socket.fail(TransportHTTPError(503))
        socket.open()
        assert manager.get_state().failure_count == 0
        socket.fail(TransportHTTPError(503))
        socket.fail(TransportHTTPError(503))
        assert manager.get_active_transport() == SOCKET
        assert manager.get_state().failure_count == 2

    def test_fatal_error_escalates_immediately(self, factories):
        manager = make_manager(factories)
        manager.connect()
        factories[SOCKET].latest.fail(TransportHTTPError(404))
        assert manager.get_active_transport() == PUSH

    def test_adapter_giving_up_escalates(self, factories):
        manager = make_manager(factories)
        manager.connect()
        factories[SOCKET].latest.close(ConnectionStatus.DISCONNECTED)
        assert manager.get_active_transport() == PUSH

    def test_no_candidate_closes(self, factories, recorder):
        manager = make_manager(factories, Features(socket=False, push_stream=False))
        manager.on("close", recorder)
        manager.connect()
        polling = factories[POLL].latest
        polling.fail(TransportHTTPError(404))

        assert len(recorder.of("close")) == 1
        state = manager.get_state()
        assert state.status == ConnectionStatus.DISCONNECTED
        assert state.active_transport is None
        assert polling.destroyed

    def test_escalation_walks_the_whole_list(self, factories):
        manager = make_manager(factories)
        manager.connect()
        factories[SOCKET].latest.fail(TransportHTTPError(404))
        factories[PUSH].latest.fail(TransportHTTPError(404))
        assert manager.get_active_transport() == POLL

    def test_auto_fallback_disabled(self, factories):
        manager = make_manager(factories, auto_fallback=False)
        manager.connect()
        factories[SOCKET].latest.fail(TransportHTTPError(404))
        assert manager.get_active_transport() == SOCKET

    def test_construction_failure_falls_back(self, factories, recorder):
        factories[SOCKET].fail_with = RuntimeError("no sockets here")
        manager = make_manager(factories)
        manager.on("error", recorder)
        manager.connect()
        assert manager.get_active_transport() == PUSH
        assert isinstance(recorder.of("error")[0].error, RuntimeError)


class TestRouting:
    def test_messages_annotated(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("chat", recorder)
        manager.connect()
        factories[SOCKET].latest.deliver({"type": "chat", "data": {"text": "hi"}})

        event = recorder.of("chat")[0]
        assert event.data == {"text": "hi"}
        assert event.transport == SOCKET
        assert event.switch_reason == SwitchReason.FEATURE_DETECTION

    def test_handlers_follow_switch(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("chat", recorder)
        manager.connect()
        socket = factories[SOCKET].latest
        socket.fail(TransportHTTPError(404))
        socket.deliver({"type": "chat", "data": 1})
        factories[PUSH].latest.deliver({"type": "chat", "data": 2})

        assert [e.data for e in recorder.of("chat")] == [2]
        assert recorder.of("chat")[0].transport == PUSH

    def test_adapter_events_not_duplicated(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("error", recorder)
        manager.connect()
        factories[SOCKET].latest.fail(TransportHTTPError(503))
        assert len(recorder.of("error")) == 1


class TestState:
    def test_merges_latency_and_cursor(self, factories):
        manager = make_manager(factories)
        manager.connect()
        adapter = factories[SOCKET].latest
        adapter.set_latency(42)
        adapter.deliver({"type": "chat", "data": 1, "id": "m9"})
        state = manager.get_state()
        assert state.latency == 42
        assert state.last_event_id == "m9"

    def test_adapter_state_failure_ignored(self, factories):
        manager = make_manager(factories)
        manager.connect()

        def broken():
            raise RuntimeError("gone")

        factories[SOCKET].latest.get_state = broken
        assert manager.get_state().active_transport == SOCKET


class TestSend:
    @pytest.mark.asyncio
    async def test_send_proxies(self, factories):
        manager = make_manager(factories)
        manager.connect()
        await manager.send({"type": "chat"})
        assert factories[SOCKET].latest.sent == [{"type": "chat"}]

    @pytest.mark.asyncio
    async def test_send_without_transport(self, factories):
        with pytest.raises(TransportStateError):
            await make_manager(factories).send({"type": "chat"})

    @pytest.mark.asyncio
    async def test_send_failure_counts(self, factories):
        manager = make_manager(factories, auto_fallback=False)
        manager.connect()
        factories[SOCKET].latest.send_error = TransportHTTPError(503)
        with pytest.raises(TransportHTTPError):
            await manager.send({"type": "chat"})
        assert manager.get_state().failure_count == 1

    @pytest.mark.asyncio
    async def test_unreported_send_failure_counts(self, factories):
        manager = make_manager(factories, auto_fallback=False)
        manager.connect()
        adapter = factories[SOCKET].latest
        adapter.report_send_errors = False
        adapter.send_error = TransportHTTPError(503)
        with pytest.raises(TransportHTTPError):
            await manager.send({"type": "chat"})
        assert manager.get_state().failure_count == 1

    @pytest.mark.asyncio
    async def test_failed_sends_below_threshold_keep_transport(self):
        def handler(request):
            if request.url.path.endswith("/send"):
                return httpx.Response(500)
            if request.url.path.endswith("/ping"):
                return httpx.Response(204)
            if request.url.path.endswith("/poll"):
                return httpx.Response(200, json=[])
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=OpenStream()
            )

        def client():
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

        manager = PriorityManager(
            make_config(
                push_stream=PushStreamConfig(
                    url="http://test/events", enable_latency_sampling=False
                ),
                max_failures_before_switch=3,
            ),
            factories={
                PUSH: lambda cfg: PushStreamTransport(cfg, client=client()),
                POLL: lambda cfg: PollingTransport(cfg, client=client()),
            },
            feature_detector=Features(socket=False),
        )
        manager.connect()
        await eventually(lambda: manager.get_state().status == ConnectionStatus.CONNECTED)

        for expected in (1, 2):
            with pytest.raises(TransportHTTPError):
                await manager.send({"type": "chat"})
            assert manager.get_state().failure_count == expected
        assert manager.get_active_transport() == PUSH
        await manager.aclose()


class TestSwitchAndLifecycle:
    def test_switch_transport(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("transport_switch", recorder)
        manager.connect()
        socket = factories[SOCKET].latest
        manager.switch_transport(POLL)

        assert manager.get_active_transport() == POLL
        assert socket.destroyed
        assert recorder.events[-1].data == {
            "from": SOCKET,
            "to": POLL,
            "reason": SwitchReason.FORCED,
        }

    def test_switch_to_active_is_noop(self, factories):
        manager = make_manager(factories)
        manager.connect()
        manager.switch_transport(SOCKET)
        assert len(factories[SOCKET].created) == 1

    def test_switch_to_unsupported_raises(self, factories):
        manager = make_manager(factories, Features(push_stream=False))
        with pytest.raises(TransportUnsupportedError):
            manager.switch_transport(PUSH)

    def test_disconnect_emits_single_close(self, factories, recorder):
        manager = make_manager(factories)
        manager.on("close", recorder)
        manager.connect()
        socket = factories[SOCKET].latest
        socket.open()
        manager.disconnect()

        assert len(recorder.of("close")) == 1
        assert manager.get_state().status == ConnectionStatus.DISCONNECTED
        assert manager.get_active_transport() is None
        assert socket.destroyed

    @pytest.mark.asyncio
    async def test_disconnect_closes_owned_http_client(self, monkeypatch):
        created = []
        make_client = httpx.AsyncClient

        def owned_client():
            client = make_client(
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
            )
            created.append(client)
            return client

        monkeypatch.setattr(httpx, "AsyncClient", owned_client)
        manager = PriorityManager(
            make_config(polling=PollingConfig(url="http://test/api", polling_interval=5.0)),
            feature_detector=Features(socket=False, push_stream=False),
        )
        manager.connect()
        await eventually(lambda: created)
        manager.disconnect()
        await eventually(lambda: created[0].is_closed)
        await manager.aclose()

    def test_reconnect_after_disconnect(self, factories):
        manager = make_manager(factories)
        manager.connect()
        manager.disconnect()
        manager.connect()
        assert len(factories[SOCKET].created) == 2

    def test_destroy(self, factories):
        manager = make_manager(factories)
        manager.connect()
        socket = factories[SOCKET].latest
        manager.destroy()
        assert socket.destroyed
        with pytest.raises(TransportDestroyedError):
            manager.connect()


class TestUpgrade:
    def start_on_polling(self, factories, features, **overrides):
        manager = make_manager(
            factories,
            features,
            **{
                "enable_upgrade_attempts": True,
                "upgrade_attempt_interval": 0.01,
                "upgrade_grace_period": 0.05,
                **overrides,
            },
        )
        features.support[SOCKET] = False
        features.support[PUSH] = False
        manager.connect()
        factories[POLL].latest.open()
        return manager

    @pytest.mark.asyncio
    async def test_upgrade_to_socket(self, factories, recorder):
        features = Features()
        manager = self.start_on_polling(factories, features)
        manager.on("transport_switch", recorder)
        polling = factories[POLL].latest

        features.support[SOCKET] = True
        await eventually(lambda: manager.get_active_transport() == SOCKET)
        assert recorder.events[-1].data == {
            "from": POLL,
            "to": SOCKET,
            "reason": SwitchReason.UPGRADE,
        }
        # replaced adapter lingers for the grace period
        assert not polling.destroyed
        await eventually(lambda: polling.destroyed)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_failed_upgrade_keeps_current(self, factories, recorder):
        features = Features()
        manager = self.start_on_polling(factories, features)
        manager.on("transport_switch", recorder)
        polling = factories[POLL].latest

        factories[SOCKET].fail_with = RuntimeError("socket blocked")
        features.support[SOCKET] = True
        await eventually(lambda: factories[SOCKET].calls >= 2)

        assert manager.get_active_transport() == POLL
        assert manager.get_state().status == ConnectionStatus.CONNECTED
        assert not polling.destroyed
        assert len(factories[POLL].created) == 1
        assert recorder.events == []

        # the reinstated adapter is still wired to consumers
        manager.on("chat", recorder)
        polling.deliver({"type": "chat", "data": 1})
        assert recorder.of("chat")[0].transport == POLL
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_fallback_reuses_backup(self, factories):
        features = Features()
        manager = self.start_on_polling(factories, features, upgrade_grace_period=5.0)
        polling = factories[POLL].latest

        features.support[SOCKET] = True
        await eventually(lambda: manager.get_active_transport() == SOCKET)
        features.support[SOCKET] = False
        factories[SOCKET].latest.fail(TransportHTTPError(404))

        assert manager.get_active_transport() == POLL
        assert len(factories[POLL].created) == 1
        assert not polling.destroyed
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_no_upgrade_when_disabled(self, factories):
        features = Features(socket=False)
        manager = make_manager(factories, features, upgrade_attempt_interval=0.01)
        manager.connect()
        factories[PUSH].latest.open()
        features.support[SOCKET] = True
        await asyncio.sleep(0.05)
        assert manager.get_active_transport() == PUSH
        await manager.aclose()


class TestConnectHelper:
    def test_builds_manager_over_three_urls(self):
        from realtime_transport import connect

        store = MemoryCursorStore()
        manager = connect(
            socket_url="ws://test/ws",
            push_stream_url="http://test/events",
            polling_url="http://test/api",
            auth_token="jwt",
            storage=store,
            max_failures_before_switch=5,
        )
        assert isinstance(manager, PriorityManager)
        assert manager.get_state().status == ConnectionStatus.DISCONNECTED
        socket_config = manager._configs[SOCKET]
        assert socket_config.url == "ws://test/ws"
        assert socket_config.auth_token == "jwt"
        assert socket_config.storage is store
        assert manager._configs[POLL].url == "http://test/api"
        assert manager._config.max_failures_before_switch == 5
