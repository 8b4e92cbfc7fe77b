"""
ConnectionManager テスト: 接続・再接続・送受信の単体テスト

実際の WebSocket は使わず、conftest の FakeConnector / FakeSocket で代替する。
"""

from __future__ import annotations

import logging

import pytest

from mrc.client.connection import ConnectionManager, ConnectionState

from conftest import FakeConnector, FakeSocket, settle


class FailingSocket(FakeSocket):
    """受信中に想定外の例外を送出するソケット。"""

    def fail(self) -> None:
        self.push_raw("__fail__")

    async def __anext__(self):  # type: ignore[no-untyped-def]
        item = await super().__anext__()
        if item == "__fail__":
            raise RuntimeError("受信に失敗")
        return item


class FailingConnector(FakeConnector):
    async def __call__(self, url: str) -> FakeSocket:
        self.calls += 1
        socket = FailingSocket()
        self.sockets.append(socket)
        return socket


def _manager(connector: FakeConnector, **kwargs) -> ConnectionManager:  # type: ignore[no-untyped-def]
    kwargs.setdefault("reconnect_delay", 0.01)
    kwargs.setdefault("settle_delay", 0.01)
    return ConnectionManager("ws://test/ws", connector=connector, **kwargs)


class TestConnectionState:
    """ConnectionState 列挙型のテスト。"""

    def test_all_states_exist(self):
        assert {s.value for s in ConnectionState} == {"disconnected", "connecting", "connected"}

    def test_initial_state(self, connector):
        manager = _manager(connector)
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.is_connected is False


# ---------------------------------------------------------------------------
# 接続
# ---------------------------------------------------------------------------

class TestConnect:
    """接続確立と初期状態の要求。"""

    @pytest.mark.asyncio
    async def test_start_connects(self, connector):
        """start() で CONNECTED になること。"""
        manager = _manager(connector)
        states: list[tuple[ConnectionState, ConnectionState]] = []
        manager.add_state_listener(lambda old, new: states.append((old, new)))
        try:
            await manager.start()
            assert manager.is_connected
            assert states == [
                (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
                (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
            ]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_initial_requests_after_settle_delay(self, connector):
        """settle_delay 後に get_steps と get_random_timing を送ること。"""
        manager = _manager(connector, settle_delay=0.05)
        try:
            await manager.start()
            await settle(0.01)
            assert connector.latest.sent == []
            await settle(0.1)
            assert connector.latest.sent_names() == ["get_steps", "get_random_timing"]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_wait_connected_timeout(self):
        manager = _manager(FakeConnector(fail_times=100), reconnect_delay=10)
        try:
            await manager.start()
            assert await manager.wait_connected(0.01) is False
        finally:
            await manager.close()


# ---------------------------------------------------------------------------
# 再接続
# ---------------------------------------------------------------------------

class TestReconnect:
    """切断・接続失敗からの再接続。"""

    @pytest.mark.asyncio
    async def test_failed_connect_schedules_retry(self):
        """接続失敗後、reconnect_delay 秒で再接続すること。"""
        connector = FakeConnector(fail_times=2)
        manager = _manager(connector)
        try:
            await manager.start()
            assert manager.state is ConnectionState.DISCONNECTED
            assert manager.reconnect_pending
            assert await manager.wait_connected(1.0)
            assert connector.calls == 3
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_drop_triggers_reconnect(self, connector):
        manager = _manager(connector)
        try:
            await manager.start()
            first = connector.latest
            generation = manager.generation
            first.drop()
            await settle(0.1)
            assert manager.is_connected
            assert connector.latest is not first
            assert manager.generation > generation
            # 新しいソケットにも初期状態を要求している
            assert connector.latest.sent_names() == ["get_steps", "get_random_timing"]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_unexpected_read_error_closes_socket(self, caplog):
        """受信中の想定外の例外でも古いソケットを閉じてから再接続すること。"""
        connector = FailingConnector()
        manager = _manager(connector)
        try:
            await manager.start()
            first = connector.latest
            first.fail()
            await settle(0.1)
            assert first.closed is True
            assert manager.is_connected
            assert connector.latest is not first
            assert "予期しないエラー" in caplog.text
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_close_stops_reconnect(self):
        """close() 後は再接続しないこと。"""
        connector = FakeConnector(fail_times=100)
        manager = _manager(connector, reconnect_delay=0.02)
        await manager.start()
        await manager.close()
        await settle(0.1)
        assert connector.calls == 1
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.reconnect_pending is False

    @pytest.mark.asyncio
    async def test_stale_generation_is_ignored(self, connector):
        """古い世代のソケット切断は現在の状態を変えないこと。"""
        manager = _manager(connector)
        try:
            await manager.start()
            manager._on_socket_closed(manager.generation - 1)
            assert manager.is_connected
            assert manager.reconnect_pending is False
        finally:
            await manager.close()


# ---------------------------------------------------------------------------
# 送受信
# ---------------------------------------------------------------------------

class TestSendReceive:
    """send() / 受信配信のテスト。"""

    def test_send_while_disconnected_returns_false(self, connector):
        """未接続時の send() は例外を出さず False を返すこと。"""
        manager = _manager(connector)
        assert manager.send({"type": "get_steps"}) is False

    @pytest.mark.asyncio
    async def test_send_and_flush(self, connector):
        manager = _manager(connector, settle_delay=10)
        try:
            await manager.start()
            assert manager.send({"type": "clear_steps"}) is True
            assert manager.send({"command": "perform_copy"}) is True
            await manager.flush()
            assert connector.latest.sent == [{"type": "clear_steps"}, {"command": "perform_copy"}]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_listener_receives_decoded_messages(self, connector):
        manager = _manager(connector, settle_delay=10)
        received: list[dict] = []
        manager.add_message_listener(received.append)
        try:
            await manager.start()
            connector.latest.push({"type": "automation_completed", "data": {}})
            await settle()
            assert received == [{"type": "automation_completed", "data": {}}]
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_non_json_is_dropped(self, connector, caplog):
        """JSON ではないメッセージは警告を出して破棄し、接続は維持すること。"""
        manager = _manager(connector, settle_delay=10)
        received: list[dict] = []
        manager.add_message_listener(received.append)
        try:
            await manager.start()
            with caplog.at_level(logging.WARNING, logger="mrc.client.connection"):
                connector.latest.push_raw("garbage")
                connector.latest.push_raw("[1, 2, 3]")
                connector.latest.push({"type": "clipboard_text", "data": {"text": "x"}})
                await settle()
            assert received == [{"type": "clipboard_text", "data": {"text": "x"}}]
            assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 2
            assert manager.is_connected
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_loop(self, connector):
        manager = _manager(connector, settle_delay=10)
        received: list[dict] = []

        def broken(message: dict) -> None:
            raise RuntimeError("boom")

        manager.add_message_listener(broken)
        manager.add_message_listener(received.append)
        try:
            await manager.start()
            connector.latest.push({"type": "a"})
            connector.latest.push({"type": "b"})
            await settle()
            assert [m["type"] for m in received] == ["a", "b"]
            assert manager.is_connected
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_send_after_drop_returns_false(self):
        connector = FakeConnector()
        manager = _manager(connector, reconnect_delay=10, settle_delay=10)
        try:
            await manager.start()
            connector.latest.drop()
            await settle()
            assert manager.state is ConnectionState.DISCONNECTED
            assert manager.send({"type": "get_steps"}) is False
        finally:
            await manager.close()
