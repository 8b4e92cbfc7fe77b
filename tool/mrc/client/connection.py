"""
ConnectionManager: 実行器との WebSocket 接続管理

実行器との1本の論理セッションを保持し、切断時は固定間隔で
無制限に再接続を試みる。

状態遷移:
  DISCONNECTED → CONNECTING → CONNECTED
  いずれの状態からも、切断・接続失敗で DISCONNECTED に戻り、
  reconnect_delay 秒後に1回だけ再接続を予約する。

主な機能:
  - 接続確立後、settle_delay 秒待ってから get_steps / get_random_timing を要求
  - send() は未接続時に何もせず False を返す（例外を送出しない）
  - ソケットごとに世代番号を持ち、古い世代の受信処理は状態を変更しない
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from mrc.protocol import messages

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
MessageListener = Callable[[dict[str, Any]], None]
StateListener = Callable[["ConnectionState", "ConnectionState"], None]


# ---------------------------------------------------------------------------
# 接続状態
# ---------------------------------------------------------------------------

class ConnectionState(enum.Enum):
    """実行器との接続状態。"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ---------------------------------------------------------------------------
# ConnectionManager 本体
# ---------------------------------------------------------------------------

class ConnectionManager:
    """実行器との接続のライフサイクルを管理する。

    使用例::

        manager = ConnectionManager("ws://localhost:5000/ws")
        manager.add_message_listener(on_message)
        await manager.start()
        manager.send(messages.get_steps())
        ...
        await manager.close()
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect_delay: float = 3.0,
        settle_delay: float = 0.5,
        connector: Optional[Connector] = None,
    ) -> None:
        """ConnectionManager を初期化する。

        Args:
            url: 実行器の WebSocket URL
            reconnect_delay: 切断後、再接続を試みるまでの秒数
            settle_delay: 接続確立後、初期状態を要求するまでの秒数
            connector: URL を受け取りソケットを返すコルーチン関数
                （省略時は websockets.connect）
        """
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.settle_delay = settle_delay
        self._connector: Connector = connector or websockets.connect

        self._state = ConnectionState.DISCONNECTED
        self._socket: Optional[Any] = None
        self._generation = 0
        self._closed = False
        self._connected_event = asyncio.Event()

        self._outbox: Optional[asyncio.Queue[str]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._writer_task: Optional[asyncio.Task[None]] = None
        self._settle_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

        self._message_listeners: list[MessageListener] = []
        self._state_listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def generation(self) -> int:
        """現在のソケット世代番号。"""
        return self._generation

    @property
    def reconnect_pending(self) -> bool:
        """再接続が予約されているかどうか。"""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        if new is ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()
        logger.info("接続状態: %s → %s", old.value, new.value)
        for listener in list(self._state_listeners):
            listener(old, new)

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """接続が確立するまで待つ。タイムアウトした場合 False を返す。"""
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # 接続・切断
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """接続を開始する。失敗した場合は再接続が予約される。"""
        self._closed = False
        await self._connect_once()

    async def _connect_once(self) -> None:
        if self._closed:
            return
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        logger.info("実行器に接続しています: %s (世代 %d)", self.url, generation)

        try:
            socket = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("実行器への接続に失敗しました: %s", exc)
            if generation == self._generation:
                self._set_state(ConnectionState.DISCONNECTED)
                self._schedule_reconnect()
            return

        if generation != self._generation or self._closed:
            # 接続中に close() または別の接続が始まった
            await self._close_socket(socket)
            return

        self._socket = socket
        self._outbox = asyncio.Queue()
        loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTED)
        self._reader_task = loop.create_task(self._read_loop(socket, generation))
        self._writer_task = loop.create_task(self._write_loop(socket, self._outbox, generation))
        self._settle_task = loop.create_task(self._request_initial_state(generation))

    def _schedule_reconnect(self) -> None:
        """reconnect_delay 秒後の再接続を1回だけ予約する。"""
        if self._closed or self.reconnect_pending:
            return
        logger.info("%.1f 秒後に再接続します", self.reconnect_delay)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        await self._connect_once()

    def _on_socket_closed(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._socket = None
        self._outbox = None
        if self._settle_task is not None:
            self._settle_task.cancel()
            self._settle_task = None
        if self._writer_task is not None:
            self._writer_task.cancel()
            self._writer_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    async def close(self) -> None:
        """接続を閉じ、以後の再接続を止める（プロセス終了時）。"""
        self._closed = True
        self._generation += 1
        for task in (self._reconnect_task, self._settle_task, self._reader_task, self._writer_task):
            if task is not None and not task.done():
                task.cancel()
        self._reconnect_task = self._settle_task = None
        self._reader_task = self._writer_task = None

        socket, self._socket = self._socket, None
        self._outbox = None
        if socket is not None:
            await self._close_socket(socket)
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("実行器との接続を終了しました")

    async def _close_socket(self, socket: Any) -> None:
        try:
            await socket.close()
        except Exception:
            logger.exception("ソケットのクローズ中にエラーが発生しました")

    # ------------------------------------------------------------------
    # 受信
    # ------------------------------------------------------------------

    async def _read_loop(self, socket: Any, generation: int) -> None:
        try:
            async for raw in socket:
                if generation != self._generation:
                    return
                self._deliver(raw)
        except ConnectionClosed as exc:
            logger.info("実行器との接続が切断されました: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("受信処理で予期しないエラーが発生しました")
            await self._close_socket(socket)
        finally:
            self._on_socket_closed(generation)

    def _deliver(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("JSON ではないメッセージを破棄しました: %.200s", raw)
            return
        if not isinstance(obj, dict):
            logger.warning("オブジェクトではないメッセージを破棄しました: %.200s", raw)
            return

        logger.debug("受信: %s", obj.get("type"))
        for listener in list(self._message_listeners):
            try:
                listener(obj)
            except Exception:
                logger.exception("メッセージ処理中にエラーが発生しました: %s", obj.get("type"))

    # ------------------------------------------------------------------
    # 送信
    # ------------------------------------------------------------------

    async def _request_initial_state(self, generation: int) -> None:
        await asyncio.sleep(self.settle_delay)
        if generation != self._generation or not self.is_connected:
            return
        self.send(messages.get_steps())
        self.send(messages.get_random_timing())

    def send(self, message: dict[str, Any]) -> bool:
        """メッセージを送信キューに積む。

        未接続時は何もせず False を返す。例外は送出しない。
        """
        if not self.is_connected or self._outbox is None:
            logger.debug("未接続のため送信しません: %s", message.get("type") or message.get("command"))
            return False
        try:
            text = messages.encode(message)
        except (TypeError, ValueError):
            logger.exception("メッセージを JSON に変換できません")
            return False
        self._outbox.put_nowait(text)
        return True

    async def flush(self) -> None:
        """送信キューが空になるまで待つ。"""
        outbox = self._outbox
        if outbox is not None:
            await outbox.join()

    async def _write_loop(self, socket: Any, outbox: asyncio.Queue[str], generation: int) -> None:
        try:
            while True:
                text = await outbox.get()
                try:
                    if generation == self._generation:
                        await socket.send(text)
                        logger.debug("送信: %.200s", text)
                finally:
                    outbox.task_done()
        except ConnectionClosed as exc:
            logger.info("送信中に接続が切断されました: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("送信処理で予期しないエラーが発生しました")
        finally:
            # 残ったメッセージは破棄する（flush() を待たせない）
            while not outbox.empty():
                outbox.get_nowait()
                outbox.task_done()
