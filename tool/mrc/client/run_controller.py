"""
RunController: 記録・実行状態の状態機械

ユーザーが発行するコマンド（記録開始・停止、実行、停止）と
実行器からの配信（status_update, step_executing, automation_completed）を
突き合わせ、ユーザーに表示する実行状態を一元管理する。

状態遷移:
  IDLE → RECORDING   : status_update(status=recording)
  RECORDING → IDLE   : status_update(status!=recording)
  IDLE → RUNNING     : status_update(status=running)
  RUNNING → IDLE     : automation_completed / status_update(idle, error 等) / stop_automation 送信成功
  * → IDLE           : 実行器との接続が切れた場合（記録中・実行中のみ）

コマンドは送信のみで応答を待たない。状態は配信を受けて変わる。
未接続時のコマンドは NotConnectedError で即座に失敗し、状態を変更しない。
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from mrc.client.connection import ConnectionManager, ConnectionState
from mrc.errors import NotConnectedError, UserInputError
from mrc.model.schema import RunStatus, RunTelemetry, Step
from mrc.protocol import messages

logger = logging.getLogger(__name__)

# loop_count に指定できる無限繰り返しの値
LOOP_FOREVER = -1

RunStateListener = Callable[[RunStatus, RunStatus], None]


def validate_loop_count(loop_count: int) -> int:
    """loop_count が正の整数または -1 であることを確認する。

    Raises:
        UserInputError: それ以外の値の場合
    """
    if isinstance(loop_count, bool) or not isinstance(loop_count, int):
        raise UserInputError(f"繰り返し回数は整数で指定してください: {loop_count!r}")
    if loop_count != LOOP_FOREVER and loop_count < 1:
        raise UserInputError(f"繰り返し回数は1以上、または -1（無限）を指定してください: {loop_count}")
    return loop_count


class RunController:
    """実行状態とテレメトリの管理クラス。"""

    def __init__(self, connection: ConnectionManager) -> None:
        """RunController を初期化する。

        Args:
            connection: コマンド送信に使う接続（切断の検知にも使う）
        """
        self._connection = connection
        self._telemetry = RunTelemetry()
        self.status_text: str = RunStatus.IDLE.value
        self.last_message: Optional[str] = None
        self._listeners: list[RunStateListener] = []
        connection.add_state_listener(self._on_connection_state)

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunStatus:
        return self._telemetry.status

    @property
    def telemetry(self) -> RunTelemetry:
        return self._telemetry

    @property
    def is_running(self) -> bool:
        return self.state is RunStatus.RUNNING

    @property
    def is_recording(self) -> bool:
        return self.state is RunStatus.RECORDING

    def add_listener(self, listener: RunStateListener) -> None:
        """状態遷移 (old, new) を受け取るリスナーを登録する。"""
        self._listeners.append(listener)

    def _transition(self, new: RunStatus, *, reason: str) -> None:
        old = self._telemetry.status
        if old is new:
            return
        if new is RunStatus.RUNNING:
            # 新しい実行の開始
            self._telemetry.reset()
        self._telemetry.status = new
        logger.info("実行状態: %s → %s (%s)", old.value, new.value, reason)
        for listener in list(self._listeners):
            listener(old, new)

    # ------------------------------------------------------------------
    # コマンド
    # ------------------------------------------------------------------

    def _send(self, command: str, message: messages.Message) -> None:
        if not self._connection.is_connected or not self._connection.send(message):
            raise NotConnectedError(command)
        logger.info("コマンドを送信しました: %s", command)

    def _require_connected(self, command: str) -> None:
        if not self._connection.is_connected:
            raise NotConnectedError(command)

    def start_recording(self) -> None:
        self._send("start_recording", messages.start_recording())

    def stop_recording(self) -> None:
        self._send("stop_recording", messages.stop_recording())

    def toggle_recording(self) -> None:
        """記録中なら停止、それ以外なら開始を送る。"""
        if self.is_recording:
            self.stop_recording()
        else:
            self.start_recording()

    def run_automation(self, steps: Iterable[Step], loop_count: int = 1) -> None:
        """展開済みのステップ列で実行を開始する。

        Args:
            steps: 展開済みのステップ列（グループを含まないこと）
            loop_count: 繰り返し回数（-1 で無限。そのまま実行器へ渡す）

        Raises:
            NotConnectedError: 未接続の場合
            UserInputError: ステップが空、または loop_count が不正な場合
        """
        self._require_connected("run_automation")
        validate_loop_count(loop_count)
        leaf_steps = list(steps)
        if not leaf_steps:
            raise UserInputError("実行するステップがありません")
        self._send("run_automation", messages.run_automation(leaf_steps, loop_count))

    def run_selected(self, steps: Iterable[Step]) -> None:
        """展開済みの選択ステップを1回実行する。"""
        self._require_connected("run_selected_steps")
        leaf_steps = list(steps)
        if not leaf_steps:
            raise UserInputError("実行するステップが選択されていません")
        self._send("run_selected_steps", messages.run_selected_steps(leaf_steps))

    def stop_automation(self) -> None:
        """実行を停止する。送信できた時点で IDLE に戻す。"""
        self._send("stop_automation", messages.stop_automation())
        if self.is_running:
            self._telemetry.reset()
            self._transition(RunStatus.IDLE, reason="stop_automation")

    # ------------------------------------------------------------------
    # 配信の取り込み
    # ------------------------------------------------------------------

    def on_status_update(self, status: str, message: Optional[str] = None) -> None:
        self.status_text = status or RunStatus.IDLE.value
        self.last_message = message
        if status == RunStatus.RUNNING.value:
            self._transition(RunStatus.RUNNING, reason="status_update")
        elif status == RunStatus.RECORDING.value:
            self._transition(RunStatus.RECORDING, reason="status_update")
        else:
            self._telemetry.current_step_index = None
            self._transition(RunStatus.IDLE, reason=f"status_update({status})")

    def on_step_executing(self, index: int, total_steps: Optional[int] = None) -> None:
        """実行中のステップ位置を取り込む。実行中以外は無視する。"""
        if not self.is_running:
            logger.debug("実行中ではないため step_executing を無視します: %d", index)
            return
        telemetry = self._telemetry
        telemetry.current_step_index = index
        if index > 0 and index > telemetry.completed_steps:
            telemetry.completed_steps = index
        if total_steps:
            telemetry.total_steps = total_steps

    def on_automation_completed(self) -> None:
        self._telemetry.reset()
        self.status_text = RunStatus.IDLE.value
        self._transition(RunStatus.IDLE, reason="automation_completed")

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is not ConnectionState.DISCONNECTED:
            return
        if self.state in (RunStatus.RECORDING, RunStatus.RUNNING):
            logger.warning("実行器との接続が切れたため、状態を idle に戻します")
            self._telemetry.reset()
            self.status_text = RunStatus.IDLE.value
            self._transition(RunStatus.IDLE, reason="disconnected")
