"""
MacroClient: 編集・実行コマンドをまとめるアプリケーション本体

StepStore・ConnectionManager・RunController・Notifier を所有し、
ユーザー操作を次のように処理する。

  - 編集操作: まずローカルの StepStore を更新し、接続中なら実行器へ送る。
    未接続時はローカルのみの変更として通知する。
  - 実行・記録操作: 接続が必須。未接続なら「未接続」として通知する。
  - 実行器からの配信: 正準状態として無条件に採用する
    （reconcile_versions 有効時は古い配信を破棄する）。

コマンド面で発生した MacroClientError は全て通知に変換し、
呼び出し元へは送出しない。
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from mrc.client.connection import ConnectionManager, ConnectionState, Connector
from mrc.client.notify import LoggingNotifier, Notifier, NotifyLevel
from mrc.client.run_controller import RunController, validate_loop_count
from mrc.config import ClientConfig
from mrc.editor.flatten import flatten, flatten_selected
from mrc.editor.store import StepStore
from mrc.errors import MacroClientError, NotConnectedError, UserInputError
from mrc.model.schema import (
    MouseButton,
    MousePosition,
    RandomTimingConfig,
    Step,
    StepType,
)
from mrc.persistence import document
from mrc.protocol import messages
from mrc.protocol.dispatch import MessageDispatcher

logger = logging.getLogger(__name__)

_OFFLINE_NOTICE = "実行器に接続されていないため、変更はローカルのみに反映されました"


class MacroClient:
    """マクロ記録ツールのクライアント。

    使用例::

        client = MacroClient(load_config_from_env())
        await client.start()
        client.add_mouse_move(100, 200)
        client.run_all(loop_count=3)
        ...
        await client.close()
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        connection: Optional[ConnectionManager] = None,
        connector: Optional[Connector] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        """MacroClient を組み立てる。

        Args:
            config: クライアント設定（省略時は既定値）
            connection: 既存の ConnectionManager（省略時は config から生成）
            connector: ConnectionManager 生成時に渡すソケット生成関数
            notifier: 通知の出力先（省略時はログ出力）

        Raises:
            TypeError: 受信メッセージのハンドラに漏れがある場合
        """
        self.config = config or ClientConfig()
        self.store = StepStore(
            default_wait_time=self.config.default_wait_time,
            default_randomize=self.config.default_randomize,
        )
        self.connection = connection or ConnectionManager(
            self.config.server_url,
            reconnect_delay=self.config.reconnect_delay,
            settle_delay=self.config.settle_delay,
            connector=connector,
        )
        self.runner = RunController(self.connection)
        self.notifier: Notifier = notifier or LoggingNotifier()

        self.random_timing = RandomTimingConfig(enabled=self.config.default_randomize)
        self.mouse_position: Optional[MousePosition] = None
        self.clipboard_text: Optional[str] = None
        self.copied_steps: list[Step] = []
        self.loop_count = 1
        self._pending_version: Optional[int] = None

        self.dispatcher = MessageDispatcher({
            "steps_updated": self._on_steps_updated,
            "random_timing_updated": self._on_random_timing_updated,
            "status_update": self._on_status_update,
            "step_executing": self._on_step_executing,
            "mouse_position": self._on_mouse_position,
            "automation_completed": self._on_automation_completed,
            "clipboard_text": self._on_clipboard_text,
            "action_completed": self._on_action_completed,
            "recording_started": self._on_recording_started,
            "recording_stopped": self._on_recording_stopped,
        })
        self.connection.add_message_listener(self.dispatcher.dispatch)
        self.connection.add_state_listener(self._on_connection_state)

    # ------------------------------------------------------------------
    # ライフサイクル
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.connection.start()

    async def close(self) -> None:
        await self.connection.close()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def steps(self) -> list[Step]:
        return self.store.steps

    @property
    def pending_version(self) -> Optional[int]:
        """応答待ちのローカル編集バージョン（照合無効時は常に None）。"""
        return self._pending_version

    def progress_percent(self) -> int:
        return self.runner.telemetry.progress_percent(len(self.store))

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    def _notify(self, level: NotifyLevel, message: str) -> None:
        self.notifier.notify(level, message)

    @contextmanager
    def _reporting(self, action: str) -> Iterator[None]:
        """コマンド中の MacroClientError を通知に変換する。"""
        try:
            yield
        except NotConnectedError as exc:
            logger.info("%s: 未接続のため失敗しました", action)
            self._notify(NotifyLevel.ERROR, str(exc))
        except MacroClientError as exc:
            logger.info("%s: %s", action, exc)
            self._notify(NotifyLevel.WARNING, str(exc))

    def _sync(self, message: messages.Message) -> bool:
        """編集結果を実行器へ送る。未接続ならローカルのみの変更として通知する。"""
        if self.connection.send(message):
            return True
        self._notify(NotifyLevel.WARNING, _OFFLINE_NOTICE)
        return False

    def _push_order(self) -> bool:
        """現在のリスト全体を update_steps_order で送る。"""
        version = self.store.local_version
        client_version = version if self.config.reconcile_versions else None
        sent = self._sync(messages.update_steps_order(self.store.steps, client_version))
        if sent and client_version is not None:
            self._pending_version = client_version
        return sent

    # ------------------------------------------------------------------
    # 編集コマンド
    # ------------------------------------------------------------------

    def add_step(
        self, step_type: Union[StepType, str], payload: Optional[dict[str, Any]] = None
    ) -> Optional[Step]:
        """ステップを追加する。

        Returns:
            追加したステップ（入力不備の場合は None）
        """
        with self._reporting("add_step"):
            type_name = step_type.value if isinstance(step_type, StepType) else str(step_type)
            data = dict(payload or {})
            if type_name == StepType.KEY_PRESS.value and not str(data.get("key") or "").strip():
                raise UserInputError("キーが指定されていません")
            wait_time = data.get("wait_time")
            if isinstance(wait_time, (int, float)) and wait_time < 0:
                raise UserInputError("待機時間に負の値は指定できません")

            step = self.store.add(type_name, data)
            if self._sync(messages.add_step(step.data)):
                logger.debug("add_step を送信しました: %s", type_name)
            return step
        return None

    def add_mouse_move(self, x: int, y: int) -> Optional[Step]:
        return self.add_step(StepType.MOUSE_MOVE, {"x": x, "y": y})

    def add_click(
        self, button: Union[MouseButton, str] = MouseButton.LEFT,
        x: Optional[int] = None, y: Optional[int] = None,
    ) -> Optional[Step]:
        name = button.value if isinstance(button, MouseButton) else str(button)
        payload: dict[str, Any] = {"button": name}
        if x is not None and y is not None:
            payload.update(x=x, y=y)
        return self.add_step(StepType.MOUSE_CLICK, payload)

    def add_double_click(self, button: Union[MouseButton, str] = MouseButton.LEFT) -> Optional[Step]:
        name = button.value if isinstance(button, MouseButton) else str(button)
        return self.add_step(StepType.MOUSE_DOUBLE_CLICK, {"button": name})

    def add_key_press(self, key: str, modifiers: Optional[list[str]] = None) -> Optional[Step]:
        payload: dict[str, Any] = {"key": key}
        if modifiers:
            payload["modifiers"] = list(modifiers)
        return self.add_step(StepType.KEY_PRESS, payload)

    def add_wait(self, seconds: float) -> Optional[Step]:
        return self.add_step(StepType.WAIT, {"wait_time": seconds})

    def clear_steps(self) -> None:
        self.store.clear()
        self._sync(messages.clear_steps())

    def delete_selected(self) -> int:
        """選択中のステップを削除する。削除件数を返す。"""
        with self._reporting("delete_steps"):
            ids = self.store.selection
            if not ids:
                raise UserInputError("削除するステップが選択されていません")
            removed = self.store.delete(ids)
            self._sync(messages.delete_steps([s.id for s in removed]))
            return len(removed)
        return 0

    def reorder(self, new_order: list[Step]) -> bool:
        """リスト全体を並べ替える。不正な並びは通知して無視する。"""
        with self._reporting("reorder"):
            self.store.reorder(new_order)
            self._push_order()
            return True
        return False

    def move_step(self, step_id: str, new_index: int) -> bool:
        with self._reporting("move_step"):
            self.store.move(step_id, new_index)
            self._push_order()
            return True
        return False

    def copy_selected(self) -> int:
        """選択中のステップをコピーする。コピー件数を返す。"""
        self.copied_steps = self.store.copy(self.store.selection)
        if self.copied_steps:
            self._notify(NotifyLevel.INFO, f"{len(self.copied_steps)} ステップをコピーしました")
        return len(self.copied_steps)

    def paste(self, after_id: Optional[str] = None) -> list[Step]:
        """コピーしたステップを貼り付ける。

        after_id 省略時は、選択中でリスト上最も後ろのステップの直後
        （選択が無ければ末尾）に挿入する。
        """
        if not self.copied_steps:
            return []
        anchor = after_id if after_id is not None else self.store.last_selected_id()
        pasted = self.store.paste(self.copied_steps, anchor)
        self._push_order()
        return pasted

    def insert_wait_between_selected(self, wait_seconds: float) -> list[Step]:
        with self._reporting("insert_wait"):
            if len(self.store.selection) < 2:
                raise UserInputError("待機を挿入するには2つ以上のステップを選択してください")
            if wait_seconds < 0:
                raise UserInputError("待機時間に負の値は指定できません")
            inserted = self.store.insert_wait_between_selected(self.store.selection, wait_seconds)
            self._push_order()
            return inserted
        return []

    def group_selected(self, name: Optional[str] = None) -> Optional[Step]:
        with self._reporting("group"):
            group = self.store.group(self.store.selection, name)
            self.store.clear_selection()
            self._push_order()
            return group
        return None

    def ungroup(self, group_id: str) -> list[Step]:
        children = self.store.ungroup(group_id)
        if children:
            self._push_order()
        return children

    def set_group_loop_count(self, group_id: str, count: int) -> bool:
        with self._reporting("set_group_loop_count"):
            self.store.set_group_loop_count(group_id, count)
            self._push_order()
            return True
        return False

    def rename_group(self, group_id: str, name: str) -> bool:
        with self._reporting("rename_group"):
            self.store.rename_group(group_id, name)
            self._push_order()
            return True
        return False

    def set_default_wait_time(self, seconds: float) -> bool:
        with self._reporting("set_default_wait_time"):
            if seconds < 0:
                raise UserInputError("待機時間に負の値は指定できません")
            self.store.default_wait_time = seconds
            return True
        return False

    # ------------------------------------------------------------------
    # 実行・記録コマンド
    # ------------------------------------------------------------------

    def set_loop_count(self, loop_count: int) -> bool:
        with self._reporting("set_loop_count"):
            self.loop_count = validate_loop_count(loop_count)
            return True
        return False

    def run_all(self, loop_count: Optional[int] = None, *, recursive: bool = False) -> bool:
        """全ステップを展開して実行する。loop_count=-1 で無限繰り返し。"""
        with self._reporting("run_automation"):
            steps = flatten(self.store.steps, recursive=recursive)
            count = self.loop_count if loop_count is None else loop_count
            self.runner.run_automation(steps, count)
            return True
        return False

    def run_selected(self, *, recursive: bool = False) -> bool:
        """選択ステップを選択順に展開して1回実行する。"""
        with self._reporting("run_selected_steps"):
            steps = flatten_selected(self.store, self.store.selection, recursive=recursive)
            self.runner.run_selected(steps)
            return True
        return False

    def stop(self) -> bool:
        with self._reporting("stop_automation"):
            self.runner.stop_automation()
            return True
        return False

    def start_recording(self) -> bool:
        with self._reporting("start_recording"):
            self.runner.start_recording()
            return True
        return False

    def stop_recording(self) -> bool:
        with self._reporting("stop_recording"):
            self.runner.stop_recording()
            return True
        return False

    def toggle_recording(self) -> bool:
        with self._reporting("toggle_recording"):
            self.runner.toggle_recording()
            return True
        return False

    # ------------------------------------------------------------------
    # ランダムタイミング
    # ------------------------------------------------------------------

    def update_random_timing(self, enabled: bool, min_factor: float, max_factor: float) -> RandomTimingConfig:
        """ランダムタイミング設定を更新する。

        未接続でもローカルの設定は更新する。min_factor > max_factor 等の
        不整合は警告ログを出したうえでそのまま送る。
        """
        config = RandomTimingConfig(enabled=enabled, min_factor=min_factor, max_factor=max_factor)
        if not config.is_consistent():
            logger.warning(
                "ランダムタイミングの係数が不整合です: min=%s, max=%s", min_factor, max_factor
            )
        self.connection.send(messages.update_random_timing(config))
        self._apply_random_timing(config)
        return config

    def _apply_random_timing(self, config: RandomTimingConfig) -> None:
        self.random_timing = config
        self.store.default_randomize = config.enabled

    # ------------------------------------------------------------------
    # 端末操作コマンド
    # ------------------------------------------------------------------

    def _device_command(self, name: str, message: messages.Message) -> bool:
        with self._reporting(name):
            if not self.connection.send(message):
                raise NotConnectedError(name)
            return True
        return False

    def perform_copy(self) -> bool:
        return self._device_command("perform_copy", messages.perform_copy())

    def perform_paste(self, text: Optional[str] = None) -> bool:
        return self._device_command("perform_paste", messages.perform_paste(text))

    def perform_select_all(self) -> bool:
        return self._device_command("perform_select_all", messages.perform_select_all())

    def press_key(self, key: str) -> bool:
        if not key.strip():
            self._notify(NotifyLevel.WARNING, "キーが指定されていません")
            return False
        return self._device_command("key_press", messages.press_key(key))

    def request_clipboard(self) -> bool:
        return self._device_command("get_clipboard", messages.get_clipboard())

    def set_clipboard(self, text: str) -> bool:
        return self._device_command("set_clipboard", messages.set_clipboard(text))

    # ------------------------------------------------------------------
    # キーボードトリガー
    # ------------------------------------------------------------------

    def _require_position(self) -> MousePosition:
        if self.mouse_position is None:
            raise UserInputError("カーソル位置がまだ取得されていません")
        return self.mouse_position

    def capture_position(self) -> Optional[Step]:
        """最後に観測したカーソル位置に mouse_move を追加する。"""
        with self._reporting("capture_position"):
            pos = self._require_position()
            return self.add_mouse_move(pos.x, pos.y)
        return None

    def quick_click(self, button: Union[MouseButton, str]) -> Optional[Step]:
        """最後に観測したカーソル位置に mouse_click を追加する。"""
        with self._reporting("quick_click"):
            pos = self._require_position()
            return self.add_click(button, pos.x, pos.y)
        return None

    # ------------------------------------------------------------------
    # 保存・読み込み
    # ------------------------------------------------------------------

    def export_steps(self, path: Union[str, Path]) -> Path:
        saved = document.save(path, self.store.steps)
        self._notify(NotifyLevel.SUCCESS, f"{len(self.store)} ステップを保存しました: {saved.name}")
        return saved

    def import_steps(self, path: Union[str, Path]) -> Optional[document.ImportResult]:
        """文書を読み込み、リスト全体を置き換える。

        失敗した場合は既存のリストを変更せず None を返す。
        """
        with self._reporting("import"):
            result = document.load(path)
            self.store.import_steps(result.steps)
            self._push_order()
            if result.is_empty:
                self._notify(NotifyLevel.INFO, "ステップが0件の文書を読み込みました")
            else:
                self._notify(NotifyLevel.SUCCESS, f"{result.count} ステップを読み込みました")
            return result
        return None

    # ------------------------------------------------------------------
    # 配信ハンドラ
    # ------------------------------------------------------------------

    def _on_steps_updated(self, message: messages.StepsUpdated) -> None:
        echoed = message.data.client_version
        pending = self._pending_version
        if self.config.reconcile_versions and pending is not None and echoed is not None:
            if echoed < pending:
                logger.info("古い steps_updated を破棄しました (受信 %d < 送信 %d)", echoed, pending)
                return
            self._pending_version = None
        self.store.replace_all(message.data.steps)

    def _on_random_timing_updated(self, message: messages.RandomTimingUpdated) -> None:
        self._apply_random_timing(message.data)

    def _on_status_update(self, message: messages.StatusUpdate) -> None:
        status = message.data.status
        self.runner.on_status_update(status, message.data.message)
        if message.data.message:
            if status == "running":
                level = NotifyLevel.SUCCESS
            elif status == "recording":
                level = NotifyLevel.INFO
            else:
                level = NotifyLevel.ERROR
            self._notify(level, message.data.message)

    def _on_step_executing(self, message: messages.StepExecuting) -> None:
        self.runner.on_step_executing(message.data.index, message.data.total_steps)

    def _on_mouse_position(self, message: messages.MousePositionUpdate) -> None:
        if message.data.is_origin:
            return
        self.mouse_position = message.data

    def _on_automation_completed(self, message: messages.AutomationCompleted) -> None:
        self.runner.on_automation_completed()
        self._notify(NotifyLevel.SUCCESS, "自動実行が完了しました")

    def _on_clipboard_text(self, message: messages.ClipboardText) -> None:
        self.clipboard_text = message.data.text

    def _on_action_completed(self, message: messages.ActionCompleted) -> None:
        data = message.data
        extra = data.model_extra or {}
        if "clipboard_text" in extra:
            self.clipboard_text = str(extra["clipboard_text"])
        level = NotifyLevel.ERROR if data.status == "error" else NotifyLevel.INFO
        self._notify(level, data.message or f"{data.action}: {data.status}")

    def _on_recording_started(self, message: messages.RecordingStarted) -> None:
        self.runner.on_status_update("recording")

    def _on_recording_stopped(self, message: messages.RecordingStopped) -> None:
        self.runner.on_status_update("idle")

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.CONNECTED:
            self._notify(NotifyLevel.SUCCESS, "実行器に接続しました")
        elif new is ConnectionState.DISCONNECTED and old is ConnectionState.CONNECTED:
            self._pending_version = None
            self._notify(NotifyLevel.WARNING, "実行器との接続が切れました。再接続します")
