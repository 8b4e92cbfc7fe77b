"""
キーボードトリガー: ホットキーから MacroClient のコマンドへの対応付け

  - 座標キャプチャキー: 最後に観測したカーソル位置に mouse_move を追加
  - 記録切り替えキー: start_recording / stop_recording を送る
  - クイッククリックキー: 最後に観測したカーソル位置に mouse_click を追加

キーの割り当ては ClientConfig.hotkeys で変更できる。
ハンドラから例外は送出しない（失敗は MacroClient が通知に変換する）。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from mrc.config import HotkeyBindings

if TYPE_CHECKING:
    from mrc.client.app import MacroClient

logger = logging.getLogger(__name__)


class HotkeyMap:
    """HotkeyBindings を引くための対応表。

    割り当ては bindings をそのまま参照するため、後から変更しても反映される。
    """

    def __init__(self, bindings: Optional[HotkeyBindings] = None) -> None:
        self.bindings = bindings if bindings is not None else HotkeyBindings()

    @staticmethod
    def normalize(key: str) -> str:
        return key.strip().upper()

    def action_for(self, key: str) -> Optional[str]:
        """キーに割り当てられた動作名を返す。未割り当てなら None。"""
        name = self.normalize(key)
        if name == self.normalize(self.bindings.capture_position):
            return "capture_position"
        if name == self.normalize(self.bindings.toggle_recording):
            return "toggle_recording"
        for bound, button in self.bindings.quick_clicks.items():
            if name == self.normalize(bound):
                return f"click:{button}"
        return None


class KeyboardTriggers:
    """ホットキー入力を MacroClient の操作に変換する。"""

    def __init__(self, client: MacroClient, hotkeys: Optional[HotkeyMap] = None) -> None:
        self._client = client
        self.hotkeys = hotkeys or HotkeyMap(client.config.hotkeys)

    def handle(self, key: str) -> bool:
        """キー入力を処理する。

        Returns:
            キーに動作が割り当てられていた場合 True
        """
        action = self.hotkeys.action_for(key)
        if action is None:
            return False

        logger.debug("ホットキー %s → %s", key, action)
        if action == "capture_position":
            self._client.capture_position()
        elif action == "toggle_recording":
            self._client.toggle_recording()
        else:
            self._client.quick_click(action.split(":", 1)[1])
        return True
