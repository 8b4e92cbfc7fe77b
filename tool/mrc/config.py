"""
クライアント設定: 環境変数・CLI 引数からの設定読み込み

環境変数または CLI 引数でクライアントの動作を制御する。
CLI 引数 > 環境変数 > デフォルト値 の優先順位で適用される。

環境変数一覧:
  MRC_SERVER_URL        : 実行器の WebSocket URL（デフォルト: ws://localhost:5000/ws）
  MRC_RECONNECT_DELAY   : 再接続までの待機秒数（デフォルト: 3.0）
  MRC_SETTLE_DELAY      : 接続後に状態取得を要求するまでの秒数（デフォルト: 0.5）
  MRC_DEFAULT_WAIT_TIME : 新規ステップの待機時間（デフォルト: 1.0）
  MRC_DEFAULT_RANDOMIZE : 新規ステップのランダム化フラグ（デフォルト: false）
  MRC_RECONCILE_VERSIONS: ローカル編集のバージョン照合（デフォルト: false）
  MRC_LOG_LEVEL         : ログレベル（デフォルト: WARNING）
  MRC_HOTKEY_CAPTURE    : 座標キャプチャキー（デフォルト: F6）
  MRC_HOTKEY_RECORD     : 記録切り替えキー（デフォルト: F7）
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 環境変数キー定数
# ---------------------------------------------------------------------------

_ENV_SERVER_URL = "MRC_SERVER_URL"
_ENV_RECONNECT_DELAY = "MRC_RECONNECT_DELAY"
_ENV_SETTLE_DELAY = "MRC_SETTLE_DELAY"
_ENV_DEFAULT_WAIT_TIME = "MRC_DEFAULT_WAIT_TIME"
_ENV_DEFAULT_RANDOMIZE = "MRC_DEFAULT_RANDOMIZE"
_ENV_RECONCILE_VERSIONS = "MRC_RECONCILE_VERSIONS"
_ENV_LOG_LEVEL = "MRC_LOG_LEVEL"
_ENV_HOTKEY_CAPTURE = "MRC_HOTKEY_CAPTURE"
_ENV_HOTKEY_RECORD = "MRC_HOTKEY_RECORD"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_SERVER_URL = "ws://localhost:5000/ws"


# ---------------------------------------------------------------------------
# 設定データクラス
# ---------------------------------------------------------------------------

@dataclass
class HotkeyBindings:
    """キーボードトリガーの割り当て。

    Attributes:
        capture_position: 現在のカーソル位置に mouse_move を追加するキー
        toggle_recording: 記録の開始・停止を切り替えるキー
        quick_clicks: キー名 → マウスボタン名
    """

    capture_position: str = "F6"
    toggle_recording: str = "F7"
    quick_clicks: dict[str, str] = field(
        default_factory=lambda: {"F1": "left", "F2": "middle", "F3": "right"}
    )


@dataclass
class ClientConfig:
    """クライアントの実行時設定。

    Attributes:
        server_url: 実行器の WebSocket URL
        reconnect_delay: 切断後、再接続を試みるまでの秒数
        settle_delay: 接続確立後、get_steps 等を要求するまでの秒数
        default_wait_time: 新規ステップに付与する待機時間（秒）
        default_randomize: 新規ステップに付与するランダム化フラグ
        reconcile_versions: ローカル編集と配信のバージョン照合を行うか
        log_level: ログレベル名
        hotkeys: キーボードトリガーの割り当て
    """

    server_url: str = DEFAULT_SERVER_URL
    reconnect_delay: float = 3.0
    settle_delay: float = 0.5
    default_wait_time: float = 1.0
    default_randomize: bool = False
    reconcile_versions: bool = False
    log_level: str = "WARNING"
    hotkeys: HotkeyBindings = field(default_factory=HotkeyBindings)


# ---------------------------------------------------------------------------
# 環境変数からの読み込み
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    """文字列を bool に変換する。

    Args:
        value: "true", "1", "yes" → True、それ以外 → False

    Returns:
        変換結果
    """
    return value.lower() in ("true", "1", "yes")


def _parse_non_negative(name: str, raw: str) -> Optional[float]:
    """0 以上の数値として解釈する。不正な値は警告して None を返す。"""
    try:
        value = float(raw)
    except ValueError:
        logger.warning("%s の値が不正です: %s", name, raw)
        return None
    if value < 0:
        logger.warning("%s に負の値は指定できません: %s", name, raw)
        return None
    return value


def load_config_from_env() -> ClientConfig:
    """環境変数から ClientConfig を生成する。

    設定されていない環境変数はデフォルト値を使用する。

    Returns:
        環境変数から読み込んだ設定
    """
    config = ClientConfig()

    if _ENV_SERVER_URL in os.environ:
        config.server_url = os.environ[_ENV_SERVER_URL]

    for env_name, attr in (
        (_ENV_RECONNECT_DELAY, "reconnect_delay"),
        (_ENV_SETTLE_DELAY, "settle_delay"),
        (_ENV_DEFAULT_WAIT_TIME, "default_wait_time"),
    ):
        if env_name in os.environ:
            value = _parse_non_negative(env_name, os.environ[env_name])
            if value is not None:
                setattr(config, attr, value)

    if _ENV_DEFAULT_RANDOMIZE in os.environ:
        config.default_randomize = _parse_bool(os.environ[_ENV_DEFAULT_RANDOMIZE])

    if _ENV_RECONCILE_VERSIONS in os.environ:
        config.reconcile_versions = _parse_bool(os.environ[_ENV_RECONCILE_VERSIONS])

    if _ENV_LOG_LEVEL in os.environ:
        level = os.environ[_ENV_LOG_LEVEL].upper()
        if level in _LOG_LEVELS:
            config.log_level = level
        else:
            logger.warning("MRC_LOG_LEVEL の値が不正です: %s", os.environ[_ENV_LOG_LEVEL])

    if _ENV_HOTKEY_CAPTURE in os.environ:
        config.hotkeys.capture_position = os.environ[_ENV_HOTKEY_CAPTURE]

    if _ENV_HOTKEY_RECORD in os.environ:
        config.hotkeys.toggle_recording = os.environ[_ENV_HOTKEY_RECORD]

    logger.debug("設定を読み込みました: %s", config)
    return config


def apply_cli_args(config: ClientConfig, **overrides: Any) -> ClientConfig:
    """CLI 引数を ClientConfig に適用する。

    値が None の引数は指定されなかったものとして無視する。

    Args:
        config: ベースとなる設定（環境変数から読み込み済み）
        **overrides: 設定名 → 値

    Returns:
        CLI 引数が適用された設定
    """
    for name, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, name):
            logger.warning("未知の設定項目です: %s", name)
            continue
        if name == "log_level":
            value = str(value).upper()
            if value not in _LOG_LEVELS:
                logger.warning("--log-level の値が不正です: %s", value)
                continue
        setattr(config, name, value)
    return config
