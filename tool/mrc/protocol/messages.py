"""
メッセージ定義: クライアント ⇄ 実行器の JSON メッセージ

送信側:
  ステップ操作・実行制御は {"type": ..., "data": {...}} 形式、
  端末操作コマンド（コピー・ペースト・キー押下・クリップボード）は
  {"command": ..., ...} 形式で送る。実行器はこの2系統を別々に解釈する。

受信側:
  実行器からのメッセージは全て {"type": ..., "data": {...}} 形式。
  type をタグとする Pydantic の判別共用体として解析し、
  JSON として不正なもの・未知のタグは ProtocolError とする。
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from mrc.errors import ProtocolError
from mrc.model.schema import MousePosition, RandomTimingConfig, Step, StepData

Message = dict[str, Any]


def encode(message: Message) -> str:
    """送信用の JSON 文字列に変換する。"""
    return json.dumps(message, ensure_ascii=False)


# ---------------------------------------------------------------------------
# 送信メッセージ（type 形式）
# ---------------------------------------------------------------------------

def _typed(type_name: str, data: Optional[dict[str, Any]] = None) -> Message:
    message: Message = {"type": type_name}
    if data is not None:
        message["data"] = data
    return message


def _wire_steps(steps: Iterable[Step]) -> list[dict[str, Any]]:
    return [s.to_wire() for s in steps]


def get_steps() -> Message:
    return _typed("get_steps")


def get_random_timing() -> Message:
    return _typed("get_random_timing")


def add_step(data: Union[StepData, dict[str, Any]]) -> Message:
    if isinstance(data, StepData):
        data = data.model_dump(mode="json", exclude_none=True)
    return _typed("add_step", dict(data))


def clear_steps() -> Message:
    return _typed("clear_steps")


def delete_steps(step_ids: Iterable[str]) -> Message:
    return _typed("delete_steps", {"step_ids": list(step_ids)})


def update_steps_order(steps: Iterable[Step], client_version: Optional[int] = None) -> Message:
    """リスト全体の置き換え。構造を変える編集は全てこのメッセージで送る。"""
    data: dict[str, Any] = {"steps": _wire_steps(steps)}
    if client_version is not None:
        data["client_version"] = client_version
    return _typed("update_steps_order", data)


def run_automation(steps: Iterable[Step], loop_count: int) -> Message:
    """実行開始。steps は展開済みであること。loop_count=-1 は無限繰り返し。"""
    return _typed("run_automation", {"loop_count": loop_count, "steps": _wire_steps(steps)})


def run_selected_steps(steps: Iterable[Step]) -> Message:
    return _typed("run_selected_steps", {"steps": _wire_steps(steps)})


def stop_automation() -> Message:
    return _typed("stop_automation")


def start_recording() -> Message:
    return _typed("start_recording")


def stop_recording() -> Message:
    return _typed("stop_recording")


def update_random_timing(config: RandomTimingConfig) -> Message:
    return _typed("update_random_timing", config.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# 送信メッセージ（command 形式: 端末操作）
# ---------------------------------------------------------------------------

def _command(name: str, **fields: Any) -> Message:
    message: Message = {"command": name}
    message.update({k: v for k, v in fields.items() if v is not None})
    return message


def perform_copy() -> Message:
    return _command("perform_copy")


def perform_paste(text: Optional[str] = None) -> Message:
    """Ctrl+V を送る。text を指定すると先にクリップボードへ設定される。"""
    return _command("perform_paste", text=text)


def perform_select_all() -> Message:
    return _command("perform_select_all")


def press_key(key: str) -> Message:
    return _command("key_press", key=key)


def get_clipboard() -> Message:
    return _command("get_clipboard")


def set_clipboard(text: str) -> Message:
    return _command("set_clipboard", text=text)


# ---------------------------------------------------------------------------
# 受信メッセージ
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class StepsUpdatedData(_Payload):
    steps: list[Step] = Field(default_factory=list)
    client_version: Optional[int] = Field(default=None, description="更新元のローカル編集バージョン")


class StatusUpdateData(_Payload):
    status: str = "idle"
    message: Optional[str] = None


class StepExecutingData(_Payload):
    index: int
    total_steps: Optional[int] = None


class ClipboardTextData(_Payload):
    text: str = ""


class ActionCompletedData(_Payload):
    action: str = ""
    status: str = ""
    message: Optional[str] = None


class StepsUpdated(BaseModel):
    type: Literal["steps_updated"]
    data: StepsUpdatedData = Field(default_factory=StepsUpdatedData)


class RandomTimingUpdated(BaseModel):
    type: Literal["random_timing_updated"]
    data: RandomTimingConfig = Field(default_factory=RandomTimingConfig)


class StatusUpdate(BaseModel):
    type: Literal["status_update"]
    data: StatusUpdateData = Field(default_factory=StatusUpdateData)


class StepExecuting(BaseModel):
    type: Literal["step_executing"]
    data: StepExecutingData


class MousePositionUpdate(BaseModel):
    type: Literal["mouse_position"]
    data: MousePosition = Field(default_factory=MousePosition)


class AutomationCompleted(BaseModel):
    type: Literal["automation_completed"]
    data: _Payload = Field(default_factory=_Payload)


class ClipboardText(BaseModel):
    type: Literal["clipboard_text"]
    data: ClipboardTextData = Field(default_factory=ClipboardTextData)


class ActionCompleted(BaseModel):
    type: Literal["action_completed"]
    data: ActionCompletedData = Field(default_factory=ActionCompletedData)


class RecordingStarted(BaseModel):
    type: Literal["recording_started"]
    data: _Payload = Field(default_factory=_Payload)


class RecordingStopped(BaseModel):
    type: Literal["recording_stopped"]
    data: _Payload = Field(default_factory=_Payload)


InboundMessage = Annotated[
    Union[
        StepsUpdated,
        RandomTimingUpdated,
        StatusUpdate,
        StepExecuting,
        MousePositionUpdate,
        AutomationCompleted,
        ClipboardText,
        ActionCompleted,
        RecordingStarted,
        RecordingStopped,
    ],
    Field(discriminator="type"),
]

# タグ → モデル
INBOUND_MODELS: dict[str, type[BaseModel]] = {
    "steps_updated": StepsUpdated,
    "random_timing_updated": RandomTimingUpdated,
    "status_update": StatusUpdate,
    "step_executing": StepExecuting,
    "mouse_position": MousePositionUpdate,
    "automation_completed": AutomationCompleted,
    "clipboard_text": ClipboardText,
    "action_completed": ActionCompleted,
    "recording_started": RecordingStarted,
    "recording_stopped": RecordingStopped,
}

INBOUND_TAGS: frozenset[str] = frozenset(INBOUND_MODELS)

_INBOUND_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundMessage)


def parse_inbound(raw: Union[str, bytes, dict[str, Any]]) -> Any:
    """受信メッセージを解析する。

    Args:
        raw: JSON 文字列、またはデコード済みの辞書

    Returns:
        INBOUND_MODELS のいずれかのインスタンス

    Raises:
        ProtocolError: JSON として不正、タグが未知、または構造が不正な場合
    """
    text = raw if isinstance(raw, (str, bytes)) else None
    if text is not None:
        try:
            obj = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError(f"JSON として解析できません: {exc}", raw=str(text)) from exc
    else:
        obj = raw

    if not isinstance(obj, dict):
        raise ProtocolError("メッセージがオブジェクトではありません", raw=str(raw))

    tag = obj.get("type")
    if tag not in INBOUND_TAGS:
        raise ProtocolError(f"未知のメッセージ種別です: {tag!r}", raw=str(raw))

    try:
        return _INBOUND_ADAPTER.validate_python(obj)
    except ValidationError as exc:
        raise ProtocolError(f"{tag} の形式が不正です: {exc.error_count()} 件のエラー", raw=str(raw)) from exc
