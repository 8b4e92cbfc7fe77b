"""
データモデル: ステップ・グループ・ランダムタイミング・実行テレメトリ

実行器とやり取りする JSON 構造、および保存文書に含まれる構造を
Pydantic v2 モデルとして定義する。

ステップのペイロード（data）は実行器側で追加されたフィールドも
失わずに往復できるよう、未知のキーを保持する（extra="allow"）。
グループ関連のフィールド名は実行器と保存文書の互換性のため
groupName / groupSteps / groupLoopCount のまま扱う。
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# ステップ種別
# ---------------------------------------------------------------------------

class StepType(str, enum.Enum):
    """ステップの種別。"""

    MOUSE_MOVE = "mouse_move"
    MOUSE_CLICK = "mouse_click"
    MOUSE_DOUBLE_CLICK = "mouse_double_click"
    KEY_PRESS = "key_press"
    WAIT = "wait"
    GROUP = "group"


class MouseButton(str, enum.Enum):
    """クリックに使用するマウスボタン。"""

    LEFT = "left"
    MIDDLE = "middle"
    RIGHT = "right"


# ---------------------------------------------------------------------------
# ステップペイロード
# ---------------------------------------------------------------------------

class StepData(BaseModel):
    """ステップのペイロード。

    全ステップが実行後の待機時間（wait_time, 秒）とランダム化フラグを持つ。
    種別ごとのフィールドは該当する種別でのみ設定される。
    """

    model_config = ConfigDict(extra="allow")

    wait_time: float = Field(default=1.0, ge=0, description="実行後の待機時間（秒）")
    randomize: bool = Field(default=False, description="待機時間をランダム化するか")
    step_type: Optional[str] = Field(default=None, description="実行器が参照する種別名")

    # マウス
    x: Optional[int] = Field(default=None, description="X 座標")
    y: Optional[int] = Field(default=None, description="Y 座標")
    button: Optional[str] = Field(default=None, description="マウスボタン")

    # キーボード
    key: Optional[str] = Field(default=None, description="押下するキー")
    modifiers: Optional[list[str]] = Field(default=None, description="修飾キー（ctrl, alt, shift）")

    # グループ
    groupName: Optional[str] = Field(default=None, description="グループ表示名")
    groupSteps: Optional[list[Step]] = Field(default=None, description="グループ内ステップのスナップショット")
    groupLoopCount: Optional[int] = Field(default=None, description="グループの繰り返し回数")
    collapsed: Optional[bool] = Field(default=None, description="表示上の折りたたみ状態")


class Step(BaseModel):
    """自動化の1単位。id はリスト全体（グループ内を含む）で一意。"""

    id: str = Field(..., description="一意な識別子")
    type: str = Field(..., description="ステップ種別（未知の種別も保持する）")
    data: StepData = Field(default_factory=StepData, description="ペイロード")

    @property
    def step_type(self) -> Optional[StepType]:
        """既知の種別であれば StepType を、未知であれば None を返す。"""
        try:
            return StepType(self.type)
        except ValueError:
            return None

    @property
    def is_group(self) -> bool:
        return self.type == StepType.GROUP.value

    @property
    def children(self) -> list[Step]:
        """グループ内ステップ（グループ以外では空リスト）。"""
        if not self.is_group:
            return []
        return list(self.data.groupSteps or [])

    @property
    def loop_count(self) -> int:
        """グループの繰り返し回数。未設定・不正値は 1 とみなす。"""
        count = self.data.groupLoopCount
        if isinstance(count, int) and count >= 1:
            return count
        return 1

    def to_wire(self) -> dict[str, Any]:
        """実行器へ送信する辞書形式に変換する。"""
        return self.model_dump(mode="json", exclude_none=True)


StepData.model_rebuild()
Step.model_rebuild()


def iter_ids(steps: list[Step]) -> list[str]:
    """グループ内を含む全ステップの id を深さ優先で列挙する。"""
    ids: list[str] = []
    for step in steps:
        ids.append(step.id)
        if step.is_group:
            ids.extend(iter_ids(step.children))
    return ids


# ---------------------------------------------------------------------------
# ランダムタイミング設定
# ---------------------------------------------------------------------------

class RandomTimingConfig(BaseModel):
    """実行時に各ステップの wait_time を伸縮させる設定。

    min_factor <= max_factor は実行器側でも検証されないため、
    ここでも拒否はせず is_consistent() で確認できるようにしている。
    """

    enabled: bool = False
    min_factor: float = 0.8
    max_factor: float = 1.2

    def is_consistent(self) -> bool:
        """0 < min_factor <= max_factor を満たすかを返す。"""
        return 0 < self.min_factor <= self.max_factor


# ---------------------------------------------------------------------------
# 実行状態とテレメトリ
# ---------------------------------------------------------------------------

class RunStatus(str, enum.Enum):
    """クライアントに表示する実行状態。"""

    IDLE = "idle"
    RECORDING = "recording"
    RUNNING = "running"


@dataclass
class RunTelemetry:
    """実行中の進捗情報。

    Attributes:
        status: 実行状態
        current_step_index: 実行中ステップの位置（実行していなければ None）
        completed_steps: 完了ステップ数
        total_steps: 全ステップ数
    """

    status: RunStatus = RunStatus.IDLE
    current_step_index: Optional[int] = None
    completed_steps: int = 0
    total_steps: int = 0

    def reset(self) -> None:
        """進捗をリセットする（状態は変更しない）。"""
        self.current_step_index = None
        self.completed_steps = 0
        self.total_steps = 0

    def progress_percent(self, fallback_total: int = 0) -> int:
        """進捗率（0〜100）を返す。

        total_steps が未報告の場合は fallback_total（通常は表示中のステップ数）を使う。
        """
        total = self.total_steps if self.total_steps > 0 else fallback_total
        if total <= 0:
            return 0
        if self.completed_steps > 0:
            return min(100, round(self.completed_steps / total * 100))
        if self.current_step_index is None or self.current_step_index < 0:
            return 0
        return min(100, round((self.current_step_index + 1) / total * 100))


class MousePosition(BaseModel):
    """実行器が報告するカーソル位置。"""

    x: int = 0
    y: int = 0

    @property
    def is_origin(self) -> bool:
        return self.x == 0 and self.y == 0


# ---------------------------------------------------------------------------
# 表示用の説明文
# ---------------------------------------------------------------------------

def describe_step(step: Step) -> str:
    """ステップの1行説明を返す。"""
    data = step.data
    kind = step.step_type
    if kind is StepType.MOUSE_MOVE:
        return f"Move to X: {data.x}, Y: {data.y}"
    if kind is StepType.MOUSE_CLICK:
        button = data.button if isinstance(data.button, str) and data.button else "left"
        return f"{button.capitalize()} click at ({data.x}, {data.y})"
    if kind is StepType.MOUSE_DOUBLE_CLICK:
        return "Double click at current position"
    if kind is StepType.KEY_PRESS:
        combo = "+".join([*(data.modifiers or []), data.key or ""])
        return f'Press key "{combo}"'
    if kind is StepType.WAIT:
        return f"Wait {data.wait_time}s"
    if kind is StepType.GROUP:
        name = data.groupName or "Group"
        return f"Group {name} ({len(step.children)} steps, {step.loop_count} loops)"
    return f"Unknown action ({step.type})"
