"""
データモデルのユニットテスト

Step / StepData の往復変換、未知フィールドの保持、
RandomTimingConfig の整合性判定、RunTelemetry の進捗率、
describe_step の説明文を検証する。
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from mrc.model.schema import (
    MousePosition,
    RandomTimingConfig,
    RunStatus,
    RunTelemetry,
    Step,
    StepData,
    StepType,
    describe_step,
    iter_ids,
)

from conftest import make_group, make_step


# ---------------------------------------------------------------------------
# Step / StepData
# ---------------------------------------------------------------------------

class TestStep:
    """Step モデルのテスト。"""

    def test_defaults(self):
        """wait_time=1.0, randomize=False が既定値であること。"""
        data = StepData()
        assert data.wait_time == 1.0
        assert data.randomize is False

    def test_negative_wait_time_rejected(self):
        """負の wait_time は検証エラーになること。"""
        with pytest.raises(ValidationError):
            StepData(wait_time=-1)

    def test_unknown_fields_survive_round_trip(self):
        """実行器側で追加された未知のフィールドが失われないこと。"""
        raw = {"id": "x", "type": "mouse_move", "data": {"x": 1, "y": 2, "speed": "fast"}}
        step = Step.model_validate(raw)
        assert step.to_wire()["data"]["speed"] == "fast"

    def test_unknown_type_is_preserved(self):
        """未知の種別は文字列のまま保持され、step_type は None になること。"""
        step = Step.model_validate({"id": "x", "type": "scroll", "data": {}})
        assert step.type == "scroll"
        assert step.step_type is None
        assert step.to_wire()["type"] == "scroll"

    def test_known_type(self):
        step = make_step("a", "key_press", key="a")
        assert step.step_type is StepType.KEY_PRESS

    def test_to_wire_omits_unset_optional_fields(self):
        """None のフィールドは送信形式に含まれないこと。"""
        wire = make_step("a", "wait", wait_time=2.0).to_wire()
        assert "x" not in wire["data"]
        assert "groupSteps" not in wire["data"]
        assert wire["data"]["wait_time"] == 2.0

    def test_group_wire_names(self):
        """グループのフィールド名が groupName / groupSteps / groupLoopCount であること。"""
        group = make_group("g", [make_step("a")], loops=3, name="ログイン")
        data = group.to_wire()["data"]
        assert data["groupName"] == "ログイン"
        assert data["groupLoopCount"] == 3
        assert data["groupSteps"][0]["id"] == "a"

    def test_nested_group_parses_from_dict(self):
        """辞書から入れ子のグループを復元できること。"""
        raw = {
            "id": "g",
            "type": "group",
            "data": {"groupSteps": [{"id": "a", "type": "wait", "data": {"wait_time": 0.5}}]},
        }
        group = Step.model_validate(raw)
        assert group.is_group
        assert group.children[0].data.wait_time == 0.5


class TestLoopCount:
    """グループの繰り返し回数の解釈。"""

    @pytest.mark.parametrize("value,expected", [(None, 1), (0, 1), (-2, 1), (1, 1), (4, 4)])
    def test_loop_count_fallback(self, value, expected):
        """未設定・1未満は 1 とみなすこと。"""
        group = make_group("g", [make_step("a")])
        group.data.groupLoopCount = value
        assert group.loop_count == expected

    def test_children_of_non_group_is_empty(self):
        assert make_step("a").children == []


def test_iter_ids_includes_nested():
    """iter_ids がグループ内の id も列挙すること。"""
    steps = [make_step("a"), make_group("g", [make_step("b"), make_step("c")])]
    assert iter_ids(steps) == ["a", "g", "b", "c"]


# ---------------------------------------------------------------------------
# RandomTimingConfig
# ---------------------------------------------------------------------------

class TestRandomTimingConfig:
    """ランダムタイミング設定のテスト。"""

    def test_defaults(self):
        config = RandomTimingConfig()
        assert (config.enabled, config.min_factor, config.max_factor) == (False, 0.8, 1.2)

    def test_inconsistent_values_are_accepted(self):
        """min > max でも生成でき、is_consistent() が False になること。"""
        config = RandomTimingConfig(enabled=True, min_factor=1.5, max_factor=1.0)
        assert config.is_consistent() is False

    def test_zero_min_is_inconsistent(self):
        assert RandomTimingConfig(min_factor=0, max_factor=1).is_consistent() is False

    def test_equal_factors_are_consistent(self):
        assert RandomTimingConfig(min_factor=1, max_factor=1).is_consistent() is True


# ---------------------------------------------------------------------------
# RunTelemetry
# ---------------------------------------------------------------------------

class TestRunTelemetry:
    """進捗率の計算テスト。"""

    def test_initial(self):
        telemetry = RunTelemetry()
        assert telemetry.status is RunStatus.IDLE
        assert telemetry.progress_percent() == 0

    def test_completed_over_total(self):
        telemetry = RunTelemetry(status=RunStatus.RUNNING, current_step_index=2, completed_steps=2, total_steps=8)
        assert telemetry.progress_percent() == 25

    def test_current_index_when_nothing_completed(self):
        """completed が 0 のときは (current+1)/total を使うこと。"""
        telemetry = RunTelemetry(status=RunStatus.RUNNING, current_step_index=0, total_steps=4)
        assert telemetry.progress_percent() == 25

    def test_fallback_total(self):
        """total_steps 未報告時は fallback_total を使うこと。"""
        telemetry = RunTelemetry(status=RunStatus.RUNNING, current_step_index=1, completed_steps=1)
        assert telemetry.progress_percent(fallback_total=2) == 50

    def test_no_total_at_all(self):
        telemetry = RunTelemetry(completed_steps=3)
        assert telemetry.progress_percent() == 0

    def test_reset_keeps_status(self):
        telemetry = RunTelemetry(status=RunStatus.RUNNING, current_step_index=3, completed_steps=3, total_steps=5)
        telemetry.reset()
        assert telemetry.status is RunStatus.RUNNING
        assert (telemetry.current_step_index, telemetry.completed_steps, telemetry.total_steps) == (None, 0, 0)


def test_mouse_position_origin():
    assert MousePosition(x=0, y=0).is_origin
    assert not MousePosition(x=0, y=1).is_origin


# ---------------------------------------------------------------------------
# describe_step
# ---------------------------------------------------------------------------

class TestDescribeStep:
    """説明文のテスト。"""

    def test_move(self):
        assert describe_step(make_step("a", "mouse_move", x=5, y=6)) == "Move to X: 5, Y: 6"

    def test_click(self):
        text = describe_step(make_step("a", "mouse_click", x=1, y=2, button="right"))
        assert text == "Right click at (1, 2)"

    def test_double_click(self):
        assert "Double click" in describe_step(make_step("a", "mouse_double_click"))

    def test_key_with_modifiers(self):
        text = describe_step(make_step("a", "key_press", key="c", modifiers=["ctrl"]))
        assert text == 'Press key "ctrl+c"'

    def test_wait(self):
        assert describe_step(make_step("a", "wait", wait_time=2.5)) == "Wait 2.5s"

    def test_group(self):
        group = make_group("g", [make_step("a"), make_step("b")], loops=3, name="ログイン")
        assert describe_step(group) == "Group ログイン (2 steps, 3 loops)"

    def test_unknown(self):
        step = Step.model_validate({"id": "x", "type": "scroll", "data": {}})
        assert describe_step(step) == "Unknown action (scroll)"
