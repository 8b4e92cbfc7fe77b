"""
テスト共通フィクスチャ・Hypothesis ストラテジー定義

全テストモジュールで共有するフィクスチャとデータ生成器を提供する。
実行器との通信はメモリ上の FakeSocket / FakeConnector で代替する。
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Optional

import pytest
from hypothesis import strategies as st

from mrc.model.schema import Step, StepData


# ---------------------------------------------------------------------------
# ステップ生成ヘルパー
# ---------------------------------------------------------------------------

def make_step(step_id: str, step_type: str = "mouse_move", **data: Any) -> Step:
    """テスト用のステップを生成する。"""
    payload: dict[str, Any] = {"wait_time": 1.0, "randomize": False}
    if step_type == "mouse_move":
        payload.update(x=10, y=20)
    payload.update(data)
    return Step(id=step_id, type=step_type, data=StepData.model_validate(payload))


def make_group(group_id: str, children: list[Step], loops: int = 1, name: str = "G") -> Step:
    """テスト用のグループステップを生成する。"""
    return Step(
        id=group_id,
        type="group",
        data=StepData(
            groupName=name,
            groupSteps=children,
            groupLoopCount=loops,
            collapsed=False,
        ),
    )


def sequential_ids(prefix: str = "id"):  # type: ignore[no-untyped-def]
    """連番の id を返す id_factory を生成する。"""
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_steps() -> list[Step]:
    """A, B, C, D の4ステップ。"""
    return [
        make_step("A", "mouse_move", x=1, y=1),
        make_step("B", "mouse_click", x=2, y=2, button="left"),
        make_step("C", "key_press", key="enter"),
        make_step("D", "mouse_move", x=4, y=4),
    ]


@pytest.fixture
def sample_document(sample_steps: list[Step]) -> dict[str, Any]:
    """保存文書形式のサンプル。"""
    return {
        "version": "1.0",
        "timestamp": "2026-01-01T00:00:00+00:00",
        "steps": [s.to_wire() for s in sample_steps],
    }


# ---------------------------------------------------------------------------
# 実行器の代替（メモリ上のソケット）
# ---------------------------------------------------------------------------

_CLOSE = object()


class FakeSocket:
    """websockets の接続オブジェクトの代替。

    push() で実行器からのメッセージを注入し、sent で送信内容を確認する。
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def push(self, message: dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def drop(self) -> None:
        """ネットワーク切断を模擬する。"""
        self._incoming.put_nowait(_CLOSE)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def sent_names(self) -> list[str]:
        return [m.get("type") or m.get("command") for m in self.sent]

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """ConnectionManager に渡すソケット生成関数の代替。"""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls = 0
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> Optional[FakeSocket]:
        return self.sockets[-1] if self.sockets else None


async def settle(seconds: float = 0.02) -> None:
    """イベントループ上の処理が進むまで待つ。"""
    await asyncio.sleep(seconds)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


# ---------------------------------------------------------------------------
# Hypothesis ストラテジー
# ---------------------------------------------------------------------------

def leaf_payloads() -> st.SearchStrategy[tuple[str, dict[str, Any]]]:
    """グループ以外のステップ種別とペイロードを生成する。"""
    coords = st.integers(min_value=0, max_value=4000)
    waits = st.floats(min_value=0, max_value=10, allow_nan=False, allow_infinity=False)
    return st.one_of(
        st.tuples(st.just("mouse_move"), st.fixed_dictionaries({"x": coords, "y": coords, "wait_time": waits})),
        st.tuples(
            st.just("mouse_click"),
            st.fixed_dictionaries({
                "x": coords, "y": coords,
                "button": st.sampled_from(["left", "middle", "right"]),
            }),
        ),
        st.tuples(st.just("key_press"), st.fixed_dictionaries({"key": st.sampled_from(["a", "enter", "tab", "f5"])})),
        st.tuples(st.just("wait"), st.fixed_dictionaries({"wait_time": waits})),
    )


@st.composite
def step_lists(draw, min_size: int = 0, max_size: int = 12, with_groups: bool = True) -> list[Step]:  # type: ignore[no-untyped-def]
    """id が一意なステップリストを生成する（1階層のグループを含み得る）。"""
    counter = itertools.count(1)

    def leaf() -> Step:
        step_type, payload = draw(leaf_payloads())
        return make_step(f"s{next(counter)}", step_type, **payload)

    size = draw(st.integers(min_value=min_size, max_value=max_size))
    steps: list[Step] = []
    for _ in range(size):
        if with_groups and draw(st.booleans()) and draw(st.booleans()):
            children = [leaf() for _ in range(draw(st.integers(min_value=1, max_value=4)))]
            loops = draw(st.integers(min_value=1, max_value=5))
            steps.append(make_group(f"g{next(counter)}", children, loops))
        else:
            steps.append(leaf())
    return steps
