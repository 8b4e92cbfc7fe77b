"""
グループ展開: 実行用のフラットなステップ列を生成する

実行器はグループを解釈しないため、run_automation / run_selected_steps を
送る直前にグループを繰り返し回数分の子ステップ列へ展開する。

既定では1階層のみ展開し、グループ内のグループはそのまま送る。
recursive=True では深さ優先で全階層を展開し、祖先と同じグループに
再び到達した場合は GroupCycleError を送出する。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from mrc.errors import GroupCycleError
from mrc.model.schema import Step

if TYPE_CHECKING:
    from mrc.editor.store import StepStore


def flatten(steps: Iterable[Step], *, recursive: bool = False) -> list[Step]:
    """グループを展開したステップ列を返す。

    Args:
        steps: 展開対象のステップ列
        recursive: True でネストしたグループも展開する

    Returns:
        実行順のステップ列

    Raises:
        GroupCycleError: recursive=True でグループが自分自身を含む場合
    """
    result: list[Step] = []
    for step in steps:
        if not step.is_group:
            result.append(step)
        elif recursive:
            result.extend(_expand(step, frozenset(), frozenset()))
        else:
            children = step.children
            for _ in range(step.loop_count):
                result.extend(children)
    return result


def _expand(group: Step, seen_objects: frozenset[int], seen_ids: frozenset[str]) -> list[Step]:
    if id(group) in seen_objects or group.id in seen_ids:
        raise GroupCycleError(group.id)
    seen_objects = seen_objects | {id(group)}
    seen_ids = seen_ids | {group.id}

    once: list[Step] = []
    for child in group.children:
        if child.is_group:
            once.extend(_expand(child, seen_objects, seen_ids))
        else:
            once.append(child)
    return once * group.loop_count


def flatten_selected(
    store: StepStore, ids: Iterable[str], *, recursive: bool = False
) -> list[Step]:
    """選択 id を選択順にステップへ解決して展開する。不明な id は無視する。"""
    resolved = [step for step in (store.get(i) for i in ids) if step is not None]
    return flatten(resolved, recursive=recursive)
