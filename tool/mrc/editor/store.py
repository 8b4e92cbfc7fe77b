"""
StepStore: 正準ステップリストと選択状態の管理

ユーザー操作（追加・削除・並べ替え・コピー&ペースト・グループ化）で
ステップリストを編集する。実行器からの配信（steps_updated）は
replace_all() でそのまま採用する。

不変条件:
  - リスト内（グループ内ステップを含む）で id が重複しない
  - 既存ステップの id を再生成しない（ペーストした複製のみ新しい id を持つ）
  - 選択状態には存在するステップの id のみが残る
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from pydantic import ValidationError

from mrc.errors import UserInputError
from mrc.model.schema import Step, StepData, StepType, iter_ids

logger = logging.getLogger(__name__)


def _new_hex_id() -> str:
    return uuid.uuid4().hex


class StepStore:
    """ステップリストの所有者。

    構造を変える編集を行うたびに local_version を1つ進める。
    """

    def __init__(
        self,
        default_wait_time: float = 1.0,
        default_randomize: bool = False,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """StepStore を初期化する。

        Args:
            default_wait_time: add() でペイロードに補う待機時間（秒）
            default_randomize: add() でペイロードに補うランダム化フラグ
            id_factory: id 生成関数（省略時は uuid4().hex）
        """
        self.default_wait_time = default_wait_time
        self.default_randomize = default_randomize
        self._id_factory = id_factory or _new_hex_id
        self._steps: list[Step] = []
        self._selection: list[str] = []
        self._local_version = 0

    # ------------------------------------------------------------------
    # 参照
    # ------------------------------------------------------------------

    @property
    def steps(self) -> list[Step]:
        """現在のステップリスト（リスト自体はコピー）。"""
        return list(self._steps)

    @property
    def local_version(self) -> int:
        """ローカル編集のたびに増加するバージョン番号。"""
        return self._local_version

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(list(self._steps))

    def ids(self) -> list[str]:
        """トップレベルの id をリスト順で返す。"""
        return [s.id for s in self._steps]

    def all_ids(self) -> set[str]:
        """グループ内を含む全 id を返す。"""
        return set(iter_ids(self._steps))

    def get(self, step_id: str) -> Optional[Step]:
        for step in self._steps:
            if step.id == step_id:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        """トップレベルでの位置を返す。見つからなければ -1。"""
        for i, step in enumerate(self._steps):
            if step.id == step_id:
                return i
        return -1

    # ------------------------------------------------------------------
    # 選択状態
    # ------------------------------------------------------------------

    @property
    def selection(self) -> list[str]:
        """選択中の id（選択した順）。"""
        return list(self._selection)

    def select(self, ids: Iterable[str]) -> None:
        """選択を置き換える。存在しない id は無視する。"""
        existing = set(self.ids())
        self._selection = []
        for step_id in ids:
            if step_id in existing and step_id not in self._selection:
                self._selection.append(step_id)

    def toggle_selection(self, step_id: str) -> bool:
        """選択を反転する。選択状態になった場合 True を返す。"""
        if step_id in self._selection:
            self._selection.remove(step_id)
            return False
        if self.index_of(step_id) < 0:
            return False
        self._selection.append(step_id)
        return True

    def clear_selection(self) -> None:
        self._selection = []

    def selected_in_list_order(self) -> list[str]:
        """選択中の id をリスト上の位置順で返す。"""
        chosen = set(self._selection)
        return [s.id for s in self._steps if s.id in chosen]

    def last_selected_id(self) -> Optional[str]:
        """選択中でリスト上の位置が最も後ろの id（ペースト位置の基準）。"""
        ordered = self.selected_in_list_order()
        return ordered[-1] if ordered else None

    def _prune_selection(self) -> None:
        existing = set(self.ids())
        self._selection = [i for i in self._selection if i in existing]

    # ------------------------------------------------------------------
    # id 生成
    # ------------------------------------------------------------------

    def _fresh_id(self, taken: set[str]) -> str:
        step_id = self._id_factory()
        while step_id in taken:
            step_id = self._id_factory()
        taken.add(step_id)
        return step_id

    def _clone_with_new_ids(self, step: Step, taken: set[str]) -> Step:
        """ステップを深く複製し、グループ内を含めて新しい id を振る。"""
        clone = step.model_copy(deep=True)
        clone.id = self._fresh_id(taken)
        if clone.is_group and clone.data.groupSteps is not None:
            clone.data.groupSteps = [
                self._clone_with_new_ids(child, taken) for child in clone.data.groupSteps
            ]
        return clone

    def _touch(self) -> None:
        self._local_version += 1

    # ------------------------------------------------------------------
    # 編集操作
    # ------------------------------------------------------------------

    def add(
        self,
        step_type: Union[StepType, str],
        payload: Optional[dict[str, Any]] = None,
    ) -> Step:
        """ステップを末尾に追加する。

        ペイロードに wait_time / randomize が無ければ既定値を補う。

        Returns:
            追加したステップ

        Raises:
            UserInputError: ペイロードが StepData として不正な場合
        """
        type_name = step_type.value if isinstance(step_type, StepType) else str(step_type)
        data = dict(payload or {})
        data.setdefault("wait_time", self.default_wait_time)
        data.setdefault("randomize", self.default_randomize)
        data.setdefault("step_type", type_name)

        try:
            step_data = StepData.model_validate(data)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise UserInputError(f"ステップの内容が不正です: {details}") from exc

        step = Step(id=self._fresh_id(self.all_ids()), type=type_name, data=step_data)
        self._steps.append(step)
        self._touch()
        logger.debug("ステップを追加: %s (%s)", step.id, type_name)
        return step

    def delete(self, ids: Iterable[str]) -> list[Step]:
        """指定 id のステップを削除し、選択からも外す。

        Returns:
            削除したステップ
        """
        targets = set(ids)
        removed = [s for s in self._steps if s.id in targets]
        if not removed:
            return []
        self._steps = [s for s in self._steps if s.id not in targets]
        self._selection = [i for i in self._selection if i not in targets]
        self._touch()
        logger.debug("ステップを削除: %d 件", len(removed))
        return removed

    def clear(self) -> None:
        """全ステップと選択を破棄する。"""
        self._steps = []
        self._selection = []
        self._touch()

    def reorder(self, new_order: list[Step]) -> None:
        """リスト全体を置き換える。

        既存の id は全て含まれていなければならない。
        ペースト由来の新しい id を含むのは構わない。

        Raises:
            UserInputError: 既存 id の欠落、または id の重複がある場合
        """
        new_ids = iter_ids(new_order)
        if len(new_ids) != len(set(new_ids)):
            raise UserInputError("並べ替え後のリストに重複した id があります")
        missing = set(self.ids()) - {s.id for s in new_order}
        if missing:
            raise UserInputError(f"並べ替え後のリストに既存ステップがありません: {sorted(missing)}")
        self._steps = list(new_order)
        self._touch()

    def move(self, step_id: str, new_index: int) -> None:
        """1ステップを new_index の位置へ移動する（ドラッグ&ドロップ）。"""
        current = self.index_of(step_id)
        if current < 0:
            raise UserInputError(f"ステップが見つかりません: {step_id}")
        order = list(self._steps)
        step = order.pop(current)
        new_index = max(0, min(new_index, len(order)))
        order.insert(new_index, step)
        self.reorder(order)

    def copy(self, ids: Iterable[str]) -> list[Step]:
        """指定 id のステップをリスト順で深く複製して返す。ストアは変更しない。"""
        targets = set(ids)
        return [s.model_copy(deep=True) for s in self._steps if s.id in targets]

    def paste(self, snapshot: list[Step], after_id: Optional[str] = None) -> list[Step]:
        """コピーしたステップを新しい id で挿入する。

        after_id が存在すればその直後、無ければ末尾に挿入する。

        Returns:
            挿入した複製
        """
        if not snapshot:
            return []
        taken = self.all_ids()
        clones = [self._clone_with_new_ids(s, taken) for s in snapshot]

        position = self.index_of(after_id) if after_id is not None else -1
        if position >= 0:
            self._steps[position + 1:position + 1] = clones
        else:
            self._steps.extend(clones)
        self._touch()
        logger.debug("ステップをペースト: %d 件", len(clones))
        return clones

    def insert_wait_between_selected(
        self, selected_ids: Iterable[str], wait_seconds: float
    ) -> list[Step]:
        """選択ステップの隣り合う各組の間に wait ステップを1つずつ挿入する。

        位置の順序は選択順ではなくリスト上の順序で決める。
        該当ステップが2つ未満なら何もしない。

        Returns:
            挿入した wait ステップ（n 個選択なら n-1 個）
        """
        chosen = set(selected_ids)
        positions = [i for i, s in enumerate(self._steps) if s.id in chosen]
        if len(positions) < 2:
            return []

        taken = self.all_ids()
        inserted: list[Step] = []
        for shift, pos in enumerate(positions[:-1]):
            wait = Step(
                id=self._fresh_id(taken),
                type=StepType.WAIT.value,
                data=StepData(
                    wait_time=wait_seconds,
                    randomize=self.default_randomize,
                    step_type=StepType.WAIT.value,
                ),
            )
            self._steps.insert(pos + 1 + shift, wait)
            inserted.append(wait)
        self._touch()
        return inserted

    # ------------------------------------------------------------------
    # グループ
    # ------------------------------------------------------------------

    def group(self, ids: Iterable[str], name: Optional[str] = None) -> Step:
        """選択ステップをまとめたグループを末尾に追加する。

        元のステップはリストから取り除かれ、id を保ったままグループ内に移る。

        Raises:
            UserInputError: 該当ステップが2つ未満の場合
        """
        targets = set(ids)
        members = [s for s in self._steps if s.id in targets]
        if len(members) < 2:
            raise UserInputError("グループ化には2つ以上のステップを選択してください")

        if not name:
            count = sum(1 for s in self._steps if s.is_group)
            name = f"Group {count + 1}"

        taken = self.all_ids()
        group_step = Step(
            id=self._fresh_id(taken),
            type=StepType.GROUP.value,
            data=StepData(
                wait_time=self.default_wait_time,
                randomize=self.default_randomize,
                step_type=StepType.GROUP.value,
                groupName=name,
                groupSteps=[m.model_copy(deep=True) for m in members],
                groupLoopCount=1,
                collapsed=False,
            ),
        )
        self._steps = [s for s in self._steps if s.id not in targets]
        self._steps.append(group_step)
        self._prune_selection()
        self._touch()
        logger.info("グループを作成: %s (%d ステップ)", name, len(members))
        return group_step

    def ungroup(self, group_id: str) -> list[Step]:
        """グループを解除し、内部ステップを末尾に戻す。

        Returns:
            戻したステップ（グループでなければ空リスト）
        """
        target = self.get(group_id)
        if target is None or not target.is_group:
            return []
        children = target.children
        self._steps = [s for s in self._steps if s.id != group_id]
        self._steps.extend(children)
        self._selection = [i for i in self._selection if i != group_id]
        self._touch()
        logger.info("グループを解除: %s", group_id)
        return children

    def _require_group(self, group_id: str) -> Step:
        step = self.get(group_id)
        if step is None or not step.is_group:
            raise UserInputError(f"グループが見つかりません: {group_id}")
        return step

    def set_group_loop_count(self, group_id: str, count: int) -> None:
        """グループの繰り返し回数を変更する（1 以上）。"""
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise UserInputError(f"繰り返し回数は1以上の整数で指定してください: {count}")
        self._require_group(group_id).data.groupLoopCount = count
        self._touch()

    def rename_group(self, group_id: str, name: str) -> None:
        if not name.strip():
            raise UserInputError("グループ名が空です")
        self._require_group(group_id).data.groupName = name
        self._touch()

    def toggle_collapsed(self, group_id: str) -> bool:
        """折りたたみ表示を切り替える。表示専用のためバージョンは進めない。"""
        step = self._require_group(group_id)
        step.data.collapsed = not bool(step.data.collapsed)
        return step.data.collapsed

    # ------------------------------------------------------------------
    # 配信の採用
    # ------------------------------------------------------------------

    def replace_all(self, steps: list[Step]) -> None:
        """実行器から配信されたリストをそのまま採用する。"""
        self._steps = list(steps)
        self._prune_selection()
        logger.debug("ステップリストを更新: %d 件", len(self._steps))

    def import_steps(self, steps: list[Step]) -> None:
        """読み込んだ文書でリストを置き換え、選択を解除する。

        Raises:
            UserInputError: id が重複している場合
        """
        new_ids = iter_ids(steps)
        if len(new_ids) != len(set(new_ids)):
            raise UserInputError("読み込んだステップに重複した id があります")
        self._steps = list(steps)
        self._selection = []
        self._touch()
