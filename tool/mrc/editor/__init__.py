"""
ステップ編集モジュール

主要エクスポート:
  - StepStore: 正準ステップリストと選択状態の管理
  - flatten: グループを繰り返し回数分展開した実行用シーケンスの生成
  - flatten_selected: 選択ステップの展開
"""

from .flatten import flatten, flatten_selected
from .store import StepStore

__all__ = ["StepStore", "flatten", "flatten_selected"]
