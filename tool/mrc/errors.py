"""
例外定義: クライアント全体で共通のエラー分類

コマンド面（MacroClient）ではこれらの例外を捕捉し、
一時的な通知としてユーザーに表示する。いずれもプロセスを終了させない。

分類:
  - NotConnectedError: 実行器との接続が開いていない（コマンドは即座に失敗）
  - ProtocolError: 不正または未知のメッセージ（ログ出力して破棄）
  - DocumentValidationError: インポート文書の不正（既存リストは変更しない）
  - UserInputError: ユーザー入力の不備（送信・変更の前に拒否）
  - GroupCycleError: グループが自分自身を含む（再帰展開時のみ）
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class MacroClientError(Exception):
    """本パッケージが送出する例外の基底クラス。"""


class NotConnectedError(MacroClientError, ConnectionError):
    """実行器との接続が無い状態でコマンドを発行した。

    実行器側の拒否とは区別して「未接続」としてユーザーに通知する。
    """

    def __init__(self, command: str, message: Optional[str] = None) -> None:
        self.command = command
        super().__init__(message or f"実行器に接続されていません: {command} を送信できません")


class ProtocolError(MacroClientError):
    """受信メッセージの形式が不正、またはタグが未知。"""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        self.raw = raw
        super().__init__(message)


@dataclass
class DocumentIssue:
    """インポート文書の検証で見つかった問題1件。

    Attributes:
        location: 問題箇所（フィールドパス等）
        message: 問題の説明
    """

    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class DocumentValidationError(MacroClientError, ValueError):
    """保存文書の構文エラー・構造エラー。"""

    def __init__(self, issues: list[DocumentIssue]) -> None:
        self.issues = issues
        summary = "; ".join(str(i) for i in issues) or "不明なエラー"
        super().__init__(f"文書の検証に失敗しました: {summary}")


class UserInputError(MacroClientError, ValueError):
    """ユーザー入力の不備（空のキー、選択数不足など）。"""


class GroupCycleError(MacroClientError, ValueError):
    """グループが直接または間接的に自分自身を含んでいる。"""

    def __init__(self, group_id: str) -> None:
        self.group_id = group_id
        super().__init__(f"グループ '{group_id}' が自分自身を含んでいます")
