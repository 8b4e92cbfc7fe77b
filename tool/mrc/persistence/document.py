"""
ステップ文書: 保存・読み込み・検証

ステップリストを {version, timestamp, steps} 形式の文書として保存し、
読み込み時に構造を検証する。

形式:
  - 既定は JSON
  - 拡張子が .yaml / .yml の場合は ruamel.yaml で YAML として読み書きする

読み込みに失敗した場合は DocumentValidationError を送出し、
呼び出し側の既存リストは変更されない。
ステップが0件の文書は失敗ではなく「空のインポート」として扱う。
"""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from mrc.errors import DocumentIssue, DocumentValidationError
from mrc.model.schema import Step, iter_ids

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.0"

_YAML_SUFFIXES = (".yaml", ".yml")


# ---------------------------------------------------------------------------
# 文書モデル
# ---------------------------------------------------------------------------

class StepDocument(BaseModel):
    """保存文書の構造。"""

    version: str = Field(default=DOCUMENT_VERSION, description="文書形式のバージョン")
    timestamp: Optional[str] = Field(default=None, description="保存日時（ISO-8601）")
    steps: list[Step] = Field(..., description="ステップリスト")


@dataclass
class ImportResult:
    """読み込み結果。

    Attributes:
        steps: 読み込んだステップ
        version: 文書のバージョン
        timestamp: 文書の保存日時
    """

    steps: list[Step] = field(default_factory=list)
    version: str = DOCUMENT_VERSION
    timestamp: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.steps)

    @property
    def is_empty(self) -> bool:
        return not self.steps


# ---------------------------------------------------------------------------
# 書き出し
# ---------------------------------------------------------------------------

def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in _YAML_SUFFIXES


def _new_yaml() -> YAML:
    yaml = YAML()
    yaml.default_flow_style = False
    yaml.allow_unicode = True
    return yaml


def export_document(steps: Iterable[Step], *, now: Optional[datetime] = None) -> dict[str, Any]:
    """ステップリストを保存用の辞書に変換する。"""
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "version": DOCUMENT_VERSION,
        "timestamp": stamp,
        "steps": [s.to_wire() for s in steps],
    }


def save(path: Union[str, Path], steps: Iterable[Step]) -> Path:
    """ステップリストをファイルに保存する。

    Args:
        path: 保存先（.yaml / .yml なら YAML、それ以外は JSON）
        steps: 保存するステップ

    Returns:
        保存したファイルのパス
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document = export_document(steps)

    with open(path, "w", encoding="utf-8") as f:
        if _is_yaml(path):
            _new_yaml().dump(document, f)
        else:
            json.dump(document, f, ensure_ascii=False, indent=2)

    logger.info("ステップを保存しました: %s (%d 件)", path, len(document["steps"]))
    return path


# ---------------------------------------------------------------------------
# 読み込み
# ---------------------------------------------------------------------------

def _to_plain(data: object) -> object:
    """ruamel.yaml の CommentedMap/CommentedSeq を通常の dict/list に再帰変換する。

    日付・日時は ISO-8601 文字列に戻す。
    """
    if isinstance(data, dict):
        return {key: _to_plain(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_to_plain(item) for item in data]
    if isinstance(data, date):
        # 引用符なしの日時は YAML のタイムスタンプとして読まれる
        return data.isoformat()
    return data


def _decode(text: str, *, yaml: bool) -> object:
    if yaml:
        try:
            return _to_plain(_new_yaml().load(io.StringIO(text)))
        except YAMLError as e:
            line_info = ""
            mark = getattr(e, "problem_mark", None)
            if mark is not None:
                line_info = f" (行 {mark.line + 1}, 列 {mark.column + 1})"
            raise DocumentValidationError(
                [DocumentIssue("yaml", f"YAML 構文エラー{line_info}: {e}")]
            ) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise DocumentValidationError(
            [DocumentIssue("json", f"JSON 構文エラー (行 {e.lineno}, 列 {e.colno}): {e.msg}")]
        ) from e


def _collect_issues(data: object) -> list[DocumentIssue]:
    if data is None:
        return [DocumentIssue("file", "文書が空です")]
    if not isinstance(data, dict):
        return [DocumentIssue("document", "文書はオブジェクトである必要があります")]
    if "steps" not in data:
        return [DocumentIssue("steps", "steps がありません")]
    if not isinstance(data["steps"], list):
        return [DocumentIssue("steps", "steps は配列である必要があります")]

    try:
        document = StepDocument.model_validate(data)
    except PydanticValidationError as e:
        issues = []
        for err in e.errors():
            loc_parts = [str(part) for part in err.get("loc", [])]
            location = " -> ".join(loc_parts) if loc_parts else "unknown"
            issues.append(DocumentIssue(location, err.get("msg", "不明なエラー")))
        return issues

    seen: set[str] = set()
    issues = []
    for step_id in iter_ids(document.steps):
        if step_id in seen:
            issues.append(DocumentIssue("steps", f"id が重複しています: {step_id}"))
        seen.add(step_id)
    return issues


def parse_document(source: Union[str, dict[str, Any]], *, yaml: bool = False) -> ImportResult:
    """文書の文字列または辞書を解析する。

    Args:
        source: JSON / YAML の文字列、またはデコード済みの辞書
        yaml: source が文字列のとき YAML として解析する

    Raises:
        DocumentValidationError: 構文エラー、steps の欠落・型違い、スキーマ違反の場合
    """
    data = _decode(source, yaml=yaml) if isinstance(source, str) else source

    issues = _collect_issues(data)
    if issues:
        raise DocumentValidationError(issues)

    document = StepDocument.model_validate(data)
    return ImportResult(
        steps=document.steps,
        version=document.version,
        timestamp=document.timestamp,
    )


def load(path: Union[str, Path]) -> ImportResult:
    """ファイルからステップ文書を読み込む。

    Raises:
        DocumentValidationError: ファイルが無い・読めない、または文書が不正な場合
    """
    path = Path(path)
    if not path.exists():
        raise DocumentValidationError([DocumentIssue("file", f"ファイルが見つかりません: {path}")])
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise DocumentValidationError([DocumentIssue("file", f"ファイルを読み込めません: {e}")]) from e

    result = parse_document(text, yaml=_is_yaml(path))
    logger.info("ステップを読み込みました: %s (%d 件)", path, result.count)
    return result


def validate_file(path: Union[str, Path]) -> list[DocumentIssue]:
    """ファイルを検証し、問題のリストを返す（例外は送出しない）。"""
    try:
        load(path)
    except DocumentValidationError as e:
        return list(e.issues)
    return []
