"""
メッセージディスパッチ: 受信タグ → ハンドラの対応表

受信メッセージの全タグ（INBOUND_TAGS）に対してハンドラが
登録されていることを構築時に検査する。ハンドラの漏れは
アプリケーションの組み立て時点で TypeError になる。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Union

from mrc.errors import ProtocolError
from mrc.protocol.messages import INBOUND_TAGS, parse_inbound

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class MessageDispatcher:
    """受信メッセージをタグごとのハンドラへ振り分ける。

    使用例::

        dispatcher = MessageDispatcher({
            "steps_updated": on_steps,
            "status_update": on_status,
            ...
        })
        dispatcher.dispatch(raw_json)
    """

    def __init__(self, handlers: Mapping[str, Handler]) -> None:
        """ディスパッチテーブルを構築する。

        Args:
            handlers: タグ → ハンドラ（解析済みメッセージを受け取る）

        Raises:
            TypeError: ハンドラが無いタグ、または未知のタグがある場合
        """
        missing = INBOUND_TAGS - set(handlers)
        if missing:
            raise TypeError(f"ハンドラが登録されていないメッセージ種別があります: {sorted(missing)}")
        unknown = set(handlers) - INBOUND_TAGS
        if unknown:
            raise TypeError(f"未知のメッセージ種別にハンドラが登録されています: {sorted(unknown)}")
        for tag, handler in handlers.items():
            if not callable(handler):
                raise TypeError(f"{tag} のハンドラが呼び出し可能ではありません: {handler!r}")
        self._handlers: dict[str, Handler] = dict(handlers)

    @property
    def tags(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, raw: Union[str, bytes, dict[str, Any]]) -> bool:
        """メッセージを解析してハンドラを呼ぶ。

        不正・未知のメッセージは警告ログを出して破棄する。
        ハンドラ内の例外は呼び出し元へ伝播する。

        Returns:
            ハンドラを呼んだ場合 True、破棄した場合 False
        """
        try:
            message = parse_inbound(raw)
        except ProtocolError as exc:
            logger.warning("受信メッセージを破棄しました: %s", exc)
            return False

        tag = message.type
        logger.debug("受信: %s", tag)
        self._handlers[tag](message)
        return True
