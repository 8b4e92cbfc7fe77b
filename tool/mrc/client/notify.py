"""
ユーザー通知: 一時的な通知メッセージの出力先

表示方法（トースト等）はクライアントの外側に任せ、
ここでは通知の受け口（Notifier Protocol）と既定の実装のみを定義する。
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class NotifyLevel(str, enum.Enum):
    """通知の種類。"""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@runtime_checkable
class Notifier(Protocol):
    """通知の受け口。"""

    def notify(self, level: NotifyLevel, message: str) -> None:
        ...


_LOG_LEVELS = {
    NotifyLevel.INFO: logging.INFO,
    NotifyLevel.SUCCESS: logging.INFO,
    NotifyLevel.WARNING: logging.WARNING,
    NotifyLevel.ERROR: logging.ERROR,
}


class LoggingNotifier:
    """通知をログに出力する既定の Notifier。"""

    def notify(self, level: NotifyLevel, message: str) -> None:
        logger.log(_LOG_LEVELS[level], "[%s] %s", level.value, message)


@dataclass
class Notification:
    level: NotifyLevel
    message: str


class RecordingNotifier:
    """通知を保持するだけの Notifier（CLI の結果表示とテストで使う）。"""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, level: NotifyLevel, message: str) -> None:
        self.notifications.append(Notification(level, message))

    @property
    def last(self) -> Optional[Notification]:
        return self.notifications[-1] if self.notifications else None

    def messages(self, level: Optional[NotifyLevel] = None) -> list[str]:
        return [n.message for n in self.notifications if level is None or n.level is level]
