"""
User-visible notices.

The plugin UI polls recent notices and shows them as toasts. Posting a
notice never blocks and never raises.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, message: str) -> None:
        ...


@dataclass(frozen=True)
class Notice:
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NoticeBoard:
    """Keeps the most recent notices in memory for the UI to pick up."""

    def __init__(self, max_notices: int = 50) -> None:
        self._notices: deque[Notice] = deque(maxlen=max_notices)

    def notify(self, message: str) -> None:
        logger.warning("Notice: %s", message)
        self._notices.append(Notice(message=message))

    def recent(self) -> list[Notice]:
        return list(self._notices)

    def drain(self) -> list[Notice]:
        notices = list(self._notices)
        self._notices.clear()
        return notices
