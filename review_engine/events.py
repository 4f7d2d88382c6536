"""Run observers for the review and chat orchestrators."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

REVIEW_EXECUTION_FINISHED = "review-execution-finished"
REVIEW_CHAT_COMPLETE = "review-chat-complete"
REVIEW_CHAT_ERROR = "review-chat-error"

RunObserver = Callable[[str, dict[str, Any]], None]


def notify(observer: Optional[RunObserver], channel: str, payload: dict[str, Any]) -> None:
    """Deliver ``payload`` on ``channel``; observer failures are only logged."""
    if observer is None:
        return
    try:
        observer(channel, payload)
    except Exception:
        logger.exception("Observer failed while handling %s", channel)


class EventRecorder:
    """Observer that keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, channel: str, payload: dict[str, Any]) -> None:
        self.events.append((channel, payload))

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.events]
