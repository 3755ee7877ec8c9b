"""Completion events.

A completion event is published once per genuine transition of an activity
into `done`. Consumers (celebration, haptics, analytics) subscribe here and
are fire-and-forget: a failing handler is logged and never affects the
mutation that produced the event or the other handlers.
"""

import contextlib
from collections.abc import Callable
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict

CompletionSource = Literal["step", "finish", "manual", "linked"]


class CompletionEvent(BaseModel):
    """An activity became done.

    Attributes:
        activity_id: Activity that transitioned to done
        had_steps: Whether the activity had any steps at the time
        completed_at: Completion stamp written with the transition
        source: What caused the transition
    """

    model_config = ConfigDict(frozen=True)

    activity_id: str
    had_steps: bool
    completed_at: str
    source: CompletionSource


CompletionHandler = Callable[[CompletionEvent], None]


class CompletionEventBus:
    """In-memory pub/sub for completion events."""

    def __init__(self) -> None:
        self._handlers: list[CompletionHandler] = []

    def subscribe(self, handler: CompletionHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: CompletionEvent) -> None:
        logger.info(
            f"[COMPLETION] activity_id={event.activity_id} "
            f"source={event.source} "
            f"had_steps={event.had_steps} "
            f"completed_at={event.completed_at}"
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Completion handler failed for activity {event.activity_id}")
