"""Root conftest for all tests.

Shared fixtures: a deterministic clock, an empty activity store, an engine
wired to both, and a recorder for completion events.
"""

from datetime import UTC, datetime, timedelta

import pytest

from kwilt.activities.engine import ActivityCompletionEngine
from kwilt.activities.events import CompletionEvent
from kwilt.activities.store import ActivityStore
from kwilt.utils.timestamps import to_utc_iso


class FakeClock:
    """Clock returning ISO timestamps that advance by `step` on every read."""

    def __init__(
        self,
        start: datetime = datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self.current = start
        self.step = step
        self.reads = 0

    def __call__(self) -> str:
        value = to_utc_iso(self.current)
        self.current += self.step
        self.reads += 1
        return value

    def peek(self) -> str:
        """Value the next read will return."""
        return to_utc_iso(self.current)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> ActivityStore:
    return ActivityStore()


@pytest.fixture
def engine(store: ActivityStore, clock: FakeClock) -> ActivityCompletionEngine:
    """Engine with linked sync on and predictable generated step ids."""
    counter = iter(range(1, 10_000))
    return ActivityCompletionEngine(
        store,
        clock=clock,
        linked_sync_enabled=True,
        step_id_factory=lambda: f"new-step-{next(counter)}",
    )


@pytest.fixture
def completions(engine: ActivityCompletionEngine) -> list[CompletionEvent]:
    """Every completion event the engine publishes, in order."""
    received: list[CompletionEvent] = []
    engine.subscribe(received.append)
    return received
