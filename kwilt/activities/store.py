"""In-memory activity collection.

`update_activity` is the single write primitive for activity records. It is
synchronous and atomic: the updater sees the current record and its result
replaces it in one step. Persistence is the caller's concern; listeners are
notified after every write so a persistence layer (or the link index) can
follow along.
"""

import contextlib
from collections.abc import Callable, Iterable

from loguru import logger

from kwilt.activities.types import Activity

ActivityUpdater = Callable[[Activity], Activity]
ChangeListener = Callable[[Activity | None, Activity | None], None]


class ActivityStore:
    """Single-writer activity collection keyed by id."""

    def __init__(self, activities: Iterable[Activity] = ()) -> None:
        self._activities: dict[str, Activity] = {}
        self._listeners: list[ChangeListener] = []
        for activity in activities:
            self._activities[activity.id] = activity

    def __contains__(self, activity_id: object) -> bool:
        return activity_id in self._activities

    def __len__(self) -> int:
        return len(self._activities)

    def get(self, activity_id: str) -> Activity | None:
        return self._activities.get(activity_id)

    def all(self) -> list[Activity]:
        return list(self._activities.values())

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a (before, after) listener called after every write."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def put(self, activity: Activity) -> None:
        """Insert or replace an activity (creation flows, bulk loads)."""
        before = self._activities.get(activity.id)
        self._activities[activity.id] = activity
        self._notify(before, activity)

    def remove(self, activity_id: str) -> Activity | None:
        before = self._activities.pop(activity_id, None)
        if before is None:
            logger.debug(f"remove: activity {activity_id} not found")
            return None
        self._notify(before, None)
        return before

    def update_activity(self, activity_id: str, updater: ActivityUpdater) -> Activity | None:
        """Atomically replace an activity with `updater(current)`.

        Args:
            activity_id: Activity to update
            updater: Pure function from the current record to the next one

        Returns:
            The stored record after the update, or None if the activity
            does not exist (no-op)
        """
        current = self._activities.get(activity_id)
        if current is None:
            logger.debug(f"update_activity: activity {activity_id} not found")
            return None

        updated = updater(current)
        if updated is current:
            return current
        if updated.id != activity_id:
            raise ValueError(f"Updater changed activity id {activity_id} -> {updated.id}")

        self._activities[activity_id] = updated
        self._notify(current, updated)
        return updated

    def _notify(self, before: Activity | None, after: Activity | None) -> None:
        for listener in list(self._listeners):
            listener(before, after)
