"""Linked step synchronization.

A linked step points at another activity through `linked_activity_id`. Its
`completed_at` mirrors that activity's completion:

- linked activity done: keep the step's stamp, else take the linked
  activity's completed_at, else the current timestamp
- linked activity not done: None

Whenever a mirror changes, the parent is re-derived through the step
mutation applier like any other step edit, so its own status follows. A
parent that changes done state can itself be the target of other links,
so changes propagate upward through the child -> parent index.

Syncing is idempotent: a second pass with no external change writes nothing.
"""

from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from dataclasses import replace

from loguru import logger

from kwilt.activities.mutations import StepMutationApplier, StepUpdateResult
from kwilt.activities.store import ActivityStore
from kwilt.activities.types import Activity, ActivityStatus, ActivityStep, Clock

ActivityLookup = Callable[[str], Activity | None]


class LinkIndex:
    """Index of linked steps by the activity they point at."""

    def __init__(self) -> None:
        self._parents_by_child: dict[str, set[tuple[str, str]]] = defaultdict(set)
        self._children_by_parent: dict[str, set[str]] = defaultdict(set)

    def rebuild(self, activities: Iterable[Activity]) -> None:
        self._parents_by_child.clear()
        self._children_by_parent.clear()
        for activity in activities:
            self._add(activity)

    def on_change(self, before: Activity | None, after: Activity | None) -> None:
        """Store listener keeping the index in step with every write."""
        if before is not None:
            self._remove(before)
        if after is not None:
            self._add(after)

    def parents_of(self, child_id: str) -> list[str]:
        """Ids of activities with at least one step linked to `child_id`."""
        return sorted({parent_id for parent_id, _step_id in self._parents_by_child.get(child_id, ())})

    def children_of(self, parent_id: str) -> set[str]:
        return set(self._children_by_parent.get(parent_id, ()))

    def linking_parents(self) -> list[str]:
        """Ids of all activities that have linked steps."""
        return sorted(parent_id for parent_id, children in self._children_by_parent.items() if children)

    def _add(self, activity: Activity) -> None:
        for step in activity.steps:
            if step.linked_activity_id is None:
                continue
            self._parents_by_child[step.linked_activity_id].add((activity.id, step.id))
            self._children_by_parent[activity.id].add(step.linked_activity_id)

    def _remove(self, activity: Activity) -> None:
        for child_id in self._children_by_parent.pop(activity.id, set()):
            refs = self._parents_by_child.get(child_id)
            if refs is None:
                continue
            refs.difference_update({ref for ref in refs if ref[0] == activity.id})
            if not refs:
                del self._parents_by_child[child_id]


def is_activity_done(activity: Activity) -> bool:
    return activity.status == ActivityStatus.DONE or activity.completed_at is not None


def mirror_linked_steps(
    steps: list[ActivityStep],
    lookup: ActivityLookup,
    timestamp: str,
) -> tuple[list[ActivityStep], bool]:
    """Compute mirrored stamps for every linked step.

    Steps linked to an activity that no longer exists are left as they are.

    Returns:
        (next steps, whether any stamp changed)
    """
    changed = False
    next_steps: list[ActivityStep] = []
    for step in steps:
        if step.linked_activity_id is None:
            next_steps.append(step)
            continue

        target = lookup(step.linked_activity_id)
        if target is None:
            next_steps.append(step)
            continue

        if is_activity_done(target):
            desired = step.completed_at or target.completed_at or timestamp
        else:
            desired = None

        if desired != step.completed_at:
            changed = True
            next_steps.append(replace(step, completed_at=desired))
        else:
            next_steps.append(step)

    return next_steps, changed


class LinkedStepSynchronizer:
    """Keeps linked steps mirrored to the activities they point at."""

    def __init__(
        self,
        store: ActivityStore,
        applier: StepMutationApplier,
        clock: Clock,
        propagation_limit: int = 1000,
    ) -> None:
        self.store = store
        self.applier = applier
        self.clock = clock
        self.propagation_limit = propagation_limit
        self.index = LinkIndex()
        self.index.rebuild(store.all())
        store.add_listener(self.index.on_change)

    def sync_activity(self, activity_id: str, timestamp: str | None = None) -> StepUpdateResult | None:
        """Mirror one parent's linked steps.

        Returns:
            StepUpdateResult if anything was written, None if already in sync
        """
        activity = self.store.get(activity_id)
        if activity is None:
            return None

        ts = timestamp or self.clock()
        _steps, changed = mirror_linked_steps(list(activity.steps), self.store.get, ts)
        if not changed:
            return None

        return self.applier.apply(
            activity_id,
            lambda steps: mirror_linked_steps(steps, self.store.get, ts)[0],
            timestamp=ts,
            source="linked",
        )

    def propagate_from(self, activity_ids: Iterable[str], timestamp: str | None = None) -> list[StepUpdateResult]:
        """Re-sync every parent linked to the given activities, transitively.

        Args:
            activity_ids: Activities whose done state changed
            timestamp: Timestamp for any writes (read from the clock if None)

        Returns:
            Results for every parent that was written
        """
        ts = timestamp or self.clock()
        queue = deque(activity_ids)
        results: list[StepUpdateResult] = []
        rederivations = 0

        while queue:
            child_id = queue.popleft()
            for parent_id in self.index.parents_of(child_id):
                if rederivations >= self.propagation_limit:
                    logger.warning(
                        "Linked step propagation limit reached; check for link cycles",
                        limit=self.propagation_limit,
                        activity_id=parent_id,
                    )
                    return results

                result = self.sync_activity(parent_id, ts)
                if result is None:
                    continue

                rederivations += 1
                results.append(result)
                if result.done_changed:
                    queue.append(parent_id)

        return results

    def reconcile_all(self, timestamp: str | None = None) -> list[StepUpdateResult]:
        """Full pass over every activity with linked steps."""
        ts = timestamp or self.clock()
        results: list[StepUpdateResult] = []
        changed: list[str] = []

        for parent_id in self.index.linking_parents():
            result = self.sync_activity(parent_id, ts)
            if result is None:
                continue
            results.append(result)
            if result.done_changed:
                changed.append(parent_id)

        results.extend(self.propagate_from(changed, ts))
        logger.debug(f"[LINKED_SYNC] full pass wrote {len(results)} activities")
        return results

    def would_create_cycle(self, parent_id: str, child_id: str) -> bool:
        """True if linking parent -> child would close a loop."""
        if parent_id == child_id:
            return True

        seen: set[str] = set()
        stack = [child_id]
        while stack:
            current = stack.pop()
            if current == parent_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.index.children_of(current))
        return False
