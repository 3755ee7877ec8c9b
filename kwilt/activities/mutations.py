"""Step mutation applier.

Every change to an activity's steps or completion goes through here:

1. Read the current steps
2. Compute the next steps with the caller's updater
3. Derive status and completed_at from the change
4. Write steps, status, completed_at and updated_at back in one store update
5. Publish a completion event if the activity genuinely became done

Manual completion toggles and Undo use `apply_record` so completion events
are emitted from a single place as well.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from kwilt.activities.derivation import derive_status_from_steps
from kwilt.activities.events import CompletionEvent, CompletionEventBus, CompletionSource
from kwilt.activities.store import ActivityStore
from kwilt.activities.types import Activity, ActivityStep, Clock

StepsUpdater = Callable[[list[ActivityStep]], Sequence[ActivityStep]]
RecordUpdater = Callable[[Activity, str], Activity]
CompletionGuard = Callable[[str], bool]


@dataclass(frozen=True)
class StepUpdateResult:
    """Outcome of one applied mutation.

    Attributes:
        before: Activity record before the write
        after: Activity record after the write
        completion_emitted: Whether a completion event was published
    """

    before: Activity
    after: Activity
    completion_emitted: bool = False

    @property
    def became_done(self) -> bool:
        return not self.before.is_done and self.after.is_done

    @property
    def done_changed(self) -> bool:
        return self.before.is_done != self.after.is_done


class StepMutationApplier:
    """Applies step transformations and keeps status consistent with them."""

    def __init__(
        self,
        store: ActivityStore,
        clock: Clock,
        events: CompletionEventBus,
        completion_guard: CompletionGuard | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.events = events
        self.completion_guard = completion_guard

    def apply(
        self,
        activity_id: str,
        updater: StepsUpdater,
        *,
        timestamp: str | None = None,
        source: CompletionSource = "step",
    ) -> StepUpdateResult | None:
        """Apply a step-list transformation to an activity.

        Args:
            activity_id: Activity whose steps change
            updater: Pure function from the current step list to the next one
            timestamp: Timestamp for this mutation (read from the clock if None)
            source: Completion event source if the activity becomes done

        Returns:
            StepUpdateResult, or None if the activity does not exist
        """
        ts = timestamp or self.clock()
        captured: dict[str, Activity] = {}

        def _update(prev: Activity) -> Activity:
            captured["before"] = prev
            current_steps = list(prev.steps)
            next_steps = list(updater(list(current_steps)))
            derived = derive_status_from_steps(
                prev_status=prev.status,
                prev_steps=current_steps,
                next_steps=next_steps,
                timestamp=ts,
                prev_completed_at=prev.completed_at,
            )
            return prev.replace(
                steps=tuple(next_steps),
                status=derived.status,
                completed_at=derived.completed_at,
                updated_at=ts,
            )

        after = self.store.update_activity(activity_id, _update)
        if after is None:
            logger.debug(f"apply: activity {activity_id} not found, skipping step update")
            return None

        return self._finalize(captured["before"], after, source)

    def apply_record(
        self,
        activity_id: str,
        updater: RecordUpdater,
        *,
        timestamp: str | None = None,
        source: CompletionSource = "manual",
    ) -> StepUpdateResult | None:
        """Write a whole-record change computed by `updater(current, timestamp)`.

        Used for changes whose status is not derived from the step edit alone:
        manual toggles and the Finish undo.
        """
        ts = timestamp or self.clock()
        captured: dict[str, Activity] = {}

        def _update(prev: Activity) -> Activity:
            captured["before"] = prev
            return updater(prev, ts)

        after = self.store.update_activity(activity_id, _update)
        if after is None:
            logger.debug(f"apply_record: activity {activity_id} not found")
            return None

        return self._finalize(captured["before"], after, source)

    def _finalize(self, before: Activity, after: Activity, source: CompletionSource) -> StepUpdateResult:
        emitted = False
        if not before.is_done and after.is_done:
            emitted = self._emit_completion(after, source)
        elif before.status != after.status:
            logger.debug(
                f"[STATUS] activity_id={after.id} {before.status.value} -> {after.status.value}"
            )
        return StepUpdateResult(before=before, after=after, completion_emitted=emitted)

    def _emit_completion(self, activity: Activity, source: CompletionSource) -> bool:
        # done implies completed_at by construction
        completed_at = activity.completed_at or ""
        if self.completion_guard is not None and not self.completion_guard(activity.id):
            logger.debug(
                "Completion event suppressed",
                activity_id=activity.id,
                completed_at=completed_at,
            )
            return False

        self.events.publish(
            CompletionEvent(
                activity_id=activity.id,
                had_steps=len(activity.steps) > 0,
                completed_at=completed_at,
                source=source,
            )
        )
        return True
