"""Finish / Undo shortcut state machine.

The primary action on an activity with steps is one of:
- FINISH: stamp every remaining step with one timestamp and remember which
  steps were stamped (the finish marker)
- UNDO: revert exactly the steps the last Finish stamped, provided they
  still carry its stamp, and put back the pre-Finish status
- TOGGLE: flip the activity's own done flag without touching steps

Per-activity state:

    IDLE --finish--> FINISHED_PENDING_UNDO --undo--> IDLE
    IDLE --toggle--> MANUALLY_TOGGLED --finish--> FINISHED_PENDING_UNDO
    any --step edit--> IDLE (marker dropped)

The controller also owns the completion suppression flag. It is claimed when
a completion event is published and released as soon as the store shows the
activity outside `done`, so each stay in `done` is celebrated exactly once.

Markers are transient and never persisted.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

from loguru import logger

from kwilt.activities.derivation import derive_status_from_steps
from kwilt.activities.types import Activity, ActivityStep, FinishMarker


class FinishState(StrEnum):
    """Shortcut state of one activity."""

    IDLE = "idle"
    FINISHED_PENDING_UNDO = "finished_pending_undo"
    MANUALLY_TOGGLED = "manually_toggled"


class PrimaryAction(StrEnum):
    """What pressing the primary completion action will do."""

    FINISH = "finish"
    UNDO = "undo"
    TOGGLE = "toggle"


@dataclass
class _FinishSession:
    state: FinishState = FinishState.IDLE
    marker: FinishMarker | None = None
    celebrated: bool = False


class FinishController:
    """Tracks Finish markers and computes Finish/Undo step updaters."""

    def __init__(self) -> None:
        self._sessions: dict[str, _FinishSession] = {}

    def __contains__(self, activity_id: object) -> bool:
        return activity_id in self._sessions

    def _session(self, activity_id: str) -> _FinishSession:
        session = self._sessions.get(activity_id)
        if session is None:
            session = _FinishSession()
            self._sessions[activity_id] = session
        return session

    def state(self, activity_id: str) -> FinishState:
        session = self._sessions.get(activity_id)
        return session.state if session else FinishState.IDLE

    def marker(self, activity_id: str) -> FinishMarker | None:
        session = self._sessions.get(activity_id)
        return session.marker if session else None

    def resolve_action(self, activity: Activity) -> PrimaryAction:
        """Decide what the primary action does for the activity right now."""
        if not activity.steps:
            return PrimaryAction.TOGGLE
        if self.marker(activity.id) is not None:
            return PrimaryAction.UNDO
        if not all(step.is_complete for step in activity.steps):
            return PrimaryAction.FINISH
        return PrimaryAction.TOGGLE

    def plan_finish(
        self,
        activity: Activity,
        timestamp: str,
    ) -> tuple[Callable[[list[ActivityStep]], list[ActivityStep]], FinishMarker] | None:
        """Build the Finish updater and the marker it will leave behind.

        Linked steps are skipped: their stamps mirror another activity.

        Returns:
            (updater, marker), or None if no step can be stamped
        """
        step_ids = frozenset(
            step.id for step in activity.steps if not step.is_complete and not step.is_linked
        )
        if not step_ids:
            return None

        def _stamp(steps: list[ActivityStep]) -> list[ActivityStep]:
            return [
                _with_completed_at(step, timestamp)
                if step.id in step_ids and not step.is_complete
                else step
                for step in steps
            ]

        marker = FinishMarker(
            completed_at_stamp=timestamp,
            step_ids=step_ids,
            steps_before=activity.steps,
            status_before=activity.status,
            completed_at_before=activity.completed_at,
        )
        return _stamp, marker

    def plan_undo(self, activity_id: str) -> Callable[[list[ActivityStep]], list[ActivityStep]] | None:
        """Build the updater reverting the active marker's steps.

        Only steps still present, listed in the marker and carrying exactly
        the marker's stamp are reverted. Steps removed since the Finish are
        ignored; steps re-toggled in the meantime keep their own stamp.
        """
        marker = self.marker(activity_id)
        if marker is None:
            return None

        def _revert(steps: list[ActivityStep]) -> list[ActivityStep]:
            return [
                _with_completed_at(step, None)
                if step.id in marker.step_ids and step.completed_at == marker.completed_at_stamp
                else step
                for step in steps
            ]

        return _revert

    def plan_restore(self, activity_id: str) -> Callable[[Activity, str], Activity] | None:
        """Build the record updater that undoes the active Finish.

        Steps are reverted as in `plan_undo`. If that brings them back to
        exactly the pre-Finish list, the pre-Finish status and completed_at
        are restored as well. Otherwise something else wrote to the steps in
        the meantime (a linked step mirrored its target) and the status is
        derived from the reverted steps instead.
        """
        marker = self.marker(activity_id)
        revert = self.plan_undo(activity_id)
        if marker is None or revert is None:
            return None

        def _restore(prev: Activity, timestamp: str) -> Activity:
            steps = revert(list(prev.steps))
            if tuple(steps) == marker.steps_before:
                status, completed_at = marker.status_before, marker.completed_at_before
            else:
                derived = derive_status_from_steps(
                    prev_status=prev.status,
                    prev_steps=list(prev.steps),
                    next_steps=steps,
                    timestamp=timestamp,
                    prev_completed_at=prev.completed_at,
                )
                status, completed_at = derived.status, derived.completed_at
            return prev.replace(
                steps=tuple(steps),
                status=status,
                completed_at=completed_at,
                updated_at=timestamp,
            )

        return _restore

    def begin(self, activity_id: str, marker: FinishMarker) -> None:
        session = self._session(activity_id)
        session.state = FinishState.FINISHED_PENDING_UNDO
        session.marker = marker
        logger.info(
            "Finish applied",
            activity_id=activity_id,
            step_count=len(marker.step_ids),
            stamp=marker.completed_at_stamp,
        )

    def complete_undo(self, activity_id: str) -> None:
        session = self._session(activity_id)
        session.state = FinishState.IDLE
        session.marker = None
        logger.info("Finish undone", activity_id=activity_id)

    def record_manual_toggle(self, activity_id: str) -> None:
        session = self._session(activity_id)
        session.state = FinishState.MANUALLY_TOGGLED
        session.marker = None

    def invalidate(self, activity_id: str) -> None:
        """Drop the marker after any other step edit."""
        session = self._sessions.get(activity_id)
        if session is None:
            return
        if session.marker is not None:
            logger.debug(f"Finish marker invalidated for activity {activity_id}")
        session.marker = None
        session.state = FinishState.IDLE

    def claim_completion(self, activity_id: str) -> bool:
        """Return True if the activity's current stay in done has not been celebrated yet."""
        session = self._session(activity_id)
        if session.celebrated:
            return False
        session.celebrated = True
        return True

    def on_change(self, before: Activity | None, after: Activity | None) -> None:
        """Store listener: release the completion claim and drop removed activities."""
        if after is None:
            if before is not None:
                self.forget(before.id)
            return
        if after.is_done:
            return

        session = self._sessions.get(after.id)
        if session is None:
            return
        session.celebrated = False
        if session.state == FinishState.IDLE and session.marker is None:
            del self._sessions[after.id]

    def forget(self, activity_id: str) -> None:
        self._sessions.pop(activity_id, None)


def _with_completed_at(step: ActivityStep, completed_at: str | None) -> ActivityStep:
    return replace(step, completed_at=completed_at)
