"""Activity completion engine.

Facade over the completion components, exposing the operations the UI calls:

- Step edits (toggle, add, remove, rename, optional flag) go through the
  step mutation applier and drop any pending Finish marker
- The primary completion action dispatches to Finish, Undo or a manual
  toggle depending on the activity's steps and marker
- Linking and unlinking steps to other activities
- After any write that changes an activity's done state, parents linked to
  it are re-synced

Each operation reads the clock once and stamps everything it writes with
that single timestamp.
"""

import random
import string
import time
from collections.abc import Callable
from dataclasses import replace

from loguru import logger

from kwilt.activities.events import CompletionEventBus, CompletionHandler
from kwilt.activities.finish import FinishController, FinishState, PrimaryAction
from kwilt.activities.linked_steps import LinkedStepSynchronizer
from kwilt.activities.manual_toggle import toggle_manual_completion
from kwilt.activities.mutations import StepMutationApplier, StepsUpdater, StepUpdateResult
from kwilt.activities.store import ActivityStore
from kwilt.activities.types import Activity, ActivityOrigin, ActivityStep, Clock, FinishMarker
from kwilt.config.settings import settings
from kwilt.utils.timestamps import utc_now_iso


def generate_step_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"step-{int(time.time() * 1000)}-{suffix}"


class ActivityCompletionEngine:
    """Keeps activity status and completion consistent with steps and links."""

    def __init__(
        self,
        store: ActivityStore,
        *,
        clock: Clock | None = None,
        events: CompletionEventBus | None = None,
        linked_sync_enabled: bool | None = None,
        propagation_limit: int | None = None,
        step_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or utc_now_iso
        self.events = events or CompletionEventBus()
        self.finish = FinishController()
        store.add_listener(self.finish.on_change)
        self.applier = StepMutationApplier(
            store,
            self.clock,
            self.events,
            completion_guard=self.finish.claim_completion,
        )
        self.links = LinkedStepSynchronizer(
            store,
            self.applier,
            self.clock,
            propagation_limit=propagation_limit or settings.propagation_limit,
        )
        self.linked_sync_enabled = (
            settings.linked_sync_enabled if linked_sync_enabled is None else linked_sync_enabled
        )
        self.step_id_factory = step_id_factory or generate_step_id

    # Subscriptions

    def subscribe(self, handler: CompletionHandler) -> Callable[[], None]:
        """Subscribe to completion events. Returns an unsubscribe callable."""
        return self.events.subscribe(handler)

    # Introspection

    def finish_state(self, activity_id: str) -> FinishState:
        return self.finish.state(activity_id)

    def finish_marker(self, activity_id: str) -> FinishMarker | None:
        return self.finish.marker(activity_id)

    def primary_action(self, activity_id: str) -> PrimaryAction | None:
        activity = self.store.get(activity_id)
        if activity is None:
            return None
        return self.finish.resolve_action(activity)

    # Step edits

    def apply_step_update(
        self,
        activity_id: str,
        updater: StepsUpdater,
        *,
        timestamp: str | None = None,
    ) -> StepUpdateResult | None:
        """Apply an arbitrary step edit. Drops any pending Finish marker."""
        if activity_id not in self.store:
            logger.debug(f"apply_step_update: activity {activity_id} not found")
            return None

        ts = timestamp or self.clock()
        self.finish.invalidate(activity_id)
        result = self.applier.apply(activity_id, updater, timestamp=ts, source="step")
        self._propagate(result, ts)
        return result

    def toggle_step_complete(self, activity_id: str, step_id: str) -> StepUpdateResult | None:
        """Flip one step's completion.

        Linked steps are not independently settable; toggling one is a no-op.
        """
        step = self._find_step(activity_id, step_id)
        if step is None:
            return None
        if step.is_linked:
            logger.debug(f"toggle_step_complete: step {step_id} is linked to {step.linked_activity_id}, ignoring")
            return None

        ts = self.clock()

        def _toggle(steps: list[ActivityStep]) -> list[ActivityStep]:
            return [
                replace(s, completed_at=None if s.completed_at else ts) if s.id == step_id else s
                for s in steps
            ]

        return self.apply_step_update(activity_id, _toggle, timestamp=ts)

    def add_step(self, activity_id: str, title: str = "", *, is_optional: bool = False) -> str | None:
        """Append a new incomplete step. Returns the new step id."""
        if activity_id not in self.store:
            logger.debug(f"add_step: activity {activity_id} not found")
            return None

        step_id = self.step_id_factory()

        def _append(steps: list[ActivityStep]) -> list[ActivityStep]:
            new_step = ActivityStep(
                id=step_id,
                title=title,
                completed_at=None,
                is_optional=is_optional,
                order_index=len(steps),
            )
            return [*steps, new_step]

        self.apply_step_update(activity_id, _append)
        return step_id

    def remove_step(self, activity_id: str, step_id: str) -> StepUpdateResult | None:
        if self._find_step(activity_id, step_id) is None:
            return None
        return self.apply_step_update(activity_id, lambda steps: [s for s in steps if s.id != step_id])

    def rename_step(self, activity_id: str, step_id: str, title: str) -> StepUpdateResult | None:
        if self._find_step(activity_id, step_id) is None:
            return None
        return self.apply_step_update(
            activity_id,
            lambda steps: [replace(s, title=title) if s.id == step_id else s for s in steps],
        )

    def toggle_step_optional(self, activity_id: str, step_id: str) -> StepUpdateResult | None:
        if self._find_step(activity_id, step_id) is None:
            return None
        return self.apply_step_update(
            activity_id,
            lambda steps: [replace(s, is_optional=not s.is_optional) if s.id == step_id else s for s in steps],
        )

    # Primary completion action

    def toggle_activity_complete(self, activity_id: str) -> StepUpdateResult | None:
        """Handle the activity-level done button.

        - No steps: manual done / not-done toggle
        - Finish marker active: undo the Finish
        - Some steps incomplete: Finish them all with one stamp
        - All steps complete: manual toggle of the activity only
        """
        activity = self.store.get(activity_id)
        if activity is None:
            logger.debug(f"toggle_activity_complete: activity {activity_id} not found")
            return None

        action = self.finish.resolve_action(activity)
        ts = self.clock()

        if action == PrimaryAction.UNDO:
            return self._undo_finish(activity_id, ts)
        if action == PrimaryAction.FINISH:
            return self._finish_remaining(activity, ts)
        return self._toggle_manually(activity, ts)

    def _finish_remaining(self, activity: Activity, ts: str) -> StepUpdateResult | None:
        plan = self.finish.plan_finish(activity, ts)
        if plan is None:
            logger.debug(f"Finish: nothing to stamp on activity {activity.id}")
            return None

        updater, marker = plan
        result = self.applier.apply(activity.id, updater, timestamp=ts, source="finish")
        if result is None:
            return None

        self.finish.begin(activity.id, marker)
        self._propagate(result, ts)
        return result

    def _undo_finish(self, activity_id: str, ts: str) -> StepUpdateResult | None:
        restore = self.finish.plan_restore(activity_id)
        if restore is None:
            return None

        result = self.applier.apply_record(activity_id, restore, timestamp=ts, source="finish")
        self.finish.complete_undo(activity_id)
        self._propagate(result, ts)
        return result

    def _toggle_manually(self, activity: Activity, ts: str) -> StepUpdateResult | None:
        result = self.applier.apply_record(activity.id, toggle_manual_completion, timestamp=ts, source="manual")
        if result is None:
            return None

        if activity.steps:
            self.finish.record_manual_toggle(activity.id)
        logger.info(
            "Activity toggled manually",
            activity_id=activity.id,
            status=result.after.status.value,
        )
        self._propagate(result, ts)
        return result

    # Linking

    def convert_step_to_link(self, activity_id: str, step_id: str, new_activity_id: str) -> bool:
        """Link a step to another activity, typically one just created from it.

        The step then mirrors the linked activity's completion. The linked
        activity gets this step as its origin if it has none yet.

        Returns:
            True if the link was made, False if rejected (unknown ids,
            self-link or a link cycle)
        """
        step = self._find_step(activity_id, step_id)
        target = self.store.get(new_activity_id)
        if step is None or target is None:
            logger.warning(
                "Link rejected: unknown activity or step",
                activity_id=activity_id,
                step_id=step_id,
                linked_activity_id=new_activity_id,
            )
            return False
        if self.links.would_create_cycle(activity_id, new_activity_id):
            logger.warning(
                "Link rejected: would create a link cycle",
                activity_id=activity_id,
                step_id=step_id,
                linked_activity_id=new_activity_id,
            )
            return False

        ts = self.clock()
        if target.origin is None:
            self.store.update_activity(
                new_activity_id,
                lambda prev: prev.replace(
                    origin=ActivityOrigin(parent_activity_id=activity_id, parent_step_id=step_id),
                    updated_at=ts,
                ),
            )

        self.apply_step_update(
            activity_id,
            lambda steps: [
                replace(s, linked_activity_id=new_activity_id, linked_at=ts) if s.id == step_id else s
                for s in steps
            ],
            timestamp=ts,
        )
        logger.info(
            "Step linked",
            activity_id=activity_id,
            step_id=step_id,
            linked_activity_id=new_activity_id,
        )

        result = self.links.sync_activity(activity_id, ts)
        self._propagate(result, ts)
        return True

    def unlink_step(self, activity_id: str, step_id: str) -> StepUpdateResult | None:
        """Detach a linked step. The step becomes a plain, incomplete step.

        The former linked activity is left untouched, including its origin.
        """
        step = self._find_step(activity_id, step_id)
        if step is None or not step.is_linked:
            return None

        result = self.apply_step_update(
            activity_id,
            lambda steps: [
                replace(s, linked_activity_id=None, linked_at=None, completed_at=None) if s.id == step_id else s
                for s in steps
            ],
        )
        logger.info(
            "Step unlinked",
            activity_id=activity_id,
            step_id=step_id,
            linked_activity_id=step.linked_activity_id,
        )
        return result

    def detach_origin(self, activity_id: str) -> Activity | None:
        """Clear an activity's origin pointer."""
        activity = self.store.get(activity_id)
        if activity is None or activity.origin is None:
            return None
        ts = self.clock()
        return self.store.update_activity(activity_id, lambda prev: prev.replace(origin=None, updated_at=ts))

    def reconcile_linked_steps(self) -> list[StepUpdateResult]:
        """Full linked step pass over the whole collection."""
        return self.links.reconcile_all(self.clock())

    # Helpers

    def _find_step(self, activity_id: str, step_id: str) -> ActivityStep | None:
        activity = self.store.get(activity_id)
        if activity is None:
            logger.debug(f"activity {activity_id} not found")
            return None
        step = activity.find_step(step_id)
        if step is None:
            logger.debug(f"step {step_id} not found on activity {activity_id}")
        return step

    def _propagate(self, result: StepUpdateResult | None, ts: str) -> None:
        if result is None or not result.done_changed or not self.linked_sync_enabled:
            return
        self.links.propagate_from([result.after.id], ts)
