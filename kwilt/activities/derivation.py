"""Status derivation from checklist steps.

Pure function, no store access. Rules:
1. No steps: status and completion stamp are left untouched
2. All steps complete: done, unless the steps were already all complete
   and the activity was not done (the user explicitly un-completed it)
3. Some steps complete: in_progress
4. No steps complete: planned

Optional steps count toward "all complete".
"""

from collections.abc import Sequence

from kwilt.activities.types import ActivityStatus, ActivityStep, StatusDerivation


def _all_complete(steps: Sequence[ActivityStep]) -> bool:
    return len(steps) > 0 and all(step.is_complete for step in steps)


def derive_status_from_steps(
    prev_status: ActivityStatus,
    prev_steps: Sequence[ActivityStep],
    next_steps: Sequence[ActivityStep],
    timestamp: str,
    prev_completed_at: str | None = None,
) -> StatusDerivation:
    """Derive the next status and completion stamp after a step change.

    Args:
        prev_status: Status before the change
        prev_steps: Steps before the change
        next_steps: Steps after the change
        timestamp: Stamp to use if the activity becomes done now
        prev_completed_at: Completion stamp before the change

    Returns:
        StatusDerivation with the next status and completed_at. The first
        completion stamp wins while the activity stays done; leaving done
        always clears it.
    """
    if not next_steps:
        return StatusDerivation(status=prev_status, completed_at=prev_completed_at)

    all_complete = _all_complete(next_steps)
    any_complete = any(step.is_complete for step in next_steps)

    if all_complete:
        if prev_status == ActivityStatus.DONE or not _all_complete(prev_steps):
            next_status = ActivityStatus.DONE
        else:
            # Steps were already complete but the activity was marked not done.
            # Do not force completion back on.
            next_status = ActivityStatus.IN_PROGRESS
    elif any_complete:
        next_status = ActivityStatus.IN_PROGRESS
    else:
        next_status = ActivityStatus.PLANNED

    if next_status == ActivityStatus.DONE:
        next_completed_at = prev_completed_at or timestamp
    else:
        next_completed_at = None

    return StatusDerivation(status=next_status, completed_at=next_completed_at)
