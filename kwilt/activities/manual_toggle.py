"""Manual done / not-done toggle.

Used for activities without steps, and for activities whose steps are all
complete already. Steps are never touched here.
"""

from kwilt.activities.types import Activity, ActivityStatus


def toggle_manual_completion(activity: Activity, timestamp: str) -> Activity:
    """Flip the activity's own done flag.

    Not done -> done stamps `timestamp`. Done -> not done clears the stamp
    and lands on `planned` for a step-less activity, or `in_progress` when
    the activity has (complete) steps.

    Args:
        activity: Current activity record
        timestamp: Timestamp of the toggle

    Returns:
        Updated activity record
    """
    if activity.is_done:
        next_status = ActivityStatus.IN_PROGRESS if activity.steps else ActivityStatus.PLANNED
        return activity.replace(status=next_status, completed_at=None, updated_at=timestamp)

    return activity.replace(status=ActivityStatus.DONE, completed_at=timestamp, updated_at=timestamp)
