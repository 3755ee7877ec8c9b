"""Activity and step data model.

Activities are immutable records. Every change produces a new Activity via
`dataclasses.replace`, and construction enforces the completion invariant:

    status == done  <=>  completed_at is not None

Steps carry their own `completed_at`. For a linked step (one with
`linked_activity_id`) that stamp is only a mirror of the linked activity's
completion and is maintained by the linked step synchronizer.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum

from kwilt.activities.errors import CompletionInvariantError

Clock = Callable[[], str]


class ActivityStatus(StrEnum):
    """Activity lifecycle status."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DONE = "done"


@dataclass(frozen=True)
class ActivityStep:
    """A single checklist row of an activity."""

    id: str
    title: str = ""
    completed_at: str | None = None
    is_optional: bool = False
    order_index: int | None = None
    linked_activity_id: str | None = None
    linked_at: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @property
    def is_linked(self) -> bool:
        return self.linked_activity_id is not None


@dataclass(frozen=True)
class ActivityOrigin:
    """Where an activity was spun out from (a step converted into an activity)."""

    parent_activity_id: str
    parent_step_id: str


@dataclass(frozen=True)
class Activity:
    """A checklist container whose status is kept consistent with its steps.

    Attributes:
        id: Activity identifier
        title: Display title
        status: Current lifecycle status
        completed_at: Completion stamp, set if and only if status is done
        steps: Ordered checklist steps
        updated_at: Last mutation timestamp
        origin: Parent step this activity was created from, if any
    """

    id: str
    title: str = ""
    status: ActivityStatus = ActivityStatus.PLANNED
    completed_at: str | None = None
    steps: tuple[ActivityStep, ...] = field(default_factory=tuple)
    updated_at: str | None = None
    origin: ActivityOrigin | None = None

    def __post_init__(self) -> None:
        # Accept any iterable of steps from updaters, store a tuple.
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", tuple(self.steps))
        if not isinstance(self.status, ActivityStatus):
            object.__setattr__(self, "status", ActivityStatus(self.status))
        is_done = self.status == ActivityStatus.DONE
        if is_done != (self.completed_at is not None):
            raise CompletionInvariantError(
                f"Activity {self.id}: status={self.status.value} with completed_at={self.completed_at!r}"
            )

    @property
    def is_done(self) -> bool:
        return self.status == ActivityStatus.DONE

    def find_step(self, step_id: str) -> ActivityStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def replace(self, **changes: object) -> "Activity":
        """Create a new activity with updated fields.

        Args:
            **changes: Fields to update

        Returns:
            New Activity instance, validated against the completion invariant
        """
        return replace(self, **changes)


@dataclass(frozen=True)
class StatusDerivation:
    """Result of deriving an activity's status from its steps."""

    status: ActivityStatus
    completed_at: str | None


@dataclass(frozen=True)
class FinishMarker:
    """Transient record of steps stamped by a single Finish action.

    Never persisted. Lives between a Finish and either its Undo or any
    other step edit on the same activity. The `*_before` fields hold the
    record as it was just before the Finish so Undo can put it back.
    """

    completed_at_stamp: str
    step_ids: frozenset[str]
    steps_before: tuple[ActivityStep, ...] = ()
    status_before: ActivityStatus = ActivityStatus.PLANNED
    completed_at_before: str | None = None
