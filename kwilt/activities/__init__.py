"""Activity / step completion consistency engine.

This module keeps an activity's status and completed_at consistent with its
checklist steps, mirrors linked steps to the activities they point at, and
implements the Finish remaining steps shortcut with one-shot undo.
"""

from kwilt.activities.derivation import derive_status_from_steps
from kwilt.activities.engine import ActivityCompletionEngine
from kwilt.activities.errors import CompletionInvariantError
from kwilt.activities.events import CompletionEvent, CompletionEventBus
from kwilt.activities.finish import FinishController, FinishState, PrimaryAction
from kwilt.activities.linked_steps import LinkedStepSynchronizer, LinkIndex, mirror_linked_steps
from kwilt.activities.manual_toggle import toggle_manual_completion
from kwilt.activities.mutations import StepMutationApplier, StepUpdateResult
from kwilt.activities.normalize import activity_from_payload, normalize_activity_steps
from kwilt.activities.store import ActivityStore
from kwilt.activities.types import (
    Activity,
    ActivityOrigin,
    ActivityStatus,
    ActivityStep,
    FinishMarker,
    StatusDerivation,
)

__all__ = [
    "Activity",
    "ActivityCompletionEngine",
    "ActivityOrigin",
    "ActivityStatus",
    "ActivityStep",
    "ActivityStore",
    "CompletionEvent",
    "CompletionEventBus",
    "CompletionInvariantError",
    "FinishController",
    "FinishMarker",
    "FinishState",
    "LinkIndex",
    "LinkedStepSynchronizer",
    "PrimaryAction",
    "StatusDerivation",
    "StepMutationApplier",
    "StepUpdateResult",
    "activity_from_payload",
    "derive_status_from_steps",
    "mirror_linked_steps",
    "normalize_activity_steps",
    "toggle_manual_completion",
]
