"""Coercion of loosely-typed activity payloads into Activity records.

Stored or synced activity data is not guaranteed to be well formed: steps
may be missing ids, share ids, or not be objects at all, and older records
carry statuses the engine no longer knows about. This module repairs those
payloads into the closed types and reports whether anything changed, so the
caller can bump `updated_at` and let the repair propagate.
"""

from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from kwilt.activities.types import Activity, ActivityOrigin, ActivityStatus, ActivityStep
from kwilt.utils.timestamps import coerce_timestamp


class StepPayload(BaseModel):
    """Raw step as found in stored data."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = ""
    title: str = ""
    completed_at: str | None = Field(default=None, validation_alias=AliasChoices("completedAt", "completed_at"))
    is_optional: bool = Field(default=False, validation_alias=AliasChoices("isOptional", "is_optional"))
    order_index: int | None = Field(default=None, validation_alias=AliasChoices("orderIndex", "order_index"))
    linked_activity_id: str | None = Field(
        default=None, validation_alias=AliasChoices("linkedActivityId", "linked_activity_id")
    )
    linked_at: str | None = Field(default=None, validation_alias=AliasChoices("linkedAt", "linked_at"))

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("title", mode="before")
    @classmethod
    def coerce_title(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("completed_at", "linked_at", mode="before")
    @classmethod
    def coerce_stamp(cls, value: Any) -> str | None:
        return coerce_timestamp(value)

    @field_validator("is_optional", mode="before")
    @classmethod
    def coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("order_index", mode="before")
    @classmethod
    def coerce_order(cls, value: Any) -> int | None:
        if isinstance(value, bool) or value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @field_validator("linked_activity_id", mode="before")
    @classmethod
    def coerce_link(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


class ActivityPayload(BaseModel):
    """Raw activity as found in stored data."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    title: str = ""
    status: str = ActivityStatus.PLANNED.value
    completed_at: str | None = Field(default=None, validation_alias=AliasChoices("completedAt", "completed_at"))
    updated_at: str | None = Field(default=None, validation_alias=AliasChoices("updatedAt", "updated_at"))
    steps: Any = None
    origin: Any = None

    @field_validator("id", "title", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status_text(cls, value: Any) -> str:
        if value is None:
            return ActivityStatus.PLANNED.value
        return str(value).strip().lower()

    @field_validator("completed_at", "updated_at", mode="before")
    @classmethod
    def coerce_stamp(cls, value: Any) -> str | None:
        return coerce_timestamp(value)


def _hash_title(text: str) -> str:
    """Small deterministic djb2-style hash, base36 encoded."""
    value = 5381
    for char in text:
        value = ((value * 33) ^ ord(char)) & 0xFFFFFFFF
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    encoded = ""
    while value:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
    return encoded


def build_fallback_step_id(activity_id: str, index: int, title: str) -> str:
    """Stable id for a step that has none, identical across devices."""
    safe_activity_id = (activity_id or "").strip() or "activity"
    return f"step-{safe_activity_id}-{index}-{_hash_title(title.strip())}"


def normalize_activity_steps(activity_id: str, steps: Any) -> tuple[list[ActivityStep], bool]:
    """Coerce a raw steps value into ActivitySteps with unique ids.

    Args:
        activity_id: Owning activity id (used for fallback step ids)
        steps: Raw steps value

    Returns:
        (steps, changed) where changed is True if any repair was needed
    """
    if not isinstance(steps, list):
        return [], steps is not None

    changed = False
    seen_ids: set[str] = set()
    normalized: list[ActivityStep] = []

    for index, raw in enumerate(steps):
        if isinstance(raw, dict):
            payload = StepPayload.model_validate(raw)
        else:
            payload = StepPayload()
            changed = True

        step_id = payload.id
        if not step_id or step_id in seen_ids:
            step_id = build_fallback_step_id(activity_id, index, payload.title)
            changed = True
        seen_ids.add(step_id)

        normalized.append(
            ActivityStep(
                id=step_id,
                title=payload.title,
                completed_at=payload.completed_at,
                is_optional=payload.is_optional,
                order_index=payload.order_index,
                linked_activity_id=payload.linked_activity_id,
                linked_at=payload.linked_at,
            )
        )

    return normalized, changed


def _coerce_status(raw_status: str) -> tuple[ActivityStatus, bool]:
    try:
        return ActivityStatus(raw_status), False
    except ValueError:
        # skipped / cancelled and anything unknown
        return ActivityStatus.PLANNED, True


def activity_from_payload(raw: dict[str, Any], now: str) -> tuple[Activity, bool]:
    """Build an Activity from a raw record, repairing it where needed.

    Args:
        raw: Raw activity dict (camelCase or snake_case keys)
        now: Timestamp used for repairs

    Returns:
        (activity, changed). When changed, updated_at is bumped to `now`.
    """
    payload = ActivityPayload.model_validate(raw)
    steps, changed = normalize_activity_steps(payload.id, payload.steps)
    status, status_changed = _coerce_status(payload.status)
    changed = changed or status_changed

    completed_at = payload.completed_at
    if status == ActivityStatus.DONE and completed_at is None:
        completed_at = payload.updated_at or now
        changed = True
    elif status != ActivityStatus.DONE and completed_at is not None:
        completed_at = None
        changed = True

    origin = None
    if isinstance(payload.origin, dict):
        parent_activity_id = payload.origin.get("parentActivityId") or payload.origin.get("parent_activity_id")
        parent_step_id = payload.origin.get("parentStepId") or payload.origin.get("parent_step_id")
        if parent_activity_id and parent_step_id:
            origin = ActivityOrigin(parent_activity_id=str(parent_activity_id), parent_step_id=str(parent_step_id))

    if changed:
        logger.warning(f"Repaired activity payload {payload.id}")

    activity = Activity(
        id=payload.id,
        title=payload.title,
        status=status,
        completed_at=completed_at,
        steps=tuple(steps),
        updated_at=now if changed else payload.updated_at,
        origin=origin,
    )
    return activity, changed
