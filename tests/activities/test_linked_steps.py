"""Tests for linked step mirroring.

Tests cover:
- Parent steps mirror the linked activity's completion
- Parents re-derive their own status without being touched directly
- Upward propagation and the propagation limit
- Idempotent full reconcile passes
- Linking, unlinking and origin handling
"""

from types import SimpleNamespace

import pytest

from kwilt.activities.engine import ActivityCompletionEngine
from kwilt.activities.linked_steps import LinkIndex, mirror_linked_steps
from kwilt.activities.store import ActivityStore
from kwilt.activities.types import Activity, ActivityOrigin, ActivityStatus, ActivityStep

T0 = "2024-01-01T08:00:00.000Z"
T1 = "2024-01-01T09:00:00.000Z"


@pytest.fixture
def family(store: ActivityStore) -> None:
    """Parent P with a plain completed step and a step linked to child C."""
    store.put(Activity(id="C", title="Book flights"))
    store.put(
        Activity(
            id="P",
            title="Plan trip",
            status=ActivityStatus.IN_PROGRESS,
            steps=(
                ActivityStep(id="p1", title="Pick dates", completed_at=T0),
                ActivityStep(id="p2", title="Book flights", linked_activity_id="C", linked_at=T0),
            ),
        )
    )


class TestLinkedMirroring:
    """Completion of the linked activity drives the parent."""

    def test_child_done_completes_parent(self, engine, store, family, completions):
        engine.toggle_activity_complete("C")

        child = store.get("C")
        parent = store.get("P")
        assert child.status == ActivityStatus.DONE
        assert parent.find_step("p2").completed_at == child.completed_at
        assert parent.status == ActivityStatus.DONE
        assert [(event.activity_id, event.source) for event in completions] == [("C", "manual"), ("P", "linked")]

    def test_child_reopened_reopens_parent(self, engine, store, family):
        engine.toggle_activity_complete("C")
        engine.toggle_activity_complete("C")

        parent = store.get("P")
        assert parent.find_step("p2").completed_at is None
        assert parent.status == ActivityStatus.IN_PROGRESS
        assert parent.completed_at is None

    def test_child_completed_through_its_steps(self, engine, store):
        store.put(Activity(id="C", steps=(ActivityStep(id="c1"),)))
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))

        engine.toggle_step_complete("C", "c1")

        assert store.get("P").status == ActivityStatus.DONE

    def test_propagates_to_grandparent(self, engine, store):
        store.put(Activity(id="C"))
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))
        store.put(Activity(id="G", steps=(ActivityStep(id="g1", linked_activity_id="P"),)))

        engine.toggle_activity_complete("C")

        assert store.get("P").status == ActivityStatus.DONE
        assert store.get("G").status == ActivityStatus.DONE

    def test_propagation_limit_stops_wave(self, store, clock):
        engine = ActivityCompletionEngine(store, clock=clock, linked_sync_enabled=True, propagation_limit=1)
        store.put(Activity(id="C"))
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))
        store.put(Activity(id="G", steps=(ActivityStep(id="g1", linked_activity_id="P"),)))

        engine.toggle_activity_complete("C")

        assert store.get("P").status == ActivityStatus.DONE
        assert store.get("G").status == ActivityStatus.PLANNED

    def test_sync_disabled_until_reconcile(self, store, clock):
        engine = ActivityCompletionEngine(store, clock=clock, linked_sync_enabled=False)
        store.put(Activity(id="C"))
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))

        engine.toggle_activity_complete("C")
        assert store.get("P").status == ActivityStatus.PLANNED

        results = engine.reconcile_linked_steps()

        assert [result.after.id for result in results] == ["P"]
        assert store.get("P").status == ActivityStatus.DONE


class TestReconcileIdempotence:
    """A second pass with no external change writes nothing."""

    def test_second_pass_is_empty(self, engine, store):
        store.put(Activity(id="C", status=ActivityStatus.DONE, completed_at=T0))
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))

        first = engine.reconcile_linked_steps()
        snapshot = store.get("P")
        second = engine.reconcile_linked_steps()

        assert len(first) == 1
        assert snapshot.find_step("p1").completed_at == T0
        assert second == []
        assert store.get("P") is snapshot

    def test_missing_target_leaves_step_alone(self, engine, store):
        parent = Activity(
            id="P",
            status=ActivityStatus.DONE,
            completed_at=T0,
            steps=(ActivityStep(id="p1", linked_activity_id="gone", completed_at=T0),),
        )
        store.put(parent)

        assert engine.reconcile_linked_steps() == []
        assert store.get("P") is parent


class TestMirrorLinkedSteps:
    """Pure mirror computation."""

    def test_keeps_existing_stamp_when_target_done(self):
        target = Activity(id="C", status=ActivityStatus.DONE, completed_at=T1)
        steps = [ActivityStep(id="s", linked_activity_id="C", completed_at=T0)]

        mirrored, changed = mirror_linked_steps(steps, {"C": target}.get, "2024-02-01T00:00:00.000Z")

        assert changed is False
        assert mirrored[0].completed_at == T0

    def test_takes_target_stamp(self):
        target = Activity(id="C", status=ActivityStatus.DONE, completed_at=T1)
        steps = [ActivityStep(id="s", linked_activity_id="C"), ActivityStep(id="plain")]

        mirrored, changed = mirror_linked_steps(steps, {"C": target}.get, "2024-02-01T00:00:00.000Z")

        assert changed is True
        assert mirrored[0].completed_at == T1
        assert mirrored[1] is steps[1]

    def test_falls_back_to_timestamp(self):
        """Records loaded from elsewhere may say done without a stamp."""
        target = SimpleNamespace(status=ActivityStatus.DONE, completed_at=None)
        steps = [ActivityStep(id="s", linked_activity_id="C")]

        mirrored, changed = mirror_linked_steps(steps, {"C": target}.get, "2024-02-01T00:00:00.000Z")

        assert changed is True
        assert mirrored[0].completed_at == "2024-02-01T00:00:00.000Z"

    def test_clears_stamp_when_target_not_done(self):
        target = Activity(id="C", status=ActivityStatus.IN_PROGRESS)
        steps = [ActivityStep(id="s", linked_activity_id="C", completed_at=T0)]

        mirrored, changed = mirror_linked_steps(steps, {"C": target}.get, T1)

        assert changed is True
        assert mirrored[0].completed_at is None


class TestLinkOperations:
    """convert_step_to_link / unlink_step / detach_origin."""

    def test_convert_links_and_sets_origin(self, engine, store, clock):
        store.put(Activity(id="P", steps=(ActivityStep(id="p1", title="Renew passport"),)))
        store.put(Activity(id="N", title="Renew passport"))
        stamp = clock.peek()

        assert engine.convert_step_to_link("P", "p1", "N") is True

        step = store.get("P").find_step("p1")
        assert step.linked_activity_id == "N"
        assert step.linked_at == stamp
        assert store.get("N").origin == ActivityOrigin(parent_activity_id="P", parent_step_id="p1")
        assert engine.links.index.parents_of("N") == ["P"]

    def test_convert_mirrors_immediately(self, engine, store):
        store.put(Activity(id="P", steps=(ActivityStep(id="p1"),)))
        store.put(Activity(id="N", status=ActivityStatus.DONE, completed_at=T0))

        engine.convert_step_to_link("P", "p1", "N")

        parent = store.get("P")
        assert parent.find_step("p1").completed_at == T0
        assert parent.status == ActivityStatus.DONE

    def test_convert_keeps_existing_origin(self, engine, store):
        origin = ActivityOrigin(parent_activity_id="X", parent_step_id="x1")
        store.put(Activity(id="P", steps=(ActivityStep(id="p1"),)))
        store.put(Activity(id="N", origin=origin))

        engine.convert_step_to_link("P", "p1", "N")

        assert store.get("N").origin == origin

    @pytest.mark.parametrize(
        ("activity_id", "step_id", "target_id"),
        [
            ("P", "p1", "P"),
            ("P", "missing", "N"),
            ("P", "p1", "missing"),
            ("missing", "p1", "N"),
        ],
    )
    def test_convert_rejects_bad_requests(self, engine, store, activity_id, step_id, target_id):
        store.put(Activity(id="P", steps=(ActivityStep(id="p1"),)))
        store.put(Activity(id="N"))

        assert engine.convert_step_to_link(activity_id, step_id, target_id) is False
        assert store.get("P").find_step("p1").linked_activity_id is None

    def test_convert_rejects_cycle(self, engine, store):
        store.put(Activity(id="A", steps=(ActivityStep(id="a1", linked_activity_id="B"),)))
        store.put(Activity(id="B", steps=(ActivityStep(id="b1"),)))

        assert engine.convert_step_to_link("B", "b1", "A") is False
        assert store.get("B").find_step("b1").linked_activity_id is None

    def test_unlink_resets_step_and_keeps_origin(self, engine, store):
        store.put(Activity(id="P", steps=(ActivityStep(id="p1"),)))
        store.put(Activity(id="N", status=ActivityStatus.DONE, completed_at=T0))
        engine.convert_step_to_link("P", "p1", "N")

        engine.unlink_step("P", "p1")

        step = store.get("P").find_step("p1")
        assert step.linked_activity_id is None
        assert step.linked_at is None
        assert step.completed_at is None
        assert store.get("P").status == ActivityStatus.PLANNED
        assert store.get("N").origin == ActivityOrigin(parent_activity_id="P", parent_step_id="p1")
        assert engine.links.index.parents_of("N") == []

    def test_unlink_plain_step_is_noop(self, engine, store):
        store.put(Activity(id="P", steps=(ActivityStep(id="p1"),)))
        assert engine.unlink_step("P", "p1") is None

    def test_detach_origin(self, engine, store):
        store.put(Activity(id="N", origin=ActivityOrigin(parent_activity_id="P", parent_step_id="p1")))

        detached = engine.detach_origin("N")

        assert detached.origin is None
        assert engine.detach_origin("N") is None


class TestLinkIndex:
    """Child -> parent index maintenance."""

    def test_tracks_store_writes(self):
        store = ActivityStore()
        index = LinkIndex()
        store.add_listener(index.on_change)

        store.put(Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),)))
        store.put(Activity(id="Q", steps=(ActivityStep(id="q1", linked_activity_id="C"),)))
        assert index.parents_of("C") == ["P", "Q"]
        assert index.children_of("P") == {"C"}

        store.remove("P")
        assert index.parents_of("C") == ["Q"]
        assert index.linking_parents() == ["Q"]

    def test_rebuild(self):
        index = LinkIndex()
        index.rebuild([Activity(id="P", steps=(ActivityStep(id="p1", linked_activity_id="C"),))])

        assert index.parents_of("C") == ["P"]
        assert index.parents_of("P") == []
