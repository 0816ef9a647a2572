from datetime import datetime

import pytest

from app.core.exceptions import ConflictError, TransitionError
from app.modules.deliveries.state_machine import (
    ALLOWED_TRANSITIONS, Assigned, DeliveryStatus, TERMINAL_STATUSES, Unassigned,
    allowed_next, can_transition, courier_ref, plan_transition
)


def test_every_pair_outside_table_is_rejected():
    for current in DeliveryStatus.ALL:
        for target in DeliveryStatus.ALL:
            if target in ALLOWED_TRANSITIONS[current]:
                assert can_transition(current, target)
                continue
            with pytest.raises(TransitionError) as exc_info:
                plan_transition(current, target)
            assert exc_info.value.status_code == 400


def test_transition_error_is_a_conflict_with_allowed_targets():
    with pytest.raises(ConflictError) as exc_info:
        plan_transition(DeliveryStatus.PENDING, DeliveryStatus.DELIVERED)
    assert exc_info.value.details["allowed"] == [DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED]


def test_terminal_states_have_no_exit():
    for status in TERMINAL_STATUSES:
        assert allowed_next(status) == []


def test_failed_can_only_be_rescheduled():
    assert allowed_next(DeliveryStatus.FAILED) == [DeliveryStatus.PENDING]


def test_cancel_not_allowed_once_in_transit():
    assert not can_transition(DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED)
    assert not can_transition(DeliveryStatus.ARRIVED, DeliveryStatus.CANCELLED)
    assert can_transition(DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED)


def test_plan_returns_history_entry_and_stamps():
    now = datetime(2026, 10, 19, 12, 30)
    plan = plan_transition(
        DeliveryStatus.ARRIVED, DeliveryStatus.DELIVERED, note="ok", actor_user_id=7, now=now
    )

    assert plan.previous_status == DeliveryStatus.ARRIVED
    assert plan.new_status == DeliveryStatus.DELIVERED
    assert plan.history_entry.event == DeliveryStatus.DELIVERED
    assert plan.history_entry.note == "ok"
    assert plan.history_entry.actor_user_id == 7
    assert plan.stamps == {"actual_delivery_time": now}
    assert plan.releases_courier


@pytest.mark.parametrize("target,stamp", [
    (DeliveryStatus.ASSIGNED, "assigned_at"),
    (DeliveryStatus.CANCELLED, "cancelled_at"),
])
def test_pending_transitions_stamp_time(target, stamp):
    plan = plan_transition(DeliveryStatus.PENDING, target)
    assert stamp in plan.stamps


def test_accepting_does_not_release_courier():
    plan = plan_transition(DeliveryStatus.ASSIGNED, DeliveryStatus.ACCEPTED)
    assert not plan.releases_courier


def test_courier_reference_variant():
    assert courier_ref(None) == Unassigned()
    assert courier_ref(5) == Assigned(5)
