from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from models import db
from models.booking import BookingStatus
from models.payment import Payment
from models.slot import Slot, SlotStatus
from services import notifications
from services.errors import (
    InvalidReason,
    MonthlyCancelLimitReached,
    NotFound,
    TooLateToCancel,
    Unauthorized,
    WrongState,
)
from utils.timeutil import slot_start


def _start(slot):
    return slot_start(slot, "Asia/Kolkata")


# ---------- player refund rule ----------
def test_exactly_two_hours_before_refunds_in_full(services, make_slot, player, confirmed, clock, gateway):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.now = _start(slot) - timedelta(hours=2)

    result = services.cancellations.cancel(booking_id, player.id)

    assert result.refund_percent == 100
    assert result.refund_amount == Decimal("1000.00")
    assert result.refund_issued is True
    assert gateway.refunds == [("pay_1", 100000)]


def test_one_second_inside_cutoff_refunds_nothing(services, make_slot, player, confirmed, clock, gateway):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.now = _start(slot) - timedelta(hours=1, minutes=59, seconds=59)

    result = services.cancellations.cancel(booking_id, player.id)

    assert result.refund_percent == 0
    assert result.refund_amount == Decimal("0.00")
    assert gateway.refunds == []
    assert services.ledger.get(booking_id).status == BookingStatus.CANCELLED_BY_PLAYER.value


def test_cancel_three_hours_ahead_frees_slot(services, make_slot, player, confirmed, notifier, owner):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]

    result = services.cancellations.cancel(booking_id, player.id)

    booking = services.ledger.get(booking_id)
    assert result.refund_amount == booking.total_amount == booking.refund_amount
    assert result.refund_percent == 100
    stored = services.store.get(slot.id)
    assert stored.status == SlotStatus.AVAILABLE.value and stored.held_by is None and not stored.is_booked
    assert notifier.sent[-1][:2] == (owner.email, notifications.CANCELLED_BY_PLAYER)


def test_cancel_thirty_minutes_ahead_still_frees_slot(services, make_slot, player, confirmed, clock):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.advance(hours=2, minutes=30)

    result = services.cancellations.cancel(booking_id, player.id)

    assert (result.refund_amount, result.refund_percent) == (Decimal("0.00"), 0)
    assert services.store.get(slot.id).status == SlotStatus.AVAILABLE.value


def test_started_slot_cannot_be_cancelled(services, make_slot, player, confirmed, clock):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.now = _start(slot)

    with pytest.raises(TooLateToCancel):
        services.cancellations.cancel(booking_id, player.id)
    assert services.store.get(slot.id).status == SlotStatus.BOOKED.value


def test_slot_without_schedule_refunds_nothing(services, turf, player, confirmed):
    slot = Slot(turf_id=turf.id, price=Decimal("500.00"), status=SlotStatus.AVAILABLE.value, is_booked=False)
    db.session.add(slot)
    db.session.commit()
    booking_id = confirmed(player, [slot.id]).booking_ids[0]

    result = services.cancellations.cancel(booking_id, player.id)
    assert result.refund_percent == 0


def test_cancelling_unpaid_reservation_releases_hold(services, make_slot, player, gateway):
    slot = make_slot()
    r = services.reservations.reserve(player.id, [slot.id])

    result = services.cancellations.cancel(r.booking_ids[0], player.id)

    assert result.refund_issued is False
    assert gateway.refunds == []
    assert services.store.get(slot.id).status == SlotStatus.AVAILABLE.value


def test_cancel_twice_is_wrong_state(services, make_slot, player, confirmed):
    booking_id = confirmed(player, [make_slot().id]).booking_ids[0]
    services.cancellations.cancel(booking_id, player.id)

    with pytest.raises(WrongState):
        services.cancellations.cancel(booking_id, player.id)


def test_cannot_cancel_someone_elses_booking(services, make_slot, player, rival, confirmed):
    booking_id = confirmed(player, [make_slot().id]).booking_ids[0]

    with pytest.raises(NotFound):
        services.cancellations.cancel(booking_id, rival.id)
    assert services.ledger.get(booking_id).status == BookingStatus.CONFIRMED.value


def test_refund_failure_does_not_undo_cancellation(services, make_slot, player, confirmed, gateway):
    slot = make_slot()
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    gateway.fail_refunds = True

    result = services.cancellations.cancel(booking_id, player.id)

    assert result.refund_issued is False
    assert services.ledger.get(booking_id).status == BookingStatus.CANCELLED_BY_PLAYER.value
    assert services.store.get(slot.id).status == SlotStatus.AVAILABLE.value


# ---------- monthly quota ----------
def test_sixth_cancellation_in_a_month_is_refused(services, make_slot, player, confirmed, past_cancellations):
    past_cancellations(player, make_slot(48), 5)
    slot = make_slot(24)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]

    with pytest.raises(MonthlyCancelLimitReached):
        services.cancellations.cancel(booking_id, player.id)
    assert services.ledger.get(booking_id).status == BookingStatus.CONFIRMED.value
    assert services.store.get(slot.id).status == SlotStatus.BOOKED.value


def test_fifth_cancellation_in_a_month_is_allowed(services, make_slot, player, confirmed, past_cancellations):
    past_cancellations(player, make_slot(48), 4)
    booking_id = confirmed(player, [make_slot(24).id]).booking_ids[0]

    result = services.cancellations.cancel(booking_id, player.id)
    assert result.cancellations_remaining == 0


def test_last_months_cancellations_do_not_count(services, make_slot, player, confirmed, past_cancellations):
    # 23:30 on Feb 28 at the facility
    past_cancellations(player, make_slot(48), 5, when=datetime(2026, 2, 28, 18, 0, tzinfo=timezone.utc))
    booking_id = confirmed(player, [make_slot(24).id]).booking_ids[0]

    result = services.cancellations.cancel(booking_id, player.id)
    assert result.cancellations_remaining == 4


# ---------- preview ----------
@pytest.mark.parametrize("lead, percent", [(timedelta(hours=2), 100), (timedelta(hours=2) - timedelta(seconds=1), 0)])
def test_preview_matches_cancellation(services, make_slot, player, confirmed, clock, lead, percent):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.now = _start(slot) - lead

    quote = services.cancellations.get_cancellation_info(booking_id, player.id)
    result = services.cancellations.cancel(booking_id, player.id)

    assert quote.can_cancel
    assert quote.refund_percent == result.refund_percent == percent
    assert quote.refund_amount == result.refund_amount
    assert quote.cancellations_remaining == 5


def test_preview_reports_blocking_reason(services, make_slot, player, confirmed, past_cancellations):
    past_cancellations(player, make_slot(48), 5)
    booking_id = confirmed(player, [make_slot(24).id]).booking_ids[0]

    quote = services.cancellations.get_cancellation_info(booking_id, player.id)

    assert quote.can_cancel is False
    assert quote.to_dict()["reason"] == "MonthlyCancelLimitReached"
    assert quote.cancellations_remaining == 0


# ---------- owner cancellation ----------
def test_owner_cancel_refunds_in_full_even_at_the_last_minute(services, make_slot, player, owner, confirmed, clock,
                                                             notifier, gateway):
    slot = make_slot(3)
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    clock.advance(hours=2, minutes=59)

    result = services.cancellations.owner_cancel(booking_id, owner.id, "Maintenance")

    booking = services.ledger.get(booking_id)
    assert result.refund_amount == booking.total_amount == Decimal("1000.00")
    assert result.penalty == Decimal("80.00")
    assert booking.status == BookingStatus.CANCELLED_BY_OWNER.value
    assert booking.penalty_applied == Decimal("80.00")
    assert booking.cancellation_reason == "Maintenance"
    assert services.store.get(slot.id).status == SlotStatus.AVAILABLE.value
    assert gateway.refunds == [("pay_1", 100000)]
    assert notifier.sent[-1][:2] == (player.email, notifications.CANCELLED_BY_OWNER)


def test_owner_cancel_needs_a_real_reason(services, make_slot, player, owner, confirmed):
    slot = make_slot()
    booking_id = confirmed(player, [slot.id]).booking_ids[0]

    with pytest.raises(InvalidReason):
        services.cancellations.owner_cancel(booking_id, owner.id, "Bad")
    with pytest.raises(InvalidReason):
        services.cancellations.owner_cancel(booking_id, owner.id, "   Bad   ")

    assert services.ledger.get(booking_id).status == BookingStatus.CONFIRMED.value
    assert services.store.get(slot.id).status == SlotStatus.BOOKED.value


def test_only_the_turf_owner_can_cancel(services, make_slot, player, confirmed, make_user):
    booking_id = confirmed(player, [make_slot().id]).booking_ids[0]
    stranger = make_user("stranger@example.com", "OWNER")

    with pytest.raises(Unauthorized):
        services.cancellations.owner_cancel(booking_id, stranger.id, "Maintenance")
    with pytest.raises(Unauthorized):
        services.cancellations.owner_cancel(9999, stranger.id, "Maintenance")


def test_owner_monthly_limit(services, make_slot, player, owner, confirmed, past_cancellations):
    past_cancellations(player, make_slot(48), 10, status=BookingStatus.CANCELLED_BY_OWNER)
    booking_id = confirmed(player, [make_slot(24).id]).booking_ids[0]

    with pytest.raises(MonthlyCancelLimitReached):
        services.cancellations.owner_cancel(booking_id, owner.id, "Maintenance")


def test_owner_cancellations_do_not_use_player_quota(services, make_slot, player, owner, confirmed,
                                                     past_cancellations):
    past_cancellations(player, make_slot(48), 9, status=BookingStatus.CANCELLED_BY_OWNER)
    booking_id = confirmed(player, [make_slot(24).id]).booking_ids[0]

    quote = services.cancellations.get_cancellation_info(booking_id, player.id)
    result = services.cancellations.owner_cancel(booking_id, owner.id, "Floodlights down")

    assert quote.cancellations_remaining == 5
    assert result.cancellations_remaining == 0


# ---------- amounts are fixed at booking time ----------
def test_price_change_does_not_touch_existing_booking(services, make_slot, player, owner, confirmed):
    slot = make_slot(price="1000.00")
    booking_id = confirmed(player, [slot.id]).booking_ids[0]
    services.cancellations.cancel(booking_id, player.id)

    services.store.update_slot(services.store.get(slot.id), owner.id, price="1500.00")
    db.session.commit()

    assert services.ledger.get(booking_id).total_amount == Decimal("1000.00")
    again = services.reservations.reserve(player.id, [slot.id])
    assert again.amount == Decimal("1500.00")


def test_cancel_records_refund_against_the_order(services, make_slot, player, confirmed):
    first, second = make_slot(24, "1000.00"), make_slot(26, "400.00")
    r = confirmed(player, [first.id, second.id])

    services.cancellations.cancel(r.booking_ids[1], player.id)

    payment = Payment.query.filter_by(order_ref=r.order_id).one()
    assert payment.refunded_amount == Decimal("400.00")
    assert payment.status == "PAID"
