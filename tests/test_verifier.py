from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog
from models.booking import BookingStatus
from models.earning import Earning
from models.payment import Payment
from models.slot import SlotStatus
from services import notifications
from services.errors import (
    BookingExpired,
    BookingNotFound,
    InvalidSignature,
    PaymentGatewayUnavailable,
)


def _earnings():
    return {(e.entity_type, e.entity_id): e.amount for e in Earning.query.all()}


def test_verify_confirms_bookings_and_books_slots(services, make_slot, player, owner, signed, notifier):
    slot = make_slot(price="1000.00")
    r = services.reservations.reserve(player.id, [slot.id])

    result = services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))

    assert result.confirmed_booking_ids == r.booking_ids
    assert result.already_confirmed is False
    assert result.earnings_recorded and result.notified
    assert services.ledger.get(r.booking_ids[0]).status == BookingStatus.CONFIRMED.value
    stored = services.store.get(slot.id)
    assert stored.status == SlotStatus.BOOKED.value and stored.is_booked
    payment = Payment.query.filter_by(order_ref=r.order_id).one()
    assert payment.status == "PAID" and payment.gateway_payment_id == "pay_A"
    assert notifier.sent[0][0] == owner.email
    assert notifier.sent[0][1] == notifications.BOOKING_CONFIRMED


def test_duplicate_callback_confirms_and_credits_once(services, make_slot, player, owner, signed):
    slot = make_slot(price="1000.00")
    r = services.reservations.reserve(player.id, [slot.id])
    sig = signed(r.order_id, "pay_A")

    first = services.verifier.verify(r.order_id, "pay_A", sig)
    second = services.verifier.verify(r.order_id, "pay_A", sig)

    assert first.already_confirmed is False
    assert second.already_confirmed is True
    assert second.confirmed_booking_ids == r.booking_ids
    assert _earnings() == {
        ("platform", "platform"): Decimal("50.00"),
        ("owner", str(owner.id)): Decimal("950.00"),
    }
    assert AuditLog.query.filter_by(action="PAYMENT_PAID").count() == 1


def test_earnings_accumulate_across_orders(services, make_slot, player, owner, confirmed):
    confirmed(player, [make_slot(24, "1000.00").id], payment_id="pay_1")
    confirmed(player, [make_slot(48, "600.00").id], payment_id="pay_2")

    assert _earnings()[("owner", str(owner.id))] == Decimal("1500.00")
    assert _earnings()[("platform", "platform")] == Decimal("100.00")


def test_platform_fee_is_capped_at_the_order_total(services, make_slot, player, owner, confirmed):
    confirmed(player, [make_slot(price="30.00").id])
    assert _earnings() == {("platform", "platform"): Decimal("30.00")}


@pytest.mark.parametrize("booking_hint", [None, "own", 9999])
def test_bad_signature_changes_nothing(services, make_slot, player, booking_hint):
    slot = make_slot()
    r = services.reservations.reserve(player.id, [slot.id])
    booking_id = r.booking_ids[0] if booking_hint == "own" else booking_hint

    with pytest.raises(InvalidSignature):
        services.verifier.verify(r.order_id, "pay_A", "0" * 64, booking_id=booking_id)

    assert services.ledger.get(r.booking_ids[0]).status == BookingStatus.PENDING.value
    assert services.store.get(slot.id).status == SlotStatus.HELD.value
    assert AuditLog.query.filter_by(action="PAYMENT_SIGNATURE_INVALID").count() == 1
    assert Earning.query.count() == 0


def test_signature_for_another_order_is_rejected(services, make_slot, player, signed):
    a = services.reservations.reserve(player.id, [make_slot(24).id])
    b = services.reservations.reserve(player.id, [make_slot(26).id])

    with pytest.raises(InvalidSignature):
        services.verifier.verify(b.order_id, "pay_A", signed(a.order_id, "pay_A"))


def test_unknown_order(services, signed):
    with pytest.raises(BookingNotFound):
        services.verifier.verify("order_missing", "pay_A", signed("order_missing", "pay_A"))


def test_missing_signing_secret(services, make_slot, player, signed, monkeypatch):
    r = services.reservations.reserve(player.id, [make_slot().id])
    monkeypatch.setattr(services.verifier, "signing_secret", None)

    with pytest.raises(PaymentGatewayUnavailable):
        services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))


def test_payment_for_superseded_hold_is_refused_and_refunded(services, make_slot, player, rival, clock, signed, gateway):
    slot = make_slot(price="1000.00")
    late = services.reservations.reserve(player.id, [slot.id])
    clock.advance(minutes=15)
    services.reservations.reserve(rival.id, [slot.id])

    with pytest.raises(BookingExpired):
        services.verifier.verify(late.order_id, "pay_late", signed(late.order_id, "pay_late"))

    stored = services.store.get(slot.id)
    assert stored.status == SlotStatus.HELD.value and stored.held_by == rival.id
    assert services.ledger.get(late.booking_ids[0]).status == BookingStatus.EXPIRED.value
    assert gateway.refunds == [("pay_late", 100000)]
    assert Payment.query.filter_by(order_ref=late.order_id).one().status == "REFUNDED"

    # a repeated late callback is refused again without a second refund
    with pytest.raises(BookingExpired):
        services.verifier.verify(late.order_id, "pay_late", signed(late.order_id, "pay_late"))
    assert len(gateway.refunds) == 1


def test_lapsed_but_unclaimed_hold_still_confirms(services, make_slot, player, clock, signed):
    slot = make_slot()
    r = services.reservations.reserve(player.id, [slot.id])
    clock.advance(minutes=20)

    result = services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))

    assert result.confirmed_booking_ids == r.booking_ids
    assert services.store.get(slot.id).status == SlotStatus.BOOKED.value


def test_partly_superseded_order_confirms_the_rest(services, make_slot, player, rival, clock, signed, gateway):
    kept, lost = make_slot(24, "1000.00"), make_slot(26, "400.00")
    r = services.reservations.reserve(player.id, [kept.id, lost.id])
    clock.advance(minutes=11)
    services.reservations.reserve(rival.id, [lost.id])

    result = services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))

    kept_booking, lost_booking = r.booking_ids
    assert result.confirmed_booking_ids == [kept_booking]
    assert result.refunded_booking_ids == [lost_booking]
    assert gateway.refunds == [("pay_A", 40000)]
    assert services.store.get(kept.id).status == SlotStatus.BOOKED.value
    assert services.store.get(lost.id).held_by == rival.id


def test_failing_notifier_does_not_undo_confirmation(services, make_slot, player, signed, notifier, monkeypatch):
    monkeypatch.setattr(notifier, "notify", lambda *args: False)
    r = services.reservations.reserve(player.id, [make_slot().id])

    result = services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))

    assert result.notified is False
    assert services.ledger.get(r.booking_ids[0]).status == BookingStatus.CONFIRMED.value


def test_verify_falls_back_to_booking_id(services, make_slot, player, signed):
    slot = make_slot()
    r = services.reservations.reserve(player.id, [slot.id])
    booking = services.ledger.get(r.booking_ids[0])
    booking.order_ref = None
    db.session.commit()

    result = services.verifier.verify("order_elsewhere", "pay_A", signed("order_elsewhere", "pay_A"),
                                      booking_id=r.booking_ids[0])
    assert result.confirmed_booking_ids == r.booking_ids


def test_redelivered_callback_after_late_cancel_refunds_nothing(services, make_slot, player, confirmed, signed,
                                                                  gateway):
    slot = make_slot(1)
    r = confirmed(player, [slot.id], payment_id="pay_1")
    cancelled = services.cancellations.cancel(r.booking_ids[0], player.id)
    assert cancelled.refund_percent == 0

    result = services.verifier.verify(r.order_id, "pay_1", signed(r.order_id, "pay_1"))

    assert result.already_confirmed is True
    assert result.confirmed_booking_ids == []
    assert gateway.refunds == []
    assert services.ledger.get(r.booking_ids[0]).status == BookingStatus.CANCELLED_BY_PLAYER.value


def test_redelivered_callback_after_refunded_cancel_refunds_once(services, make_slot, player, confirmed, signed,
                                                                   gateway):
    slot = make_slot(24, "1000.00")
    r = confirmed(player, [slot.id], payment_id="pay_1")
    services.cancellations.cancel(r.booking_ids[0], player.id)

    payment = Payment.query.filter_by(order_ref=r.order_id).one()
    assert payment.status == "REFUNDED" and payment.refunded_amount == Decimal("1000.00")

    result = services.verifier.verify(r.order_id, "pay_1", signed(r.order_id, "pay_1"))

    assert result.already_confirmed is True
    assert gateway.refunds == [("pay_1", 100000)]


def test_refund_never_exceeds_what_is_left_of_the_charge(services, make_slot, player, rival, clock, signed,
                                                           gateway):
    slot = make_slot(price="1000.00")
    late = services.reservations.reserve(player.id, [slot.id])
    clock.advance(minutes=15)
    services.reservations.reserve(rival.id, [slot.id])
    services.ledger.record_refund(late.order_id, Decimal("600.00"))
    db.session.commit()

    with pytest.raises(BookingExpired):
        services.verifier.verify(late.order_id, "pay_late", signed(late.order_id, "pay_late"))

    assert gateway.refunds == [("pay_late", 40000)]
    assert Payment.query.filter_by(order_ref=late.order_id).one().status == "REFUNDED"


def test_earnings_failure_keeps_confirmation(services, make_slot, player, signed, monkeypatch):
    def broken_credit(*args, **kwargs):
        raise SQLAlchemyError("earnings table locked")

    monkeypatch.setattr(services.verifier.ledger, "credit", broken_credit)
    slot = make_slot()
    r = services.reservations.reserve(player.id, [slot.id])

    result = services.verifier.verify(r.order_id, "pay_A", signed(r.order_id, "pay_A"))

    assert result.earnings_recorded is False
    assert result.confirmed_booking_ids == r.booking_ids
    assert services.ledger.get(r.booking_ids[0]).status == BookingStatus.CONFIRMED.value
    assert services.store.get(slot.id).status == SlotStatus.BOOKED.value
    assert Payment.query.filter_by(order_ref=r.order_id).one().status == "PAID"
    assert Earning.query.count() == 0
