from flask import Blueprint, request, jsonify, g

from security.rbac import require_roles
from services import booking_services
from utils.auth_context import login_required

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _with_slot(booking):
    out = booking.to_dict()
    s = booking.slot
    out["slot"] = s.to_dict() if s else None
    out["turf_name"] = s.turf.name if s and s.turf else None
    return out


# ---------- PLAYERS: reserve slots (hold + pending bookings + gateway order) ----------
@booking_bp.post("/reserve")
@login_required
def reserve():
    data = request.get_json(silent=True) or {}
    slot_ids = data.get("slot_ids")
    if slot_ids is None and data.get("slot_id") is not None:
        slot_ids = [data.get("slot_id")]

    reservation = booking_services().reservations.reserve(g.user.id, slot_ids)
    return jsonify(reservation.to_dict()), 201


# ---------- PLAYERS: book without payment (legacy flow) ----------
@booking_bp.post("/book")
@login_required
def book():
    data = request.get_json(silent=True) or {}
    slot_id = data.get("slot_id")
    if not isinstance(slot_id, int):
        return jsonify(error="slot_id required"), 400

    booking = booking_services().reservations.book_direct(g.user.id, slot_id)
    return jsonify(booking.to_dict()), 201


# ---------- PLAYERS: cancel with refund policy ----------
@booking_bp.get("/<int:booking_id>/cancellation-info")
@login_required
def cancellation_info(booking_id: int):
    quote = booking_services().cancellations.get_cancellation_info(booking_id, g.user.id)
    return jsonify(quote.to_dict()), 200


@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    result = booking_services().cancellations.cancel(booking_id, g.user.id)
    return jsonify(result.to_dict()), 200


# ---------- OWNERS: cancel a booking on their turf ----------
@booking_bp.post("/<int:booking_id>/owner-cancel")
@require_roles("OWNER")
def owner_cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    result = booking_services().cancellations.owner_cancel(booking_id, g.user.id, data.get("reason"))
    return jsonify(result.to_dict()), 200


# ---------- listings ----------
@booking_bp.get("/me")
@login_required
def my_bookings():
    status = request.args.get("status")
    rows = booking_services().ledger.for_player(g.user.id, status=status)
    return jsonify([_with_slot(b) for b in rows]), 200


@booking_bp.get("/owner")
@require_roles("OWNER")
def owner_bookings():
    status = request.args.get("status")
    rows = booking_services().ledger.for_owner(g.user.id, status=status)
    return jsonify([_with_slot(b) for b in rows]), 200
