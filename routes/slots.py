from flask import Blueprint, request, jsonify, g

from models import db
from models.turf import Turf
from security.rbac import require_roles
from services import booking_services
from services.slot_store import parse_date, parse_time
from utils.audit import log_event

slots_bp = Blueprint("slots", __name__, url_prefix="/slots")


def _parse_blocks(raw):
    blocks = []
    for b in raw or []:
        blocks.append({
            "start": parse_time(b["start"]),
            "end": parse_time(b["end"]),
            "price": b["price"],
            "label": b.get("label"),
        })
    return blocks


# ---------- PUBLIC: availability ----------
@slots_bp.get("/turf/<int:turf_id>")
def list_turf_slots(turf_id: int):
    turf = db.session.get(Turf, turf_id)
    if not turf or not turf.is_active:
        return jsonify(error="Turf not found"), 404

    try:
        day = parse_date(request.args["date"]) if request.args.get("date") else None
        start_date = parse_date(request.args["start_date"]) if request.args.get("start_date") else None
        end_date = parse_date(request.args["end_date"]) if request.args.get("end_date") else None
    except ValueError:
        return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400

    store = booking_services().store
    # lapsed holds show as available
    if store.release_expired_holds(turf_id=turf_id):
        db.session.commit()

    slots = store.list_for_turf(turf_id, day=day, start_date=start_date, end_date=end_date,
                                status=request.args.get("status"))
    return jsonify([s.to_dict() for s in slots]), 200


# ---------- OWNERS: manage slots ----------
@slots_bp.post("")
@require_roles("OWNER")
def create_slot():
    data = request.get_json(silent=True) or {}
    if not data.get("turf_id") or not data.get("date") or not data.get("start_time") or not data.get("end_time"):
        return jsonify(error="turf_id, date, start_time, end_time are required"), 400
    try:
        turf_id = int(data["turf_id"])
        day = parse_date(data["date"])
        start = parse_time(data["start_time"])
        end = parse_time(data["end_time"])
    except ValueError:
        return jsonify(error="Invalid date or time. Use YYYY-MM-DD and HH:MM"), 400

    slot = booking_services().store.create_slot(
        db.session.get(Turf, turf_id), g.user.id, day, start, end,
        data.get("price") or 0, label=data.get("label"),
    )
    db.session.commit()

    log_event("SLOT_CREATE", user_id=g.user.id, entity="slot", entity_id=slot.id)
    return jsonify(slot.to_dict()), 201


@slots_bp.post("/bulk-generate")
@require_roles("OWNER")
def bulk_generate():
    data = request.get_json(silent=True) or {}
    try:
        turf_id = int(data["turf_id"])
        start_date = parse_date(data["start_date"])
        end_date = parse_date(data["end_date"])
        blocks = _parse_blocks(data.get("time_blocks"))
        duration = int(data.get("slot_duration") or 60)
    except (KeyError, TypeError, ValueError):
        return jsonify(error="turf_id, start_date, end_date and time_blocks [{start, end, price}] are required"), 400
    if not blocks:
        return jsonify(error="At least one time block is required"), 400

    created, skipped = booking_services().store.bulk_generate(
        db.session.get(Turf, turf_id), g.user.id, start_date, end_date,
        data.get("days") or [], blocks, duration,
        conflict_strategy=data.get("conflict_strategy") or "skip",
    )
    created_ids = [s.id for s in created]
    db.session.commit()

    log_event("SLOT_BULK_GENERATE", user_id=g.user.id, entity="turf", entity_id=turf_id,
              metadata={"created": len(created_ids), "skipped": len(skipped)})
    return jsonify(created=len(created_ids), slot_ids=created_ids, skipped=skipped), 201


@slots_bp.patch("/<int:slot_id>")
@require_roles("OWNER")
def update_slot(slot_id: int):
    data = request.get_json(silent=True) or {}
    try:
        changes = {
            "date": parse_date(data["date"]) if data.get("date") else None,
            "start_time": parse_time(data["start_time"]) if data.get("start_time") else None,
            "end_time": parse_time(data["end_time"]) if data.get("end_time") else None,
            "price": data.get("price"),
            "label": data.get("label"),
        }
    except ValueError:
        return jsonify(error="Invalid date or time. Use YYYY-MM-DD and HH:MM"), 400

    store = booking_services().store
    slot = store.update_slot(store.get(slot_id), g.user.id, **changes)
    db.session.commit()

    log_event("SLOT_UPDATE", user_id=g.user.id, entity="slot", entity_id=slot_id,
              metadata={k: v for k, v in changes.items() if v is not None})
    return jsonify(slot.to_dict()), 200


@slots_bp.delete("/<int:slot_id>")
@require_roles("OWNER")
def delete_slot(slot_id: int):
    store = booking_services().store
    store.delete_slot(store.get(slot_id), g.user.id)
    db.session.commit()

    log_event("SLOT_DELETE", user_id=g.user.id, entity="slot", entity_id=slot_id)
    return jsonify(message="Slot deleted"), 200


def _bulk_filters(raw):
    raw = raw or {}
    return {
        "day": parse_date(raw["date"]) if raw.get("date") else None,
        "start_date": parse_date(raw["start_date"]) if raw.get("start_date") else None,
        "end_date": parse_date(raw["end_date"]) if raw.get("end_date") else None,
        "label": raw.get("label"),
    }


@slots_bp.patch("/bulk")
@require_roles("OWNER")
def bulk_update():
    data = request.get_json(silent=True) or {}
    updates = data.get("updates") or {}
    try:
        turf_id = int(data["turf_id"])
        filters = _bulk_filters(data.get("filters"))
    except (KeyError, TypeError, ValueError):
        return jsonify(error="turf_id and updates are required; dates as YYYY-MM-DD"), 400

    updated = booking_services().store.bulk_update(
        db.session.get(Turf, turf_id), g.user.id,
        price=updates.get("price"), new_label=updates.get("label"), **filters,
    )
    db.session.commit()

    log_event("SLOT_BULK_UPDATE", user_id=g.user.id, entity="turf", entity_id=turf_id,
              metadata={"updated": updated})
    return jsonify(updated=updated), 200


@slots_bp.post("/bulk-delete")
@require_roles("OWNER")
def bulk_delete():
    data = request.get_json(silent=True) or {}
    try:
        turf_id = int(data["turf_id"])
        filters = _bulk_filters(data.get("filters"))
    except (KeyError, TypeError, ValueError):
        return jsonify(error="turf_id is required; dates as YYYY-MM-DD"), 400

    deleted = booking_services().store.bulk_delete(db.session.get(Turf, turf_id), g.user.id, **filters)
    db.session.commit()

    log_event("SLOT_BULK_DELETE", user_id=g.user.id, entity="turf", entity_id=turf_id,
              metadata={"deleted": deleted})
    return jsonify(deleted=deleted), 200
