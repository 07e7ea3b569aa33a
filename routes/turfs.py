from flask import Blueprint, request, jsonify, g

from models import db
from models.turf import Turf
from security.rbac import require_roles
from utils.audit import log_event

turf_bp = Blueprint("turf", __name__, url_prefix="/turfs")


def _turf_dict(t):
    return {
        "id": t.id,
        "name": t.name,
        "location": t.location,
        "description": t.description,
        "status": t.status,
        "owner_id": t.owner_id,
        "created_at": t.created_at.isoformat(),
        "verified_at": t.verified_at.isoformat() if t.verified_at else None,
    }


@turf_bp.post("")
@require_roles("OWNER")
def register_turf():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    location = (data.get("location") or "").strip()
    description = (data.get("description") or "").strip() or None
    if not name or not location:
        return jsonify(error="name and location are required"), 400

    # listings wait for admin approval before taking bookings
    turf = Turf(name=name, location=location, description=description, owner_id=g.user.id, status="PENDING")
    db.session.add(turf)
    db.session.commit()

    log_event("TURF_REGISTER_SUBMIT", user_id=g.user.id, entity="turf", entity_id=turf.id)
    return jsonify(_turf_dict(turf)), 201


@turf_bp.get("/me")
@require_roles("OWNER")
def my_turfs():
    turfs = Turf.query.filter_by(owner_id=g.user.id).order_by(Turf.created_at.desc()).all()
    return jsonify([_turf_dict(t) for t in turfs]), 200


@turf_bp.get("")
def list_public_turfs():
    name_query = (request.args.get("name") or "").strip()
    location_query = (request.args.get("location") or "").strip()

    q = Turf.query.filter(Turf.is_active.is_(True), Turf.status == "APPROVED")
    if name_query:
        q = q.filter(Turf.name.ilike(f"%{name_query}%"))
    if location_query:
        q = q.filter(Turf.location.ilike(f"%{location_query}%"))

    rows = q.order_by(Turf.created_at.desc()).limit(200).all()
    return jsonify([_turf_dict(t) for t in rows]), 200
