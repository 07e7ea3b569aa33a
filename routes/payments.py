from flask import Blueprint, request, jsonify

from services import booking_services
from utils.auth_context import login_required

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


@payments_bp.post("/verify")
@login_required
def verify_payment():
    """Client-relayed gateway callback: order id, payment id and their signature."""
    data = request.get_json(silent=True) or {}
    order_id = data.get("order_id")
    payment_id = data.get("payment_id")
    signature = data.get("signature")
    if not order_id or not payment_id or not signature:
        return jsonify(error="order_id, payment_id and signature are required"), 400

    booking_id = data.get("booking_id")
    booking_id = int(booking_id) if str(booking_id).isdigit() else None

    result = booking_services().verifier.verify(
        str(order_id), str(payment_id), str(signature), booking_id=booking_id
    )
    return jsonify(result.to_dict()), 200
