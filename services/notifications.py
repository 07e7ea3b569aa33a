import logging

from utils.emailer import send_email

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = "booking-confirmed"
CANCELLED_BY_PLAYER = "cancelled-by-player"
CANCELLED_BY_OWNER = "cancelled-by-owner"

TEMPLATES = {
    BOOKING_CONFIRMED: (
        "New booking confirmed",
        "Booking(s) {booking_ids} at {turf_name} are confirmed and paid.\n"
        "Amount: {amount} {currency}\n",
    ),
    CANCELLED_BY_PLAYER: (
        "A player cancelled a booking",
        "Booking #{booking_id} at {turf_name} on {slot_time} was cancelled by the player.\n"
        "The slot is open for booking again.\n",
    ),
    CANCELLED_BY_OWNER: (
        "Your booking was cancelled by the turf",
        "Booking #{booking_id} at {turf_name} on {slot_time} was cancelled by the turf owner.\n"
        "Reason: {reason}\n"
        "A full refund of {refund_amount} {currency} is on its way.\n",
    ),
}


class EmailNotifier:
    """Fire-and-forget counterpart alerts. Never raises."""

    def __init__(self, send=send_email):
        self.send = send

    def notify(self, recipient, kind: str, context) -> bool:
        if not recipient:
            logger.info("No contact for %s notification, skipping", kind)
            return False
        subject, body = TEMPLATES[kind]
        try:
            ok, error = self.send(recipient, subject, body.format(**context))
        except Exception:
            logger.warning("Notification %s to %s failed", kind, recipient, exc_info=True)
            return False
        if not ok:
            logger.warning("Notification %s to %s not sent: %s", kind, recipient, error)
        return ok
