"""Booking core, wired once per app.

Components get the session, clock, gateway and notifier passed in; nothing
reaches for module-level singletons, so tests swap any of them through
``create_app``.
"""
from dataclasses import dataclass

from flask import current_app

from models import db
from services.cancellation import CancellationPolicy
from services.gateway import StripeGateway
from services.ledger import BookingLedger
from services.notifications import EmailNotifier
from services.reservations import ReservationCoordinator
from services.slot_store import SlotStore
from services.verifier import PaymentVerifier
from utils.timeutil import utcnow


@dataclass
class BookingServices:
    store: SlotStore
    ledger: BookingLedger
    reservations: ReservationCoordinator
    verifier: PaymentVerifier
    cancellations: CancellationPolicy
    gateway: object
    notifier: object
    clock: object


def init_services(app, gateway=None, notifier=None, clock=None) -> BookingServices:
    cfg = app.config
    clock = clock or utcnow
    gateway = gateway or StripeGateway.from_config(cfg)
    notifier = notifier or EmailNotifier()
    session = db.session

    store = SlotStore(session, clock, hold_ttl_seconds=cfg.get("HOLD_TTL_SECONDS", 600))
    ledger = BookingLedger(session)
    services = BookingServices(
        store=store,
        ledger=ledger,
        reservations=ReservationCoordinator(
            session, store, ledger, gateway, clock,
            currency=cfg.get("CURRENCY", "INR"),
        ),
        verifier=PaymentVerifier(
            session, store, ledger, gateway, notifier, clock,
            signing_secret=cfg.get("PAYMENT_SIGNING_SECRET"),
            platform_fee=cfg.get("PLATFORM_FEE", "50.00"),
            platform_entity_id=cfg.get("PLATFORM_ENTITY_ID", "platform"),
            currency=cfg.get("CURRENCY", "INR"),
        ),
        cancellations=CancellationPolicy(
            session, store, ledger, gateway, notifier, clock,
            tz_name=cfg.get("FACILITY_TIMEZONE", "Asia/Kolkata"),
            refund_cutoff_hours=cfg.get("REFUND_CUTOFF_HOURS", 2),
            player_monthly_limit=cfg.get("PLAYER_MONTHLY_CANCEL_LIMIT", 5),
            owner_monthly_limit=cfg.get("OWNER_MONTHLY_CANCEL_LIMIT", 10),
            owner_cancel_fee=cfg.get("OWNER_CANCEL_FEE", "30.00"),
            owner_platform_fee=cfg.get("OWNER_CANCEL_PLATFORM_FEE", "50.00"),
            reason_min_length=cfg.get("OWNER_CANCEL_REASON_MIN_LENGTH", 5),
            currency=cfg.get("CURRENCY", "INR"),
        ),
        gateway=gateway,
        notifier=notifier,
        clock=clock,
    )
    app.extensions["booking"] = services
    return services


def booking_services() -> BookingServices:
    return current_app.extensions["booking"]
