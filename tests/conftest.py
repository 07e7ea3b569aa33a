import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from app import create_app
from config import Config
from models import db
from models.booking import Booking, BookingStatus
from models.slot import Slot, SlotStatus
from models.turf import Turf
from models.user import Role, User
from security.session import create_session
from services import booking_services
from services.errors import GatewayError
from services.gateway import GatewayOrder, sign

SIGNING_SECRET = "test-signing-secret"
FACILITY_TZ = ZoneInfo("Asia/Kolkata")


class SettingsForTests(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    AUTO_CREATE_TABLES = True
    STRIPE_SECRET_KEY = None
    PAYMENT_SIGNING_SECRET = SIGNING_SECRET
    FACILITY_TIMEZONE = "Asia/Kolkata"
    SMTP_HOST = None
    LOG_LEVEL = "DEBUG"


class FakeGateway:
    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_orders = False
        self.fail_refunds = False
        self._lock = threading.Lock()
        self._seq = 0

    def is_configured(self):
        return True

    def create_order(self, amount_minor, currency, metadata=None):
        if self.fail_orders:
            raise GatewayError("gateway timeout")
        with self._lock:
            self._seq += 1
            order_id = f"order_{self._seq}"
        self.orders.append((order_id, amount_minor, currency, metadata))
        return GatewayOrder(order_id=order_id, amount_minor=amount_minor, currency=currency)

    def refund(self, payment_id, amount_minor=None):
        if self.fail_refunds:
            raise GatewayError("refund rejected")
        self.refunds.append((payment_id, amount_minor))
        return f"re_{len(self.refunds)}"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, recipient, kind, context):
        self.sent.append((recipient, kind, dict(context)))
        return True

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class Clock:
    """Aware UTC "now" the tests move by hand."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # 12:00 at the facility
    return Clock(datetime(2026, 3, 10, 6, 30, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(clock, gateway, notifier):
    app = create_app(SettingsForTests, gateway=gateway, notifier=notifier, clock=clock)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path, clock, gateway, notifier):
    """App on a file-backed database, for tests that open several connections at once."""
    class FileSettings(SettingsForTests):
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + str(tmp_path / "turfbook.db")
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(FileSettings, gateway=gateway, notifier=notifier, clock=clock)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return booking_services()


def _create_user(email, *roles):
    user = User(email=email, full_name=email.split("@")[0])
    for name in roles:
        user.roles.append(Role.query.filter_by(name=name).one())
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def make_user(app):
    return _create_user


@pytest.fixture
def owner(app):
    return _create_user("owner@example.com", "OWNER")


@pytest.fixture
def player(app):
    return _create_user("player@example.com", "PLAYER")


@pytest.fixture
def rival(app):
    return _create_user("rival@example.com", "PLAYER")


@pytest.fixture
def turf(app, owner):
    t = Turf(name="Arena Five", location="Koramangala", owner_id=owner.id, status="APPROVED")
    db.session.add(t)
    db.session.commit()
    return t


@pytest.fixture
def make_slot(app, turf, clock):
    """Slot starting ``hours_ahead`` from the clock, facility wall time."""
    def _make(hours_ahead=24, price="1000.00", on_turf=None, length_minutes=60):
        local_start = (clock() + timedelta(hours=hours_ahead)).astimezone(FACILITY_TZ)
        local_end = local_start + timedelta(minutes=length_minutes)
        slot = Slot(
            turf_id=(on_turf or turf).id,
            date=local_start.date(),
            start_time=local_start.time(),
            end_time=local_end.time(),
            price=Decimal(price),
            status=SlotStatus.AVAILABLE.value,
            is_booked=False,
        )
        db.session.add(slot)
        db.session.commit()
        return slot
    return _make


@pytest.fixture
def signed():
    def _signed(order_id, payment_id):
        return sign(SIGNING_SECRET, order_id, payment_id)
    return _signed


@pytest.fixture
def confirmed(services, signed):
    """Reserve and pay for ``slot_ids`` as ``user``; returns the reservation."""
    def _confirmed(user, slot_ids, payment_id="pay_1"):
        reservation = services.reservations.reserve(user.id, slot_ids)
        services.verifier.verify(reservation.order_id, payment_id, signed(reservation.order_id, payment_id))
        return reservation
    return _confirmed


@pytest.fixture
def past_cancellations(app, clock):
    """History rows: ``count`` player cancellations at ``when`` (defaults to an hour ago)."""
    def _seed(user, slot, count, when=None, status=BookingStatus.CANCELLED_BY_PLAYER):
        cancelled_at = (when or clock() - timedelta(hours=1)).astimezone(timezone.utc).replace(tzinfo=None)
        for _ in range(count):
            db.session.add(Booking(
                user_id=user.id,
                slot_id=slot.id,
                turf_id=slot.turf_id,
                status=status.value,
                total_amount=slot.price,
                cancelled_at=cancelled_at,
            ))
        db.session.commit()
    return _seed


@pytest.fixture
def login(app, client):
    def _login(user):
        token = create_session(user.id)
        client.set_cookie(app.config["AUTH_COOKIE_NAME"], token)
        return client
    return _login
