import logging
from datetime import datetime

import click
from flask import Flask, jsonify
from flask_migrate import Migrate
from sqlalchemy import inspect

from config import Config
from routes import health_bp, turf_bp, slots_bp, booking_bp, payments_bp

from models import db
from models.turf import Turf
from models.user import User
from services import init_services, booking_services
from services.errors import BookingError, ConsistencyViolation, InvalidSignature, PaymentGatewayUnavailable
from utils.audit import log_event
from utils.seed import seed_roles, grant_role
from utils.auth_context import load_current_user

logger = logging.getLogger(__name__)


def create_app(config_object=Config, gateway=None, notifier=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(turf_bp)
    app.register_blueprint(slots_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Booking core with its collaborators; tests inject fakes here
    init_services(app, gateway=gateway, notifier=notifier, clock=clock)

    with app.app_context():
        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
        # before the first `flask db upgrade` there is nothing to seed into
        if inspect(db.engine).has_table("roles"):
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        db.session.rollback()
        if isinstance(exc, (ConsistencyViolation, PaymentGatewayUnavailable)):
            logger.error("%s: %s %s", exc.code, exc.message, exc.details)
        elif isinstance(exc, InvalidSignature):
            logger.warning("%s: %s", exc.code, exc.message)
        else:
            logger.info("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("approve-turf")
    @click.argument("turf_id", type=int)
    def approve_turf(turf_id):
        """Approve a turf listing so its slots can be booked."""
        turf = db.session.get(Turf, turf_id)
        if not turf:
            print("Turf not found")
            return
        turf.status = "APPROVED"
        turf.verified_at = datetime.utcnow()
        db.session.commit()
        log_event("TURF_APPROVE", entity="turf", entity_id=turf.id)
        print(f"Turf {turf.id} ({turf.name}) approved")

    @app.cli.command("release-expired-holds")
    def release_expired_holds():
        """Free lapsed slot holds and expire their pending bookings."""
        released = booking_services().store.release_expired_holds()
        db.session.commit()
        print(f"Released {released} expired holds")

    @app.cli.command("make-owner")
    @click.argument("email")
    def make_owner(email):
        """Grant the OWNER role to a user by email."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return
        if grant_role(user, "OWNER"):
            log_event("ROLE_GRANT", user_id=user.id, entity="user", entity_id=user.id, metadata={"role": "OWNER"})
        print(f"{user.email} is an OWNER")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
