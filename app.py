import logging

import click
from flask import Flask
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from config import Config
from models import db
from models.user import User, Role
from routes import health_bp, auth_bp, booking_bp, listings_bp, payments_bp, webhook_bp
from services import otp, settlement
from services.errors import SettlementError
from utils.auth_context import load_current_user
from utils.responses import send_error
from utils.seed import seed_roles

logger = logging.getLogger(__name__)


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(listings_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    with app.app_context():
        if app.config.get("CREATE_TABLES_ON_STARTUP"):
            db.create_all()
        seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(SettlementError)
    def _settlement_error(err):
        db.session.rollback()
        if err.status_code >= 500:
            logger.error("%s: %s", err.code, err.message)
        else:
            logger.info("%s: %s", err.code, err.message)
        return send_error(err.message, err.status_code, err.to_dict())

    @app.errorhandler(HTTPException)
    def _http_error(err):
        return send_error(err.description or err.name, err.code)

    @app.errorhandler(Exception)
    def _unhandled(err):
        db.session.rollback()
        logger.exception("Unhandled error")
        return send_error("Internal server error", 500)

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
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            admin_role = Role(name="ADMIN")
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("purge-otps")
    def purge_otps():
        """Delete expired OTP challenges."""
        removed = otp.purge_expired()
        click.echo(f"Removed {removed} expired OTP challenge(s)")

    @app.cli.command("reconcile-booking")
    @click.argument("booking_id", type=int)
    def reconcile_booking(booking_id):
        """Finish or roll back a booking left between payment steps."""
        try:
            actions = settlement.reconcile_booking(booking_id)
        except SettlementError as err:
            raise click.ClickException(err.message)
        click.echo(", ".join(actions) if actions else "nothing to do")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
