import atexit
import json
import logging
import os
from datetime import date

import click
from flask import Flask
from flask.cli import AppGroup

from config import Config
from extensions import db, login_manager, init_extensions
from logger import setup_logger, LOG_FORMAT
from models import Account
from settlement.config import CommissionConfig
from settlement.coordinator import SettlementCoordinator, TriggerMode
from settlement.ledger import LedgerStore
from settlement.notifications import build_notification_sink
from settlement.scheduler import SettlementScheduler
from settlement.unit_of_work import SettlementUnitOfWork


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.config.get("SECRET_KEY") and app.config.get("FLASK_ENV") == "production":
        raise ValueError("SECRET_KEY must be set in production")

    setup_logging(app)

    # ----------------------------------------------------------------------------------------------------------
    # DATABASE URI Fix
    # ----------------------------------------------------------------------------------------------------------
    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI")
    if database_uri.startswith("sqlite:///"):
        os.makedirs(os.path.dirname(database_uri.replace("sqlite:///", "", 1)) or ".", exist_ok=True)

    # ----------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ----------------------------------------------------------------------------------------------------------
    init_extensions(app)
    init_settlement(app)
    register_blueprints(app)
    app.cli.add_command(settlement_cli)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(Account, int(user_id))

    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    return app


def setup_logging(app):
    """File log for the app plus the rotating 'settlement' logger the engine modules propagate to."""
    log_dir = app.config.get("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)

    file_handler = logging.FileHandler(os.path.join(log_dir, "app.log"), mode='a', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)

    setup_logger("settlement", log_dir=log_dir)


def init_settlement(app):
    """Open the ledger store and wire the coordinator (and scheduler) onto the app."""
    with app.app_context():
        store = LedgerStore(db.engine).open()
    atexit.register(store.close)

    is_valid, message = CommissionConfig.validate_commission_configuration()
    if is_valid:
        app.logger.info(message)
    else:
        raise ValueError(message)

    unit_of_work = SettlementUnitOfWork(
        store,
        notification_sink=build_notification_sink(app.config, store),
        timeout=app.config.get("SETTLEMENT_UNIT_TIMEOUT_SECONDS"),
    )
    coordinator = SettlementCoordinator(
        store,
        unit_of_work=unit_of_work,
        max_workers=app.config.get("SETTLEMENT_MAX_WORKERS", 1),
        timezone_name=app.config.get("SETTLEMENT_TIMEZONE", "Asia/Kolkata"),
    )
    scheduler = SettlementScheduler(
        coordinator,
        at_time=app.config.get("SETTLEMENT_SCHEDULE_TIME", "00:00"),
        retry_attempts=app.config.get("SETTLEMENT_RETRY_ATTEMPTS", 3),
        retry_delay=app.config.get("SETTLEMENT_RETRY_DELAY_SECONDS", 30),
    )

    app.extensions["ledger_store"] = store
    app.extensions["settlement"] = coordinator
    app.extensions["settlement_scheduler"] = scheduler

    if app.config.get("SETTLEMENT_SCHEDULER_ENABLED"):
        scheduler.start()

    return coordinator


def register_blueprints(app):
    from blueprints.settlement import settlement_bp

    app.register_blueprint(settlement_bp)


# ------------------------------------------------------------------------------------------------------------
# CLI: flask --app app settlement ...
# ------------------------------------------------------------------------------------------------------------
settlement_cli = AppGroup("settlement", help="Daily settlement engine commands.")


@settlement_cli.command("run")
@click.option("--manual", is_flag=True, help="Record the run as an admin-triggered manual run.")
def run_settlement_command(manual):
    """Run today's settlement (no-op if it already ran today)."""
    from flask import current_app

    mode = TriggerMode.MANUAL if manual else TriggerMode.SCHEDULED
    summary = current_app.extensions["settlement"].run_daily_settlement(mode)
    click.echo(json.dumps(summary.to_dict(), indent=2))


@settlement_cli.command("status")
@click.option("--date", "run_date", default=None, help="ISO date, defaults to today.")
def settlement_status_command(run_date):
    """Show the run marker for a date."""
    from flask import current_app

    coordinator = current_app.extensions["settlement"]
    target = date.fromisoformat(run_date) if run_date else coordinator.settlement_date()
    marker = current_app.extensions["ledger_store"].get_run_marker(target)
    if marker is None:
        click.echo(f"No settlement recorded for {target.isoformat()}")
    else:
        click.echo(json.dumps(marker.to_dict(), indent=2))


@settlement_cli.command("scheduler")
@click.option("--poll-interval", default=60, show_default=True, help="Seconds between schedule checks.")
def settlement_scheduler_command(poll_interval):
    """Run the daily scheduler in the foreground."""
    from flask import current_app

    scheduler = current_app.extensions["settlement_scheduler"]
    click.echo(f"Settlement scheduler running, daily at {scheduler.at_time}")
    scheduler.run_forever(poll_interval=poll_interval)


@settlement_cli.command("init-db")
def init_db_command():
    """Create the ledger tables (development databases only; use `flask db upgrade` elsewhere)."""
    from flask import current_app

    current_app.extensions["ledger_store"].create_all()
    click.echo("Ledger tables created")


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", True)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
