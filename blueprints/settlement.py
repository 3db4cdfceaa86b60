#======================================================================================
#
# Admin endpoints for the daily settlement engine
#
#=======================================================================================
from datetime import date, timedelta
from functools import wraps

from flask import Blueprint, jsonify, request, abort, current_app
from flask_login import current_user

from settlement.config import CommissionConfig
from settlement.coordinator import RunStatus, TriggerMode
from utils import utc_now


def admin_required(f):
    """
    Restrict a route to admins.
    - 401 when nobody is logged in.
    - 403 when the logged-in account is not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            abort(401)

        if current_user.role != "admin":
            abort(403)

        return f(*args, **kwargs)

    return decorated_function


settlement_bp = Blueprint('settlement', __name__, url_prefix='/admin/settlement')


@settlement_bp.route("/run", methods=["POST"])
@admin_required
def trigger_settlement():
    """Manual trigger; goes through the same run-marker gate as the scheduler."""
    coordinator = current_app.extensions["settlement"]
    current_app.logger.info(f"Manual settlement triggered by account {current_user.id}")

    summary = coordinator.run_daily_settlement(TriggerMode.MANUAL)

    status_code = 500 if summary.status == RunStatus.FATAL else 200
    return jsonify(summary.to_dict()), status_code


@settlement_bp.route("/runs", methods=["GET"])
@admin_required
def list_runs():
    """Completed-day markers plus the log of every attempt (FATAL and CANCELLED included)."""
    limit = request.args.get("limit", default=30, type=int)
    limit = max(1, min(limit, 365))

    status = request.args.get("status")
    if status and status not in {s.value for s in RunStatus}:
        return jsonify({"error": f"Invalid status: {status}"}), 400

    store = current_app.extensions["ledger_store"]
    markers = store.list_run_markers(limit=limit)
    attempts = store.list_run_logs(limit=limit, status=status)
    return jsonify({
        "runs": [marker.to_dict() for marker in markers],
        "attempts": [attempt.to_dict() for attempt in attempts],
    })


@settlement_bp.route("/runs/<run_date>", methods=["GET"])
@admin_required
def get_run(run_date):
    try:
        target = date.fromisoformat(run_date)
    except ValueError:
        return jsonify({"error": f"Invalid date: {run_date}"}), 400

    marker = current_app.extensions["ledger_store"].get_run_marker(target)
    if marker is None:
        return jsonify({"error": f"No settlement recorded for {run_date}"}), 404
    return jsonify(marker.to_dict())


@settlement_bp.route("/config", methods=["GET"])
@admin_required
def commission_config():
    is_valid, message = CommissionConfig.validate_commission_configuration()
    return jsonify({
        "commission": CommissionConfig.get_commission_distribution_summary(),
        "valid": is_valid,
        "message": message,
    })


# -------------------------
# Scheduler status and control
# -------------------------
LOG_RETENTION_DAYS = 30


@settlement_bp.route("/scheduler", methods=["GET"])
@admin_required
def scheduler_status():
    return jsonify(current_app.extensions["settlement_scheduler"].status())


@settlement_bp.route("/scheduler", methods=["POST"])
@admin_required
def scheduler_control():
    """
    Body: {"action": "start" | "stop" | "cleanup-logs"}
    - start/stop affect this process's scheduler thread only.
    - cleanup-logs drops attempt-log rows older than LOG_RETENTION_DAYS.
    """
    scheduler = current_app.extensions["settlement_scheduler"]
    data = request.get_json(silent=True) or {}
    action = data.get("action")

    if action == "start":
        scheduler.start()
        message = "Settlement scheduler started"
    elif action == "stop":
        scheduler.stop()
        message = "Settlement scheduler stopped"
    elif action == "cleanup-logs":
        cutoff = utc_now() - timedelta(days=LOG_RETENTION_DAYS)
        deleted = current_app.extensions["ledger_store"].delete_run_logs_before(cutoff)
        return jsonify({"success": True, "message": f"Cleaned up {deleted} old settlement logs", "deleted": deleted})
    else:
        return jsonify({"error": "Invalid action"}), 400

    current_app.logger.info(f"{message} by account {current_user.id}")
    return jsonify({"success": True, "message": message, "data": scheduler.status()})
