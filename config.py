# ==========================================================================================================
# -------------- Configuration for the settlement service ------------------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() in ("true", "1", "t")


class Config:

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = _env_bool("DEBUG")
    TESTING = False

    SECRET_KEY = os.getenv("SECRET_KEY")

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'settlement.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    LOG_DIR = os.getenv("LOG_DIR", os.path.join(basedir, "logs"))

    # Settlement engine
    SETTLEMENT_TIMEZONE = os.getenv("SETTLEMENT_TIMEZONE", "Asia/Kolkata")
    SETTLEMENT_MAX_WORKERS = int(os.getenv("SETTLEMENT_MAX_WORKERS", "4"))
    SETTLEMENT_UNIT_TIMEOUT_SECONDS = float(os.getenv("SETTLEMENT_UNIT_TIMEOUT_SECONDS", "30"))

    # Scheduler
    SETTLEMENT_SCHEDULER_ENABLED = _env_bool("SETTLEMENT_SCHEDULER_ENABLED")
    SETTLEMENT_SCHEDULE_TIME = os.getenv("SETTLEMENT_SCHEDULE_TIME", "00:00")
    SETTLEMENT_RETRY_ATTEMPTS = int(os.getenv("SETTLEMENT_RETRY_ATTEMPTS", "3"))
    SETTLEMENT_RETRY_DELAY_SECONDS = float(os.getenv("SETTLEMENT_RETRY_DELAY_SECONDS", "30"))

    # Notifications
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_WEBHOOK_TIMEOUT = float(os.getenv("NOTIFICATION_WEBHOOK_TIMEOUT", "5"))
    NOTIFICATIONS_TO_DATABASE = _env_bool("NOTIFICATIONS_TO_DATABASE", "True")


class TestConfig(Config):
    """Used by the test-suite; the database URI is replaced per test."""

    FLASK_ENV = "testing"
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SETTLEMENT_MAX_WORKERS = 1
    SETTLEMENT_SCHEDULER_ENABLED = False
    NOTIFICATION_WEBHOOK_URL = None
    NOTIFICATIONS_TO_DATABASE = True
