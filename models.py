# models.py - Flask-SQLAlchemy models for the settlement ledger
from datetime import datetime, timezone
from enum import Enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, Index, text
from extensions import db
from utils import safe_isoformat

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class InvestmentStatus(Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class TransactionType(Enum):
    ROI = "ROI"
    REFERRAL = "REFERRAL"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    INVESTMENT = "INVESTMENT"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

# ===========================================================
# ACCOUNTS
# ===========================================================

class Account(db.Model, BaseMixin, UserMixin):
    """One per user. Balances change only through the ledger store."""
    __tablename__ = 'accounts'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)
    is_active = db.Column(db.Boolean, default=True)

    available_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0.00"))
    lifetime_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0.00"))

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referred_by_code = db.Column(db.String(20), nullable=True, index=True)

    investments = db.relationship('Investment', back_populates='account')

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "referralCode": self.referral_code,
            "referredByCode": self.referred_by_code,
            "availableBalance": str(self.available_balance),
            "lifetimeEarnings": str(self.lifetime_earnings),
        }

# ===========================================================
# INVESTMENTS
# ===========================================================

class Investment(db.Model, BaseMixin):
    __tablename__ = 'investments'

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id', ondelete='RESTRICT'), nullable=False, index=True)
    plan_name = db.Column(db.String(100), nullable=True)
    principal = db.Column(db.Numeric(18, 2), nullable=False)
    daily_return = db.Column(db.Numeric(18, 2), nullable=False)
    term_days = db.Column(db.Integer, nullable=False)
    remaining_days = db.Column(db.Integer, nullable=False)
    total_earned = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0.00"))
    status = db.Column(db.String(20), nullable=False, default=InvestmentStatus.ACTIVE.value)
    last_credit_date = db.Column(db.Date, nullable=True)

    account = db.relationship('Account', back_populates='investments')

    __table_args__ = (
        Index('idx_investment_status_remaining', 'status', 'remaining_days'),
        db.CheckConstraint('remaining_days >= 0', name='chk_remaining_days_non_negative'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "planName": self.plan_name,
            "principal": str(self.principal),
            "dailyReturn": str(self.daily_return),
            "termDays": self.term_days,
            "remainingDays": self.remaining_days,
            "totalEarned": str(self.total_earned),
            "status": self.status,
            "lastCreditDate": safe_isoformat(self.last_credit_date),
        }

# ===========================================================
# LEDGER READ MODEL: CREDIT HISTORY & TRANSACTIONS
# ===========================================================

class CreditHistory(db.Model):
    """One row per investment per settled day. Never updated."""
    __tablename__ = 'roi_history'

    id = db.Column(db.Integer, primary_key=True)
    investment_id = db.Column(db.Integer, db.ForeignKey('investments.id'), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    credit_date = db.Column(db.Date, nullable=False)
    credited_at = db.Column(db.DateTime(timezone=True), nullable=False,
                            default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('investment_id', 'credit_date', name='uq_roi_history_investment_day'),
    )


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    description = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.COMPLETED.value)
    reference = db.Column(db.String(64), nullable=True, index=True)  # investment id
    details = db.Column('metadata', db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_transaction_account_created', 'account_id', 'created_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "type": self.type,
            "amount": str(self.amount),
            "description": self.description,
            "status": self.status,
            "reference": self.reference,
            "metadata": self.details or {},
            "createdAt": safe_isoformat(self.created_at),
        }

# ===========================================================
# REFERRAL COMMISSIONS
# ===========================================================

class ReferralCommission(db.Model):
    __tablename__ = 'referral_commissions'

    id = db.Column(db.Integer, primary_key=True)
    beneficiary_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), nullable=False, index=True)
    source_account_id = db.Column(db.Integer, db.ForeignKey('accounts.id'), nullable=False, index=True)
    investment_id = db.Column(db.Integer, db.ForeignKey('investments.id'), nullable=False, index=True)
    level = db.Column(db.Integer, nullable=False)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    credit_date = db.Column(db.Date, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint('level >= 1 AND level <= 5', name='chk_commission_level_range'),
        UniqueConstraint('investment_id', 'credit_date', 'level', name='uq_commission_investment_day_level'),
    )

# ===========================================================
# RUN MARKER
# ===========================================================

class SettlementRun(db.Model):
    """Existence of a row for a date means that day's settlement is done."""
    __tablename__ = 'settlement_runs'

    id = db.Column(db.Integer, primary_key=True)
    run_date = db.Column(db.String(10), nullable=False, unique=True)  # ISO date
    mode = db.Column(db.String(20), nullable=False)
    investments_processed = db.Column(db.Integer, nullable=False, default=0)
    investments_failed = db.Column(db.Integer, nullable=False, default=0)
    investments_skipped = db.Column(db.Integer, nullable=False, default=0)
    failed_investment_ids = db.Column(db.JSON, nullable=False, default=list)
    total_roi = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total_commissions = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=False,
                            default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "date": self.run_date,
            "mode": self.mode,
            "investmentsProcessed": self.investments_processed,
            "investmentsFailed": list(self.failed_investment_ids or []),
            "investmentsSkipped": self.investments_skipped,
            "totalROIDistributed": str(self.total_roi),
            "totalCommissionsDistributed": str(self.total_commissions),
            "executedAt": safe_isoformat(self.executed_at),
        }


class SettlementRunLog(db.Model):
    """One row per settlement attempt, whatever its outcome. Not used for idempotency."""
    __tablename__ = 'settlement_run_logs'

    id = db.Column(db.Integer, primary_key=True)
    run_date = db.Column(db.String(10), nullable=False, index=True)
    mode = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, index=True)
    investments_processed = db.Column(db.Integer, nullable=False, default=0)
    investments_failed = db.Column(db.Integer, nullable=False, default=0)
    investments_skipped = db.Column(db.Integer, nullable=False, default=0)
    failed_investment_ids = db.Column(db.JSON, nullable=False, default=list)
    total_roi = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total_commissions = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    error = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "date": self.run_date,
            "mode": self.mode,
            "status": self.status,
            "investmentsProcessed": self.investments_processed,
            "investmentsFailed": list(self.failed_investment_ids or []),
            "investmentsSkipped": self.investments_skipped,
            "totalROIDistributed": str(self.total_roi),
            "totalCommissionsDistributed": str(self.total_commissions),
            "error": self.error,
            "startedAt": safe_isoformat(self.started_at),
            "finishedAt": safe_isoformat(self.finished_at),
        }

# ===========================================================
# NOTIFICATIONS
# ===========================================================

class Notification(db.Model, BaseMixin):
    """Written by the database sink after the settlement transaction commits."""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)
    title = db.Column(db.String(120), nullable=False)
    message = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=True)
    status = db.Column(db.String(20), default='PENDING')
