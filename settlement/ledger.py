# settlement/ledger.py
"""
Ledger store for the settlement engine.

``LedgerStore`` owns the engine/session lifecycle and the run-level queries.
``LedgerTransaction`` is the handle a single unit-of-work gets: it exposes
only the mutations settlement is allowed to make, all inside one database
transaction that either commits as a whole or not at all.
"""
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import logging
import time

from sqlalchemy import create_engine, select, update, delete, case, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from extensions import db
from models import (
    Account, Investment, InvestmentStatus, CreditHistory, Transaction,
    TransactionStatus, ReferralCommission, SettlementRun, SettlementRunLog,
)
from settlement.commission import AccountSnapshot
from settlement.config import CommissionConfig
from utils import safe_decimal

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Ledger data is not in the shape settlement expects"""
    pass


class RunMarkerConflict(LedgerError):
    """A run marker for the date already exists"""
    pass


class SettlementTimeout(Exception):
    """A unit-of-work ran past its deadline and was rolled back"""
    pass


def statement_timeout_sql(dialect_name: str, timeout: Optional[float]) -> List[str]:
    """
    Per-transaction limits so the database itself aborts a statement or lock
    wait that would outlive the unit's budget. Only PostgreSQL has them.
    """
    if not timeout or dialect_name != "postgresql":
        return []
    millis = max(1, int(timeout * 1000))
    return [
        f"SET LOCAL statement_timeout = {millis}",
        f"SET LOCAL lock_timeout = {millis}",
    ]


class LedgerTransaction:
    """Operations available to one settlement unit-of-work."""

    def __init__(self, session, deadline: Optional[float] = None):
        self.session = session
        self.deadline = deadline

    def check_deadline(self):
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise SettlementTimeout("Unit-of-work exceeded its execution timeout")

    # -------------------------
    # Investments
    # -------------------------
    def lock_investment(self, investment_id: int) -> Optional[Investment]:
        """Re-read the investment inside the transaction, locking the row where supported."""
        self.check_deadline()
        return self.session.get(Investment, investment_id, with_for_update=True)

    def advance_investment(self, investment: Investment, amount: Decimal, credit_date: date) -> bool:
        """
        Consume one day of the investment's term.

        The update only matches while the investment is still eligible for
        ``credit_date``, so a concurrent settlement of the same investment
        sees zero rows and backs off. Returns False in that case.
        """
        self.check_deadline()
        result = self.session.execute(
            update(Investment)
            .where(
                Investment.id == investment.id,
                Investment.status == InvestmentStatus.ACTIVE.value,
                Investment.remaining_days > 0,
                or_(Investment.last_credit_date.is_(None), Investment.last_credit_date < credit_date),
            )
            .values(
                remaining_days=Investment.remaining_days - 1,
                total_earned=Investment.total_earned + amount,
                last_credit_date=credit_date,
                status=case(
                    (Investment.remaining_days <= 1, InvestmentStatus.COMPLETED.value),
                    else_=InvestmentStatus.ACTIVE.value,
                ),
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self.session.refresh(investment)
        return True

    # -------------------------
    # Accounts
    # -------------------------
    def get_account_snapshot(self, account_id: int) -> AccountSnapshot:
        self.check_deadline()
        row = self.session.execute(
            select(Account.id, Account.referral_code, Account.referred_by_code)
            .where(Account.id == account_id)
        ).first()
        if row is None:
            raise LedgerError(f"Account {account_id} not found")
        return AccountSnapshot(id=row.id, referral_code=row.referral_code, referred_by_code=row.referred_by_code)

    def load_referral_snapshot(self, origin: AccountSnapshot,
                               max_levels: int = CommissionConfig.MAX_LEVEL) -> Dict[str, AccountSnapshot]:
        """Accounts on the upstream chain of ``origin``, keyed by referral code."""
        snapshot = {}
        seen = {origin.id}
        code = origin.referred_by_code

        for _ in range(max_levels):
            if not code or code in snapshot:
                break
            self.check_deadline()
            row = self.session.execute(
                select(Account.id, Account.referral_code, Account.referred_by_code)
                .where(Account.referral_code == code)
            ).first()
            if row is None:
                break
            account = AccountSnapshot(id=row.id, referral_code=row.referral_code, referred_by_code=row.referred_by_code)
            snapshot[account.referral_code] = account
            if account.id in seen:
                break
            seen.add(account.id)
            code = account.referred_by_code

        return snapshot

    def increment_account(self, account_id: int, amount: Decimal):
        """Atomic ``balance = balance + amount``; never read-modify-write."""
        self.check_deadline()
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(
                available_balance=Account.available_balance + amount,
                lifetime_earnings=Account.lifetime_earnings + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerError(f"Account {account_id} not found while crediting {amount}")

    # -------------------------
    # Append-only records
    # -------------------------
    def append_credit_history(self, investment: Investment, amount: Decimal,
                              credit_date: date, credited_at: datetime) -> CreditHistory:
        self.check_deadline()
        record = CreditHistory(
            investment_id=investment.id,
            account_id=investment.account_id,
            amount=amount,
            credit_date=credit_date,
            credited_at=credited_at,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def append_transaction(self, account_id: int, type_: str, amount: Decimal, description: str,
                           reference: str, details: Optional[dict] = None) -> Transaction:
        self.check_deadline()
        record = Transaction(
            account_id=account_id,
            type=type_,
            amount=amount,
            description=description,
            status=TransactionStatus.COMPLETED.value,
            reference=reference,
            details=details or {},
        )
        self.session.add(record)
        self.session.flush()
        return record

    def append_commission(self, beneficiary_id: int, source_account_id: int, investment_id: int,
                          level: int, percentage: Decimal, amount: Decimal,
                          credit_date: date) -> ReferralCommission:
        self.check_deadline()
        record = ReferralCommission(
            beneficiary_id=beneficiary_id,
            source_account_id=source_account_id,
            investment_id=investment_id,
            level=level,
            percentage=percentage,
            amount=amount,
            credit_date=credit_date,
        )
        self.session.add(record)
        self.session.flush()
        return record


class LedgerStore:
    """
    Handle to the ledger database with an explicit lifecycle.

    Open it once at process start and close it at shutdown; the settlement
    coordinator receives it rather than reaching for a global session.
    """

    def __init__(self, engine, owns_engine: bool = False):
        self.engine = engine
        self.owns_engine = owns_engine
        self._session_factory = None

    @classmethod
    def from_url(cls, url: str, **engine_options) -> "LedgerStore":
        return cls(create_engine(url, **engine_options), owns_engine=True)

    @property
    def is_open(self) -> bool:
        return self._session_factory is not None

    def open(self) -> "LedgerStore":
        if not self.is_open:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
            logger.info(f"Ledger store opened on {self.engine.url.render_as_string(hide_password=True)}")
        return self

    def close(self):
        if not self.is_open:
            return
        self._session_factory = None
        if self.owns_engine:
            self.engine.dispose()
        logger.info("Ledger store closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def create_all(self):
        db.metadata.create_all(self.engine)

    def _session(self):
        if not self.is_open:
            raise LedgerError("Ledger store is not open")
        return self._session_factory()

    @contextmanager
    def session_scope(self):
        """Short-lived session committed on success, rolled back on error."""
        session = self._session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None):
        """
        One atomic unit-of-work. Nothing is committed if the block raises or
        the deadline has passed by the time the block finishes.
        """
        deadline = time.monotonic() + timeout if timeout else None
        session = self._session()
        tx = LedgerTransaction(session, deadline)
        try:
            for statement in statement_timeout_sql(self.engine.dialect.name, timeout):
                session.execute(text(statement))
            yield tx
            tx.check_deadline()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------
    # Run-level queries
    # -------------------------
    def load_eligible_investment_ids(self, settlement_date: date) -> List[int]:
        with self.session_scope() as session:
            rows = session.execute(
                select(Investment.id)
                .where(
                    Investment.status == InvestmentStatus.ACTIVE.value,
                    Investment.remaining_days > 0,
                    or_(Investment.last_credit_date.is_(None), Investment.last_credit_date < settlement_date),
                )
                .order_by(Investment.id)
            ).scalars().all()
        return list(rows)

    def get_run_marker(self, run_date: date) -> Optional[SettlementRun]:
        with self.session_scope() as session:
            return session.execute(
                select(SettlementRun).where(SettlementRun.run_date == run_date.isoformat())
            ).scalar_one_or_none()

    def list_run_markers(self, limit: int = 30) -> List[SettlementRun]:
        with self.session_scope() as session:
            return list(session.execute(
                select(SettlementRun).order_by(SettlementRun.run_date.desc()).limit(limit)
            ).scalars().all())

    def insert_run_marker(self, run_date: date, mode: str, investments_processed: int,
                          failed_investment_ids: List[int], investments_skipped: int,
                          total_roi: Decimal, total_commissions: Decimal,
                          executed_at: datetime) -> SettlementRun:
        """Insert-if-absent on the date key; raises RunMarkerConflict when taken."""
        marker = SettlementRun(
            run_date=run_date.isoformat(),
            mode=mode,
            investments_processed=investments_processed,
            investments_failed=len(failed_investment_ids),
            investments_skipped=investments_skipped,
            failed_investment_ids=list(failed_investment_ids),
            total_roi=safe_decimal(total_roi, "total_roi"),
            total_commissions=safe_decimal(total_commissions, "total_commissions"),
            executed_at=executed_at,
        )
        try:
            with self.session_scope() as session:
                session.add(marker)
        except IntegrityError as e:
            raise RunMarkerConflict(f"Run marker for {run_date.isoformat()} already exists") from e
        return marker

    # -------------------------
    # Attempt log
    # -------------------------
    def append_run_log(self, run_date: date, mode: str, status: str, started_at: datetime,
                       finished_at: Optional[datetime] = None, investments_processed: int = 0,
                       failed_investment_ids: Optional[List[int]] = None, investments_skipped: int = 0,
                       total_roi: Decimal = Decimal("0"), total_commissions: Decimal = Decimal("0"),
                       error: Optional[str] = None) -> SettlementRunLog:
        failed_investment_ids = list(failed_investment_ids or [])
        entry = SettlementRunLog(
            run_date=run_date.isoformat(),
            mode=mode,
            status=status,
            investments_processed=investments_processed,
            investments_failed=len(failed_investment_ids),
            investments_skipped=investments_skipped,
            failed_investment_ids=failed_investment_ids,
            total_roi=safe_decimal(total_roi, "total_roi"),
            total_commissions=safe_decimal(total_commissions, "total_commissions"),
            error=error,
            started_at=started_at,
            finished_at=finished_at,
        )
        with self.session_scope() as session:
            session.add(entry)
        return entry

    def list_run_logs(self, limit: int = 30, status: Optional[str] = None) -> List[SettlementRunLog]:
        query = select(SettlementRunLog).order_by(SettlementRunLog.id.desc()).limit(limit)
        if status:
            query = query.where(SettlementRunLog.status == status)
        with self.session_scope() as session:
            return list(session.execute(query).scalars().all())

    def delete_run_logs_before(self, cutoff: datetime) -> int:
        with self.session_scope() as session:
            result = session.execute(
                delete(SettlementRunLog).where(SettlementRunLog.started_at < cutoff)
            )
            return result.rowcount
