import itertools
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app import create_app
from config import TestConfig
from models import Account, Investment, InvestmentStatus
from settlement.coordinator import SettlementCoordinator
from settlement.unit_of_work import SettlementUnitOfWork


# 11:30 in Asia/Kolkata
FIXED_NOW = datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)
SETTLEMENT_DATE = date(2025, 3, 10)


def fixed_clock():
    return FIXED_NOW


@pytest.fixture
def app(tmp_path):
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'settlement.db'}"
        LOG_DIR = str(tmp_path / "logs")

    app = create_app(_Config)
    app.extensions["ledger_store"].create_all()
    yield app
    app.extensions["ledger_store"].close()


@pytest.fixture
def store(app):
    return app.extensions["ledger_store"]


@pytest.fixture
def unit_of_work(store):
    return SettlementUnitOfWork(store, clock=fixed_clock)


@pytest.fixture
def coordinator(store, unit_of_work):
    return SettlementCoordinator(store, unit_of_work=unit_of_work, clock=fixed_clock)


@pytest.fixture
def make_account(store):
    counter = itertools.count(1)

    def _make(referred_by=None, code=None, role="user", balance="0.00"):
        n = next(counter)
        with store.session_scope() as session:
            account = Account(
                username=f"user{n}",
                role=role,
                referral_code=code or f"REF{n:04d}",
                referred_by_code=referred_by,
                available_balance=Decimal(balance),
                lifetime_earnings=Decimal("0.00"),
            )
            session.add(account)
            session.flush()
        return account

    return _make


@pytest.fixture
def make_investment(store):
    def _make(account, principal="100.00", daily_return="15.00", remaining_days=30,
              status=InvestmentStatus.ACTIVE.value, last_credit_date=None, plan_name="Silver"):
        with store.session_scope() as session:
            investment = Investment(
                account_id=account.id,
                plan_name=plan_name,
                principal=Decimal(principal),
                daily_return=Decimal(daily_return),
                term_days=max(remaining_days, 1),
                remaining_days=remaining_days,
                total_earned=Decimal("0.00"),
                status=status,
                last_credit_date=last_credit_date,
            )
            session.add(investment)
            session.flush()
        return investment

    return _make


@pytest.fixture
def reload(store):
    """Fresh copy of a row, read in its own session."""
    def _reload(model, pk):
        with store.session_scope() as session:
            return session.get(model, pk)

    return _reload


@pytest.fixture
def count_rows(store):
    def _count(model, *criteria):
        with store.session_scope() as session:
            return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()

    return _count
