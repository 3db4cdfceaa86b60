"""
Tests for the daily settlement run.

Covers:
1. The two-level referral scenario end to end
2. Idempotency per calendar day
3. Failure isolation between investments
4. Conservation of money across a run
5. Cancellation, fatal errors, unit timeouts and the in-process run lock
6. The per-attempt run log
"""
import threading
import time
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal

import pytest

from models import (
    Account, Investment, InvestmentStatus, CreditHistory, Transaction,
    TransactionType, ReferralCommission, SettlementRun,
)
from settlement.coordinator import RunStatus, SettlementCoordinator, TriggerMode
from settlement.unit_of_work import FraudGate, SettlementResult, SettlementUnitOfWork
from tests.conftest import FIXED_NOW, SETTLEMENT_DATE, fixed_clock


class FailingUnitOfWork(SettlementUnitOfWork):
    def __init__(self, store, fail_ids, **kwargs):
        super().__init__(store, **kwargs)
        self.fail_ids = set(fail_ids)

    def settle_one(self, investment_id, settlement_date):
        if investment_id in self.fail_ids:
            raise RuntimeError(f"boom on {investment_id}")
        return super().settle_one(investment_id, settlement_date)


class CancellingUnitOfWork(SettlementUnitOfWork):
    """Cancels the run as soon as the first investment has been settled."""

    coordinator = None

    def settle_one(self, investment_id, settlement_date):
        result = super().settle_one(investment_id, settlement_date)
        self.coordinator.cancel()
        return result


class RecordingUnitOfWork:
    """No database: records which ids were handed out and from which thread."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def settle_one(self, investment_id, settlement_date):
        with self._lock:
            self.calls.append((investment_id, threading.current_thread().name))
        return SettlementResult(investment_id=investment_id, credited=True, amount=Decimal("1.00"))


class BlockingFraudGate(FraudGate):
    """Holds one investment inside its unit-of-work until released."""

    def __init__(self, blocked_id):
        self.blocked_id = blocked_id
        self.release = threading.Event()

    def allow(self, investment):
        if investment.id == self.blocked_id:
            self.release.wait(5)
        return True


def total_balances(store):
    with store.session_scope() as session:
        return sum((a.available_balance for a in session.query(Account).all()), Decimal("0.00"))


def ledger_earnings_by_account(store):
    """Per-account sum of credit history and commission rows."""
    earnings = defaultdict(lambda: Decimal("0.00"))
    with store.session_scope() as session:
        for row in session.query(CreditHistory).all():
            earnings[row.account_id] += row.amount
        for row in session.query(ReferralCommission).all():
            earnings[row.beneficiary_id] += row.amount
    return earnings


def join_settlement_threads():
    for thread in threading.enumerate():
        if thread.name.startswith("settlement") and thread is not threading.current_thread():
            thread.join(timeout=5)


def clock_for(days):
    return lambda: FIXED_NOW + timedelta(days=days)


class TestDailyRun:

    def test_two_level_referral_scenario(self, store, coordinator, make_account, make_investment,
                                         reload, count_rows):
        r2 = make_account(code="R2")
        r1 = make_account(code="R1", referred_by="R2")
        owner = make_account(referred_by="R1")
        investment = make_investment(owner, principal="100.00", daily_return="15.00", remaining_days=1)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.COMPLETED
        assert summary.date == SETTLEMENT_DATE
        assert summary.investments_processed == 1
        assert summary.investments_failed == []
        assert summary.total_roi == Decimal("15.00")
        assert summary.total_commissions == Decimal("2.25")

        assert reload(Account, owner.id).available_balance == Decimal("15.00")
        assert reload(Account, r1.id).available_balance == Decimal("1.50")
        assert reload(Account, r2.id).available_balance == Decimal("0.75")
        assert reload(Account, owner.id).lifetime_earnings == Decimal("15.00")
        settled = reload(Investment, investment.id)
        assert settled.remaining_days == 0
        assert settled.status == InvestmentStatus.COMPLETED.value

        assert count_rows(CreditHistory) == 1
        assert count_rows(Transaction, Transaction.type == TransactionType.ROI.value) == 1
        assert count_rows(ReferralCommission) == 2
        assert count_rows(Transaction, Transaction.type == TransactionType.REFERRAL.value) == 2

        marker = store.get_run_marker(SETTLEMENT_DATE)
        assert marker is not None
        assert marker.mode == TriggerMode.SCHEDULED.value
        assert marker.investments_processed == 1
        assert marker.failed_investment_ids == []
        assert store.load_eligible_investment_ids(SETTLEMENT_DATE + timedelta(days=1)) == []

    def test_second_run_same_day_is_skipped(self, store, coordinator, make_account, make_investment,
                                            reload, count_rows):
        owner = make_account()
        make_investment(owner)

        first = coordinator.run_daily_settlement()
        second = coordinator.run_daily_settlement(TriggerMode.MANUAL)

        assert first.status == RunStatus.COMPLETED
        assert second.status == RunStatus.SKIPPED
        assert second.investments_processed == 0
        assert second.total_roi == Decimal("0.00")
        assert reload(Account, owner.id).available_balance == Decimal("15.00")
        assert count_rows(CreditHistory) == 1
        assert count_rows(SettlementRun) == 1
        assert store.get_run_marker(SETTLEMENT_DATE).mode == TriggerMode.SCHEDULED.value

    def test_consecutive_days_each_credit_once(self, store, make_account, make_investment, reload):
        owner = make_account()
        investment = make_investment(owner, remaining_days=2)

        for day in range(3):
            clock = clock_for(day)
            run = SettlementCoordinator(store, unit_of_work=SettlementUnitOfWork(store, clock=clock), clock=clock)
            run.run_daily_settlement()

        settled = reload(Investment, investment.id)
        assert settled.remaining_days == 0
        assert settled.status == InvestmentStatus.COMPLETED.value
        assert settled.total_earned == Decimal("30.00")
        assert reload(Account, owner.id).available_balance == Decimal("30.00")
        assert len(store.list_run_markers()) == 3
        assert store.get_run_marker(SETTLEMENT_DATE + timedelta(days=2)).investments_processed == 0

    def test_no_eligible_investments_still_writes_marker(self, store, coordinator, make_account, make_investment):
        owner = make_account()
        make_investment(owner, status=InvestmentStatus.COMPLETED.value, remaining_days=0)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.COMPLETED
        assert summary.investments_processed == 0
        assert store.get_run_marker(SETTLEMENT_DATE) is not None

    def test_money_is_conserved(self, store, coordinator, make_account, make_investment):
        make_account(code="TOP")
        middle = make_account(code="MID", referred_by="TOP")
        leaf = make_account(referred_by="MID")
        make_investment(middle, daily_return="12.34")
        make_investment(leaf, daily_return="7.77")
        make_investment(leaf, daily_return="0.05")

        before = total_balances(store)
        summary = coordinator.run_daily_settlement()
        after = total_balances(store)

        assert summary.investments_processed == 3
        assert after - before == summary.total_roi + summary.total_commissions

    def test_lifetime_earnings_match_ledger_rows_per_account(self, store, make_account, make_investment):
        make_account(code="L5")
        make_account(code="L4", referred_by="L5")
        make_account(code="L3", referred_by="L4")
        middle = make_account(code="L2", referred_by="L3")
        upline = make_account(code="L1", referred_by="L2")
        leaf = make_account(referred_by="L1")
        make_investment(leaf, daily_return="15.00", remaining_days=3)
        make_investment(leaf, daily_return="0.05", remaining_days=2)
        make_investment(upline, daily_return="7.77")
        make_investment(middle, daily_return="33.33", remaining_days=1)

        for day in range(3):
            clock = clock_for(day)
            SettlementCoordinator(store, unit_of_work=SettlementUnitOfWork(store, clock=clock),
                                  clock=clock).run_daily_settlement()

        earnings = ledger_earnings_by_account(store)
        with store.session_scope() as session:
            accounts = session.query(Account).all()
        for account in accounts:
            assert account.lifetime_earnings == earnings[account.id], account.referral_code
            assert account.available_balance == earnings[account.id], account.referral_code

    def test_concurrent_units_share_one_referrer(self, store, make_account, make_investment, reload):
        top = make_account(code="TOP")
        ids = []
        for _ in range(40):
            owner = make_account(referred_by="TOP")
            ids.append(make_investment(owner, daily_return="10.00").id)
        coordinator = SettlementCoordinator(store, unit_of_work=SettlementUnitOfWork(store, clock=fixed_clock),
                                            max_workers=4, clock=fixed_clock)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.COMPLETED
        assert summary.investments_failed == []
        assert summary.investments_processed == 40
        assert summary.total_commissions == Decimal("40.00")
        assert reload(Account, top.id).available_balance == Decimal("40.00")
        assert reload(Account, top.id).lifetime_earnings == Decimal("40.00")
        assert all(reload(Investment, pk).remaining_days == 29 for pk in ids)


class TestFailureIsolation:

    def test_one_failure_does_not_stop_the_run(self, store, make_account, make_investment, reload):
        owner = make_account()
        good = make_investment(owner)
        bad = make_investment(owner)
        also_good = make_investment(owner)
        unit = FailingUnitOfWork(store, fail_ids=[bad.id], clock=fixed_clock)
        coordinator = SettlementCoordinator(store, unit_of_work=unit, clock=fixed_clock)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.COMPLETED
        assert summary.investments_processed == 2
        assert summary.investments_failed == [bad.id]
        assert reload(Investment, good.id).remaining_days == 29
        assert reload(Investment, also_good.id).remaining_days == 29
        assert reload(Investment, bad.id).remaining_days == 30
        assert reload(Account, owner.id).available_balance == Decimal("30.00")

        marker = store.get_run_marker(SETTLEMENT_DATE)
        assert marker.investments_failed == 1
        assert marker.failed_investment_ids == [bad.id]

    def test_failed_investment_is_not_retried_the_same_day(self, store, make_account, make_investment, reload):
        owner = make_account()
        bad = make_investment(owner)
        unit = FailingUnitOfWork(store, fail_ids=[bad.id], clock=fixed_clock)
        SettlementCoordinator(store, unit_of_work=unit, clock=fixed_clock).run_daily_settlement()

        retry = SettlementCoordinator(store, unit_of_work=SettlementUnitOfWork(store, clock=fixed_clock),
                                      clock=fixed_clock).run_daily_settlement()

        assert retry.status == RunStatus.SKIPPED
        assert reload(Investment, bad.id).remaining_days == 30


class TestRunControl:

    def test_cancelled_run_writes_no_marker(self, store, make_account, make_investment, reload):
        owner = make_account()
        first = make_investment(owner)
        second = make_investment(owner)
        unit = CancellingUnitOfWork(store, clock=fixed_clock)
        coordinator = SettlementCoordinator(store, unit_of_work=unit, clock=fixed_clock)
        unit.coordinator = coordinator

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.CANCELLED
        assert summary.investments_processed == 1
        assert store.get_run_marker(SETTLEMENT_DATE) is None
        assert reload(Investment, first.id).remaining_days == 29
        assert reload(Investment, second.id).remaining_days == 30

        resumed = SettlementCoordinator(store, unit_of_work=SettlementUnitOfWork(store, clock=fixed_clock),
                                        clock=fixed_clock).run_daily_settlement()

        assert resumed.status == RunStatus.COMPLETED
        assert resumed.investments_processed == 1
        assert reload(Investment, first.id).remaining_days == 29
        assert reload(Investment, second.id).remaining_days == 29

    def test_load_failure_is_fatal(self, store, coordinator, monkeypatch):
        def broken(settlement_date):
            raise RuntimeError("connection refused")

        monkeypatch.setattr(store, "load_eligible_investment_ids", broken)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.FATAL
        assert "connection refused" in summary.error
        assert store.get_run_marker(SETTLEMENT_DATE) is None

    def test_marker_conflict_is_fatal(self, store, coordinator, monkeypatch):
        store.insert_run_marker(
            run_date=SETTLEMENT_DATE, mode="MANUAL", investments_processed=0, failed_investment_ids=[],
            investments_skipped=0, total_roi=Decimal("0"), total_commissions=Decimal("0"),
            executed_at=FIXED_NOW,
        )
        # Another process wrote the marker between our check and our insert
        monkeypatch.setattr(store, "get_run_marker", lambda run_date: None)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.FATAL
        assert "already exists" in summary.error

    def test_run_in_progress_is_rejected(self, coordinator):
        coordinator._run_lock.acquire()
        try:
            assert coordinator.is_running
            summary = coordinator.run_daily_settlement(TriggerMode.MANUAL)
        finally:
            coordinator._run_lock.release()

        assert summary.status == RunStatus.FATAL
        assert "in progress" in summary.error
        assert not coordinator.is_running

    def test_worker_pool_settles_each_investment_once(self, store, make_account, make_investment):
        owner = make_account()
        ids = [make_investment(owner).id for _ in range(6)]
        unit = RecordingUnitOfWork()
        coordinator = SettlementCoordinator(store, unit_of_work=unit, max_workers=3, clock=fixed_clock)

        summary = coordinator.run_daily_settlement()

        assert sorted(call[0] for call in unit.calls) == ids
        assert all(name.startswith("settlement") for _, name in unit.calls)
        assert summary.investments_processed == 6
        assert summary.total_roi == Decimal("6.00")

    def test_stuck_unit_is_written_off_after_its_timeout(self, store, make_account, make_investment,
                                                         reload, count_rows):
        owner = make_account()
        stuck = make_investment(owner)
        healthy = make_investment(owner)
        gate = BlockingFraudGate(stuck.id)
        unit = SettlementUnitOfWork(store, fraud_gate=gate, timeout=0.5, clock=fixed_clock)
        coordinator = SettlementCoordinator(store, unit_of_work=unit, max_workers=2,
                                            clock=fixed_clock, unit_grace=0.1)

        try:
            started = time.monotonic()
            summary = coordinator.run_daily_settlement()
            elapsed = time.monotonic() - started

            assert elapsed < 3
            assert summary.status == RunStatus.COMPLETED
            assert summary.investments_failed == [stuck.id]
            assert summary.investments_processed == 1
            assert not coordinator.is_running
            assert reload(Investment, healthy.id).remaining_days == 29
            assert reload(Investment, stuck.id).remaining_days == 30
            assert store.get_run_marker(SETTLEMENT_DATE).failed_investment_ids == [stuck.id]
        finally:
            gate.release.set()
            join_settlement_threads()

        # The abandoned unit wakes up past its deadline and rolls back
        assert reload(Investment, stuck.id).remaining_days == 30
        assert reload(Account, owner.id).available_balance == Decimal("15.00")
        assert count_rows(CreditHistory) == 1

    def test_cancel_before_run_only_affects_that_run(self, store, coordinator, make_account, make_investment,
                                                     reload):
        owner = make_account()
        investment = make_investment(owner)

        coordinator.cancel()
        cancelled = coordinator.run_daily_settlement()

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.investments_processed == 0
        assert store.get_run_marker(SETTLEMENT_DATE) is None
        assert reload(Investment, investment.id).remaining_days == 30

        rerun = coordinator.run_daily_settlement(TriggerMode.MANUAL)

        assert rerun.status == RunStatus.COMPLETED
        assert rerun.investments_processed == 1
        assert reload(Investment, investment.id).remaining_days == 29


class TestAttemptLog:

    def test_completed_and_skipped_runs_are_logged(self, store, coordinator, make_account, make_investment):
        make_investment(make_account())

        coordinator.run_daily_settlement()
        coordinator.run_daily_settlement(TriggerMode.MANUAL)

        skipped, completed = store.list_run_logs()
        assert completed.status == RunStatus.COMPLETED.value
        assert completed.mode == TriggerMode.SCHEDULED.value
        assert completed.investments_processed == 1
        assert completed.total_roi == Decimal("15.00")
        assert completed.started_at is not None
        assert skipped.status == RunStatus.SKIPPED.value
        assert skipped.mode == TriggerMode.MANUAL.value
        assert skipped.investments_processed == 0

    def test_fatal_run_is_logged_without_marker(self, store, coordinator, monkeypatch):
        def broken(settlement_date):
            raise RuntimeError("connection refused")

        monkeypatch.setattr(store, "load_eligible_investment_ids", broken)

        coordinator.run_daily_settlement()

        assert store.get_run_marker(SETTLEMENT_DATE) is None
        (entry,) = store.list_run_logs(status=RunStatus.FATAL.value)
        assert entry.run_date == SETTLEMENT_DATE.isoformat()
        assert "connection refused" in entry.error

    def test_cancelled_run_is_logged(self, store, make_account, make_investment):
        owner = make_account()
        make_investment(owner)
        make_investment(owner)
        unit = CancellingUnitOfWork(store, clock=fixed_clock)
        coordinator = SettlementCoordinator(store, unit_of_work=unit, clock=fixed_clock)
        unit.coordinator = coordinator

        coordinator.run_daily_settlement()

        (entry,) = store.list_run_logs()
        assert entry.status == RunStatus.CANCELLED.value
        assert entry.investments_processed == 1

    def test_rejected_concurrent_run_is_logged(self, store, coordinator):
        coordinator._run_lock.acquire()
        try:
            coordinator.run_daily_settlement(TriggerMode.MANUAL)
        finally:
            coordinator._run_lock.release()

        (entry,) = store.list_run_logs()
        assert entry.status == RunStatus.FATAL.value
        assert "in progress" in entry.error

    def test_log_write_failure_keeps_the_run_outcome(self, store, coordinator, make_account, make_investment,
                                                     monkeypatch):
        make_investment(make_account())

        def broken(**kwargs):
            raise RuntimeError("log table missing")

        monkeypatch.setattr(store, "append_run_log", broken)

        summary = coordinator.run_daily_settlement()

        assert summary.status == RunStatus.COMPLETED
        assert store.get_run_marker(SETTLEMENT_DATE) is not None


class TestRunSummary:

    def test_to_dict(self, coordinator):
        payload = coordinator.run_daily_settlement(TriggerMode.MANUAL).to_dict()

        assert payload["status"] == "COMPLETED"
        assert payload["date"] == "2025-03-10"
        assert payload["mode"] == "MANUAL"
        assert payload["investmentsProcessed"] == 0
        assert payload["investmentsFailed"] == []
        assert payload["totalROIDistributed"] == "0.00"
        assert payload["totalCommissionsDistributed"] == "0.00"
        assert payload["executedAt"] == FIXED_NOW.isoformat()
        assert payload["error"] is None

    @pytest.mark.parametrize("hour,expected_day", [(18, 10), (19, 11)])
    def test_settlement_date_follows_configured_timezone(self, store, hour, expected_day):
        now = FIXED_NOW.replace(hour=hour)
        coordinator = SettlementCoordinator(store, clock=lambda: now, timezone_name="Asia/Kolkata")
        assert coordinator.settlement_date().day == expected_day
