# settlement/coordinator.py
"""
Daily settlement run.

One call to ``run_daily_settlement`` settles every eligible investment once
for the current calendar day, then writes that day's run marker. The marker is
the idempotency gate: a second call on the same day is a no-op, whether it
comes from the scheduler or from an admin.

Every call, whatever its outcome, also appends a row to the attempt log so
failed and cancelled runs stay visible to admins.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import logging
import threading
import time

from settlement.ledger import LedgerStore, RunMarkerConflict, SettlementTimeout
from settlement.unit_of_work import SettlementUnitOfWork, SettlementResult
from utils import local_today, safe_isoformat, utc_now, ZERO

logger = logging.getLogger(__name__)

# Extra wait on top of the unit timeout before a unit is written off
UNIT_WAIT_GRACE_SECONDS = 5.0


class TriggerMode(Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"


class RunStatus(Enum):
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"
    FATAL = "FATAL"


@dataclass
class RunSummary:
    status: RunStatus
    date: date
    mode: TriggerMode
    investments_processed: int = 0
    investments_failed: List[int] = field(default_factory=list)
    investments_skipped: int = 0
    total_roi: Decimal = ZERO
    total_commissions: Decimal = ZERO
    executed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self):
        return {
            "status": self.status.value,
            "date": self.date.isoformat(),
            "mode": self.mode.value,
            "investmentsProcessed": self.investments_processed,
            "investmentsFailed": list(self.investments_failed),
            "investmentsSkipped": self.investments_skipped,
            "totalROIDistributed": str(self.total_roi),
            "totalCommissionsDistributed": str(self.total_commissions),
            "executedAt": safe_isoformat(self.executed_at),
            "error": self.error,
        }


@dataclass
class UnitOutcome:
    investment_id: int
    result: Optional[SettlementResult] = None
    error: Optional[str] = None
    cancelled: bool = False


class SettlementCoordinator:

    def __init__(self, store: LedgerStore, unit_of_work: SettlementUnitOfWork = None,
                 max_workers: int = 1, timezone_name: str = "Asia/Kolkata", clock=utc_now,
                 unit_timeout: Optional[float] = None, unit_grace: float = UNIT_WAIT_GRACE_SECONDS):
        self.store = store
        self.unit_of_work = unit_of_work or SettlementUnitOfWork(store, clock=clock)
        self.max_workers = max(1, int(max_workers))
        self.timezone_name = timezone_name
        self.clock = clock
        self.unit_timeout = unit_timeout if unit_timeout is not None else getattr(self.unit_of_work, "timeout", None)
        self.unit_grace = unit_grace

        self._run_lock = threading.Lock()
        self._cancel_event = threading.Event()

    # -------------------------
    # Control
    # -------------------------
    def cancel(self):
        """Stop picking up investments; units already running finish normally."""
        self._cancel_event.set()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def settlement_date(self) -> date:
        return local_today(self.timezone_name, self.clock())

    # -------------------------
    # Entry point
    # -------------------------
    def run_daily_settlement(self, mode: TriggerMode = TriggerMode.SCHEDULED) -> RunSummary:
        settlement_date = self.settlement_date()
        summary = RunSummary(status=RunStatus.COMPLETED, date=settlement_date, mode=mode)
        started_at = self.clock()

        if not self._run_lock.acquire(blocking=False):
            logger.warning(f"Settlement for {settlement_date} requested ({mode.value}) while a run is in progress")
            self._fatal(summary, "Settlement already in progress")
        else:
            try:
                self._run(summary)
            finally:
                # A cancel() aimed at this run ends with it
                self._cancel_event.clear()
                self._run_lock.release()

        self._record_attempt(summary, started_at)
        return summary

    # -------------------------
    # Internals
    # -------------------------
    def _run(self, summary: RunSummary):
        settlement_date = summary.date
        mode = summary.mode
        started = time.monotonic()
        logger.info(f"Starting daily settlement for {settlement_date} ({mode.value})")

        try:
            marker = self.store.get_run_marker(settlement_date)
        except Exception as e:
            logger.exception(f"Could not read run marker for {settlement_date}")
            self._fatal(summary, f"Cannot read run marker: {e}")
            return

        if marker is not None:
            logger.info(f"Settlement already ran for {settlement_date}, skipping")
            summary.status = RunStatus.SKIPPED
            summary.executed_at = self.clock()
            return

        try:
            investment_ids = self.store.load_eligible_investment_ids(settlement_date)
        except Exception as e:
            logger.exception(f"Could not load eligible investments for {settlement_date}")
            self._fatal(summary, f"Cannot load eligible investments: {e}")
            return

        logger.info(f"Found {len(investment_ids)} eligible investments for {settlement_date}")

        outcomes = self._process(investment_ids, settlement_date)
        cancelled = self._aggregate(summary, outcomes)
        summary.executed_at = self.clock()

        if cancelled:
            summary.status = RunStatus.CANCELLED
            logger.warning(
                f"Settlement for {settlement_date} cancelled after {summary.investments_processed} "
                f"investments; no run marker written"
            )
            return

        try:
            self.store.insert_run_marker(
                run_date=settlement_date,
                mode=mode.value,
                investments_processed=summary.investments_processed,
                failed_investment_ids=summary.investments_failed,
                investments_skipped=summary.investments_skipped,
                total_roi=summary.total_roi,
                total_commissions=summary.total_commissions,
                executed_at=summary.executed_at,
            )
        except RunMarkerConflict as e:
            logger.error(f"Run marker conflict for {settlement_date}: {e}")
            self._fatal(summary, str(e))
            return
        except Exception as e:
            logger.exception(f"Could not write run marker for {settlement_date}")
            self._fatal(summary, f"Cannot write run marker: {e}")
            return

        logger.info(
            f"Settlement summary for {settlement_date}: processed={summary.investments_processed}, "
            f"failed={len(summary.investments_failed)}, skipped={summary.investments_skipped}, "
            f"roi={summary.total_roi}, commissions={summary.total_commissions}, "
            f"duration={time.monotonic() - started:.2f}s"
        )

    def _fatal(self, summary: RunSummary, error: str) -> RunSummary:
        summary.status = RunStatus.FATAL
        summary.error = error
        summary.executed_at = self.clock()
        return summary

    def _record_attempt(self, summary: RunSummary, started_at: datetime):
        """Append the attempt log row; a failure here never changes the run's outcome."""
        try:
            self.store.append_run_log(
                run_date=summary.date,
                mode=summary.mode.value,
                status=summary.status.value,
                started_at=started_at,
                finished_at=summary.executed_at,
                investments_processed=summary.investments_processed,
                failed_investment_ids=summary.investments_failed,
                investments_skipped=summary.investments_skipped,
                total_roi=summary.total_roi,
                total_commissions=summary.total_commissions,
                error=summary.error,
            )
        except Exception as e:
            logger.warning(f"Could not record settlement attempt for {summary.date} ({summary.status.value}): {e}")

    def _process(self, investment_ids: List[int], settlement_date: date) -> List[UnitOutcome]:
        if self.unit_timeout is None and (self.max_workers == 1 or len(investment_ids) <= 1):
            outcomes = []
            for investment_id in investment_ids:
                outcomes.append(self._settle_isolated(investment_id, settlement_date))
            return outcomes

        if not investment_ids:
            return []

        # With a unit timeout every unit runs on the pool so a stuck one can be abandoned
        workers = min(self.max_workers, len(investment_ids))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="settlement")
        abandoned = False
        try:
            futures = [
                (investment_id, pool.submit(self._settle_isolated, investment_id, settlement_date))
                for investment_id in investment_ids
            ]
            outcomes = []
            for investment_id, future in futures:
                outcomes.append(self._wait_for(investment_id, future))
                abandoned = abandoned or not future.done()
            return outcomes
        finally:
            pool.shutdown(wait=not abandoned, cancel_futures=abandoned)

    def _wait_for(self, investment_id: int, future) -> UnitOutcome:
        wait = None if self.unit_timeout is None else self.unit_timeout + self.unit_grace
        try:
            return future.result(timeout=wait)
        except FutureTimeout:
            logger.error(f"Investment {investment_id} did not finish within {wait:.2f}s; recorded as failed")
            return UnitOutcome(investment_id, error=f"Unit-of-work did not finish within {wait:.2f}s")

    def _settle_isolated(self, investment_id: int, settlement_date: date) -> UnitOutcome:
        """Run one unit; every exception becomes a per-investment failure."""
        if self._cancel_event.is_set():
            return UnitOutcome(investment_id, cancelled=True)

        try:
            result = self.unit_of_work.settle_one(investment_id, settlement_date)
            return UnitOutcome(investment_id, result=result)
        except SettlementTimeout as e:
            logger.error(f"Investment {investment_id} timed out and was rolled back: {e}")
            return UnitOutcome(investment_id, error=str(e))
        except Exception as e:
            logger.exception(f"Error processing investment {investment_id}")
            return UnitOutcome(investment_id, error=str(e) or e.__class__.__name__)

    @staticmethod
    def _aggregate(summary: RunSummary, outcomes: List[UnitOutcome]) -> bool:
        """Fold unit outcomes into the summary; returns True when any unit was cancelled."""
        cancelled = False
        for outcome in outcomes:
            if outcome.cancelled:
                cancelled = True
            elif outcome.error is not None:
                summary.investments_failed.append(outcome.investment_id)
            elif outcome.result.credited:
                summary.investments_processed += 1
                summary.total_roi += outcome.result.amount
                summary.total_commissions += outcome.result.commission_total
            else:
                summary.investments_skipped += 1
        return cancelled
