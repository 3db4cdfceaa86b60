# settlement/unit_of_work.py
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional
import logging

from models import Investment, InvestmentStatus, TransactionType
from settlement import commission as commission_resolver
from settlement.commission import CommissionShare
from settlement.ledger import LedgerStore, LedgerError
from settlement.notifications import (
    NotificationEvent, NotificationSink, NullNotificationSink, ROI, REFERRAL,
)
from utils import safe_decimal, utc_now, ZERO

logger = logging.getLogger(__name__)

NOT_ELIGIBLE = "not eligible"
HELD_BY_FRAUD_GATE = "held by fraud gate"


class FraudGate:
    """External fraud check consulted before an investment is credited."""

    def allow(self, investment: Investment) -> bool:
        return True


@dataclass
class SettlementResult:
    investment_id: int
    credited: bool
    amount: Decimal = ZERO
    commissions: List[CommissionShare] = field(default_factory=list)
    reason: Optional[str] = None
    completed: bool = False

    @property
    def commission_total(self) -> Decimal:
        return commission_resolver.total_commission(self.commissions)

    @classmethod
    def skipped(cls, investment_id, reason):
        return cls(investment_id=investment_id, credited=False, reason=reason)


class SettlementUnitOfWork:
    """
    Settles exactly one investment for one calendar day.

    Credit, history, transaction, term advance and every commission share are
    written in one database transaction. Notifications go out only after that
    transaction has committed and can never undo it.
    """

    def __init__(self, store: LedgerStore, notification_sink: NotificationSink = None,
                 fraud_gate: FraudGate = None, timeout: Optional[float] = None, clock=utc_now):
        self.store = store
        self.notification_sink = notification_sink or NullNotificationSink()
        self.fraud_gate = fraud_gate or FraudGate()
        self.timeout = timeout
        self.clock = clock

    def settle_one(self, investment_id: int, settlement_date: date) -> SettlementResult:
        """
        Raises on storage errors and timeouts after rolling back; a skip is a
        normal return with ``credited=False``.
        """
        with self.store.transaction(timeout=self.timeout) as tx:
            investment = tx.lock_investment(investment_id)
            if investment is None:
                raise LedgerError(f"Investment {investment_id} not found")

            if not self._is_eligible(investment, settlement_date):
                return SettlementResult.skipped(investment_id, NOT_ELIGIBLE)

            if not self.fraud_gate.allow(investment):
                logger.warning(f"Investment {investment_id} held by fraud gate")
                return SettlementResult.skipped(investment_id, HELD_BY_FRAUD_GATE)

            amount = safe_decimal(investment.daily_return, "daily_return")
            principal = safe_decimal(investment.principal, "principal")
            credited_at = self.clock()

            # Claims the day; a concurrent unit that got here first leaves nothing to match
            if not tx.advance_investment(investment, amount, settlement_date):
                return SettlementResult.skipped(investment_id, NOT_ELIGIBLE)

            tx.increment_account(investment.account_id, amount)
            tx.append_credit_history(investment, amount, settlement_date, credited_at)
            tx.append_transaction(
                account_id=investment.account_id,
                type_=TransactionType.ROI.value,
                amount=amount,
                description=f"Daily ROI - {investment.plan_name or 'Investment'}",
                reference=str(investment.id),
                details={
                    "planName": investment.plan_name,
                    "investmentAmount": str(principal),
                    "roiPercentage": str(self._roi_percentage(amount, principal)),
                    "remainingDays": investment.remaining_days,
                    "creditDate": settlement_date.isoformat(),
                },
            )

            owner = tx.get_account_snapshot(investment.account_id)
            chain = tx.load_referral_snapshot(owner)
            shares = commission_resolver.resolve(amount, owner, chain)

            paid = []
            for share in shares:
                # Zero-amount shares are resolved but never booked
                if share.amount <= ZERO:
                    continue
                tx.increment_account(share.beneficiary.id, share.amount)
                tx.append_commission(
                    beneficiary_id=share.beneficiary.id,
                    source_account_id=owner.id,
                    investment_id=investment.id,
                    level=share.level,
                    percentage=share.percentage,
                    amount=share.amount,
                    credit_date=settlement_date,
                )
                tx.append_transaction(
                    account_id=share.beneficiary.id,
                    type_=TransactionType.REFERRAL.value,
                    amount=share.amount,
                    description=f"Level {share.level} referral commission from ROI",
                    reference=str(investment.id),
                    details={
                        "level": share.level,
                        "fromAccountId": owner.id,
                        "roiAmount": str(amount),
                        "commissionRate": str(share.percentage),
                    },
                )
                paid.append(share)

            result = SettlementResult(
                investment_id=investment.id,
                credited=True,
                amount=amount,
                commissions=paid,
                completed=investment.status == InvestmentStatus.COMPLETED.value,
            )

        logger.info(
            f"ROI credited: {result.amount} to account {owner.id} for investment {investment_id}, "
            f"commissions {result.commission_total} across {len(result.commissions)} levels"
        )
        self._notify(owner.id, result)
        return result

    @staticmethod
    def _is_eligible(investment: Investment, settlement_date: date) -> bool:
        if investment.status != InvestmentStatus.ACTIVE.value:
            return False
        if investment.remaining_days is None or investment.remaining_days <= 0:
            return False
        if investment.last_credit_date is not None and investment.last_credit_date >= settlement_date:
            return False
        return True

    @staticmethod
    def _roi_percentage(amount: Decimal, principal: Decimal) -> Decimal:
        if principal <= ZERO:
            return ZERO
        return (amount / principal * Decimal("100")).quantize(Decimal("0.0001"))

    def _notify(self, owner_id: int, result: SettlementResult):
        events = [NotificationEvent(
            account_id=owner_id,
            kind=ROI,
            amount=result.amount,
            source_investment_id=result.investment_id,
        )]
        events.extend(
            NotificationEvent(
                account_id=share.beneficiary.id,
                kind=REFERRAL,
                amount=share.amount,
                source_investment_id=result.investment_id,
                level=share.level,
            )
            for share in result.commissions
        )
        try:
            self.notification_sink.publish_all(events)
        except Exception as e:
            logger.warning(f"Notifications dropped for investment {result.investment_id}: {e}")
