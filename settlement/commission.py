# settlement/commission.py
"""
Referral commission resolution.

Walks the upstream referrer chain of an investing account and works out what
each ancestor earns from one day's ROI. Nothing here touches the database:
the caller hands in a snapshot of the accounts on the chain, keyed by
referral code, and applies the returned shares itself.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Mapping, Optional
import logging

from settlement.config import CommissionConfig
from utils import quantize_money, ZERO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    """The slice of an account the resolver needs."""
    id: int
    referral_code: str
    referred_by_code: Optional[str] = None


@dataclass(frozen=True)
class CommissionShare:
    beneficiary: AccountSnapshot
    level: int
    percentage: Decimal
    amount: Decimal


def resolve(base_amount: Decimal,
            origin: AccountSnapshot,
            accounts_by_code: Mapping[str, AccountSnapshot],
            max_levels: int = CommissionConfig.MAX_LEVEL) -> List[CommissionShare]:
    """
    Return at most ``max_levels`` shares, ordered from the direct referrer outward.

    Resolution stops without error when a referrer code is missing or does not
    resolve to an account, or when the chain loops back on an account already
    visited. Zero-amount shares are included; skipping them is the caller's call.
    """
    base_amount = Decimal(base_amount)
    max_levels = min(max_levels, CommissionConfig.MAX_LEVEL)

    shares = []
    visited = {origin.id}
    code = origin.referred_by_code

    for level in range(1, max_levels + 1):
        if not code:
            break

        referrer = accounts_by_code.get(code)
        if referrer is None:
            logger.debug(f"Referral chain of account {origin.id} broken at level {level}: unknown code {code}")
            break

        if referrer.id in visited:
            logger.warning(f"Referral cycle detected for account {origin.id} at level {level} (account {referrer.id})")
            break
        visited.add(referrer.id)

        percentage = CommissionConfig.get_commission_percentage(level)
        amount = quantize_money(base_amount * percentage / Decimal("100"))
        shares.append(CommissionShare(
            beneficiary=referrer,
            level=level,
            percentage=percentage,
            amount=amount,
        ))

        code = referrer.referred_by_code

    return shares


def total_commission(shares: List[CommissionShare]) -> Decimal:
    return sum((share.amount for share in shares), ZERO)
