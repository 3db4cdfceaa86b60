# settlement/config.py
from decimal import Decimal
from typing import Dict, Any, Tuple
import logging

logger = logging.getLogger(__name__)


class CommissionConfig:
    """
    Referral commission table, applied to each day's ROI credit.
    Level 1: 10%, Level 2: 5%, Level 3: 3%, Level 4: 2%, Level 5: 1%
    """

    # Percentages (not fractions) by level
    COMMISSION_PERCENTAGES = {
        1: Decimal('10'),
        2: Decimal('5'),
        3: Decimal('3'),
        4: Decimal('2'),
        5: Decimal('1'),
    }

    MAX_LEVEL = 5

    @staticmethod
    def get_commission_percentage(level: int) -> Decimal:
        """Percentage for a level; levels outside 1..MAX_LEVEL pay nothing."""
        if not isinstance(level, int) or level < 1 or level > CommissionConfig.MAX_LEVEL:
            return Decimal('0')
        return CommissionConfig.COMMISSION_PERCENTAGES.get(level, Decimal('0'))

    @staticmethod
    def get_commission_distribution_summary() -> Dict[str, Any]:
        """Summary of the commission table for admin tooling"""
        distribution = {}
        total_percentage = Decimal('0')

        for level in range(1, CommissionConfig.MAX_LEVEL + 1):
            percentage = CommissionConfig.get_commission_percentage(level)
            distribution[level] = {
                'percentage': str(percentage),
                'percentage_display': f"{percentage}%",
            }
            total_percentage += percentage

        return {
            'distribution': distribution,
            'total_percentage': str(total_percentage),
            'max_level': CommissionConfig.MAX_LEVEL,
        }

    @staticmethod
    def validate_commission_configuration() -> Tuple[bool, str]:
        """Check the table is contiguous from level 1 and pays out less than the base"""
        levels = sorted(CommissionConfig.COMMISSION_PERCENTAGES)
        if levels != list(range(1, CommissionConfig.MAX_LEVEL + 1)):
            return False, f"Commission levels must be 1..{CommissionConfig.MAX_LEVEL}, got {levels}"

        for level, percentage in CommissionConfig.COMMISSION_PERCENTAGES.items():
            if percentage <= Decimal('0'):
                return False, f"Level {level} percentage must be positive, got {percentage}"

        total_percentage = sum(CommissionConfig.COMMISSION_PERCENTAGES.values(), Decimal('0'))
        if total_percentage > Decimal('100'):
            return False, f"Total commission percentage too high: {total_percentage}%"

        return True, (
            f"Commission configuration valid: {total_percentage}% total "
            f"across {CommissionConfig.MAX_LEVEL} levels"
        )
