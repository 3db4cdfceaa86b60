from datetime import datetime, date, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from zoneinfo import ZoneInfo

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents; every balance and commission goes through here."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def safe_decimal(value, field_name: str = "amount") -> Decimal:
    """Convert int/str/Decimal to a cent-quantized Decimal.

    Floats are converted through ``str`` so 0.1 stays 0.1.
    """
    if value is None:
        raise ValueError(f"{field_name} cannot be None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid type for {field_name}: bool")
    try:
        if isinstance(value, Decimal):
            return quantize_money(value)
        if isinstance(value, (int, float, str)):
            return quantize_money(Decimal(str(value)))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Decimal conversion failed for {field_name}: {e}") from e
    raise ValueError(f"Invalid type for {field_name}: {type(value)}")


def safe_isoformat(dt_value):
    if dt_value is None:
        return None
    return dt_value.isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_today(tz_name: str, now: datetime = None) -> date:
    """Calendar date in the settlement timezone."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()
