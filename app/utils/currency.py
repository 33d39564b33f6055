"""Amount formatting for notification texts."""

from app.core.config import settings


def format_amount(amount: int | float, currency: str | None = None) -> str:
    """Return e.g. «100,000 LAK»."""
    return f"{int(amount):,} {currency or settings.currency_code}"
