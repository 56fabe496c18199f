"""
Cost calculation utilities for CostLens.

Provides currency normalization, cost-series totals and monthly folding,
trend analysis, and the flat-rate savings estimates the dashboard shows.
All monetary calculations use ``decimal.Decimal`` to avoid floating-point
precision errors.
"""

from __future__ import annotations

import json
import logging
import os
from collections import OrderedDict
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exchange rates (relative to 1 USD).
#
# Default static table used when no external rates are provided.  Override at
# runtime via the ``EXCHANGE_RATES_JSON`` environment variable, which should
# contain a JSON object mapping currency codes to their USD multipliers,
# e.g. ``{"EUR": "1.09", "GBP": "1.27"}``.
# ---------------------------------------------------------------------------
_DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "EUR": Decimal("1.09"),
    "GBP": Decimal("1.27"),
    "JPY": Decimal("0.0067"),
    "CAD": Decimal("0.74"),
    "AUD": Decimal("0.65"),
    "CHF": Decimal("1.13"),
    "INR": Decimal("0.012"),
    "BRL": Decimal("0.20"),
    "SGD": Decimal("0.75"),
}

# Share of historical spend shown as achievable monthly savings.
HISTORICAL_SAVINGS_RATE = Decimal("0.15")
# Share of analysed spend the bulk analyzer reports as potential savings.
ANALYSIS_SAVINGS_RATE = Decimal("0.20")

_TWO_PLACES = Decimal("0.01")
_SIX_PLACES = Decimal("0.000001")


def _load_exchange_rates() -> dict[str, Decimal]:
    """Load exchange rates, preferring env-var overrides over defaults."""
    rates = dict(_DEFAULT_RATES)
    env_json = os.environ.get("EXCHANGE_RATES_JSON", "").strip()
    if env_json:
        try:
            overrides = json.loads(env_json)
            for code, value in overrides.items():
                rates[code.upper()] = Decimal(str(value))
            logger.info(
                "Loaded %d exchange rate overrides from EXCHANGE_RATES_JSON",
                len(overrides),
            )
        except (json.JSONDecodeError, AttributeError, ArithmeticError) as exc:
            logger.warning(
                "Failed to parse EXCHANGE_RATES_JSON; using defaults: %s", exc
            )
    return rates


_EXCHANGE_RATES_TO_USD: dict[str, Decimal] = _load_exchange_rates()


def to_usd(amount: float | Decimal, currency: str) -> float:
    """Convert *amount* in *currency* to USD.

    Unknown currencies are treated as 1:1 with USD and a warning is logged.
    """
    rate = _EXCHANGE_RATES_TO_USD.get(currency.upper())
    if rate is None:
        logger.warning("Unknown currency %s; treating as 1:1 with USD", currency)
        rate = Decimal("1.0")
    result = Decimal(str(amount)) * rate
    return float(result.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP))


def series_total(rows: list[dict[str, Any]]) -> float:
    """Sum the ``cost`` of every row, rounded to cents."""
    total = sum((Decimal(str(r.get("cost", 0) or 0)) for r in rows), Decimal("0"))
    return _money(total)


def monthly_points(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fold daily cost rows into chronological monthly points.

    Each point is ``{"month": "Jan", "cost": float, "savings": float}``
    where savings is :data:`HISTORICAL_SAVINGS_RATE` of the month's cost.
    Rows without a parseable date are skipped.
    """
    months: OrderedDict[tuple[int, int], Decimal] = OrderedDict()
    dated = []
    for row in rows:
        row_date = _parse_date(row.get("date"))
        if row_date is not None:
            dated.append((row_date, Decimal(str(row.get("cost", 0) or 0))))

    for row_date, cost in sorted(dated, key=lambda item: item[0]):
        key = (row_date.year, row_date.month)
        months[key] = months.get(key, Decimal("0")) + cost

    return [
        {
            "month": date(year, month, 1).strftime("%b"),
            "cost": _money(cost),
            "savings": _money(cost * HISTORICAL_SAVINGS_RATE),
        }
        for (year, month), cost in months.items()
    ]


def next_month_label(today: date | None = None) -> str:
    """Abbreviated name of the month after *today*."""
    today = today or date.today()
    first_of_next = (today.replace(day=1) + timedelta(days=32)).replace(day=1)
    return first_of_next.strftime("%b")


def estimate_potential_savings(cost_data: list[dict[str, Any]]) -> float:
    """Flat :data:`ANALYSIS_SAVINGS_RATE` of the summed ``cost`` values."""
    total = sum(
        (Decimal(str(item.get("cost", 0) or 0)) for item in cost_data),
        Decimal("0"),
    )
    return _money(total * ANALYSIS_SAVINGS_RATE)


def calculate_trend(
    rows: list[dict[str, Any]],
    period_days: int = 30,
    today: date | None = None,
) -> dict[str, Any]:
    """Calculate cost trend over two consecutive periods.

    Compares the total cost of the most recent *period_days* with the
    preceding *period_days* and returns the percentage change.

    Parameters
    ----------
    rows:
        Each dict must contain ``"cost"`` and ``"date"`` (``date`` or
        ISO-format string).
    period_days:
        Length of each comparison period in days.

    Returns
    -------
    dict
        Keys: ``current_period_cost``, ``previous_period_cost``,
        ``change_percent``, ``trend`` (``"increasing"`` /
        ``"decreasing"`` / ``"stable"``), ``period_days``.
    """
    today = today or date.today()
    current_start = today - timedelta(days=period_days)
    previous_start = current_start - timedelta(days=period_days)

    current_total = Decimal("0")
    previous_total = Decimal("0")

    for row in rows:
        row_date = _parse_date(row.get("date"))
        if row_date is None:
            continue
        amount = Decimal(str(row.get("cost", 0) or 0))

        if current_start <= row_date <= today:
            current_total += amount
        elif previous_start <= row_date < current_start:
            previous_total += amount

    if previous_total > 0:
        change_pct = ((current_total - previous_total) / previous_total) * Decimal(
            "100"
        )
    elif current_total > 0:
        change_pct = Decimal("100")
    else:
        change_pct = Decimal("0")

    if change_pct > Decimal("2"):
        trend = "increasing"
    elif change_pct < Decimal("-2"):
        trend = "decreasing"
    else:
        trend = "stable"

    return {
        "current_period_cost": _money(current_total),
        "previous_period_cost": _money(previous_total),
        "change_percent": _money(change_pct),
        "trend": trend,
        "period_days": period_days,
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _money(value: Decimal) -> float:
    return float(value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def _parse_date(value: Any) -> date | None:
    """Best-effort parse of a date-like value."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None
