"""
Rental trend estimator.

A display heuristic, not a statistical model: nine weekly price points for
an area code, from the mean of listed prices when listings exist and from
a seeded sinusoid otherwise. The formulas are kept exactly as clients
expect them.
"""
import math
import re
from datetime import datetime, timedelta
from typing import Iterable, Optional

from babel.dates import format_date
from pymongo.database import Database

from database import PROPERTIES, as_utc, now_utc
from errors import ValidationError

WEEKS = 8
MIN_PREFIX_LENGTH = 3
FALLBACK_BASE = 15000
FALLBACK_STEP = 50
DEFAULT_AREA_NUMBER = 100

_LEADING_INT = re.compile(r"^\s*[+-]?\d+")


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def area_number(zip_prefix: str) -> int:
    """Integer value of the leading digits of the first three characters."""
    match = _LEADING_INT.match(zip_prefix[:3])
    number = int(match.group()) if match else 0
    return number or DEFAULT_AREA_NUMBER


def fallback_price(zip_prefix: str, week_index: int) -> int:
    base_price = FALLBACK_BASE + area_number(zip_prefix) * FALLBACK_STEP
    weekly_variation = 1 + math.sin(week_index * 0.7) * 0.08
    trend_factor = 1 + week_index * 0.01
    return round_half_up(base_price * weekly_variation * trend_factor)


def observed_price(prices: list, week_index: int) -> int:
    mean = sum(prices) / len(prices)
    return round_half_up(mean * (1 + math.sin(week_index * 0.5) * 0.05))


def summarize(prices: list) -> dict:
    first, last = prices[0], prices[-1]
    change = last - first
    percent = round(change / first * 100, 1) if first else 0.0
    return {
        "average_price": round_half_up(sum(prices) / len(prices)),
        "min_price": min(prices),
        "max_price": max(prices),
        "price_change": change,
        "percent_change": percent,
        "trend": "increasing" if change >= 0 else "decreasing",
    }


def trend_series(properties: Iterable[dict], zip_prefix: str, now: Optional[datetime] = None) -> dict:
    """Build the nine weekly points from already-matched listings."""
    now = as_utc(now) if now else now_utc()
    listings = [(p["price"], as_utc(p.get("created_at"))) for p in properties]

    labels, prices = [], []
    for week_index in range(WEEKS, -1, -1):
        week_date = now - timedelta(days=7 * week_index)
        labels.append(format_date(week_date, format="MMM d", locale="en_US"))
        listed = [price for price, created in listings if created is not None and created <= week_date]
        if listed:
            prices.append(observed_price(listed, week_index))
        else:
            prices.append(fallback_price(zip_prefix, week_index))

    return {"labels": labels, "prices": prices, "statistics": summarize(prices)}


def matching_properties(db: Database, zip_prefix: str) -> list:
    contains = {"$regex": re.escape(zip_prefix), "$options": "i"}
    return list(
        db[PROPERTIES].find(
            {
                "is_approved": True,
                "$or": [
                    {"location": contains},
                    {"address": contains},
                    {"city": {"$regex": re.escape(zip_prefix[:3]), "$options": "i"}},
                ],
            },
            {"price": 1, "created_at": 1, "location": 1},
        )
    )


def estimate_trend(db: Database, zip_prefix: str, now: Optional[datetime] = None) -> dict:
    zip_prefix = (zip_prefix or "").strip()
    if len(zip_prefix) < MIN_PREFIX_LENGTH:
        raise ValidationError("Valid ZIP code is required")

    properties = matching_properties(db, zip_prefix)
    result = trend_series(properties, zip_prefix, now)
    result.update(
        {
            "zipcode": zip_prefix,
            "period": "2 months",
            "data_points": len(result["prices"]),
            "properties_found": len(properties),
        }
    )
    return result
