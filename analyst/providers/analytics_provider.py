"""Analytics report client (GA4 report endpoint)."""

from __future__ import annotations

import logging
import random
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests

from analyst.chat.errors import ChatError
from analyst.config import AnalyticsConfig, load_analytics_config

logger = logging.getLogger(__name__)


class AnalyticsQueryError(ChatError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(
            message,
            "analytics_unavailable",
            is_retryable=True,
            details={"status_code": status_code} if status_code is not None else {},
        )


@runtime_checkable
class AnalyticsProvider(Protocol):
    def query(self, metric: str, dimension: str, days: int = 7) -> List[Dict[str, Any]]: ...


def _date_range(days: int) -> Dict[str, str]:
    return {"start_date": f"{int(days)}daysAgo", "end_date": "today"}


def query_analytics(
    metric: str,
    dimension: str,
    days: int = 7,
    *,
    config: Optional[AnalyticsConfig] = None,
) -> List[Dict[str, Any]]:
    """
    Run a single-metric, single-dimension report.

    Raises AnalyticsQueryError on transport failure or a non-2xx response.
    Returns [] when the response has an unexpected shape.
    """
    cfg = config or load_analytics_config()
    body = {
        "property_id": cfg.property_id,
        "date_ranges": [_date_range(days)],
        "metrics": [metric],
        "dimensions": [dimension],
    }
    logger.info(f"Analytics query: property={cfg.property_id} metric={metric} dimension={dimension} days={days}")

    try:
        resp = requests.post(cfg.endpoint, json=body, timeout=cfg.timeout_seconds)
    except requests.RequestException as e:
        logger.error(f"Analytics endpoint unreachable: {e}")
        raise AnalyticsQueryError(f"Analytics endpoint unreachable: {type(e).__name__}") from e

    if not resp.ok:
        logger.error(f"Analytics endpoint error ({resp.status_code}): {resp.text[:500]}")
        raise AnalyticsQueryError(
            f"Analytics server error: {resp.status_code} {resp.reason}", status_code=resp.status_code
        )

    try:
        payload = resp.json()
    except ValueError as e:
        raise AnalyticsQueryError("Analytics server returned invalid JSON", status_code=resp.status_code) from e

    # Expected: {property_id, date_range, dimensions, metrics, row_count, data: [...]}
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        logger.warning(f"Unexpected analytics response shape: {str(payload)[:200]}")
        return []
    logger.info(f"Analytics query returned {len(rows)} rows")
    return rows


_CATEGORY_SETS = [
    (("device",), ["Mobile", "Desktop", "Tablet"]),
    (("source",), ["google", "direct", "newsletter", "referral"]),
    (("country",), ["United States", "United Kingdom", "Canada", "Germany", "Japan"]),
    (("item", "product"), ["Premium Plan", "Basic Plan", "Consultation", "Wellness Kit"]),
    (("page", "path"), ["/home", "/pricing", "/blog/wellness", "/contact", "/app/dashboard"]),
    (("campaign",), ["Summer Sale", "New User Promo", "Retargeting", "Brand Awareness"]),
]


def _placeholder_value(metric: str, rng: random.Random) -> float:
    m = metric.lower()
    if "rate" in m or "percent" in m:
        return round(rng.uniform(0, 100), 2)
    if "revenue" in m or "value" in m:
        return rng.randint(1000, 5999)
    if "time" in m or "duration" in m:
        return rng.randint(0, 299)
    return rng.randint(100, 1099)


def simulate_rows(metric: str, dimension: str, days: int, *, seed: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Placeholder rows shaped like a real report: a date series for date-like
    dimensions, a known category set otherwise.
    """
    rng = random.Random(seed)
    d = dimension.lower()
    if any(k in d for k in ("date", "day", "week")):
        start = date.today() - timedelta(days=days)
        labels = [(start + timedelta(days=i)).isoformat() for i in range(days)]
    else:
        labels = ["Category A", "Category B", "Category C", "Category D", "Category E"]
        for keys, cats in _CATEGORY_SETS:
            if any(k in d for k in keys):
                labels = cats
                break
    return [{"label": label, metric: _placeholder_value(metric, rng)} for label in labels]


class DefaultAnalyticsProvider:
    def __init__(self, config: Optional[AnalyticsConfig] = None) -> None:
        self.config = config or load_analytics_config()

    def query(self, metric: str, dimension: str, days: int = 7) -> List[Dict[str, Any]]:
        return query_analytics(metric, dimension, days, config=self.config)
