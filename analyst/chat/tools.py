from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from analyst.chat.registry import ToolHandlerRegistry
from analyst.chat.types import CHART_TOOL_NAME
from analyst.config import AnalyticsConfig, AnalyticsFallback, load_analytics_config
from analyst.providers.analytics_provider import (
    AnalyticsProvider,
    AnalyticsQueryError,
    DefaultAnalyticsProvider,
    simulate_rows,
)

logger = logging.getLogger(__name__)

ANALYTICS_TOOL_NAME = "get_analytics_data"
MAX_ROWS = 500

ChartType = Literal["line", "bar", "area", "pie"]


class AnalyticsQueryArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metric: str = Field(
        min_length=1,
        description="The GA4 metric to retrieve (e.g. activeUsers, itemRevenue, sessions, bounceRate).",
    )
    dimension: str = Field(
        min_length=1,
        description="The GA4 dimension to group by (e.g. date, sessionSource, pagePath, itemName, deviceCategory).",
    )
    days: int = Field(default=7, description="Number of days to look back (default 7).")

    @field_validator("metric", "dimension", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("days", mode="before")
    @classmethod
    def _days(cls, v: Any) -> int:
        # Models often send numbers as floats
        if v is None or v == "":
            return 7
        try:
            n = int(round(float(v)))
        except (TypeError, ValueError):
            return 7
        return max(1, min(n, 365))


class RenderChartArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: ChartType = Field(description="Chart type: line, bar, area, pie.")
    title: str = Field(description="Title of the chart.")
    x_axis_key: str = Field(alias="xAxisKey", description="Key to use for the X-axis (e.g. label, date).")
    data_keys: List[str] = Field(alias="dataKeys", min_length=1, description="Keys to use for the data series.")
    data: List[Dict[str, Any]] = Field(description="Array of data objects.")
    colors: Optional[List[str]] = Field(default=None, description="Optional series colors.")

    @field_validator("type", mode="before")
    @classmethod
    def _type_lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


def make_analytics_handler(provider: AnalyticsProvider, *, fallback: AnalyticsFallback = "raise"):
    async def get_analytics_data(args: AnalyticsQueryArgs) -> Dict[str, Any]:
        source = "live"
        try:
            # requests is blocking; keep it off the event loop
            rows = await asyncio.to_thread(provider.query, args.metric, args.dimension, args.days)
        except AnalyticsQueryError as e:
            if fallback != "simulate":
                return {"error": e.message, "error_code": e.error_code}
            logger.warning(f"Analytics query failed ({e.message}); returning simulated rows")
            rows = simulate_rows(args.metric, args.dimension, args.days)
            source = "simulated"

        out: Dict[str, Any] = {
            "metric": args.metric,
            "dimension": args.dimension,
            "days": args.days,
            "source": source,
            "row_count": len(rows),
            "rows": rows[:MAX_ROWS],
        }
        if len(rows) > MAX_ROWS:
            out["truncated"] = True
        return out

    return get_analytics_data


async def render_chart(args: RenderChartArgs) -> Dict[str, Any]:
    # The UI draws the chart from the projected invocation arguments.
    logger.info(f"Rendering {args.type} chart: {args.title} ({len(args.data)} points)")
    return {"status": "chart_rendered_successfully", "title": args.title, "points": len(args.data)}


def build_default_registry(
    provider: Optional[AnalyticsProvider] = None,
    analytics_config: Optional[AnalyticsConfig] = None,
) -> ToolHandlerRegistry:
    cfg = analytics_config or load_analytics_config()
    registry = ToolHandlerRegistry()
    registry.register(
        ANALYTICS_TOOL_NAME,
        make_analytics_handler(provider or DefaultAnalyticsProvider(cfg), fallback=cfg.fallback),
        description="Query Google Analytics data. Supports all standard GA4 metrics and dimensions.",
        args_model=AnalyticsQueryArgs,
    )
    registry.register(
        CHART_TOOL_NAME,
        render_chart,
        description="Render a chart in the user interface based on data.",
        args_model=RenderChartArgs,
    )
    return registry
