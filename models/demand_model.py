from datetime import date, timedelta

import numpy as np
import pandas as pd
from sqlalchemy import text, bindparam

from db.connection import engine
from utils.ai_config import DEFAULT_LOOKBACK_DAYS
from utils.date_utils import daterange

SALES_BY_SKU_DAY = text("""
    SELECT oli."sku"                                                       AS sku,
           DATE(o."processedAt")                                           AS ds,
           SUM(oli."quantity" - COALESCE(oli."refundedQuantity", 0))        AS qty
    FROM "OrderLineItem" oli
             JOIN "Order" o ON o."id" = oli."orderId"
    WHERE oli."sku" IN :skus
      AND o."processedAt" >= :since
      AND o."processedAt" < :until
    GROUP BY oli."sku", DATE(o."processedAt")
""").bindparams(bindparam("skus", expanding=True))


def summarize_daily_demand(sales: pd.DataFrame, skus, start: date, end: date) -> dict:
    """
    Per-SKU daily demand statistics over [start, end].

    `sales` has columns sku, ds, qty. Days without a sale count as zero
    demand, so slow movers are not flattered by averaging only sale days.
    Returns {sku: {"avg_daily", "std_daily", "units"}}.
    """
    days = list(daterange(start, end))
    out = {}
    if sales.empty:
        grouped = {}
    else:
        sales = sales.copy()
        sales["ds"] = pd.to_datetime(sales["ds"]).dt.date
        sales["qty"] = sales["qty"].astype(float).clip(lower=0.0)
        grouped = {sku: grp.groupby("ds")["qty"].sum() for sku, grp in sales.groupby("sku")}

    for sku in skus:
        series = grouped.get(sku)
        if series is None or not days:
            out[sku] = {"avg_daily": 0.0, "std_daily": 0.0, "units": 0.0}
            continue
        full = series.reindex(days, fill_value=0.0).to_numpy(dtype=float)
        out[sku] = {
            "avg_daily": round(float(np.mean(full)), 4),
            "std_daily": round(float(np.std(full, ddof=0)), 4),
            "units": float(full.sum()),
        }
    return out


def load_sales_velocity(skus, lookback_days: int = DEFAULT_LOOKBACK_DAYS, today: date | None = None, bind=None):
    """Demand statistics from the CRM's order history over the last `lookback_days` full days."""
    skus = list(dict.fromkeys(skus))
    if not skus:
        return {}

    end = (today or date.today()) - timedelta(days=1)
    start = end - timedelta(days=lookback_days - 1)
    df = pd.read_sql(
        SALES_BY_SKU_DAY,
        bind if bind is not None else engine,
        params={
            "skus": skus,
            "since": start.isoformat(),
            "until": (end + timedelta(days=1)).isoformat(),
        },
    )
    return summarize_daily_demand(df, skus, start, end)
