import math
from dataclasses import dataclass, asdict

from config import config
from errors import InvalidForecastInput
from utils.ai_config import Z95, LEAD_TIME_DAYS, REVIEW_DAYS, BUFFER_DAYS, DEFAULT_HORIZON_DAYS

FALLBACK_SAFETY_RATIO = config.FALLBACK_SAFETY_RATIO

# Differences smaller than this are float noise, not demand
_EPSILON_DIGITS = 9


@dataclass(frozen=True)
class ForecastInputs:
    avg_daily: float
    lead_time_days: float
    review_days: float
    buffer_days: float = 0.0
    service_level_z: float = Z95
    horizon_days: float = 0.0
    on_hand: float = 0.0
    in_order_book: float = 0.0
    due: float = 0.0
    daily_std_dev: float | None = None
    pack_size: int | None = None
    moq: int | None = None


@dataclass(frozen=True)
class ForecastResult:
    qty: int
    rop: float
    safety: float
    target: float
    net_pos: float

    def to_dict(self):
        return asdict(self)


def _validate(x: ForecastInputs):
    for name in ("avg_daily", "lead_time_days", "review_days", "buffer_days", "horizon_days"):
        value = getattr(x, name)
        if value is None or not math.isfinite(value) or value < 0:
            raise InvalidForecastInput(name, f"{name} must be a finite number >= 0, got {value!r}")

    for name in ("service_level_z", "on_hand", "in_order_book", "due"):
        value = getattr(x, name)
        if value is None or not math.isfinite(value):
            raise InvalidForecastInput(name, f"{name} must be a finite number, got {value!r}")

    if x.daily_std_dev is not None and (not math.isfinite(x.daily_std_dev) or x.daily_std_dev < 0):
        raise InvalidForecastInput("daily_std_dev", f"daily_std_dev must be >= 0, got {x.daily_std_dev!r}")
    if x.pack_size is not None and x.pack_size <= 0:
        raise InvalidForecastInput("pack_size", f"pack_size must be > 0, got {x.pack_size!r}")
    if x.moq is not None and x.moq < 0:
        raise InvalidForecastInput("moq", f"moq must be >= 0, got {x.moq!r}")


def compute_forecast(x: ForecastInputs, fallback_safety_ratio: float | None = None) -> ForecastResult:
    """
    Recommended order quantity for one SKU.

    Safety stock uses z * std * sqrt(L + R) when daily variability is known,
    otherwise `fallback_safety_ratio` of mean demand over the coverage window.
    The raw quantity is rounded up to the pack size, then raised to the MOQ.
    Negative inputs are rejected, never clamped.
    """
    _validate(x)
    ratio = FALLBACK_SAFETY_RATIO if fallback_safety_ratio is None else fallback_safety_ratio
    if not math.isfinite(ratio) or ratio < 0:
        raise InvalidForecastInput("fallback_safety_ratio", f"fallback_safety_ratio must be >= 0, got {ratio!r}")

    # ---------------------------------------------------------
    # 1) Coverage window: lead time + buffer, plus review cycle
    # ---------------------------------------------------------
    lead = x.lead_time_days + x.buffer_days
    window = lead + x.review_days

    # ---------------------------------------------------------
    # 2) Safety stock, reorder point, target
    # ---------------------------------------------------------
    if x.daily_std_dev:
        safety = x.service_level_z * x.daily_std_dev * math.sqrt(window)
    else:
        safety = ratio * x.avg_daily * window

    rop = x.avg_daily * window + safety
    target = rop + x.avg_daily * x.horizon_days
    net_pos = x.on_hand - x.in_order_book + x.due

    # ---------------------------------------------------------
    # 3) Quantity: floor at zero, pack rounding up, then MOQ
    # ---------------------------------------------------------
    qty = max(0, math.ceil(round(target - net_pos, _EPSILON_DIGITS)))
    if x.pack_size and qty % x.pack_size:
        qty = math.ceil(qty / x.pack_size) * x.pack_size
    if x.moq:
        qty = max(qty, int(x.moq))

    return ForecastResult(qty=int(qty), rop=rop, safety=safety, target=target, net_pos=net_pos)


def forecast_from_position(position, demand, params=None, fallback_safety_ratio=None) -> ForecastResult:
    """
    Assemble inputs from a StockPosition, a demand summary
    ({"avg_daily", "std_daily"}) and planning parameters. Lead time, pack
    size and MOQ fall back to the position's default supplier when omitted.
    """
    params = params or {}
    supplier = position.default_supplier

    lead_time = params.get("lead_time_days")
    if lead_time is None:
        lead_time = supplier.lead_time_days if supplier and supplier.lead_time_days else LEAD_TIME_DAYS
    pack_size = params.get("pack_size")
    if pack_size is None and supplier:
        pack_size = supplier.pack_size
    moq = params.get("moq")
    if moq is None and supplier:
        moq = supplier.min_order_qty

    std = demand.get("std_daily")
    inputs = ForecastInputs(
        avg_daily=float(demand.get("avg_daily", 0.0)),
        daily_std_dev=float(std) if std is not None else None,
        lead_time_days=float(lead_time),
        review_days=float(params.get("review_days", REVIEW_DAYS)),
        buffer_days=float(params.get("buffer_days", BUFFER_DAYS)),
        service_level_z=float(params.get("service_level_z", Z95)),
        horizon_days=float(params.get("horizon_days", DEFAULT_HORIZON_DAYS)),
        on_hand=float(position.on_hand),
        in_order_book=float(position.in_order_book),
        due=float(position.due),
        pack_size=int(pack_size) if pack_size is not None else None,
        moq=int(moq) if moq is not None else None,
    )
    return compute_forecast(inputs, fallback_safety_ratio)
