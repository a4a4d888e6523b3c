import logging
from dataclasses import asdict, dataclass, field

import requests

from errors import UpstreamUnavailable
from integrations.client import read_json
from utils.stock_constants import (
    IDS_BY_SKU_PATH, STOCK_FULL_BY_IDS_PATH, STOCK_LEVELS, SUPPLIER,
    STOCK_ITEM_ID_KEYS, SKU_KEYS, SUPPLIER_ID_KEYS, SUPPLIER_NAME_KEYS, LOCATION_ID_KEYS,
    pick, rows_of,
)

logger = logging.getLogger("StockReader")

READ_ATTEMPTS = 2  # stock reads are idempotent: one automatic retry


@dataclass(frozen=True)
class SupplierInfo:
    supplier_id: str
    name: str | None = None
    is_default: bool = False
    code: str | None = None
    lead_time_days: float | None = None
    pack_size: int | None = None
    min_order_qty: int | None = None
    purchase_price: float | None = None


@dataclass(frozen=True)
class StockPosition:
    stock_item_id: str
    sku: str | None
    on_hand: int
    in_order_book: int
    due: int
    suppliers: tuple = field(default_factory=tuple)

    @property
    def default_supplier(self) -> SupplierInfo | None:
        for s in self.suppliers:
            if s.is_default:
                return s
        return self.suppliers[0] if self.suppliers else None

    def to_dict(self):
        return {
            "stock_item_id": self.stock_item_id,
            "sku": self.sku,
            "on_hand": self.on_hand,
            "in_order_book": self.in_order_book,
            "due": self.due,
            "suppliers": [asdict(s) for s in self.suppliers],
        }


def _count(value) -> int:
    try:
        return max(0, int(float(value or 0)))
    except (TypeError, ValueError):
        return 0


def _positive_int(value):
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def _number(value):
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None


def _parse_supplier(row) -> SupplierInfo | None:
    sid = pick(row, SUPPLIER_ID_KEYS)
    if not sid:
        return None
    lead = _number(pick(row, ("LeadTime", "AverageLeadTime")))
    return SupplierInfo(
        supplier_id=str(sid),
        name=pick(row, SUPPLIER_NAME_KEYS),
        is_default=bool(row.get("IsDefault")),
        code=row.get("Code") or None,
        lead_time_days=lead if lead else None,
        pack_size=_positive_int(pick(row, ("SupplierPackSize", "PackSize"))),
        min_order_qty=_positive_int(pick(row, ("SupplierMinOrderQty", "MinOrderQty"))),
        purchase_price=_number(row.get("PurchasePrice")),
    )


def _parse_item(row, location_id=None) -> StockPosition | None:
    item_id = pick(row, STOCK_ITEM_ID_KEYS)
    if not item_id:
        return None

    on_hand = in_order_book = due = 0
    for level in row.get("StockLevels") or []:
        if location_id is not None:
            loc = pick(level.get("Location") or {}, LOCATION_ID_KEYS) or pick(level, ("StockLocationId", "fkStockLocationId"))
            if str(loc).lower() != str(location_id).lower():
                continue
        on_hand += _count(level.get("StockLevel"))
        in_order_book += _count(level.get("InOrderBook"))
        due += _count(level.get("Due"))

    suppliers = tuple(s for s in (_parse_supplier(r) for r in row.get("Suppliers") or []) if s)
    return StockPosition(
        stock_item_id=str(item_id),
        sku=pick(row, SKU_KEYS),
        on_hand=on_hand,
        in_order_book=in_order_book,
        due=due,
        suppliers=suppliers,
    )


class StockPositionReader:
    """Current on-hand / in-order-book / due figures, straight from the platform."""

    def __init__(self, client):
        self.client = client

    def _read(self, path, payload):
        status, body = None, None
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                resp = self.client.post(path, payload)
            except requests.RequestException as e:
                status, body = None, str(e)
            else:
                if resp.ok:
                    return read_json(resp)
                status, body = resp.status_code, resp.text
            logger.warning(f"{path} attempt {attempt} failed ({status})")
        raise UpstreamUnavailable(status, body)

    def resolve_ids(self, skus) -> dict:
        """sku -> stock item id. SKUs the platform does not know are simply absent."""
        payload = self._read(IDS_BY_SKU_PATH, {"skus": list(skus)})
        wanted = set(skus)
        out = {}
        for row in rows_of(payload):
            sku = pick(row, SKU_KEYS)
            item_id = pick(row, STOCK_ITEM_ID_KEYS)
            if sku and item_id and str(sku) in wanted:
                out[str(sku)] = str(item_id)
        return out

    def fetch_positions(self, stock_item_ids, include_supplier=False, location_id=None) -> dict:
        requirements = [STOCK_LEVELS, SUPPLIER] if include_supplier else [STOCK_LEVELS]
        payload = self._read(STOCK_FULL_BY_IDS_PATH, {
            "request": {"StockItemIds": list(stock_item_ids), "DataRequirements": requirements},
        })
        out = {}
        for row in rows_of(payload, "StockItemsFullExtended", "StockItems"):
            position = _parse_item(row, location_id)
            if position:
                out[position.stock_item_id] = position
        return out

    def read_positions(self, identifiers, by_sku=True, include_supplier=False, location_id=None) -> dict:
        """
        Stock positions keyed by the identifiers the caller passed in.

        With `by_sku`, identifiers are SKUs and are resolved to platform ids
        first; unknown SKUs are dropped from the result rather than failing.
        Any non-success answer fails the whole batch with UpstreamUnavailable.
        """
        keys = list(dict.fromkeys(str(i).strip() for i in identifiers if str(i or "").strip()))
        if not keys:
            raise ValueError("at least one product identifier is required")

        if by_sku:
            id_by_key = self.resolve_ids(keys)
            unknown = [k for k in keys if k not in id_by_key]
            if unknown:
                logger.info(f"Dropping {len(unknown)} unknown SKU(s): {unknown}")
        else:
            id_by_key = {k: k for k in keys}

        if not id_by_key:
            return {}

        positions = self.fetch_positions(
            list(dict.fromkeys(id_by_key.values())),
            include_supplier=include_supplier,
            location_id=location_id,
        )
        by_id_lower = {pid.lower(): p for pid, p in positions.items()}
        out = {}
        for key, item_id in id_by_key.items():
            position = by_id_lower.get(item_id.lower())
            if position:
                out[key] = position
        return out
