import logging
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum

import requests

from errors import (
    AuthenticationFailed, UpstreamUnavailable, HeaderCreationFailed, LineAppendFailed, AmbiguousOutcome,
    ProgressNotSaved, PlacementInProgress,
)
from integrations.client import read_json
from utils.date_utils import parse_delivery_date, platform_datetime
from utils.stock_constants import PO_CREATE_PATH, PO_ADD_ITEM_PATH, PO_GET_PATH, PURCHASE_ID_KEYS, pick, rows_of

logger = logging.getLogger("PurchaseOrders")

# Failures raised before any byte reached the platform
_NEVER_SENT = (
    requests.exceptions.ConnectTimeout,
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
)


class PlacementState(str, Enum):
    NOT_STARTED = "not_started"
    # ledger only: a request is (or was, until it crashed) talking to the platform
    IN_FLIGHT = "in_flight"
    HEADER_CREATED = "header_created"
    COMPLETE = "complete"
    PARTIALLY_FAILED = "partially_failed"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class OrderLine:
    stock_item_id: str
    qty: int
    unit_cost: float

    def __post_init__(self):
        if not self.stock_item_id:
            raise ValueError("stock_item_id is required")
        if self.qty < 0:
            raise ValueError(f"qty must be >= 0 for {self.stock_item_id}")
        if self.unit_cost < 0:
            raise ValueError(f"unit_cost must be >= 0 for {self.stock_item_id}")

    def to_dict(self):
        return {"stock_item_id": self.stock_item_id, "qty": self.qty, "unit_cost": self.unit_cost}


@dataclass(frozen=True)
class PurchaseOrderDraft:
    supplier_id: str
    location_id: str
    currency: str
    delivery_date: date
    lines: tuple

    @classmethod
    def from_dict(cls, data):
        missing = [k for k in ("supplier_id", "location_id", "currency", "delivery_date") if not data.get(k)]
        if missing:
            raise ValueError(f"missing field(s): {', '.join(missing)}")
        raw_lines = data.get("lines")
        if not isinstance(raw_lines, list):
            raise ValueError("lines must be a list")
        lines = tuple(
            OrderLine(
                stock_item_id=str(line.get("stock_item_id") or ""),
                qty=int(line.get("qty", 0)),
                unit_cost=float(line.get("unit_cost", 0.0)),
            )
            for line in raw_lines
        )
        return cls(
            supplier_id=str(data["supplier_id"]),
            location_id=str(data["location_id"]),
            currency=str(data["currency"]),
            delivery_date=parse_delivery_date(data["delivery_date"]),
            lines=lines,
        )

    def to_dict(self):
        return {
            "supplier_id": self.supplier_id,
            "location_id": self.location_id,
            "currency": self.currency,
            "delivery_date": self.delivery_date.isoformat(),
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass(frozen=True)
class OrderResult:
    """
    Outcome of a placement. `next_line_index` is the resumable cursor: the
    first line not known to be on the platform.
    """
    purchase_id: str | None
    lines_appended: int
    total: int
    next_line_index: int
    state: PlacementState
    failure: Exception | None = None

    @property
    def ok(self):
        return self.state == PlacementState.COMPLETE

    def to_dict(self):
        return {
            "purchase_id": self.purchase_id,
            "lines_appended": self.lines_appended,
            "total": self.total,
            "next_line_index": self.next_line_index,
            "state": self.state.value,
            "failure": self.failure.to_dict() if self.failure is not None else None,
        }


def _purchase_id(payload):
    if isinstance(payload, str):
        return payload.strip().strip('"') or None
    value = pick(payload, PURCHASE_ID_KEYS)
    return str(value) if value else None


def check_resumable(result: OrderResult, draft: PurchaseOrderDraft):
    """Raise unless `result` may be continued without risking duplicate lines."""
    if result.total != len(draft.lines):
        raise ValueError("draft does not match the placement being resumed")
    if result.state == PlacementState.IN_FLIGHT:
        raise PlacementInProgress()
    if result.state == PlacementState.AMBIGUOUS:
        index = result.failure.index if isinstance(result.failure, AmbiguousOutcome) else None
        raise AmbiguousOutcome(index, "reconcile with the platform before resuming")
    if result.state == PlacementState.NOT_STARTED and not (
            result.failure is None or isinstance(result.failure, HeaderCreationFailed)):
        raise AmbiguousOutcome(None, "header outcome unknown; reconcile before resuming")


class PurchaseOrderOrchestrator:
    """
    Places a purchase order as a header followed by strictly sequential line
    appends. The platform has no multi-step transaction, so the first failing
    line stops the run and the result reports exactly what exists remotely.
    Nothing is retried automatically.

    `on_progress` is called after every remote mutation. If it raises
    ProgressNotSaved the run stops before the next remote call.
    """

    def __init__(self, client, on_progress=None):
        self.client = client
        self.on_progress = on_progress

    def _progress(self, result):
        """None when recorded, otherwise the stopped result to return."""
        if self.on_progress is None:
            return None
        try:
            self.on_progress(result)
        except ProgressNotSaved as e:
            logger.error(f"Stopping purchase {result.purchase_id} at line {result.next_line_index}: {e}")
            return replace(result, state=PlacementState.PARTIALLY_FAILED, failure=e)
        return None

    def place(self, draft: PurchaseOrderDraft) -> OrderResult:
        total = len(draft.lines)
        not_started = OrderResult(None, 0, total, 0, PlacementState.NOT_STARTED)
        header = {
            "createParameters": {
                "fkSupplierId": draft.supplier_id,
                "fkLocationId": draft.location_id,
                "Currency": draft.currency,
                "QuotedDeliveryDate": platform_datetime(draft.delivery_date),
            }
        }

        try:
            resp = self.client.post(PO_CREATE_PATH, header)
        except AuthenticationFailed as e:
            return replace(not_started, failure=HeaderCreationFailed(e.status, e.body))
        except _NEVER_SENT as e:
            return replace(not_started, failure=HeaderCreationFailed(None, str(e)))
        except requests.RequestException as e:
            logger.error(f"Purchase header outcome unknown: {e}")
            return replace(not_started, state=PlacementState.AMBIGUOUS, failure=AmbiguousOutcome(None, str(e)))

        if not resp.ok:
            logger.error(f"Purchase header creation failed ({resp.status_code})")
            return replace(not_started, failure=HeaderCreationFailed(resp.status_code, resp.text))

        purchase_id = _purchase_id(read_json(resp))
        if not purchase_id:
            # accepted, so the header most likely exists; its id is unknown
            logger.error(f"Purchase header accepted ({resp.status_code}) without a purchase id")
            return replace(not_started, state=PlacementState.AMBIGUOUS,
                           failure=AmbiguousOutcome(None, f"accepted without a purchase id: {resp.text}"))

        logger.info(f"Purchase header {purchase_id} created for supplier {draft.supplier_id}")
        started = OrderResult(purchase_id, 0, total, 0, PlacementState.HEADER_CREATED)
        stopped = self._progress(started)
        if stopped is not None:
            return stopped
        return self._append_from(started, draft)

    def resume(self, result: OrderResult, draft: PurchaseOrderDraft) -> OrderResult:
        """Append only the lines from the result's cursor onwards."""
        check_resumable(result, draft)
        if result.state == PlacementState.COMPLETE:
            return result
        if result.state == PlacementState.NOT_STARTED:
            return self.place(draft)
        return self._append_from(replace(result, state=PlacementState.HEADER_CREATED, failure=None), draft)

    def reconcile(self, result: OrderResult, draft: PurchaseOrderDraft, purchase_id=None) -> OrderResult:
        """
        Rebuild the cursor from the lines actually present on the platform.
        Used after an ambiguous step, before resuming. `purchase_id` attaches
        the header an operator found on the platform when none was recorded.
        """
        if purchase_id and result.purchase_id and purchase_id != result.purchase_id:
            raise ValueError(f"placement already belongs to purchase {result.purchase_id}")
        purchase_id = result.purchase_id or purchase_id
        if purchase_id is None:
            raise AmbiguousOutcome(None, "no purchase id; supply the id of the header found on the platform")

        try:
            resp = self.client.get(PO_GET_PATH, params={"pkPurchaseId": purchase_id})
        except requests.RequestException as e:
            raise UpstreamUnavailable(None, str(e))
        if not resp.ok:
            raise UpstreamUnavailable(resp.status_code, resp.text)

        remote_lines = len(rows_of(read_json(resp), "PurchaseOrderItem", "PurchaseOrderItems"))
        sendable = [i for i, line in enumerate(draft.lines) if line.qty > 0]
        if remote_lines > len(sendable):
            raise ValueError(
                f"purchase {purchase_id} has {remote_lines} lines, more than the draft's {len(sendable)}"
            )

        next_index = sendable[remote_lines] if remote_lines < len(sendable) else len(draft.lines)
        state = PlacementState.COMPLETE if next_index == len(draft.lines) else PlacementState.HEADER_CREATED
        logger.info(f"Purchase {purchase_id} reconciled: {remote_lines} line(s) on the platform")
        return OrderResult(purchase_id, remote_lines, len(draft.lines), next_index, state)

    def _append_from(self, result: OrderResult, draft: PurchaseOrderDraft) -> OrderResult:
        appended = result.lines_appended
        for index in range(result.next_line_index, result.total):
            line = draft.lines[index]
            if line.qty == 0:
                continue

            body = {
                "addItemParameter": {
                    "pkPurchaseId": result.purchase_id,
                    "pkStockItemId": line.stock_item_id,
                    "Qty": line.qty,
                    "UnitCost": line.unit_cost,
                }
            }
            stopped = replace(result, lines_appended=appended, next_line_index=index,
                              state=PlacementState.PARTIALLY_FAILED)
            try:
                resp = self.client.post(PO_ADD_ITEM_PATH, body)
            except AuthenticationFailed as e:
                return replace(stopped, failure=LineAppendFailed(index, e.status, e.body))
            except _NEVER_SENT as e:
                return replace(stopped, failure=LineAppendFailed(index, None, str(e)))
            except requests.RequestException as e:
                logger.error(f"Line {index} of purchase {result.purchase_id} outcome unknown: {e}")
                return replace(stopped, state=PlacementState.AMBIGUOUS, failure=AmbiguousOutcome(index, str(e)))

            if not resp.ok:
                logger.error(f"Line {index} of purchase {result.purchase_id} rejected ({resp.status_code})")
                return replace(stopped, failure=LineAppendFailed(index, resp.status_code, resp.text))
            appended += 1
            unsaved = self._progress(replace(result, lines_appended=appended, next_line_index=index + 1))
            if unsaved is not None:
                return unsaved

        return replace(result, lines_appended=appended, next_line_index=result.total,
                       state=PlacementState.COMPLETE, failure=None)


def place_order(client, supplier_id, location_id, currency, delivery_date, lines) -> OrderResult:
    draft = PurchaseOrderDraft(
        supplier_id=supplier_id,
        location_id=location_id,
        currency=currency,
        delivery_date=parse_delivery_date(delivery_date),
        lines=tuple(lines),
    )
    return PurchaseOrderOrchestrator(client).place(draft)
