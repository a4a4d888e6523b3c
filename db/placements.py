import json
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy.orm.exc import StaleDataError

from config import config
from db.models import PurchaseOrderPlacement
from errors import failure_from_dict, PlacementInProgress
from models.purchase_order_model import PurchaseOrderDraft, OrderResult, PlacementState


def record_placement(db, draft: PurchaseOrderDraft, result: OrderResult, placement=None):
    """Insert or update the ledger row for a placement; caller commits."""
    if placement is None:
        placement = PurchaseOrderPlacement(
            supplier_id=draft.supplier_id,
            location_id=draft.location_id,
            currency=draft.currency,
            delivery_date=draft.delivery_date,
            lines_json=json.dumps([line.to_dict() for line in draft.lines]),
            total_lines=result.total,
        )
        db.add(placement)

    placement.state = result.state.value
    placement.purchase_id = result.purchase_id
    placement.lines_appended = result.lines_appended
    placement.next_line_index = result.next_line_index
    placement.failure_json = json.dumps(result.failure.to_dict()) if result.failure is not None else None
    db.flush()
    return placement


def record_progress(db, draft: PurchaseOrderDraft, progress: OrderResult, placement):
    """Save a mid-run cursor; the row stays in flight until the run records its outcome."""
    return record_placement(db, draft, replace(progress, state=PlacementState.IN_FLIGHT), placement)


def claim_placement(db, placement):
    """
    Mark a loaded placement in flight and commit. The version check makes
    this a compare-and-set: if any other request wrote the row since it was
    loaded, nothing changes and PlacementInProgress is raised.
    """
    placement_id = placement.id
    placement.state = PlacementState.IN_FLIGHT.value
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise PlacementInProgress(f"placement {placement_id} was changed by another request")
    return placement


def is_abandoned(placement, now=None):
    """An in-flight row nobody has written to within the stale window."""
    if placement.state != PlacementState.IN_FLIGHT.value:
        return False
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=config.PLACEMENT_STALE_MINUTES)
    return placement.updated_at is not None and placement.updated_at < cutoff


def load_placement(placement: PurchaseOrderPlacement):
    draft = PurchaseOrderDraft.from_dict({
        "supplier_id": placement.supplier_id,
        "location_id": placement.location_id,
        "currency": placement.currency,
        "delivery_date": placement.delivery_date,
        "lines": placement.lines,
    })
    result = OrderResult(
        purchase_id=placement.purchase_id,
        lines_appended=placement.lines_appended,
        total=placement.total_lines,
        next_line_index=placement.next_line_index,
        state=PlacementState(placement.state),
        failure=failure_from_dict(placement.failure),
    )
    return draft, result


def placement_to_dict(placement: PurchaseOrderPlacement):
    return {
        "placement_id": placement.id,
        "purchase_id": placement.purchase_id,
        "supplier_id": placement.supplier_id,
        "location_id": placement.location_id,
        "currency": placement.currency,
        "delivery_date": placement.delivery_date.isoformat(),
        "lines": placement.lines,
        "state": placement.state,
        "lines_appended": placement.lines_appended,
        "next_line_index": placement.next_line_index,
        "total": placement.total_lines,
        "failure": placement.failure,
        "created_at": placement.created_at.isoformat() if placement.created_at else None,
        "updated_at": placement.updated_at.isoformat() if placement.updated_at else None,
    }
