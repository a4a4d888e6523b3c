import logging
from datetime import datetime

from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from config import config
from db.connection import engine, SessionLocal
from db.models import Base, ReplenishmentSuggestion, PurchaseOrderPlacement
from db.placements import (
    record_placement, record_progress, claim_placement, is_abandoned, load_placement, placement_to_dict,
)
from errors import (
    InvalidForecastInput, AuthenticationFailed, UpstreamUnavailable, AmbiguousOutcome,
    PlacementInProgress, ProgressNotSaved,
)
from integrations.catalog import list_suppliers, list_locations
from integrations.client import LinnworksClient
from integrations.session_cache import SessionCache
from integrations.stock_reader import StockPositionReader
from models.demand_model import load_sales_velocity
from models.purchase_order_model import (
    PurchaseOrderDraft, PurchaseOrderOrchestrator, PlacementState, OrderResult, check_resumable,
)
from models.reorder_model import ForecastInputs, compute_forecast, forecast_from_position
from utils.ai_config import MODEL_VERSION, DEFAULT_LOOKBACK_DAYS

# ✅ Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("ReplenishmentEngine")

app = Flask(__name__)
CORS(app)

# ✅ Database initialization and health check
try:
    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("✅ Database connection established successfully.")
except SQLAlchemyError as e:
    logger.error(f"❌ Database connection failed: {e}")
else:
    logger.info("✅ Replenishment tables ensured in database.")

session_cache = SessionCache.from_config()
lw_client = LinnworksClient(session_cache)

logger.info("🚀 Replenishment engine initialized successfully.")


# ---------------------------------------------------------
# Error mapping
# ---------------------------------------------------------
def _error(exc, status):
    return jsonify({"status": "error", "message": str(exc), **exc.to_dict()}), status


@app.errorhandler(InvalidForecastInput)
def handle_invalid_forecast(exc):
    return _error(exc, 400)


@app.errorhandler(AuthenticationFailed)
@app.errorhandler(UpstreamUnavailable)
def handle_upstream(exc):
    logger.error(f"Inventory platform error: {exc}")
    return _error(exc, 502)


@app.errorhandler(AmbiguousOutcome)
@app.errorhandler(PlacementInProgress)
def handle_ambiguous(exc):
    return _error(exc, 409)


@app.errorhandler(ValueError)
def handle_bad_request(exc):
    return jsonify({"status": "error", "message": str(exc)}), 400


# ---------------------------------------------------------
# Request parsing
# ---------------------------------------------------------
REQUIRED_FORECAST_FIELDS = ("avg_daily", "lead_time_days", "review_days")
OPTIONAL_FORECAST_FIELDS = ("buffer_days", "service_level_z", "horizon_days", "on_hand", "in_order_book", "due")


def _number(data, name):
    try:
        return float(data[name])
    except (TypeError, ValueError):
        raise InvalidForecastInput(name, f"{name} must be numeric, got {data[name]!r}")


def _whole_number(data, name):
    value = _number(data, name)
    if not value.is_integer():
        raise InvalidForecastInput(name, f"{name} must be a whole number, got {data[name]!r}")
    return int(value)


def _forecast_inputs(data) -> ForecastInputs:
    for name in REQUIRED_FORECAST_FIELDS:
        if data.get(name) is None:
            raise InvalidForecastInput(name, f"{name} is required")

    kwargs = {name: _number(data, name) for name in REQUIRED_FORECAST_FIELDS}
    for name in OPTIONAL_FORECAST_FIELDS:
        if data.get(name) is not None:
            kwargs[name] = _number(data, name)
    if data.get("daily_std_dev") is not None:
        kwargs["daily_std_dev"] = _number(data, "daily_std_dev")
    for name in ("pack_size", "moq"):
        if data.get(name) is not None:
            kwargs[name] = _whole_number(data, name)
    return ForecastInputs(**kwargs)


def _id_list(data, key):
    value = data.get(key)
    if value is not None and not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return value or []


def _identifiers(data):
    skus = _id_list(data, "skus")
    if skus:
        return skus, True
    stock_item_ids = _id_list(data, "stock_item_ids")
    if stock_item_ids:
        return stock_item_ids, False
    raise ValueError("skus or stock_item_ids required")


def _upsert(table):
    return postgresql.insert(table) if engine.dialect.name == "postgresql" else sqlite.insert(table)


# ---------------------------------------------------------
# Routes
# ---------------------------------------------------------
@app.route("/api/v1/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


@app.route("/api/v1/forecast", methods=["POST"])
def forecast():
    """
    Body:
    {
      "avg_daily": 10, "daily_std_dev": 2.5,     # std optional
      "lead_time_days": 14, "review_days": 7, "buffer_days": 0,
      "service_level_z": 1.65, "horizon_days": 30,
      "on_hand": 50, "in_order_book": 10, "due": 0,
      "pack_size": 12, "moq": 24,                # optional
      "fallback_safety_ratio": 0.3               # optional
    }
    """
    data = request.get_json(silent=True) or {}
    ratio = data.get("fallback_safety_ratio")
    result = compute_forecast(
        _forecast_inputs(data),
        fallback_safety_ratio=float(ratio) if ratio is not None else None,
    )
    return jsonify({"status": "success", "result": result.to_dict()})


@app.route("/api/v1/stock/positions", methods=["POST"])
def stock_positions():
    """
    Body:
    {
      "skus": ["SHAMPOO-250"],        # or "stock_item_ids": [...]
      "include_supplier": false,
      "location_id": "..."            # optional; default sums all locations
    }
    """
    data = request.get_json(silent=True) or {}
    identifiers, by_sku = _identifiers(data)
    positions = StockPositionReader(lw_client).read_positions(
        identifiers,
        by_sku=by_sku,
        include_supplier=bool(data.get("include_supplier", False)),
        location_id=data.get("location_id"),
    )
    return jsonify({
        "status": "success",
        "count": len(positions),
        "positions": {key: p.to_dict() for key, p in positions.items()},
    })


@app.route("/api/v1/replenishment/suggest", methods=["POST"])
def suggest_replenishment():
    """
    Body:
    {
      "skus": ["SHAMPOO-250", "MASK-500"],
      "location_id": "...",            # optional
      "lookback_days": 90,             # sales history window for velocity
      "demand": {"MASK-500": {"avg_daily": 3.2, "std_daily": 1.1}},   # optional overrides
      "params": {"lead_time_days": 14, "review_days": 7, "buffer_days": 2,
                 "service_level_z": 1.65, "horizon_days": 30, "pack_size": 6, "moq": 12},
      "persist": true
    }
    """
    data = request.get_json(silent=True) or {}
    skus = _id_list(data, "skus")
    if not skus:
        return jsonify({"status": "error", "message": "skus required"}), 400

    location_id = data.get("location_id")
    params = data.get("params") or {}
    overrides = data.get("demand") or {}

    positions = StockPositionReader(lw_client).read_positions(
        skus, by_sku=True, include_supplier=True, location_id=location_id
    )
    unmatched = [s for s in skus if s not in positions]

    missing_demand = [s for s in positions if s not in overrides]
    demand = dict(overrides)
    if missing_demand:
        demand.update(load_sales_velocity(
            missing_demand, lookback_days=int(data.get("lookback_days", DEFAULT_LOOKBACK_DAYS))
        ))

    rows = []
    suggestions = []
    for sku, position in positions.items():
        result = forecast_from_position(position, demand[sku], params)
        supplier = position.default_supplier
        rows.append({
            "sku": sku,
            "stock_item_id": position.stock_item_id,
            "supplier_id": supplier.supplier_id if supplier else None,
            "demand": demand[sku],
            "position": position.to_dict(),
            "forecast": result.to_dict(),
        })
        suggestions.append({
            "sku": sku,
            "stock_item_id": position.stock_item_id,
            "location_id": location_id or "",
            "avg_daily_demand": float(demand[sku].get("avg_daily", 0.0)),
            "std_daily_demand": float(demand[sku].get("std_daily") or 0.0),
            "on_hand": position.on_hand,
            "in_order_book": position.in_order_book,
            "due": position.due,
            "reorder_point": round(result.rop, 3),
            "safety_stock": round(result.safety, 3),
            "target_level": round(result.target, 3),
            "suggested_qty": result.qty,
            "supplier_id": supplier.supplier_id if supplier else None,
            "model_version": MODEL_VERSION,
        })

    if suggestions and data.get("persist", True):
        db = SessionLocal()
        try:
            stmt = _upsert(ReplenishmentSuggestion).values(suggestions)
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    ReplenishmentSuggestion.sku,
                    ReplenishmentSuggestion.location_id,
                    ReplenishmentSuggestion.model_version
                ],
                set_={
                    "stock_item_id": stmt.excluded.stock_item_id,
                    "avg_daily_demand": stmt.excluded.avg_daily_demand,
                    "std_daily_demand": stmt.excluded.std_daily_demand,
                    "on_hand": stmt.excluded.on_hand,
                    "in_order_book": stmt.excluded.in_order_book,
                    "due": stmt.excluded.due,
                    "reorder_point": stmt.excluded.reorder_point,
                    "safety_stock": stmt.excluded.safety_stock,
                    "target_level": stmt.excluded.target_level,
                    "suggested_qty": stmt.excluded.suggested_qty,
                    "supplier_id": stmt.excluded.supplier_id,
                    "generated_at": datetime.utcnow()
                }
            )
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return jsonify({"status": "error", "message": str(e)}), 500
        finally:
            db.close()

    return jsonify({"status": "success", "count": len(rows), "rows": rows, "unmatched": unmatched})


@app.route("/api/v1/replenishment/suggestions", methods=["GET"])
def get_suggestions():
    location_id = request.args.get("location_id", "")
    db = SessionLocal()
    try:
        rows = (
            db.query(ReplenishmentSuggestion)
            .filter_by(location_id=location_id)
            .order_by(ReplenishmentSuggestion.suggested_qty.desc())
            .all()
        )
        return jsonify([
            {
                "sku": r.sku,
                "stock_item_id": r.stock_item_id,
                "supplier_id": r.supplier_id,
                "reorder_point": float(r.reorder_point),
                "safety_stock": float(r.safety_stock),
                "target_level": float(r.target_level),
                "suggested_qty": r.suggested_qty,
                "generated_at": r.generated_at.strftime("%Y-%m-%d %H:%M:%S")
            } for r in rows
        ])
    finally:
        db.close()


@app.route("/api/v1/suppliers", methods=["GET"])
def suppliers():
    return jsonify({"status": "success", "suppliers": list_suppliers(lw_client)})


@app.route("/api/v1/locations", methods=["GET"])
def locations():
    return jsonify({"status": "success", "locations": list_locations(lw_client)})


def _placement_response(placement, result, ok_status):
    body = placement_to_dict(placement)
    if result.state == PlacementState.COMPLETE:
        return jsonify({"status": "success", "placement": body}), ok_status
    # A failed placement still returns what exists remotely
    status = 504 if result.state == PlacementState.AMBIGUOUS else 502
    return jsonify({"status": "error", "message": str(result.failure), "placement": body}), status


def _run_placement(db, placement, draft, step, ok_status):
    """
    Run a placement step against a row already marked in flight, saving the
    cursor after every remote mutation. A failed save stops the run; a failed
    final save still answers with the partial result.
    """
    placement_id = placement.id

    def save(progress):
        try:
            record_progress(db, draft, progress, placement)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Could not save progress of placement {placement_id}: {e}")
            raise ProgressNotSaved(str(e)) from e

    result = step(PurchaseOrderOrchestrator(lw_client, on_progress=save))
    try:
        record_placement(db, draft, result, placement)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Placement {placement_id} ended as {result.state.value} but was not saved: {e}")
        return jsonify({
            "status": "error",
            "message": "placement outcome could not be saved; the ledger row stays in flight",
            "placement_id": placement_id,
            "result": result.to_dict(),
        }), 500

    logger.info(f"Placement {placement_id} finished as {result.state.value}")
    return _placement_response(placement, result, ok_status)


@app.route("/api/v1/purchase-orders", methods=["POST"])
def place_purchase_order():
    """
    Body:
    {
      "supplier_id": "...", "location_id": "...", "currency": "GBP",
      "delivery_date": "2026-11-02",
      "lines": [{"stock_item_id": "...", "qty": 540, "unit_cost": 3.25}]
    }
    """
    data = request.get_json(silent=True) or {}
    draft = PurchaseOrderDraft.from_dict(data)

    db = SessionLocal()
    try:
        # committed before the header POST so a crash never looks like "not started"
        in_flight = OrderResult(None, 0, len(draft.lines), 0, PlacementState.IN_FLIGHT)
        placement = record_placement(db, draft, in_flight)
        db.commit()
        return _run_placement(db, placement, draft, lambda o: o.place(draft), 201)
    finally:
        db.close()


def _load(db, placement_id):
    placement = db.get(PurchaseOrderPlacement, placement_id)
    if placement is None:
        return None, None, None
    draft, result = load_placement(placement)
    return placement, draft, result


@app.route("/api/v1/purchase-orders/<placement_id>", methods=["GET"])
def get_purchase_order(placement_id):
    db = SessionLocal()
    try:
        placement = db.get(PurchaseOrderPlacement, placement_id)
        if placement is None:
            return jsonify({"status": "error", "message": "placement not found"}), 404
        return jsonify({"status": "success", "placement": placement_to_dict(placement)})
    finally:
        db.close()


@app.route("/api/v1/purchase-orders/<placement_id>/resume", methods=["POST"])
def resume_purchase_order(placement_id):
    db = SessionLocal()
    try:
        placement, draft, stored = _load(db, placement_id)
        if placement is None:
            return jsonify({"status": "error", "message": "placement not found"}), 404
        check_resumable(stored, draft)
        if stored.state == PlacementState.COMPLETE:
            return _placement_response(placement, stored, 200)

        claim_placement(db, placement)
        return _run_placement(db, placement, draft, lambda o: o.resume(stored, draft), 200)
    finally:
        db.close()


@app.route("/api/v1/purchase-orders/<placement_id>/reconcile", methods=["POST"])
def reconcile_purchase_order(placement_id):
    """
    Body (optional):
    {
      "purchase_id": "..."     # header found on the platform when none was recorded
    }
    """
    data = request.get_json(silent=True) or {}
    db = SessionLocal()
    try:
        placement, draft, result = _load(db, placement_id)
        if placement is None:
            return jsonify({"status": "error", "message": "placement not found"}), 404
        if result.state == PlacementState.IN_FLIGHT and not is_abandoned(placement):
            raise PlacementInProgress()

        reconciled = PurchaseOrderOrchestrator(lw_client).reconcile(
            result, draft, purchase_id=data.get("purchase_id") or None
        )
        try:
            record_placement(db, draft, reconciled, placement)
            db.commit()
        except StaleDataError:
            db.rollback()
            raise PlacementInProgress(f"placement {placement_id} was changed by another request")
        logger.info(f"Placement {placement_id} reconciled to {reconciled.state.value}")
        return jsonify({"status": "success", "placement": placement_to_dict(placement)})
    finally:
        db.close()


if __name__ == "__main__":
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=config.FLASK_ENV == "development")
