import pytest
import requests
from sqlalchemy.exc import OperationalError

from config import config
from db.connection import SessionLocal
from db.models import PurchaseOrderPlacement
from db.placements import claim_placement
from errors import PlacementInProgress

from tests.fakes import FakeResponse

AUTH_PATH = "/api/Auth/AuthorizeByApplication"
IDS_BY_SKU = "/api/Inventory/GetStockItemIdsBySKU"
FULL_BY_IDS = "/api/Stock/GetStockItemsFullByIds"
SUPPLIERS = "/api/Inventory/GetSuppliers"
LOCATIONS = "/api/Inventory/GetStockLocations"
CREATE = "/api/PurchaseOrder/Create_PurchaseOrder_Initial"
ADD_ITEM = "/api/PurchaseOrder/Add_PurchaseOrderItem"
GET_PO = "/api/PurchaseOrder/Get_Purchase_Order"
PURCHASE_ID = "9b7e1a40-0000-4c1d-8e2f-000000000042"

WORKED_EXAMPLE = {
    "avg_daily": 10, "daily_std_dev": 0, "lead_time_days": 14, "review_days": 7, "buffer_days": 0,
    "service_level_z": 1.64, "horizon_days": 30, "on_hand": 50, "in_order_book": 10, "due": 0,
    "pack_size": 12,
}

ORDER = {
    "supplier_id": "sup-1",
    "location_id": "loc-1",
    "currency": "GBP",
    "delivery_date": "2026-11-02",
    "lines": [
        {"stock_item_id": "item-0", "qty": 12, "unit_cost": 2.5},
        {"stock_item_id": "item-1", "qty": 24, "unit_cost": 1.75},
        {"stock_item_id": "item-2", "qty": 6, "unit_cost": 9.0},
    ],
}


def test_health(api):
    assert api.get("/api/v1/health").get_json() == {"status": "ok"}


def test_forecast_worked_example(api):
    resp = api.post("/api/v1/forecast", json=WORKED_EXAMPLE)

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "success"
    assert body["result"]["qty"] == 540


def test_forecast_rejects_negative_input_naming_the_field(api):
    resp = api.post("/api/v1/forecast", json={**WORKED_EXAMPLE, "avg_daily": -1})

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "invalid_forecast_input"
    assert body["field"] == "avg_daily"


def test_forecast_requires_core_fields(api):
    payload = dict(WORKED_EXAMPLE)
    del payload["lead_time_days"]

    resp = api.post("/api/v1/forecast", json=payload)

    assert resp.status_code == 400
    assert resp.get_json()["field"] == "lead_time_days"


def test_forecast_rejects_non_numeric_input(api):
    resp = api.post("/api/v1/forecast", json={**WORKED_EXAMPLE, "on_hand": "lots"})

    assert resp.status_code == 400
    assert resp.get_json()["field"] == "on_hand"


def test_stock_positions_by_sku(api, http):
    http.add(IDS_BY_SKU, FakeResponse(200, [{"SKU": "SHAMPOO-250", "StockItemId": "A1"}]))
    http.add(FULL_BY_IDS, FakeResponse(200, [{
        "StockItemId": "A1", "ItemNumber": "SHAMPOO-250",
        "StockLevels": [{"StockLevel": 40, "InOrderBook": 5, "Due": 12}],
    }]))

    resp = api.post("/api/v1/stock/positions", json={"skus": ["SHAMPOO-250", "GHOST-1"]})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["count"] == 1
    assert body["positions"]["SHAMPOO-250"]["on_hand"] == 40


def test_stock_positions_need_identifiers(api):
    resp = api.post("/api/v1/stock/positions", json={})
    assert resp.status_code == 400


def test_platform_outage_is_a_bad_gateway(api, http):
    http.add(FULL_BY_IDS, FakeResponse(500, text="down"))

    resp = api.post("/api/v1/stock/positions", json={"stock_item_ids": ["A1"]})

    assert resp.status_code == 502
    body = resp.get_json()
    assert body["status"] == "error"
    assert body["error"] == "upstream_unavailable"
    assert body["upstream_status"] == 500


def test_rejected_credentials_are_a_bad_gateway(api, http):
    http.routes[AUTH_PATH] = [FakeResponse(401, text="bad token")]

    resp = api.get("/api/v1/suppliers")

    assert resp.status_code == 502
    assert resp.get_json()["error"] == "authentication_failed"


def test_suggest_with_supplied_demand(api, http):
    http.add(IDS_BY_SKU, FakeResponse(200, [{"SKU": "SHAMPOO-250", "StockItemId": "A1"}]))
    http.add(FULL_BY_IDS, FakeResponse(200, [{
        "StockItemId": "A1", "ItemNumber": "SHAMPOO-250",
        "StockLevels": [{"StockLevel": 50, "InOrderBook": 10, "Due": 0}],
        "Suppliers": [{"SupplierID": "sup-1", "Supplier": "Wella", "IsDefault": True,
                       "LeadTime": 14, "SupplierPackSize": 6, "SupplierMinOrderQty": 24}],
    }]))

    resp = api.post("/api/v1/replenishment/suggest", json={
        "skus": ["SHAMPOO-250", "GHOST-1"],
        "demand": {"SHAMPOO-250": {"avg_daily": 10, "std_daily": 0}},
        "params": {"review_days": 7, "horizon_days": 30, "buffer_days": 0},
    })

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["unmatched"] == ["GHOST-1"]
    row = body["rows"][0]
    assert row["supplier_id"] == "sup-1"
    # 533 units short, rounded up to a pack of 6
    assert row["forecast"]["qty"] == 534
    assert http.calls_to(FULL_BY_IDS)[0]["json"]["request"]["DataRequirements"] == ["StockLevels", "Supplier"]

    stored = api.get("/api/v1/replenishment/suggestions").get_json()
    assert [(s["sku"], s["suggested_qty"]) for s in stored] == [("SHAMPOO-250", 534)]


def test_suggest_requires_skus(api):
    assert api.post("/api/v1/replenishment/suggest", json={}).status_code == 400


def test_supplier_and_location_listings(api, http):
    http.add(SUPPLIERS, FakeResponse(200, [{"pkSupplierId": "sup-1", "SupplierName": "Wella"}]))
    http.add(LOCATIONS, FakeResponse(200, [
        {"StockLocationId": "loc-1", "LocationName": "Main warehouse", "LocationTag": "UK"},
    ]))

    suppliers = api.get("/api/v1/suppliers").get_json()["suppliers"]
    locations = api.get("/api/v1/locations").get_json()["locations"]

    assert suppliers == [{"id": "sup-1", "name": "Wella"}]
    assert locations == [{"id": "loc-1", "name": "Main warehouse", "tag": "UK"}]


def test_complete_placement(api, http):
    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}))

    resp = api.post("/api/v1/purchase-orders", json=ORDER)

    assert resp.status_code == 201
    placement = resp.get_json()["placement"]
    assert placement["state"] == "complete"
    assert placement["purchase_id"] == PURCHASE_ID
    assert placement["lines_appended"] == 3


def test_invalid_order_is_rejected_before_any_call(api, http):
    resp = api.post("/api/v1/purchase-orders", json={**ORDER, "currency": ""})

    assert resp.status_code == 400
    assert http.calls_to(CREATE) == []


def test_partial_placement_is_persisted_and_resumable(api, http):
    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}), FakeResponse(422, text="unknown item"), FakeResponse(200, {}))

    resp = api.post("/api/v1/purchase-orders", json=ORDER)

    assert resp.status_code == 502
    placement = resp.get_json()["placement"]
    assert placement["state"] == "partially_failed"
    assert placement["purchase_id"] == PURCHASE_ID
    assert placement["lines_appended"] == 1
    assert placement["failure"]["index"] == 1
    assert placement["failure"]["upstream_status"] == 422

    placement_id = placement["placement_id"]
    stored = api.get(f"/api/v1/purchase-orders/{placement_id}").get_json()["placement"]
    assert stored["next_line_index"] == 1

    resumed = api.post(f"/api/v1/purchase-orders/{placement_id}/resume")

    assert resumed.status_code == 200
    final = resumed.get_json()["placement"]
    assert final["state"] == "complete"
    assert final["lines_appended"] == 3
    assert final["failure"] is None
    assert len(http.calls_to(CREATE)) == 1


def test_ambiguous_placement_needs_reconcile_before_resume(api, http):
    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}), requests.ReadTimeout("lost"), FakeResponse(200, {}))
    http.add(GET_PO, FakeResponse(200, {"PurchaseOrderItem": [{"fkStockItemId": "item-0"},
                                                              {"fkStockItemId": "item-1"}]}))

    resp = api.post("/api/v1/purchase-orders", json=ORDER)
    assert resp.status_code == 504
    placement_id = resp.get_json()["placement"]["placement_id"]

    refused = api.post(f"/api/v1/purchase-orders/{placement_id}/resume")
    assert refused.status_code == 409
    assert refused.get_json()["error"] == "ambiguous_outcome"

    reconciled = api.post(f"/api/v1/purchase-orders/{placement_id}/reconcile").get_json()["placement"]
    assert reconciled["state"] == "header_created"
    assert reconciled["next_line_index"] == 2

    final = api.post(f"/api/v1/purchase-orders/{placement_id}/resume").get_json()["placement"]
    assert final["state"] == "complete"
    sent = [c["json"]["addItemParameter"]["pkStockItemId"] for c in http.calls_to(ADD_ITEM)]
    assert sent == ["item-0", "item-1", "item-2"]


def test_unknown_placement_is_not_found(api):
    assert api.get("/api/v1/purchase-orders/does-not-exist").status_code == 404
    assert api.post("/api/v1/purchase-orders/does-not-exist/resume").status_code == 404


def test_fractional_pack_size_is_rejected_not_truncated(api):
    resp = api.post("/api/v1/forecast", json={**WORKED_EXAMPLE, "pack_size": 2.5})

    assert resp.status_code == 400
    assert resp.get_json()["field"] == "pack_size"


def test_whole_float_pack_size_is_accepted(api):
    resp = api.post("/api/v1/forecast", json={**WORKED_EXAMPLE, "pack_size": 12.0, "moq": 24.0})

    assert resp.status_code == 200
    assert resp.get_json()["result"]["qty"] == 540


def test_identifiers_must_be_a_list(api, http):
    positions = api.post("/api/v1/stock/positions", json={"skus": "SHAMPOO-250"})
    suggest = api.post("/api/v1/replenishment/suggest", json={"skus": "SHAMPOO-250"})

    assert positions.status_code == 400
    assert suggest.status_code == 400
    assert http.calls_to(IDS_BY_SKU) == []


def _locked(*args, **kwargs):
    raise OperationalError("UPDATE purchase_order_placements", {}, Exception("database is locked"))


def test_unsaved_progress_stops_remote_appends(api, http, monkeypatch):
    import app as app_module

    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}))
    real_progress = app_module.record_progress
    monkeypatch.setattr(app_module, "record_progress", _locked)

    resp = api.post("/api/v1/purchase-orders", json=ORDER)

    assert resp.status_code == 502
    placement = resp.get_json()["placement"]
    assert placement["state"] == "partially_failed"
    assert placement["purchase_id"] == PURCHASE_ID
    assert placement["failure"]["error"] == "progress_not_saved"
    assert http.calls_to(ADD_ITEM) == []

    monkeypatch.setattr(app_module, "record_progress", real_progress)
    resumed = api.post(f"/api/v1/purchase-orders/{placement['placement_id']}/resume")
    assert resumed.get_json()["placement"]["state"] == "complete"
    assert len(http.calls_to(CREATE)) == 1
    assert len(http.calls_to(ADD_ITEM)) == 3


def test_unsaved_outcome_leaves_placement_in_flight(api, http, monkeypatch):
    import app as app_module

    real_record = app_module.record_placement
    recorded = []

    def record_once(db, draft, result, placement=None):
        recorded.append(result.state)
        if len(recorded) > 1:
            _locked()
        return real_record(db, draft, result, placement)

    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}))
    http.add(GET_PO, FakeResponse(200, {"PurchaseOrderItem": [{}, {}, {}]}))
    monkeypatch.setattr(app_module, "record_placement", record_once)

    resp = api.post("/api/v1/purchase-orders", json=ORDER)

    assert resp.status_code == 500
    body = resp.get_json()
    assert body["result"]["purchase_id"] == PURCHASE_ID
    assert body["result"]["state"] == "complete"
    placement_id = body["placement_id"]

    stored = api.get(f"/api/v1/purchase-orders/{placement_id}").get_json()["placement"]
    assert stored["state"] == "in_flight"
    assert (stored["purchase_id"], stored["lines_appended"]) == (PURCHASE_ID, 3)

    refused = api.post(f"/api/v1/purchase-orders/{placement_id}/resume")
    assert refused.status_code == 409
    assert refused.get_json()["error"] == "placement_in_progress"
    assert api.post(f"/api/v1/purchase-orders/{placement_id}/reconcile").status_code == 409
    assert len(http.calls_to(CREATE)) == 1
    assert len(http.calls_to(ADD_ITEM)) == 3

    # once the row is stale, reconcile restores it from the platform
    monkeypatch.setattr(app_module, "record_placement", real_record)
    monkeypatch.setattr(config, "PLACEMENT_STALE_MINUTES", -1)
    reconciled = api.post(f"/api/v1/purchase-orders/{placement_id}/reconcile").get_json()["placement"]
    assert reconciled["state"] == "complete"


def test_concurrent_claims_on_one_placement(api, http):
    http.add(CREATE, FakeResponse(200, PURCHASE_ID))
    http.add(ADD_ITEM, FakeResponse(200, {}), FakeResponse(422, text="unknown item"))
    placement_id = api.post("/api/v1/purchase-orders", json=ORDER).get_json()["placement"]["placement_id"]

    first, second = SessionLocal(), SessionLocal()
    try:
        mine = first.get(PurchaseOrderPlacement, placement_id)
        theirs = second.get(PurchaseOrderPlacement, placement_id)

        claim_placement(first, mine)
        with pytest.raises(PlacementInProgress):
            claim_placement(second, theirs)
    finally:
        first.close()
        second.close()

    appends_before = len(http.calls_to(ADD_ITEM))
    refused = api.post(f"/api/v1/purchase-orders/{placement_id}/resume")

    assert refused.status_code == 409
    assert len(http.calls_to(ADD_ITEM)) == appends_before


def test_header_without_recorded_id_is_reconciled_with_operator_id(api, http):
    http.add(CREATE, requests.ReadTimeout("lost"))
    http.add(ADD_ITEM, FakeResponse(200, {}))
    http.add(GET_PO, FakeResponse(200, {"PurchaseOrderItem": [{"fkStockItemId": "item-0"}]}))

    resp = api.post("/api/v1/purchase-orders", json=ORDER)
    assert resp.status_code == 504
    placement_id = resp.get_json()["placement"]["placement_id"]

    assert api.post(f"/api/v1/purchase-orders/{placement_id}/reconcile").status_code == 409

    reconciled = api.post(f"/api/v1/purchase-orders/{placement_id}/reconcile",
                          json={"purchase_id": PURCHASE_ID}).get_json()["placement"]
    assert reconciled["purchase_id"] == PURCHASE_ID
    assert (reconciled["state"], reconciled["next_line_index"]) == ("header_created", 1)

    final = api.post(f"/api/v1/purchase-orders/{placement_id}/resume").get_json()["placement"]
    assert final["state"] == "complete"
    assert len(http.calls_to(CREATE)) == 1
    assert [c["json"]["addItemParameter"]["pkStockItemId"] for c in http.calls_to(ADD_ITEM)] == ["item-1", "item-2"]
