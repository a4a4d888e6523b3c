IDS_BY_SKU_PATH = "/api/Inventory/GetStockItemIdsBySKU"
STOCK_FULL_BY_IDS_PATH = "/api/Stock/GetStockItemsFullByIds"
SUPPLIERS_PATH = "/api/Inventory/GetSuppliers"
LOCATIONS_PATH = "/api/Inventory/GetStockLocations"
PO_CREATE_PATH = "/api/PurchaseOrder/Create_PurchaseOrder_Initial"
PO_ADD_ITEM_PATH = "/api/PurchaseOrder/Add_PurchaseOrderItem"
PO_GET_PATH = "/api/PurchaseOrder/Get_Purchase_Order"

STOCK_LEVELS = "StockLevels"
SUPPLIER = "Supplier"

# Tenants differ in the key casing they return; first present key wins
STOCK_ITEM_ID_KEYS = ("StockItemId", "pkStockItemId", "StockItemGuid", "Id", "stockItemId")
SKU_KEYS = ("SKU", "Sku", "sku", "ItemNumber")
SUPPLIER_ID_KEYS = ("SupplierID", "SupplierId", "pkSupplierId", "pkSupplierID", "fkSupplierId", "Id", "id")
SUPPLIER_NAME_KEYS = ("Supplier", "SupplierName", "Name", "name", "supplierName")
LOCATION_ID_KEYS = ("StockLocationId", "pkStockLocationId", "LocationId", "Id")
LOCATION_NAME_KEYS = ("LocationName", "Name", "Title")
PURCHASE_ID_KEYS = ("pkPurchaseId", "PurchaseId", "pkPurchaseID")


def pick(row, keys, default=None):
    if not isinstance(row, dict):
        return default
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return default


def rows_of(payload, *envelopes):
    """Return the list of records in a response, unwrapping known envelope keys."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in envelopes + ("Data", "Items"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []
