import requests

from errors import UpstreamUnavailable
from integrations.client import read_json
from utils.stock_constants import (
    SUPPLIERS_PATH, LOCATIONS_PATH,
    SUPPLIER_ID_KEYS, SUPPLIER_NAME_KEYS, LOCATION_ID_KEYS, LOCATION_NAME_KEYS,
    pick, rows_of,
)


def _fetch_rows(client, path):
    try:
        resp = client.get(path)
    except requests.RequestException as e:
        raise UpstreamUnavailable(None, str(e))
    if not resp.ok:
        raise UpstreamUnavailable(resp.status_code, resp.text)
    return rows_of(read_json(resp))


def list_suppliers(client):
    """Suppliers known to the platform, normalised to {id, name}."""
    suppliers = []
    for row in _fetch_rows(client, SUPPLIERS_PATH):
        sid = pick(row, SUPPLIER_ID_KEYS)
        if sid:
            suppliers.append({"id": str(sid), "name": pick(row, SUPPLIER_NAME_KEYS, "Unknown")})
    return suppliers


def list_locations(client):
    locations = []
    for row in _fetch_rows(client, LOCATIONS_PATH):
        lid = pick(row, LOCATION_ID_KEYS)
        if lid:
            locations.append({
                "id": str(lid),
                "name": pick(row, LOCATION_NAME_KEYS, "Unknown"),
                "tag": pick(row, ("LocationTag", "Tag")),
            })
    return locations
