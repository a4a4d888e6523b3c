from tests.fakes import FakeResponse

AUTH_PATH = "/api/Auth/AuthorizeByApplication"
SUPPLIERS = "/api/Inventory/GetSuppliers"


def test_request_uses_cached_token_and_base_url(lw, http):
    http.add(SUPPLIERS, FakeResponse(200, []))

    lw.get(SUPPLIERS)

    call = http.calls_to(SUPPLIERS)[0]
    assert call["url"] == "https://eu-ext.linnworks.net/api/Inventory/GetSuppliers"
    assert call["headers"]["Authorization"] == "tok-1"


def test_stale_token_is_refreshed_and_call_retried_once(lw, http):
    http.routes[AUTH_PATH] = [
        FakeResponse(200, {"Token": "tok-1", "Server": "eu-ext.linnworks.net"}),
        FakeResponse(200, {"Token": "tok-2", "Server": "eu-ext.linnworks.net"}),
    ]
    http.add(SUPPLIERS, FakeResponse(401, text="expired"), FakeResponse(200, [{"SupplierID": "s1"}]))

    resp = lw.get(SUPPLIERS)

    assert resp.status_code == 200
    tokens = [c["headers"]["Authorization"] for c in http.calls_to(SUPPLIERS)]
    assert tokens == ["tok-1", "tok-2"]
    assert len(http.calls_to(AUTH_PATH)) == 2


def test_persistent_forbidden_is_not_retried_forever(lw, http):
    http.add(SUPPLIERS, FakeResponse(403, text="forbidden"))

    resp = lw.get(SUPPLIERS)

    assert resp.status_code == 403
    assert len(http.calls_to(SUPPLIERS)) == 2
