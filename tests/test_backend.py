import asyncio

import httpx

from backend import PosBackend
from conftest import BASE_URL


def _backend(handler):
    return PosBackend(base_url=BASE_URL, token="abc", transport=httpx.MockTransport(handler))


def test_empty_body_is_a_failure():
    response = asyncio.run(_backend(lambda request: httpx.Response(200, content=b"")).post("order_management.php", {}))
    assert response.ok is False
    assert "empty response" in response.message


def test_non_json_body_is_a_failure_with_raw_text():
    response = asyncio.run(_backend(lambda request: httpx.Response(200, text="<b>Warning</b>")).post("print.php", {}))
    assert response.ok is False
    assert response.data["rawResponse"] == "<b>Warning</b>"


def test_database_error_page_is_recognized():
    page = "Warning: mysqli_connect(): Access denied for user 'root'@'localhost' (using password: NO)"
    response = asyncio.run(_backend(lambda request: httpx.Response(200, text=page)).get("get_tables.php"))
    assert response.ok is False
    assert response.message == "Database Connection Error"


def test_empty_object_from_list_endpoint_is_an_empty_list():
    response = asyncio.run(_backend(lambda request: httpx.Response(200, json={})).post("get_categories.php", {}))
    assert response.ok is True
    assert response.data == []


def test_explicit_success_overrides_http_error_status():
    handler = lambda request: httpx.Response(500, json={"success": True, "message": "Saved with warnings"})
    response = asyncio.run(_backend(handler).post("bills_management.php", {}))
    assert response.ok is True
    assert response.status == 500


def test_network_error_returns_status_zero():
    def handler(request):
        raise httpx.ConnectError("Connection refused")

    response = asyncio.run(_backend(handler).get("order_management.php"))
    assert response.ok is False
    assert response.status == 0
    assert response.tried_urls == [f"{BASE_URL}/order_management.php"]


def test_timeout_is_flagged():
    def handler(request):
        raise httpx.ReadTimeout("timed out")

    response = asyncio.run(_backend(handler).post("print.php", {}))
    assert response.timed_out is True
    assert response.status == 0


def test_bearer_token_is_forwarded():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"success": True})

    asyncio.run(_backend(handler).get("get_tables.php"))
    assert seen["auth"] == "Bearer abc"


def test_nested_message_is_surfaced():
    handler = lambda request: httpx.Response(400, json={"success": False, "data": {"error": "Invalid table"}})
    response = asyncio.run(_backend(handler).post("table_management.php", {}))
    assert response.ok is False
    assert response.message == "Invalid table"
