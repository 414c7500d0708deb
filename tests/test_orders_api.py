import asyncio

from conftest import ACCOUNTANT_HEADERS, HEADERS
from models import Order
from routers.order_refresh import refresh_scope
from services.order_status import MANUAL_REJECTION
from services.orders import OrderCache, list_orders, order_cache

CART = [
    {"dish_id": 11, "name": "Chicken Biryani", "price": 400, "quantity": 1, "category_id": 1},
    {"dish_id": 12, "name": "Mint Lassi", "price": 200, "quantity": 2, "category_id": 2},
]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["order_refresh_task_running"] is False


def test_order_refresh_status(client):
    body = client.get("/order-refresh/status").json()
    assert body["running"] is False


def test_missing_branch_is_rejected(client, fake_php):
    resp = client.get("/orders", headers={"X-Terminal": "1"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["alert"]["message"] == "Branch ID is missing. Please login again."
    assert fake_php.calls == []


def test_list_orders(client, fake_php):
    resp = client.get("/orders", headers=HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["count"] == 1
    assert body["orders"][0]["order_number"] == "ORD-501"
    assert body["orders"][0]["net_total"] == 1000.0
    assert fake_php.calls_to("order_management.php", "GET")[0]["params"] == {"terminal": "1", "branch_id": "3"}


def test_list_orders_filtered_by_status(client, fake_php):
    resp = client.get("/orders", params={"status": "Complete"}, headers=HEADERS)
    assert resp.json()["count"] == 0
    assert fake_php.calls_to("order_management.php", "GET")[0]["params"]["status"] == "Complete"


def test_detail_falls_back_to_cached_list(client, fake_php):
    client.get("/orders", headers=HEADERS)
    del fake_php.orders[501]

    resp = client.get("/orders/ORD-501", headers=HEADERS)
    body = resp.json()
    assert body["order"]["details_limited"] is False
    assert body["order"]["status"] == "Running"
    assert body["alert"] is None


def test_unknown_order_is_a_limited_stub(client, fake_php):
    resp = client.get("/orders/999", headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["order"]["details_limited"] is True
    assert body["actions"] == ["view"]
    assert body["alert"]["type"] == "warning"


def test_invalid_order_reference(client):
    resp = client.get("/orders/ORD-", headers=HEADERS)
    assert resp.status_code == 400


def test_place_order_on_occupied_table_is_refused(client, fake_php):
    resp = client.post("/orders", json={"order_type": "Dine In", "hall_id": 2, "table_id": 7, "items": CART}, headers=HEADERS)
    assert resp.status_code == 409
    assert "occupied" in resp.json()["detail"]["alert"]["message"]
    assert fake_php.calls_to("create_order_with_kitchen.php") == []


def test_place_dine_in_order(client, fake_php):
    resp = client.post("/orders", json={"order_type": "Dine In", "hall_id": 2, "table_id": 8, "items": CART}, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["order"]["order_number"] == "ORD-900"
    assert body["order"]["subtotal"] == 800.0
    assert body["alert"]["type"] == "success"
    assert len(body["kot"]["results"]) == 2
    assert fake_php.tables[8]["status"] == "Running"

    payload = fake_php.calls_to("create_order_with_kitchen.php")[0]["payload"]
    assert payload["order_status"] == "Running"
    assert payload["branch_id"] == 3
    assert payload["items"] == [
        {"dish_id": 11, "price": 400.0, "quantity": 1},
        {"dish_id": 12, "price": 200.0, "quantity": 2},
    ]


def test_place_take_away_order_leaves_tables_alone(client, fake_php):
    resp = client.post("/orders", json={"order_type": "Take Away", "items": CART}, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    assert resp.json()["order"]["table_id"] is None
    assert fake_php.table_updates() == []


def test_place_order_validation(client, fake_php):
    no_table = client.post("/orders", json={"order_type": "Dine In", "items": CART}, headers=HEADERS)
    assert no_table.status_code == 400
    assert no_table.json()["detail"]["alert"]["message"] == "Please select a hall and table for Dine In orders"

    empty = client.post("/orders", json={"order_type": "Take Away", "items": []}, headers=HEADERS)
    assert empty.status_code == 400
    assert empty.json()["detail"]["alert"]["message"] == "Cart is empty. Please add items"
    assert fake_php.calls_to("create_order_with_kitchen.php") == []


def test_place_order_without_returned_id_is_ambiguous(client, fake_php):
    fake_php.create_order_response = {"success": True, "data": {}}

    resp = client.post("/orders", json={"order_type": "Dine In", "hall_id": 2, "table_id": 8, "items": CART}, headers=HEADERS)
    assert resp.status_code == 502
    assert "did not return an order ID" in resp.json()["detail"]["alert"]["message"]
    assert fake_php.table_updates() == []
    assert fake_php.calls_to("print_kitchen_receipt.php") == []


def test_transfer_table(client, fake_php):
    resp = client.put("/orders/501", json={"table_id": 8}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    assert resp.json()["order"]["table_id"] == 8
    assert fake_php.tables[7]["status"] == "Available"
    assert fake_php.tables[8]["status"] == "Running"
    assert fake_php.orders[501]["table_id"] == 8


def test_transfer_to_occupied_table_is_refused(client, fake_php):
    fake_php.tables[8]["status"] = "Running"

    resp = client.put("/orders/501", json={"table_id": 8}, headers=HEADERS)
    assert resp.status_code == 409
    assert fake_php.calls_to("order_management.php", "POST") == []


def test_update_items_recomputes_totals(client, fake_php):
    resp = client.put("/orders/501", json={"items": CART, "discount_amount": 100}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    order = resp.json()["order"]
    assert order["subtotal"] == 800.0
    assert order["net_total"] == 700.0
    upload = fake_php.calls_to("upload_orderdetails.php")[0]["payload"]
    assert upload["delete_existing"] is True
    assert upload["items"][1]["total_amount"] == 400.0


def test_billed_order_cannot_be_edited(client, fake_php):
    fake_php.orders[501]["order_status"] = "Bill Generated"

    resp = client.put("/orders/501", json={"table_id": 8}, headers=HEADERS)
    assert resp.status_code == 400


def test_manual_status_change_to_complete_is_rejected(client, fake_php):
    resp = client.patch("/orders/501/status", json={"status": "Complete"}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"]["alert"]["message"] == MANUAL_REJECTION
    assert fake_php.calls_to("chnageorder_status.php") == []


def test_manual_status_change_to_pending(client, fake_php):
    resp = client.patch("/orders/501/status", json={"status": "Pending"}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    assert fake_php.orders[501]["order_status"] == "Pending"
    assert fake_php.table_updates() == []


def test_unknown_status_is_a_request_error(client, fake_php):
    resp = client.patch("/orders/501/status", json={"status": "Bogus"}, headers=HEADERS)
    assert resp.status_code == 422


def test_cancel_frees_table(client, fake_php):
    resp = client.post("/orders/501/cancel", headers=HEADERS)
    assert resp.status_code == 200, resp.text
    assert fake_php.orders[501]["order_status"] == "Cancelled"
    assert fake_php.tables[7]["status"] == "Available"


def test_delete_complete_order_is_refused(client, fake_php):
    fake_php.orders[501]["order_status"] = "Complete"

    resp = client.delete("/orders/501", headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"]["alert"]["message"] == 'Cannot delete order with "Complete" status. The order has been finalized.'
    assert 501 in fake_php.orders


def test_delete_order(client, fake_php):
    resp = client.delete("/orders/501", headers=HEADERS)
    assert resp.status_code == 200, resp.text
    assert 501 not in fake_php.orders
    assert fake_php.calls_to("order_management.php", "DELETE")[0]["payload"] == {"order_id": 501, "orderid": "ORD-501"}


def test_accountant_cannot_delete(client, fake_php):
    resp = client.delete("/orders/501", headers=ACCOUNTANT_HEADERS)
    assert resp.status_code == 403
    assert 501 in fake_php.orders


def test_accountant_gets_the_same_lifecycle(client, fake_php):
    resp = client.post("/orders/501/bill", json={"service_charge": 0}, headers=ACCOUNTANT_HEADERS)
    assert resp.status_code == 200, resp.text
    assert "delete" not in client.get("/orders/501", headers=ACCOUNTANT_HEADERS).json()["actions"]


def test_stale_list_is_discarded(backend, session, fake_php):
    cache = OrderCache()
    cache.store(session, [Order(order_id=1, order_number="ORD-1")], cache.generation)

    started_at = cache.generation
    cache.bump()
    assert cache.store(session, [], started_at) is False
    assert [order.order_id for order in cache.orders(session)] == [1]

    asyncio.run(list_orders(backend, session, cache=cache))
    assert [order.order_id for order in cache.orders(session)] == [501]


def test_mutations_bump_the_cache_generation(client, fake_php):
    before = order_cache.generation
    client.post("/orders/501/cancel", headers=HEADERS)
    assert order_cache.generation == before + 1


def test_idle_scope_is_evicted(session):
    cache = OrderCache()
    other = session.model_copy(update={"branch_id": 4})
    cache.register(session, now=0.0)
    cache.register(other, now=100.0)
    cache.store(session, [Order(order_id=1, order_number="ORD-1")], cache.generation)

    assert cache.evict_idle(60, now=120.0) == ["3:1"]
    assert cache.sessions() == [other]
    assert cache.orders(session) == []


def test_background_refresh_does_not_keep_a_scope_alive(backend, session, fake_php):
    order_cache.register(session, now=0.0)

    assert asyncio.run(refresh_scope(session, backend)) is True
    assert [order.order_id for order in order_cache.orders(session)] == [501]
    assert order_cache.evict_idle(60, now=120.0) == ["3:1"]
    assert order_cache.sessions() == []


def test_refresh_of_a_released_scope_stores_nothing(backend, session, fake_php):
    asyncio.run(refresh_scope(session, backend))
    assert order_cache.sessions() == []
    assert order_cache.orders(session) == []


def test_view_teardown_releases_the_scope(client, fake_php):
    client.get("/orders", headers=HEADERS)
    assert client.get("/order-refresh/status").json()["scopes"] == 1

    resp = client.delete("/order-refresh/scope", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["released"] is True
    assert client.get("/order-refresh/status").json()["scopes"] == 0
    assert client.delete("/order-refresh/scope", headers=HEADERS).json()["released"] is False
