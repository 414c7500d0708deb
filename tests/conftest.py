import copy
import json
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from backend import PosBackend
from session import Role, Session, get_backend

BASE_URL = "http://php.test/restuarent/api"

HEADERS = {"X-Branch-Id": "3", "X-Terminal": "1", "Authorization": "Bearer test-token"}
ACCOUNTANT_HEADERS = {**HEADERS, "X-Role": "accountant"}

SEED_ORDER = {
    "order_id": 501,
    "orderid": "ORD-501",
    "order_type": "Dine In",
    "order_status": "Running",
    "table_id": 7,
    "hall_id": 2,
    "table_number": "T7",
    "g_total_amount": "1000.00",
    "service_charge": 0,
    "discount_amount": 0,
    "payment_mode": "Cash",
    "created_at": "2026-10-18 12:00:00",
    "items": [
        {"dish_id": 11, "dish_name": "Chicken Biryani", "price": "400", "quantity": 2, "category_id": 1},
        {"dish_id": 12, "dish_name": "Mint Lassi", "price": 200, "quantity": 1, "category_id": 2},
    ],
}


class FakePhp:
    """
    In-process stand-in for the PHP backend, served through httpx.MockTransport.
    Keeps just enough state to observe what the service sent.
    """

    def __init__(self):
        self.orders: Dict[int, Dict[str, Any]] = {501: copy.deepcopy(SEED_ORDER)}
        self.bills: Dict[int, Dict[str, Any]] = {}
        self.tables: Dict[int, Dict[str, Any]] = {
            7: {"table_id": 7, "hall_id": 2, "table_number": "T7", "capacity": 4, "status": "Running"},
            8: {"table_id": 8, "hall_id": 2, "table_number": "T8", "capacity": 2, "status": "Available"},
        }
        self.categories = [
            {"category_id": 1, "name": "Rice", "kitchen_id": 10},
            {"category_id": 2, "name": "Drinks", "kitchen_id": 20},
        ]
        self.customers = [{"customer_id": 77, "name": "Ali Khan", "phone": "0300-1234567"}]
        self.calls: List[Dict[str, Any]] = []
        self.next_order_id = 900
        self.next_bill_id = 3001

        # Failure switches
        self.fail_status_update = False
        self.status_update_response = None
        self.fail_bill_update = False
        self.fail_table_update = False
        self.create_bill_response = None
        self.create_order_response = None
        self.kot_responses: Dict[str, Any] = {}
        self.receipt_response = None

    # --- helpers for assertions ---
    def calls_to(self, endpoint: str, method: str = None) -> List[Dict[str, Any]]:
        return [
            call for call in self.calls
            if call["endpoint"] == endpoint and (method is None or call["method"] == method)
        ]

    def table_updates(self, status: str = None) -> List[Dict[str, Any]]:
        return [
            call["payload"] for call in self.calls_to("table_management.php")
            if status is None or call["payload"].get("status") == status
        ]

    # --- transport ---
    def handle(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content) if request.content else {}
        params = dict(request.url.params)
        self.calls.append({"method": request.method, "endpoint": endpoint, "payload": payload, "params": params})

        handler = getattr(self, "_" + endpoint.replace(".php", ""), None)
        if handler is None:
            return httpx.Response(404, json={"success": False, "message": f"Unknown endpoint {endpoint}"})
        result = handler(request.method, payload, params)
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, tuple):
            return httpx.Response(result[0], json=result[1])
        return httpx.Response(200, json=result)

    def _order_management(self, method, payload, params):
        if method == "GET":
            return {"success": True, "data": list(copy.deepcopy(self.orders).values())}
        order_id = int(payload["order_id"])
        if method == "DELETE":
            if order_id not in self.orders:
                return 404, {"success": False, "message": "Order not found"}
            self.orders.pop(order_id)
            return {"success": True, "message": "Order deleted successfully"}
        order = self.orders[order_id]
        order.update({key: value for key, value in payload.items() if key != "terminal"})
        return {"success": True, "message": "Order updated"}

    def _get_ordersbyid(self, method, payload, params):
        order = self.orders.get(int(payload["order_id"]))
        if order is None:
            return {"success": False, "message": "Order not found"}
        return {"success": True, "data": copy.deepcopy(order)}

    def _get_orderdetails(self, method, payload, params):
        order = self.orders.get(int(payload["order_id"]), {})
        return {"success": True, "data": copy.deepcopy(order.get("items", []))}

    def _upload_orderdetails(self, method, payload, params):
        self.orders[int(payload["order_id"])]["items"] = payload["items"]
        return {"success": True}

    def _create_order_with_kitchen(self, method, payload, params):
        if self.create_order_response is not None:
            return self.create_order_response
        order_id = self.next_order_id
        self.next_order_id += 1
        self.orders[order_id] = {**payload, "order_id": order_id}
        return {"success": True, "data": {"order_id": order_id}}

    def _chnageorder_status(self, method, payload, params):
        if self.fail_status_update:
            return 500, {"success": False, "message": "Database busy"}
        if self.status_update_response is not None:
            return self.status_update_response
        order = self.orders[int(payload["order_id"])]
        order["order_status"] = payload["status"]
        for key in ("payment_status", "payment_method"):
            if key in payload:
                order[key] = payload[key]
        return {"success": True, "message": "Status updated successfully"}

    def _bills_management(self, method, payload, params):
        if method == "GET":
            bill = self.bills.get(int(params["order_id"]))
            if bill is None:
                return {"success": False, "message": "No bill found for this order"}
            return {"success": True, "data": {"bill": copy.deepcopy(bill), "bill_id": bill["bill_id"]}}
        if "total_amount" in payload:
            if self.create_bill_response is not None:
                return self.create_bill_response
            bill_id = self.next_bill_id
            self.next_bill_id += 1
            self.bills[int(payload["order_id"])] = {**payload, "bill_id": bill_id}
            return {"success": True, "data": {"bill_id": bill_id}}
        if self.fail_bill_update:
            return 500, {"success": False, "message": "Bill update failed"}
        bill = self.bills[int(payload["order_id"])]
        bill.update({key: value for key, value in payload.items() if key not in ("order_id", "bill_id")})
        return {"success": True, "message": "Bill updated successfully"}

    def _get_tables(self, method, payload, params):
        return {"success": True, "data": list(copy.deepcopy(self.tables).values())}

    def _table_management(self, method, payload, params):
        if self.fail_table_update:
            return 500, {"success": False, "message": "Table update failed"}
        self.tables[int(payload["table_id"])]["status"] = payload["status"]
        return {"success": True}

    def _get_categories(self, method, payload, params):
        return {"success": True, "data": self.categories}

    def _customer_management(self, method, payload, params):
        return {"success": True, "data": self.customers}

    def _print_kitchen_receipt(self, method, payload, params):
        response = self.kot_responses.get(str(payload["kitchen_id"]))
        if isinstance(response, Exception):
            raise response
        if response is not None:
            return response
        return {
            "success": True,
            "printed": True,
            "message": "KOT printed successfully",
            "kitchen_name": f"Kitchen {payload['kitchen_id']}",
            "printer_ip": "192.168.1.50",
        }

    def _print(self, method, payload, params):
        if isinstance(self.receipt_response, Exception):
            raise self.receipt_response
        if self.receipt_response is not None:
            return self.receipt_response
        return {"success": True, "printed": True, "message": "Receipt printed", "printers": [{"ip": "192.168.1.60", "printed": True}]}


@pytest.fixture(autouse=True)
def _reset_state(monkeypatch):
    from services.billing import bill_registry
    from services.orders import order_cache

    bill_registry.clear()
    order_cache.clear()
    monkeypatch.setattr("services.kitchen.PRINT_RETRY_DELAY", 0)
    monkeypatch.setattr("services.notifications.DASHBOARD_SYNC_URL", "")
    yield
    bill_registry.clear()
    order_cache.clear()


@pytest.fixture()
def fake_php() -> FakePhp:
    return FakePhp()


@pytest.fixture()
def backend(fake_php) -> PosBackend:
    return PosBackend(base_url=BASE_URL, token="test-token", transport=httpx.MockTransport(fake_php.handle))


@pytest.fixture()
def session() -> Session:
    return Session(terminal=1, branch_id=3, token="test-token", role=Role.BRANCH_ADMIN)


@pytest.fixture()
def client(backend):
    from main import app

    app.dependency_overrides[get_backend] = lambda: backend
    yield TestClient(app)
    app.dependency_overrides.clear()
