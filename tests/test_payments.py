import asyncio
from decimal import Decimal

import pytest

from conftest import HEADERS
from errors import InvalidTransition, ValidationError
from models import Bill, Order, OrderStatus, PaymentMethod, PaymentStatus
from services.billing import bill_registry
from services.order_status import OrderStateMachine
from services.payments import PaymentInputs, pay_bill, validate_payment


def _generate_bill(client, service_charge=100, discount_percentage=10):
    resp = client.post(
        "/orders/501/bill",
        json={"service_charge": service_charge, "discount_percentage": discount_percentage},
        headers=HEADERS,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_cash_payment_completes_order_and_frees_table(client, fake_php):
    generated = _generate_bill(client)
    assert generated["bill"]["discount_amount"] == 110.0
    assert generated["bill"]["grand_total"] == 990.0
    assert generated["bill"]["payment_status"] == "Unpaid"
    assert generated["order_status"] == "Bill Generated"
    assert fake_php.orders[501]["order_status"] == "Bill Generated"

    resp = client.post("/orders/501/bill/pay", json={"mode": "Cash", "cash_received": 1000}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["alert"]["type"] == "success"
    assert body["change"] == 10.0
    assert body["bill"]["payment_status"] == "Paid"
    assert body["order_status"] == "Complete"
    assert body["status_updated"] is True
    assert body["table_released"] is True

    assert fake_php.orders[501]["order_status"] == "Complete"
    assert fake_php.bills[501]["payment_status"] == "Paid"
    assert fake_php.tables[7]["status"] == "Available"
    assert len(fake_php.table_updates("Available")) == 1


def test_payment_update_never_carries_totals(client, fake_php):
    _generate_bill(client)
    client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)

    posts = fake_php.calls_to("bills_management.php", "POST")
    assert len(posts) == 2
    assert "total_amount" in posts[0]["payload"]
    update = posts[1]["payload"]
    assert "total_amount" not in update
    assert update["bill_id"] == 3001
    assert update["payment_method"] == "Card"


def test_credit_payment_keeps_bill_generated_and_records_customer(client, fake_php):
    _generate_bill(client)

    resp = client.post("/orders/501/bill/pay", json={"mode": "Credit", "customer_id": 77}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["order_status"] == "Bill Generated"
    assert body["display_status"] == "Credit"
    assert body["bill"]["payment_status"] == "Credit"
    assert body["customer"]["name"] == "Ali Khan"
    assert "Ali Khan" in body["alert"]["message"]

    order = fake_php.orders[501]
    assert order["order_status"] == "Bill Generated"
    assert order["payment_status"] == "Credit"
    assert fake_php.bills[501]["is_credit"] is True
    assert fake_php.bills[501]["customer_id"] == 77
    assert fake_php.tables[7]["status"] == "Available"

    detail = client.get("/orders/501", headers=HEADERS).json()
    assert detail["order"]["is_credit"] is True
    assert "pay" not in detail["actions"]
    assert "print" in detail["actions"]


def test_credit_payment_requires_customer(client, fake_php):
    _generate_bill(client)

    resp = client.post("/orders/501/bill/pay", json={"mode": "Credit"}, headers=HEADERS)
    assert resp.status_code == 400
    assert "customer" in resp.json()["detail"]["alert"]["message"]
    assert len(fake_php.calls_to("bills_management.php", "POST")) == 1
    assert fake_php.calls_to("customer_management.php") == []


def test_insufficient_cash_is_rejected_before_any_request(client, fake_php):
    _generate_bill(client)

    resp = client.post("/orders/501/bill/pay", json={"mode": "Cash", "cash_received": 500}, headers=HEADERS)
    assert resp.status_code == 400
    assert "Insufficient cash" in resp.json()["detail"]["alert"]["message"]
    assert len(fake_php.calls_to("bills_management.php", "POST")) == 1
    assert fake_php.bills[501]["payment_status"] == "Unpaid"


def test_status_failure_after_payment_is_reported_with_remedy(client, fake_php):
    _generate_bill(client)
    fake_php.fail_status_update = True

    resp = client.post("/orders/501/bill/pay", json={"mode": "Cash", "cash_received": 1000}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["alert"]["type"] == "warning"
    assert "Payment recorded successfully, but order status update failed" in body["alert"]["message"]
    assert body["status_updated"] is False
    assert body["remedy"] == "mark_complete"
    assert body["bill"]["payment_status"] == "Paid"
    assert body["table_released"] is True
    assert fake_php.orders[501]["order_status"] == "Bill Generated"

    detail = client.get("/orders/501", headers=HEADERS).json()
    assert "mark_complete" in detail["actions"]
    assert "pay" not in detail["actions"]

    fake_php.fail_status_update = False
    resp = client.post("/orders/501/complete", headers=HEADERS)
    assert resp.status_code == 200, resp.text
    assert fake_php.orders[501]["order_status"] == "Complete"
    assert len(fake_php.table_updates("Available")) == 1


def test_status_refusal_with_success_wording_is_not_taken_as_success(client, fake_php):
    _generate_bill(client)
    fake_php.status_update_response = {"success": False, "message": "Status update unsuccessful: order is locked"}

    resp = client.post("/orders/501/bill/pay", json={"mode": "Cash", "cash_received": 1000}, headers=HEADERS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status_updated"] is False
    assert body["order_status"] == "Bill Generated"
    assert body["alert"]["type"] == "warning"
    assert body["remedy"] == "mark_complete"
    assert fake_php.orders[501]["order_status"] == "Bill Generated"


def test_settled_bill_leaves_the_generation_guard(client, fake_php):
    _generate_bill(client)
    assert bill_registry.get(501) is not None

    client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)
    assert bill_registry.get(501) is None


def test_failed_payment_keeps_the_generation_guard(client, fake_php):
    _generate_bill(client)
    fake_php.fail_bill_update = True

    client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)
    assert bill_registry.get(501).bill_id == 3001


def test_bill_update_failure_changes_nothing(client, fake_php):
    _generate_bill(client)
    fake_php.fail_bill_update = True

    resp = client.post("/orders/501/bill/pay", json={"mode": "Cash", "cash_received": 1000}, headers=HEADERS)
    assert resp.status_code == 502
    detail = resp.json()["detail"]
    assert detail["alert"]["type"] == "error"
    assert detail["diagnostics"]["status_code"] == 500
    assert fake_php.orders[501]["order_status"] == "Bill Generated"
    assert fake_php.table_updates() == []


def test_paying_without_a_bill_is_refused(client, fake_php):
    resp = client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)
    assert resp.status_code == 400
    assert "Generate the bill first" in resp.json()["detail"]["alert"]["message"]


def test_settled_bill_cannot_be_paid_twice(client, fake_php):
    _generate_bill(client)
    client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)

    resp = client.post("/orders/501/bill/pay", json={"mode": "Card"}, headers=HEADERS)
    assert resp.status_code == 400
    assert len(fake_php.calls_to("bills_management.php", "POST")) == 2


def _bill(**overrides):
    values = {"bill_id": 1, "order_id": 501, "grand_total": Decimal("990.00")}
    values.update(overrides)
    return Bill(**values)


def test_validate_payment_cash_change():
    cash, change = validate_payment(_bill(), PaymentInputs(mode=PaymentMethod.CASH, cash_received=Decimal("1000")))
    assert cash == Decimal("1000.00")
    assert change == Decimal("10.00")


def test_validate_payment_exact_cash_has_no_change():
    _, change = validate_payment(_bill(), PaymentInputs(mode=PaymentMethod.CASH, cash_received=Decimal("990")))
    assert change == Decimal("0.00")


@pytest.mark.parametrize("received", [None, Decimal("0"), Decimal("-5")])
def test_validate_payment_requires_positive_cash(received):
    with pytest.raises(ValidationError):
        validate_payment(_bill(), PaymentInputs(mode=PaymentMethod.CASH, cash_received=received))


@pytest.mark.parametrize("mode", [PaymentMethod.CARD, PaymentMethod.ONLINE])
def test_validate_payment_card_and_online_settle_exact_total(mode):
    cash, change = validate_payment(_bill(), PaymentInputs(mode=mode))
    assert cash == Decimal("990.00")
    assert change == Decimal("0")


def test_validate_payment_refuses_settled_bill():
    with pytest.raises(ValidationError):
        validate_payment(_bill(payment_status=PaymentStatus.PAID), PaymentInputs(mode=PaymentMethod.CARD))


def test_pay_bill_refuses_pending_order(backend, session):
    order = Order(order_id=501, order_number="ORD-501", status=OrderStatus.PENDING)
    machine = OrderStateMachine(backend, session)
    with pytest.raises(InvalidTransition):
        asyncio.run(pay_bill(backend, machine, order, _bill(), PaymentInputs(mode=PaymentMethod.CARD)))
