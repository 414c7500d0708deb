from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import logging
import os

from pydantic import BaseModel, ConfigDict, Field

from backend import PosBackend
from errors import AmbiguousResponseError, BackendUnavailable, BillCreationAmbiguous, InvalidTransition, ValidationError
from models import (
    Alert, Bill, Money, Order, OrderStatus, OrderType, PaymentMethod, PaymentStatus,
    Receipt, ReceiptLine, ZERO, money, to_decimal, wire_money,
)
from services.amounts import normalize_amounts
from services.order_status import Actor, OrderStateMachine
from services.projection import as_id

logger = logging.getLogger(__name__)

BILLS_ENDPOINT = "bills_management.php"

# --- Service charge policy ---
# manual: operator enters an absolute amount; auto_percent: percentage of subtotal for Dine In orders
SERVICE_CHARGE_MODE = os.getenv("SERVICE_CHARGE_MODE", "manual").strip().lower()
SERVICE_CHARGE_PERCENT = Decimal(os.getenv("SERVICE_CHARGE_PERCENT", "10"))

HUNDRED = Decimal("100")


class BillInputs(BaseModel):
    service_charge: Optional[Decimal] = None
    discount_percentage: Decimal = ZERO


class BillAmounts(BaseModel):
    subtotal: Money
    service_charge: Money
    discount_percentage: Money
    discount_amount: Money
    grand_total: Money


def resolve_service_charge(order: Order, entered: Optional[Decimal], mode: str = None, percent: Decimal = None) -> Decimal:
    mode = mode or SERVICE_CHARGE_MODE
    percent = SERVICE_CHARGE_PERCENT if percent is None else percent
    if mode == "auto_percent" and order.order_type == OrderType.DINE_IN:
        return order.subtotal * percent / HUNDRED
    return entered if entered is not None else ZERO


def compute_bill_amounts(subtotal: Decimal, service_charge: Decimal, discount_percentage: Decimal) -> BillAmounts:
    """discount = (subtotal + service) x pct / 100; grand = max(0, subtotal + service - discount)."""
    if service_charge < ZERO:
        raise ValidationError("Service charge cannot be negative.")
    if discount_percentage < ZERO or discount_percentage > HUNDRED:
        raise ValidationError("Discount percentage must be between 0 and 100.")

    discount_amount = (subtotal + service_charge) * discount_percentage / HUNDRED
    grand_total = max(ZERO, subtotal + service_charge - discount_amount)
    return BillAmounts(
        subtotal=money(subtotal),
        service_charge=money(service_charge),
        discount_percentage=money(discount_percentage),
        discount_amount=money(discount_amount),
        grand_total=money(grand_total),
    )


# ============================================================================
# BILL REGISTRY - guards against generating twice for one order
# ============================================================================

class BillRegistry:
    def __init__(self):
        self._bills: Dict[str, Bill] = {}

    def get(self, order_id: Any) -> Optional[Bill]:
        return self._bills.get(str(order_id))

    def remember(self, bill: Bill):
        self._bills[str(bill.order_id)] = bill

    def reset(self, order_id: Any) -> bool:
        return self._bills.pop(str(order_id), None) is not None

    def clear(self):
        self._bills.clear()


bill_registry = BillRegistry()


# ============================================================================
# BACKEND REQUEST SHAPES
# ============================================================================

class CreateBillRequest(BaseModel):
    """Carries total_amount, which is how the backend knows to create rather than update."""
    order_id: Union[int, str]
    total_amount: Decimal
    service_charge: Decimal
    discount: Decimal
    grand_total: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.UNPAID

    def payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "total_amount": wire_money(self.total_amount),
            "service_charge": wire_money(self.service_charge),
            "discount": wire_money(self.discount),
            "grand_total": wire_money(self.grand_total),
            "payment_method": self.payment_method.value,
            "payment_status": self.payment_status.value,
        }


class BillPaymentUpdate(BaseModel):
    """Payment fields only; totals are rejected outright so an update can never create a second bill."""
    model_config = ConfigDict(extra="forbid")

    order_id: Union[int, str]
    bill_id: Optional[Union[int, str]] = None
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    cash_received: Optional[Decimal] = None
    change: Optional[Decimal] = None
    customer_id: Optional[Union[int, str]] = None

    def payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "order_id": self.order_id,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method.value,
        }
        if self.bill_id is not None:
            payload["bill_id"] = self.bill_id
        if self.cash_received is not None:
            payload["cash_received"] = wire_money(self.cash_received)
            payload["change"] = wire_money(self.change or ZERO)
        if self.payment_method == PaymentMethod.CREDIT:
            payload["customer_id"] = self.customer_id
            payload["is_credit"] = True
        return payload


# ============================================================================
# BILL I/O
# ============================================================================

def extract_bill_record(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, dict):
        if data.get("success") and isinstance(data.get("data"), dict):
            inner = data["data"]
            return inner["bill"] if isinstance(inner.get("bill"), dict) else inner
        if isinstance(data.get("bill"), dict):
            return data["bill"]
        if "bill_id" in data:
            return data
        if isinstance(data.get("data"), list) and data["data"] and isinstance(data["data"][0], dict):
            return data["data"][0]
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None


def project_bill(record: Dict[str, Any], order_id: Any) -> Bill:
    amounts = normalize_amounts(record, items=[])
    return Bill(
        bill_id=as_id(record.get("bill_id", record.get("id"))),
        order_id=as_id(record.get("order_id")) or order_id,
        total_amount=amounts.subtotal,
        service_charge=amounts.service_charge,
        discount_amount=amounts.discount_amount,
        discount_percentage=money(to_decimal(record.get("discount_percentage")) or ZERO),
        grand_total=amounts.net_total,
        payment_status=PaymentStatus.parse(record.get("payment_status")),
        payment_method=PaymentMethod.parse(record.get("payment_method")),
        cash_received=money(to_decimal(record.get("cash_received")) or ZERO),
        change=money(to_decimal(record.get("change")) or ZERO),
        customer_id=as_id(record.get("customer_id")),
    )


async def fetch_existing_bill(backend: PosBackend, order_id: Any) -> Optional[Bill]:
    """GET with order_id only; never carries totals."""
    response = await backend.get(BILLS_ENDPOINT, params={"order_id": order_id})
    if not response.ok:
        logger.info(f"ℹ️  No bill fetched for order {order_id}: {response.message}")
        return None
    record = extract_bill_record(response.data)
    if not record or record.get("bill_id", record.get("id")) is None:
        return None
    bill = project_bill(record, order_id)
    logger.info(f"✅ Found existing bill {bill.bill_id} for order {order_id}")
    return bill


async def create_bill(backend: PosBackend, request: CreateBillRequest) -> Bill:
    response = await backend.post(BILLS_ENDPOINT, request.payload())
    data = response.data if isinstance(response.data, dict) else {}

    if response.status == 0:
        raise BackendUnavailable(f"Failed to generate bill: {response.message}")
    if not (response.ok and data.get("success") is True and data.get("data")):
        raise AmbiguousResponseError(
            f"Failed to generate bill: {response.message or 'unexpected response from server'}",
            http_status=response.status,
            body=response.data,
            tried_urls=response.tried_urls,
        )

    inner = data["data"] if isinstance(data["data"], dict) else {}
    bill_id = inner.get("bill_id")
    if bill_id is None and isinstance(inner.get("bill"), dict):
        bill_id = inner["bill"].get("bill_id")
    if bill_id is None:
        logger.error(f"❌ Bill created for order {request.order_id} but no bill_id returned: {data}")
        raise BillCreationAmbiguous(
            "Bill may have been created but its ID was not returned. Check the bills list before retrying.",
            http_status=response.status,
            body=response.data,
            tried_urls=response.tried_urls,
        )

    logger.info(f"✅ Bill {bill_id} created for order {request.order_id}")
    return Bill(
        bill_id=as_id(bill_id),
        order_id=request.order_id,
        total_amount=money(request.total_amount),
        service_charge=money(request.service_charge),
        discount_amount=money(request.discount),
        grand_total=money(request.grand_total),
        payment_status=request.payment_status,
        payment_method=request.payment_method,
    )


async def update_payment_on_bill(backend: PosBackend, update: BillPaymentUpdate):
    """Returns the backend response; callers decide what a failure means."""
    response = await backend.post(BILLS_ENDPOINT, update.payload())
    if response.ok:
        logger.info(f"✅ Bill {update.bill_id} for order {update.order_id} marked {update.payment_status.value}")
    else:
        logger.error(f"❌ Bill update for order {update.order_id} failed: {response.message}")
    return response


# ============================================================================
# RECEIPT
# ============================================================================

def assemble_receipt(order: Order, bill: Bill) -> Receipt:
    lines = [
        ReceiptLine(
            dish_id=item.dish_id,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
            category_id=item.category_id,
        )
        for item in order.items
        if item.quantity > 0
    ]
    if not lines:
        raise ValidationError("No items found for this order. Cannot generate a receipt without items.")
    return Receipt(
        order_id=order.order_id,
        order_number=order.order_number,
        bill_id=bill.bill_id,
        order_type=order.order_type,
        table_number=order.table_number,
        lines=lines,
        subtotal=bill.total_amount,
        service_charge=bill.service_charge,
        discount_percentage=bill.discount_percentage,
        discount_amount=bill.discount_amount,
        grand_total=bill.grand_total,
        payment_method=bill.payment_method,
        payment_status=bill.payment_status,
    )


def render_receipt_html(receipt: Receipt) -> str:
    rows = "".join(
        f"<tr><td>{line.name}</td><td>{line.quantity}</td><td>{line.unit_price:.2f}</td><td>{line.line_total:.2f}</td></tr>"
        for line in receipt.lines
    )
    table = f"<p>Table: {receipt.table_number}</p>" if receipt.table_number else ""
    return (
        f"<div class=\"receipt\"><h3>{receipt.order_number}</h3>"
        f"<p>Bill #{receipt.bill_id or '-'} | {receipt.order_type.value}</p>{table}"
        f"<table>{rows}</table>"
        f"<p>Subtotal: {receipt.subtotal:.2f}</p>"
        f"<p>Service Charge: {receipt.service_charge:.2f}</p>"
        f"<p>Discount: {receipt.discount_amount:.2f}</p>"
        f"<p><b>Grand Total: {receipt.grand_total:.2f}</b></p>"
        f"<p>{receipt.payment_method.value} / {receipt.payment_status.value}</p></div>"
    )


# ============================================================================
# GENERATE BILL
# ============================================================================

class BillResult(BaseModel):
    bill: Bill
    receipt: Optional[Receipt] = None
    alert: Alert
    already_generated: bool = False
    order_status: OrderStatus
    warnings: List[str] = Field(default_factory=list)


async def generate_bill(
    backend: PosBackend,
    machine: OrderStateMachine,
    order: Order,
    inputs: BillInputs,
    registry: BillRegistry = None,
) -> BillResult:
    registry = registry or bill_registry
    if order.details_limited or order.order_id is None:
        raise ValidationError("Order details are incomplete. Reload the order before generating a bill.")

    # inputs are checked before any backend call
    service_charge = resolve_service_charge(order, inputs.service_charge)
    amounts = compute_bill_amounts(order.subtotal, service_charge, inputs.discount_percentage)

    cached = registry.get(order.order_id)
    if cached is not None:
        raise ValidationError(
            f"Bill #{cached.bill_id} has already been generated for {order.order_number}. "
            "Reset the bill before generating again."
        )

    existing = await fetch_existing_bill(backend, order.order_id)
    if existing is not None:
        registry.remember(existing)
        return BillResult(
            bill=existing,
            receipt=assemble_receipt(order, existing) if order.items else None,
            alert=Alert.info(f"Bill #{existing.bill_id} already exists for {order.order_number}."),
            already_generated=True,
            order_status=order.display_status,
        )

    if order.display_status != OrderStatus.RUNNING:
        raise InvalidTransition(
            f'Bill can only be generated for running orders; {order.order_number} is "{order.display_status.value}".'
        )
    if not order.items:
        raise ValidationError("Cannot generate a bill for an order without items.")

    bill = await create_bill(backend, CreateBillRequest(
        order_id=order.order_id,
        total_amount=amounts.subtotal,
        service_charge=amounts.service_charge,
        discount=amounts.discount_amount,
        grand_total=amounts.grand_total,
    ))
    bill.discount_percentage = amounts.discount_percentage
    registry.remember(bill)

    # Bill creation has completed; only now is the status moved forward
    transition = await machine.transition(order, OrderStatus.BILL_GENERATED, Actor.BILL_GENERATOR)
    warnings = list(transition.warnings)
    if transition.updated:
        alert = Alert.success(f"Bill #{bill.bill_id} generated for {order.order_number}. Grand total: {amounts.grand_total:.2f}")
    else:
        warnings.append(f"Bill was generated but the order status could not be updated: {transition.message or 'unknown error'}")
        alert = Alert.warning(f"Bill #{bill.bill_id} generated, but the order status update failed. Please update the status manually.")

    return BillResult(
        bill=bill,
        receipt=assemble_receipt(order, bill),
        alert=alert,
        order_status=transition.status,
        warnings=warnings,
    )
