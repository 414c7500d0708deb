from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple, Union
import logging

from pydantic import BaseModel, Field

from backend import PosBackend
from errors import InvalidTransition, PaymentFailed, ValidationError
from models import (
    Alert, Bill, Customer, Money, Order, OrderStatus, PaymentMethod, PaymentStatus, ZERO, money,
)
from services.billing import BillPaymentUpdate, BillRegistry, bill_registry, fetch_existing_bill, update_payment_on_bill
from services.order_status import Actor, OrderStateMachine

logger = logging.getLogger(__name__)


class PaymentInputs(BaseModel):
    mode: PaymentMethod
    cash_received: Optional[Decimal] = None
    customer_id: Optional[Union[int, str]] = None


class PaymentResult(BaseModel):
    bill: Bill
    alert: Alert
    order_status: OrderStatus
    display_status: OrderStatus
    status_updated: bool
    table_released: bool = False
    cash_received: Money = ZERO
    change: Money = ZERO
    customer: Optional[Customer] = None
    remedy: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


def validate_payment(bill: Bill, inputs: PaymentInputs) -> Tuple[Decimal, Decimal]:
    """
    Check a payment before anything is sent. Returns (cash_received, change).

    Card and Online always settle the exact grand total; Cash must cover it.
    """
    if bill.is_settled:
        raise ValidationError(f"This bill has already been settled ({bill.payment_status.value}).")

    grand_total = bill.grand_total
    if inputs.mode == PaymentMethod.CREDIT:
        if inputs.customer_id in (None, ""):
            raise ValidationError("Please select a customer for credit payment.")
        return ZERO, ZERO

    if inputs.mode == PaymentMethod.CASH:
        cash_received = inputs.cash_received
        if cash_received is None or cash_received <= ZERO:
            raise ValidationError("Please enter the cash amount received.")
        if cash_received < grand_total:
            raise ValidationError(
                f"Insufficient cash. Received {money(cash_received):.2f}, grand total is {grand_total:.2f}."
            )
        return money(cash_received), money(max(ZERO, cash_received - grand_total))

    return grand_total, ZERO


def find_customer(customers: Iterable[Customer], customer_id: Any) -> Optional[Customer]:
    for customer in customers or []:
        if str(customer.customer_id) == str(customer_id):
            return customer
    return None


async def pay_bill(
    backend: PosBackend,
    machine: OrderStateMachine,
    order: Order,
    bill: Bill,
    inputs: PaymentInputs,
    customers: Iterable[Customer] = (),
    registry: BillRegistry = None,
) -> PaymentResult:
    current = order.display_status
    if current not in (OrderStatus.RUNNING, OrderStatus.BILL_GENERATED):
        raise InvalidTransition(f'Order {order.order_number} is "{current.value}" and cannot be paid.')
    cash_received, change = validate_payment(bill, inputs)
    is_credit = inputs.mode == PaymentMethod.CREDIT

    bill_id = bill.bill_id
    if bill_id is None:
        existing = await fetch_existing_bill(backend, order.order_id)
        bill_id = existing.bill_id if existing else None

    update = BillPaymentUpdate(
        order_id=order.order_id,
        bill_id=bill_id,
        payment_status=PaymentStatus.CREDIT if is_credit else PaymentStatus.PAID,
        payment_method=inputs.mode,
        cash_received=cash_received if inputs.mode == PaymentMethod.CASH else None,
        change=change if inputs.mode == PaymentMethod.CASH else None,
        customer_id=inputs.customer_id if is_credit else None,
    )
    response = await update_payment_on_bill(backend, update)
    explicit_failure = isinstance(response.data, dict) and response.data.get("success") is False
    if not response.ok or explicit_failure:
        # Nothing else happens: no status change, no table release
        raise PaymentFailed(
            f"Payment failed: {response.message or 'bill could not be updated'}",
            http_status=response.status,
            body=response.data,
            tried_urls=response.tried_urls,
        )

    # a settled bill no longer needs the generation guard
    (registry or bill_registry).reset(order.order_id)

    paid_bill = bill.model_copy(update={
        "bill_id": bill_id,
        "payment_status": update.payment_status,
        "payment_method": update.payment_method,
        "cash_received": cash_received,
        "change": change,
        "customer_id": update.customer_id,
    })

    if is_credit:
        transition = await machine.transition(order, OrderStatus.BILL_GENERATED, Actor.PAYMENT, credit=True)
    else:
        transition = await machine.transition(order, OrderStatus.COMPLETE, Actor.PAYMENT)

    customer = find_customer(customers, inputs.customer_id) if is_credit else None
    warnings = list(transition.warnings)
    remedy = None

    if transition.updated:
        if is_credit:
            who = customer.name if customer and customer.name else f"customer #{inputs.customer_id}"
            alert = Alert.success(f"Credit payment recorded for {who}.")
        elif inputs.mode == PaymentMethod.CASH:
            alert = Alert.success(f"Payment successful! Change: {change:.2f}")
        else:
            alert = Alert.success(f"Payment successful via {inputs.mode.value}.")
    else:
        target = "Bill Generated (Credit)" if is_credit else "Complete"
        alert = Alert.warning(
            f"Payment recorded successfully, but order status update failed: {transition.message or 'unknown error'}. "
            f"You may need to manually update the order status to {target}."
        )
        warnings.append("Order status is stale after payment.")
        remedy = None if is_credit else "mark_complete"

    logger.info(
        f"{'✅' if transition.updated else '⚠️'} Payment for {order.order_number}: {inputs.mode.value}, "
        f"grand total {bill.grand_total}, change {change}, status updated={transition.updated}"
    )
    return PaymentResult(
        bill=paid_bill,
        alert=alert,
        order_status=transition.status,
        display_status=transition.display_status,
        status_updated=transition.updated,
        table_released=transition.table_released,
        cash_received=cash_received,
        change=change,
        customer=customer,
        remedy=remedy,
        warnings=warnings,
    )
