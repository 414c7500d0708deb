from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import re

from pydantic import BaseModel, Field

from backend import BackendResponse, PosBackend
from errors import InvalidTransition, ValidationError
from models import Bill, Order, OrderStatus, PaymentMethod, PaymentStatus
from services.tables import TableService
from session import Session

logger = logging.getLogger(__name__)

STATUS_ENDPOINT = "chnageorder_status.php"
SUCCESS_WORDS = re.compile(r"\bsuccess(ful|fully)?\b", re.IGNORECASE)

MANUAL_REJECTION = (
    'Cannot set status to "Bill Generated" or "Complete" from dropdown. '
    "Bill must be generated first or receipt must be printed."
)


class Actor(str, Enum):
    MANUAL = "manual"
    BILL_GENERATOR = "bill_generator"
    RECEIPT_PRINT = "receipt_print"
    PAYMENT = "payment"
    REMEDY = "mark_complete"


# (from, to) -> actors allowed to drive that edge
TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.PENDING): {Actor.MANUAL},
    (OrderStatus.PENDING, OrderStatus.RUNNING): {Actor.MANUAL},
    (OrderStatus.PENDING, OrderStatus.CANCELLED): {Actor.MANUAL},
    (OrderStatus.RUNNING, OrderStatus.PENDING): {Actor.MANUAL},
    (OrderStatus.RUNNING, OrderStatus.RUNNING): {Actor.MANUAL},
    (OrderStatus.RUNNING, OrderStatus.CANCELLED): {Actor.MANUAL},
    (OrderStatus.RUNNING, OrderStatus.BILL_GENERATED): {Actor.BILL_GENERATOR, Actor.RECEIPT_PRINT, Actor.PAYMENT},
    # a bill exists but its "Bill Generated" status write was lost
    (OrderStatus.RUNNING, OrderStatus.COMPLETE): {Actor.PAYMENT, Actor.REMEDY},
    (OrderStatus.BILL_GENERATED, OrderStatus.BILL_GENERATED): {Actor.PAYMENT, Actor.RECEIPT_PRINT},
    (OrderStatus.BILL_GENERATED, OrderStatus.COMPLETE): {Actor.PAYMENT, Actor.REMEDY},
}

EDITABLE = (OrderStatus.PENDING, OrderStatus.RUNNING)


def can_transition(current: OrderStatus, target: OrderStatus, actor: Actor) -> bool:
    return actor in TRANSITIONS.get((current, target), set())


def can_edit(status: OrderStatus) -> bool:
    return status in EDITABLE


def can_delete(status: OrderStatus) -> bool:
    return status != OrderStatus.COMPLETE


def validate_manual_transition(order: Order, target: OrderStatus):
    """Dropdown changes are checked here and never reach the backend when illegal."""
    if target in (OrderStatus.BILL_GENERATED, OrderStatus.COMPLETE, OrderStatus.CREDIT):
        raise InvalidTransition(MANUAL_REJECTION)
    current = order.display_status
    if not can_transition(current, target, Actor.MANUAL):
        raise InvalidTransition(
            f'Order {order.order_number} is "{current.value}" and can no longer be changed to "{target.value}".'
        )


def available_actions(order: Order, bill: Optional[Bill], session: Session) -> List[str]:
    """Actions the dashboard should offer for this order, per state and role."""
    if order.details_limited:
        return ["view"] if session.can("view") else []

    status = order.display_status
    actions = ["view"]
    if can_edit(status):
        actions += ["edit", "change_status", "cancel", "kot"]
    if status == OrderStatus.RUNNING and (bill is None or bill.bill_id is None):
        actions.append("generate_bill")
    billed = status == OrderStatus.BILL_GENERATED or (status == OrderStatus.RUNNING and bill is not None and bill.bill_id is not None)
    if billed and not (bill and bill.is_settled):
        actions.append("pay")
    if status in (OrderStatus.RUNNING, OrderStatus.BILL_GENERATED) and bill and bill.payment_status == PaymentStatus.PAID:
        # payment went through but the status update did not
        actions.append("mark_complete")
    if status in (OrderStatus.BILL_GENERATED, OrderStatus.CREDIT, OrderStatus.COMPLETE) or (bill and bill.bill_id):
        actions.append("print")
    if can_delete(status):
        actions.append("delete")
    return [action for action in actions if session.can(action)]


def status_update_succeeded(response: BackendResponse) -> bool:
    if not response.ok:
        return False
    data = response.data
    if not isinstance(data, dict):
        return False
    if "success" in data:
        # an explicit flag wins over whatever the message says
        return data["success"] is True or str(data["success"]).lower() in ("true", "1")
    if str(data.get("status", "")).lower() == "success":
        return True
    return SUCCESS_WORDS.search(response.message or "") is not None


class TransitionResult(BaseModel):
    status: OrderStatus
    display_status: OrderStatus
    updated: bool
    message: Optional[str] = None
    table_released: bool = False
    warnings: List[str] = Field(default_factory=list)


class OrderStateMachine:
    """Issues status updates for one order and fires the table side effects that follow them."""

    def __init__(self, backend: PosBackend, session: Session, tables: Optional[TableService] = None):
        self.backend = backend
        self.session = session
        self.tables = tables or TableService(backend, session)

    async def send_status(
        self,
        order: Order,
        status: OrderStatus,
        payment_status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> BackendResponse:
        if status == OrderStatus.CREDIT:
            raise ValidationError("Credit is recorded through payment fields, not as an order status.")
        payload: Dict[str, Any] = {
            "status": status.value,
            "order_id": order.order_id,
            "orderid": order.order_number,
        }
        if payment_status is not None:
            payload["payment_status"] = payment_status.value
        if payment_method is not None:
            payload["payment_method"] = payment_method.value
        return await self.backend.post(STATUS_ENDPOINT, payload)

    async def transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        credit: bool = False,
    ) -> TransitionResult:
        current = order.display_status
        if actor == Actor.MANUAL:
            validate_manual_transition(order, target)
        elif not can_transition(current, target, actor) and not (current == OrderStatus.CREDIT and target == OrderStatus.BILL_GENERATED):
            raise InvalidTransition(
                f'Order {order.order_number} cannot move from "{current.value}" to "{target.value}".'
            )

        response = await self.send_status(
            order,
            target,
            payment_status=PaymentStatus.CREDIT if credit else None,
            payment_method=PaymentMethod.CREDIT if credit else None,
        )
        updated = status_update_succeeded(response)
        if updated:
            logger.info(f"✅ Order {order.order_number}: {current.value} -> {target.value}{' (credit)' if credit else ''}")
            order.status = target
            order.raw_status = target.value
            order.status_key = target.value.lower()
            if credit:
                order.is_credit = True
                order.payment_status = PaymentStatus.CREDIT
                order.payment_mode = PaymentMethod.CREDIT
        else:
            logger.error(f"❌ Status update for {order.order_number} to {target.value} failed: {response.message}")
        result = TransitionResult(status=order.status, display_status=order.display_status, updated=updated, message=response.message)

        # A recorded payment frees the table even when the status write is stale;
        # the mark-complete remedy follows such a payment, so it never releases again
        frees_table = (target in (OrderStatus.COMPLETE, OrderStatus.CANCELLED) or credit) and actor != Actor.REMEDY
        if order.is_dine_in and frees_table and (updated or actor == Actor.PAYMENT):
            warning = await self.tables.release(order.table_id)
            if warning:
                result.warnings.append(warning)
            else:
                result.table_released = order.table_id not in (None, "", 0)
        return result
