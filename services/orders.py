from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import logging
import time

from pydantic import BaseModel, Field

from backend import BackendResponse, PosBackend
from errors import AmbiguousResponseError, BackendUnavailable, InvalidTransition, OrderNotFound, ValidationError
from models import (
    Alert, Bill, Order, OrderStatus, OrderType, PaymentMethod, PaymentStatus, ZERO, money, wire_money,
)
from services.billing import fetch_existing_bill
from services.kitchen import KotDispatchResult, PrintDispatcher, build_category_kitchen_map
from services.lookups import fetch_categories
from services.order_status import (
    Actor, OrderStateMachine, available_actions, can_delete, can_edit, validate_manual_transition,
)
from services.projection import (
    as_id, extract_items, extract_list, extract_order_record, order_number_for, project_item, project_order,
    resolve_order,
)
from session import Session

logger = logging.getLogger(__name__)

ORDERS_ENDPOINT = "order_management.php"
ORDER_BY_ID_ENDPOINT = "get_ordersbyid.php"
ORDER_ITEMS_ENDPOINT = "get_orderdetails.php"
ORDER_ITEMS_UPLOAD_ENDPOINT = "upload_orderdetails.php"
CREATE_ORDER_ENDPOINT = "create_order_with_kitchen.php"


# ============================================================================
# ORDER CACHE
# ============================================================================

class OrderCache:
    """
    Last backend-confirmed order list per (branch, terminal).

    Every mutation bumps `generation`; a list fetch that started under an
    older generation is discarded instead of overwriting newer state.

    A scope stays registered only while a dashboard keeps listing it;
    `evict_idle` drops scopes (and their tokens) nobody has asked for lately.
    """

    def __init__(self):
        self.generation = 0
        self._orders: Dict[str, List[Order]] = {}
        self._sessions: Dict[str, Session] = {}
        self._last_seen: Dict[str, float] = {}

    @staticmethod
    def scope(session: Session) -> str:
        return f"{session.branch_id}:{session.terminal}"

    def register(self, session: Session, now: float = None):
        scope = self.scope(session)
        self._sessions[scope] = session
        self._last_seen[scope] = time.monotonic() if now is None else now

    def is_registered(self, session: Session) -> bool:
        return self.scope(session) in self._sessions

    def unregister(self, session: Session) -> bool:
        return self._drop(self.scope(session))

    def evict_idle(self, max_idle: float, now: float = None) -> List[str]:
        now = time.monotonic() if now is None else now
        idle = [scope for scope, seen in self._last_seen.items() if now - seen > max_idle]
        for scope in idle:
            self._drop(scope)
        if idle:
            logger.info(f"ℹ️  Dropped {len(idle)} idle order scope(s): {', '.join(idle)}")
        return idle

    def _drop(self, scope: str) -> bool:
        self._orders.pop(scope, None)
        self._last_seen.pop(scope, None)
        return self._sessions.pop(scope, None) is not None

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def orders(self, session: Session) -> List[Order]:
        return list(self._orders.get(self.scope(session), []))

    def bump(self):
        self.generation += 1

    def store(self, session: Session, orders: List[Order], started_at: int) -> bool:
        if started_at != self.generation:
            logger.info(f"ℹ️  Discarding order list for {self.scope(session)}: a mutation happened while it was loading")
            return False
        self._orders[self.scope(session)] = orders
        return True

    def clear(self):
        self._orders.clear()
        self._sessions.clear()
        self._last_seen.clear()
        self.generation = 0


order_cache = OrderCache()


def _raise_for_failure(response: BackendResponse, action: str):
    if response.status == 0:
        raise BackendUnavailable(f"Failed to {action}: {response.message}")
    raise AmbiguousResponseError(
        f"Failed to {action}: {response.message or 'unexpected response from server'}",
        http_status=response.status,
        body=response.data,
        tried_urls=response.tried_urls,
    )


def _confirmed(response: BackendResponse) -> bool:
    return response.ok and isinstance(response.data, dict) and response.data.get("success") is True


# ============================================================================
# LIST / DETAIL
# ============================================================================

async def list_orders(
    backend: PosBackend,
    session: Session,
    status: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    cache: OrderCache = None,
    touch: bool = True,
) -> List[Order]:
    """`touch=False` refreshes a scope without counting as dashboard activity."""
    cache = cache or order_cache
    params: Dict[str, Any] = {"terminal": session.terminal, "branch_id": session.require_branch()}
    if status and status.lower() != "all":
        params["status"] = status
    if from_date:
        params["from_date"] = from_date
    if to_date:
        params["to_date"] = to_date

    started_at = cache.generation
    response = await backend.get(ORDERS_ENDPOINT, params=params)
    if not response.ok:
        _raise_for_failure(response, "load orders")

    orders = [project_order(record) for record in extract_list(response.data)]
    logger.info(f"✅ Loaded {len(orders)} orders for branch {session.branch_id}")

    if len(params) == 2:
        if touch:
            cache.register(session)
        if cache.is_registered(session):
            cache.store(session, orders, started_at)

    if "status" in params:
        wanted = OrderStatus.parse(status)
        orders = [order for order in orders if order.display_status == wanted]
    return orders


class OrderDetail(BaseModel):
    order: Order
    bill: Optional[Bill] = None
    actions: List[str] = Field(default_factory=list)
    alert: Optional[Alert] = None
    warnings: List[str] = Field(default_factory=list)


async def fetch_order_items(backend: PosBackend, order_id: Any, order_number: str) -> List[Dict[str, Any]]:
    response = await backend.post(ORDER_ITEMS_ENDPOINT, {"order_id": order_id, "orderid": order_number})
    if not response.ok:
        logger.warning(f"⚠️ Could not load items for {order_number}: {response.message}")
        return []
    return extract_items(response.data, None) or extract_list(response.data)


async def load_order(
    backend: PosBackend,
    session: Session,
    order_id: Any,
    order_number: Optional[str] = None,
    cache: OrderCache = None,
) -> OrderDetail:
    """Order plus its existing bill; falls back to the cached list, then to a stub."""
    cache = cache or order_cache
    order_number = order_number or order_number_for(order_id)
    response = await backend.post(ORDER_BY_ID_ENDPOINT, {"order_id": order_id, "orderid": order_number})

    warnings = []
    record = extract_order_record(response.data) if response.ok else None
    if record:
        raw_items = extract_items(response.data, record)
        if not raw_items:
            raw_items = await fetch_order_items(backend, order_id, order_number)
        order = project_order(record, raw_items)
        if order.order_id is None:
            order.order_id = as_id(order_id)
            order.order_number = order_number
    else:
        order, warning = resolve_order(None, order_id, order_number, cache.orders(session))
        if warning:
            warnings.append(warning)
        elif not order.items:
            order.items = [project_item(raw) for raw in await fetch_order_items(backend, order_id, order_number)]

    bill = None if order.details_limited else await fetch_existing_bill(backend, order.order_id)
    return OrderDetail(
        order=order,
        bill=bill,
        actions=available_actions(order, bill, session),
        alert=Alert.warning(warnings[0]) if warnings else None,
        warnings=warnings,
    )


def require_details(order: Order):
    if order.details_limited:
        raise OrderNotFound(f"Order {order.order_number} could not be loaded. Refresh and try again.")


# ============================================================================
# PLACE
# ============================================================================

class CartItem(BaseModel):
    dish_id: Union[int, str]
    price: Decimal
    quantity: int = 1
    name: Optional[str] = None
    category_id: Optional[Union[int, str]] = None
    kitchen_id: Optional[Union[int, str]] = None


class PlaceOrderRequest(BaseModel):
    order_type: OrderType = OrderType.DINE_IN
    hall_id: Optional[Union[int, str]] = None
    table_id: Optional[Union[int, str]] = None
    customer_id: Optional[Union[int, str]] = None
    comments: str = ""
    items: List[CartItem] = Field(default_factory=list)


class OrderMutationResult(BaseModel):
    order: Order
    alert: Alert
    kot: Optional[KotDispatchResult] = None
    warnings: List[str] = Field(default_factory=list)


def extract_created_order_id(data: Any) -> Optional[Union[int, str]]:
    """order_id from nested {success, data}, direct, or {order: {...}} responses."""
    if not isinstance(data, dict):
        return None
    inner = data.get("data")
    if data.get("success") is True and isinstance(inner, dict):
        nested = inner.get("order") if isinstance(inner.get("order"), dict) else {}
        found = inner.get("order_id") or nested.get("order_id")
        if found:
            return as_id(found)
    if data.get("order_id") or data.get("id"):
        return as_id(data.get("order_id") or data.get("id"))
    if isinstance(data.get("order"), dict):
        return as_id(data["order"].get("order_id") or data["order"].get("id"))
    return None


def _cart_to_order(order_id: Any, request: PlaceOrderRequest, subtotal: Decimal) -> Order:
    items = [
        project_item({
            "dish_id": item.dish_id,
            "name": item.name,
            "price": str(item.price),
            "quantity": item.quantity,
            "category_id": item.category_id,
            "kitchen_id": item.kitchen_id,
        })
        for item in request.items
    ]
    return Order(
        order_id=order_id,
        order_number=order_number_for(order_id),
        order_type=request.order_type,
        table_id=request.table_id if request.order_type == OrderType.DINE_IN else None,
        hall_id=request.hall_id if request.order_type == OrderType.DINE_IN else None,
        customer_id=request.customer_id,
        subtotal=money(subtotal),
        net_total=money(subtotal),
        status=OrderStatus.RUNNING,
        raw_status=OrderStatus.RUNNING.value,
        status_key="running",
        items=items,
    )


async def place_order(
    backend: PosBackend,
    session: Session,
    machine: OrderStateMachine,
    dispatcher: PrintDispatcher,
    request: PlaceOrderRequest,
    cache: OrderCache = None,
) -> OrderMutationResult:
    cache = cache or order_cache
    dine_in = request.order_type == OrderType.DINE_IN
    if dine_in and (request.hall_id in (None, "", 0) or request.table_id in (None, "", 0)):
        raise ValidationError("Please select a hall and table for Dine In orders")
    if not request.items:
        raise ValidationError("Cart is empty. Please add items")
    if any(item.quantity < 1 or item.price < ZERO for item in request.items):
        raise ValidationError("Every item needs a quantity of at least 1 and a non-negative price.")
    branch_id = session.require_branch()

    table = await machine.tables.ensure_available(request.table_id) if dine_in else None

    subtotal = sum((item.price * item.quantity for item in request.items), ZERO)
    payload = {
        "customer_id": request.customer_id,
        "order_type": request.order_type.value,
        "order_status": OrderStatus.RUNNING.value,
        "service_charge": 0,
        "discount_amount": 0,
        "order_taker_id": 1,
        "payment_mode": PaymentMethod.CASH.value,
        "branch_id": branch_id,
        "bill_by": 0,
        "hall_id": request.hall_id if dine_in else 0,
        "table_id": request.table_id if dine_in else 0,
        "comments": request.comments,
        "terminal": session.terminal,
        "items": [
            {"dish_id": item.dish_id, "price": wire_money(item.price), "quantity": item.quantity}
            for item in request.items
        ],
    }
    response = await backend.post(CREATE_ORDER_ENDPOINT, payload)
    if not response.ok or (isinstance(response.data, dict) and response.data.get("success") is False):
        _raise_for_failure(response, "create order")

    order_id = extract_created_order_id(response.data)
    if order_id is None:
        logger.error(f"❌ Order creation returned no order_id: {response.data}")
        raise AmbiguousResponseError(
            "Order creation failed: the server did not return an order ID. Please check the orders list before retrying.",
            http_status=response.status,
            body=response.data,
            tried_urls=response.tried_urls,
        )
    cache.bump()
    order = _cart_to_order(order_id, request, subtotal)
    logger.info(f"✅ Order {order.order_number} created ({request.order_type.value}, {len(request.items)} items)")

    warnings = []
    if dine_in:
        warning = await machine.tables.occupy(request.table_id, table)
        if warning:
            warnings.append(warning)

    category_map = build_category_kitchen_map(await fetch_categories(backend, session))
    kot = await dispatcher.dispatch_kot(order, category_map)
    warnings.extend(kot.warnings)

    if warnings:
        alert = Alert.warning(f"Order {order.order_number} placed with warnings: {warnings[0]}")
    else:
        alert = Alert.success(f"Order {order.order_number} placed and sent to kitchen.")
    return OrderMutationResult(order=order, alert=alert, kot=kot, warnings=warnings)


# ============================================================================
# UPDATE / TRANSFER / DELETE
# ============================================================================

class UpdateOrderRequest(BaseModel):
    status: Optional[OrderStatus] = None
    table_id: Optional[Union[int, str]] = None
    discount_amount: Optional[Decimal] = None
    items: Optional[List[CartItem]] = None


async def update_order(
    backend: PosBackend,
    session: Session,
    machine: OrderStateMachine,
    order: Order,
    changes: UpdateOrderRequest,
    cache: OrderCache = None,
) -> OrderMutationResult:
    cache = cache or order_cache
    require_details(order)
    current = order.display_status
    if not can_edit(current):
        raise InvalidTransition(f'Order {order.order_number} is "{current.value}" and can no longer be edited.')
    target = changes.status or current
    if target != current:
        validate_manual_transition(order, target)
    if changes.items is not None and not changes.items:
        raise ValidationError("Order must have at least one item.")
    discount = changes.discount_amount if changes.discount_amount is not None else order.discount_amount
    if discount < ZERO:
        raise ValidationError("Discount cannot be negative.")

    new_table_id = changes.table_id if changes.table_id not in (None, "") else order.table_id
    transferring = order.is_dine_in and new_table_id is not None and str(new_table_id) != str(order.table_id)
    new_table = await machine.tables.ensure_available(new_table_id, own_table_id=order.table_id) if transferring else None

    if changes.items is not None:
        subtotal = sum((item.price * item.quantity for item in changes.items), ZERO)
    else:
        subtotal = order.subtotal
    net_total = max(ZERO, subtotal - discount)

    response = await backend.post(ORDERS_ENDPOINT, {
        "order_id": order.order_id,
        "order_type": order.order_type.value,
        "order_status": target.value,
        "table_id": new_table_id,
        "discount_amount": wire_money(discount),
        "g_total_amount": wire_money(subtotal),
        "service_charge": wire_money(order.service_charge),
        "net_total_amount": wire_money(net_total),
        "terminal": session.terminal,
    })
    if not _confirmed(response):
        _raise_for_failure(response, "update order details")
    cache.bump()

    warnings = []
    updated = order.model_copy(deep=True)
    updated.status = target
    updated.raw_status = target.value
    updated.status_key = target.value.lower()
    updated.table_id = new_table_id
    updated.subtotal = money(subtotal)
    updated.discount_amount = money(discount)
    updated.net_total = money(net_total)

    if changes.items is not None:
        items_response = await backend.post(ORDER_ITEMS_UPLOAD_ENDPOINT, {
            "order_id": order.order_id,
            "items": [
                {
                    "order_id": order.order_id,
                    "dish_id": item.dish_id,
                    "quantity": item.quantity,
                    "price": wire_money(item.price),
                    "total_amount": wire_money(item.price * item.quantity),
                    "terminal": session.terminal,
                }
                for item in changes.items
            ],
            "delete_existing": True,
        })
        if items_response.ok:
            updated.items = _cart_to_order(order.order_id, PlaceOrderRequest(items=changes.items), subtotal).items
        else:
            logger.warning(f"⚠️ Items upload for {order.order_number} failed: {items_response.message}")
            warnings.append("Order details updated, but there was an issue updating items. Please check manually.")

    if target == OrderStatus.CANCELLED and order.is_dine_in:
        warning = await machine.tables.release(order.table_id)
        if warning:
            warnings.append(warning)
    elif transferring:
        warnings.extend(await machine.tables.transfer(order.table_id, new_table_id, new_table))

    if warnings:
        alert = Alert.warning(warnings[0])
    else:
        alert = Alert.success(f"Order {order.order_number} updated successfully.")
    return OrderMutationResult(order=updated, alert=alert, warnings=warnings)


async def delete_order(
    backend: PosBackend,
    order: Order,
    cache: OrderCache = None,
) -> Alert:
    cache = cache or order_cache
    if not can_delete(order.display_status):
        raise ValidationError('Cannot delete order with "Complete" status. The order has been finalized.')
    response = await backend.delete(ORDERS_ENDPOINT, {"order_id": order.order_id, "orderid": order.order_number})
    if not _confirmed(response):
        _raise_for_failure(response, "delete order")
    cache.bump()
    logger.info(f"✅ Order {order.order_number} deleted")
    return Alert.success(response.message or f"Order {order.order_number} deleted successfully!")


# ============================================================================
# STATUS
# ============================================================================

async def change_status(
    machine: OrderStateMachine,
    order: Order,
    target: OrderStatus,
    cache: OrderCache = None,
) -> OrderMutationResult:
    """Manual dropdown change; Bill Generated and Complete are refused before any request."""
    cache = cache or order_cache
    require_details(order)
    transition = await machine.transition(order, target, Actor.MANUAL)
    if not transition.updated:
        raise AmbiguousResponseError(f"Failed to update order status: {transition.message or 'unknown error'}")
    cache.bump()
    warnings = list(transition.warnings)
    if warnings:
        alert = Alert.warning(f"Order {order.order_number} is now {target.value}, but: {warnings[0]}")
    else:
        alert = Alert.success(f"Order {order.order_number} status updated to {target.value}.")
    return OrderMutationResult(order=order, alert=alert, warnings=warnings)


async def cancel_order(machine: OrderStateMachine, order: Order, cache: OrderCache = None) -> OrderMutationResult:
    return await change_status(machine, order, OrderStatus.CANCELLED, cache=cache)


async def mark_complete(
    backend: PosBackend,
    machine: OrderStateMachine,
    order: Order,
    bill: Optional[Bill],
    cache: OrderCache = None,
) -> OrderMutationResult:
    """Remedy for a payment whose status update was lost; only a Paid bill qualifies."""
    cache = cache or order_cache
    require_details(order)
    bill = bill or await fetch_existing_bill(backend, order.order_id)
    if bill is None or bill.payment_status != PaymentStatus.PAID:
        raise ValidationError("Order can only be marked complete after its bill has been paid.")
    if order.display_status == OrderStatus.COMPLETE:
        return OrderMutationResult(order=order, alert=Alert.info(f"Order {order.order_number} is already complete."))
    if order.display_status not in (OrderStatus.RUNNING, OrderStatus.BILL_GENERATED):
        raise InvalidTransition(f'Order {order.order_number} is "{order.display_status.value}" and cannot be marked complete.')

    transition = await machine.transition(order, OrderStatus.COMPLETE, Actor.REMEDY)
    if not transition.updated:
        raise AmbiguousResponseError(f"Failed to mark order complete: {transition.message or 'unknown error'}")
    cache.bump()
    return OrderMutationResult(order=order, alert=Alert.success(f"Order {order.order_number} marked as Complete."))
