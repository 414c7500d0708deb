from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from typing import List, Optional
import logging

from backend import PosBackend
from errors import PosError, to_http
from models import Alert, Order, OrderStatus
from services.kitchen import PrintDispatcher
from services.notifications import ORDER_UPDATED, broadcast_update
from services.order_status import OrderStateMachine
from services.orders import (
    OrderDetail, OrderMutationResult, PlaceOrderRequest, UpdateOrderRequest,
    cancel_order, change_status, delete_order, list_orders, load_order, mark_complete, place_order, update_order,
)
from services.projection import parse_order_ref
from session import Session, get_backend, get_session, require_action

# --- Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router_orders = APIRouter(prefix="/orders", tags=["Orders"])


# --- Shared dependencies ---
async def get_state_machine(
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(get_session),
) -> OrderStateMachine:
    return OrderStateMachine(backend, session)


async def get_dispatcher(
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(get_session),
) -> PrintDispatcher:
    return PrintDispatcher(backend, session)


async def get_order_detail(
    order_ref: str,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(get_session),
) -> OrderDetail:
    order_id, order_number = parse_order_ref(order_ref)
    if order_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"alert": Alert.error("Invalid order reference.").model_dump(mode="json")})
    try:
        return await load_order(backend, session, order_id, order_number)
    except PosError as e:
        raise to_http(e)


def notify(background_tasks: BackgroundTasks, order: Order, action: str):
    background_tasks.add_task(broadcast_update, ORDER_UPDATED, {
        "order_id": order.order_id,
        "order_number": order.order_number,
        "status": order.display_status.value,
        "action": action,
    })


# --- Request Models ---
class StatusChangeRequest(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def status_must_be_known(cls, value):
        if OrderStatus.parse(value) == OrderStatus.PENDING and value.strip().lower() != "pending":
            raise ValueError(f"Unknown order status '{value}'")
        return value


class OrderListResponse(BaseModel):
    orders: List[Order]
    count: int


# --- Routes ---
@router_orders.get("", response_model=OrderListResponse)
async def get_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("view")),
):
    try:
        orders = await list_orders(backend, session, status_filter, from_date, to_date)
        return OrderListResponse(orders=orders, count=len(orders))
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error loading orders: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to load orders: {str(e)}")


@router_orders.post("", response_model=OrderMutationResult, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: PlaceOrderRequest,
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("place")),
    machine: OrderStateMachine = Depends(get_state_machine),
    dispatcher: PrintDispatcher = Depends(get_dispatcher),
):
    try:
        result = await place_order(backend, session, machine, dispatcher, request)
        notify(background_tasks, result.order, "created")
        return result
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error placing order: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to place order: {str(e)}")


@router_orders.get("/{order_ref}", response_model=OrderDetail)
async def get_order(
    session: Session = Depends(require_action("view")),
    detail: OrderDetail = Depends(get_order_detail),
):
    return detail


@router_orders.put("/{order_ref}", response_model=OrderMutationResult)
async def update_order_details(
    changes: UpdateOrderRequest,
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("edit")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        result = await update_order(backend, session, machine, detail.order, changes)
        notify(background_tasks, result.order, "updated")
        return result
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error updating order {detail.order.order_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to update order: {str(e)}")


@router_orders.patch("/{order_ref}/status", response_model=OrderMutationResult)
async def update_order_status(
    request: StatusChangeRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(require_action("change_status")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        result = await change_status(machine, detail.order, OrderStatus.parse(request.status))
        notify(background_tasks, result.order, "status_changed")
        return result
    except PosError as e:
        raise to_http(e)


@router_orders.post("/{order_ref}/cancel", response_model=OrderMutationResult)
async def cancel(
    background_tasks: BackgroundTasks,
    session: Session = Depends(require_action("cancel")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        result = await cancel_order(machine, detail.order)
        notify(background_tasks, result.order, "cancelled")
        return result
    except PosError as e:
        raise to_http(e)


@router_orders.post("/{order_ref}/complete", response_model=OrderMutationResult)
async def complete(
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("mark_complete")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        result = await mark_complete(backend, machine, detail.order, detail.bill)
        notify(background_tasks, result.order, "completed")
        return result
    except PosError as e:
        raise to_http(e)


@router_orders.delete("/{order_ref}")
async def remove_order(
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("delete")),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        alert = await delete_order(backend, detail.order)
        notify(background_tasks, detail.order, "deleted")
        return {"alert": alert, "order_id": detail.order.order_id}
    except PosError as e:
        raise to_http(e)
