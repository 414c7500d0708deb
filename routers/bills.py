from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional
import logging

from backend import PosBackend
from errors import PosError, ValidationError, to_http
from models import Alert, Bill, Customer, PaymentMethod
from routers.order_refresh import refresh_scope
from routers.orders import get_dispatcher, get_order_detail, get_state_machine
from services.billing import BillInputs, BillResult, assemble_receipt, bill_registry, generate_bill
from services.kitchen import PrintDispatcher, ReceiptPrintResult, print_bill_receipt
from services.lookups import fetch_customers
from services.notifications import BILL_UPDATED, PAYMENT_UPDATED, broadcast_update
from services.order_status import OrderStateMachine
from services.orders import OrderDetail, order_cache
from services.payments import PaymentInputs, PaymentResult, pay_bill, validate_payment
from services.projection import parse_order_ref
from session import Session, get_backend, require_action

logger = logging.getLogger(__name__)

router_bills = APIRouter(prefix="/orders", tags=["Bills"])


# --- Request Models ---
class PayBillRequest(PaymentInputs):
    customers: Optional[List[Customer]] = None


class BillLookupResponse(BaseModel):
    bill: Optional[Bill] = None
    alert: Alert


def require_bill(detail: OrderDetail) -> Bill:
    if detail.bill is None or detail.bill.bill_id is None:
        raise ValidationError(f"No bill found for {detail.order.order_number}. Generate the bill first.")
    return detail.bill


# --- Routes ---
@router_bills.get("/{order_ref}/bill", response_model=BillLookupResponse)
async def get_bill(
    session: Session = Depends(require_action("view")),
    detail: OrderDetail = Depends(get_order_detail),
):
    if detail.bill is None:
        return BillLookupResponse(alert=Alert.info(f"No bill has been generated for {detail.order.order_number} yet."))
    return BillLookupResponse(bill=detail.bill, alert=Alert.info(f"Bill #{detail.bill.bill_id} ({detail.bill.payment_status.value})"))


@router_bills.post("/{order_ref}/bill", response_model=BillResult)
async def create_order_bill(
    inputs: BillInputs,
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("generate_bill")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        result = await generate_bill(backend, machine, detail.order, inputs)
        if not result.already_generated:
            order_cache.bump()
            background_tasks.add_task(broadcast_update, BILL_UPDATED, {
                "order_id": detail.order.order_id,
                "bill_id": result.bill.bill_id,
                "grand_total": float(result.bill.grand_total),
            })
        return result
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error generating bill for {detail.order.order_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to generate bill: {str(e)}")


@router_bills.delete("/{order_ref}/bill/cache")
async def reset_bill_cache(
    order_ref: str,
    session: Session = Depends(require_action("generate_bill")),
):
    order_id, order_number = parse_order_ref(order_ref)
    cleared = bill_registry.reset(order_id)
    logger.info(f"ℹ️  Bill cache reset for {order_number}: {'cleared' if cleared else 'nothing cached'}")
    return {
        "reset": cleared,
        "alert": Alert.info(f"Bill cache cleared for {order_number}." if cleared else f"No cached bill for {order_number}."),
    }


@router_bills.post("/{order_ref}/bill/pay", response_model=PaymentResult)
async def pay_order_bill(
    request: PayBillRequest,
    background_tasks: BackgroundTasks,
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("pay")),
    machine: OrderStateMachine = Depends(get_state_machine),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        bill = require_bill(detail)
        inputs = PaymentInputs(mode=request.mode, cash_received=request.cash_received, customer_id=request.customer_id)
        validate_payment(bill, inputs)

        customers = request.customers
        if request.mode == PaymentMethod.CREDIT and customers is None:
            customers = await fetch_customers(backend, session)

        result = await pay_bill(backend, machine, detail.order, bill, inputs, customers or [])
        order_cache.bump()
        if not result.status_updated:
            # the list must not keep showing the pre-payment state as confirmed
            background_tasks.add_task(refresh_scope, session, backend)
        background_tasks.add_task(broadcast_update, PAYMENT_UPDATED, {
            "order_id": detail.order.order_id,
            "bill_id": result.bill.bill_id,
            "payment_status": result.bill.payment_status.value,
            "payment_method": result.bill.payment_method.value,
        })
        return result
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error processing payment for {detail.order.order_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to process payment: {str(e)}")


@router_bills.post("/{order_ref}/bill/print", response_model=ReceiptPrintResult)
async def print_order_receipt(
    session: Session = Depends(require_action("print")),
    machine: OrderStateMachine = Depends(get_state_machine),
    dispatcher: PrintDispatcher = Depends(get_dispatcher),
    detail: OrderDetail = Depends(get_order_detail),
):
    try:
        bill = require_bill(detail)
        receipt = assemble_receipt(detail.order, bill)
        before = detail.order.display_status
        result = await print_bill_receipt(dispatcher, machine, detail.order, bill, receipt)
        if result.order_status != before:
            order_cache.bump()
        return result
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error printing receipt for {detail.order.order_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to print receipt: {str(e)}")
