from fastapi import APIRouter, Depends, HTTPException
import logging

from backend import PosBackend
from errors import PosError, to_http
from routers.orders import get_dispatcher, get_order_detail
from services.kitchen import KotDispatchResult, PrintDispatcher, build_category_kitchen_map
from services.lookups import fetch_categories
from services.orders import OrderDetail, require_details
from session import Session, get_backend, require_action

logger = logging.getLogger(__name__)

router_kitchen = APIRouter(prefix="/orders", tags=["Kitchen"])


@router_kitchen.post("/{order_ref}/kot", response_model=KotDispatchResult)
async def send_kitchen_tickets(
    backend: PosBackend = Depends(get_backend),
    session: Session = Depends(require_action("kot")),
    dispatcher: PrintDispatcher = Depends(get_dispatcher),
    detail: OrderDetail = Depends(get_order_detail),
):
    """Print one kitchen order ticket per kitchen the order's items route to"""
    try:
        require_details(detail.order)
        category_map = build_category_kitchen_map(await fetch_categories(backend, session))
        return await dispatcher.dispatch_kot(detail.order, category_map)
    except PosError as e:
        raise to_http(e)
    except Exception as e:
        logger.error(f"❌ Error dispatching KOT for {detail.order.order_number}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to send kitchen tickets: {str(e)}")
