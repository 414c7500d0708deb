from fastapi import APIRouter, Depends
import asyncio
import logging
import os

from backend import PosBackend
from errors import PosError
from services.orders import list_orders, order_cache
from session import Session, get_session

logger = logging.getLogger(__name__)

router_order_refresh = APIRouter(
    prefix="/order-refresh",
    tags=["Order Refresh"]
)

# --- Refresher configuration ---
ORDER_REFRESH_INTERVAL = float(os.getenv("ORDER_REFRESH_INTERVAL", "30"))
ORDER_REFRESH_ENABLED = os.getenv("ORDER_REFRESH_ENABLED", "1").strip().lower() not in ("0", "false", "no", "off")
# a scope nobody has listed for this many intervals stops being polled
ORDER_REFRESH_IDLE_INTERVALS = int(os.getenv("ORDER_REFRESH_IDLE_INTERVALS", "4"))

# Flag to control the background task
_background_task_running = False
_background_task = None


async def refresh_scope(session: Session, backend: PosBackend = None) -> bool:
    """Re-fetch one branch/terminal order list into the cache; failures are only logged."""
    try:
        await list_orders(backend or PosBackend(token=session.token), session, touch=False)
        return True
    except PosError as e:
        logger.warning(f"⚠️  Order refresh failed for branch {session.branch_id}: {e.message}")
        return False


async def refresh_orders_periodically():
    """
    Background task that re-fetches every order list a dashboard has
    loaded, so the cached lists used for detail fallbacks stay current.
    """
    while _background_task_running:
        try:
            order_cache.evict_idle(ORDER_REFRESH_INTERVAL * ORDER_REFRESH_IDLE_INTERVALS)
            sessions = order_cache.sessions()
            if sessions:
                logger.info(f"🔍 Refreshing orders for {len(sessions)} branch/terminal scope(s)...")
                for session in sessions:
                    await refresh_scope(session)
        except Exception as e:
            logger.error(f"❌ Error in order refresh task: {e}", exc_info=True)

        await asyncio.sleep(ORDER_REFRESH_INTERVAL)


def start_refresher() -> bool:
    global _background_task_running, _background_task

    if _background_task_running:
        return False
    _background_task_running = True
    _background_task = asyncio.create_task(refresh_orders_periodically())
    logger.info("✅ Started order refresh background task")
    return True


async def stop_refresher() -> bool:
    global _background_task_running, _background_task

    if not _background_task_running:
        return False
    _background_task_running = False

    if _background_task:
        _background_task.cancel()
        try:
            await _background_task
        except asyncio.CancelledError:
            pass
        _background_task = None

    logger.info("✅ Stopped order refresh background task")
    return True


def is_running() -> bool:
    return _background_task_running


@router_order_refresh.post("/start")
async def start_order_refresh_task():
    """Start the periodic order refresh background task"""
    if not start_refresher():
        return {"message": "Order refresh task is already running"}
    return {"message": "Order refresh task started successfully"}


@router_order_refresh.post("/stop")
async def stop_order_refresh_task():
    """Stop the periodic order refresh background task"""
    if not await stop_refresher():
        return {"message": "Order refresh task is not running"}
    return {"message": "Order refresh task stopped successfully"}


@router_order_refresh.get("/status")
async def get_order_refresh_status():
    """Check if the order refresh task is running"""
    return {
        "running": _background_task_running,
        "interval_seconds": ORDER_REFRESH_INTERVAL,
        "idle_after_seconds": ORDER_REFRESH_INTERVAL * ORDER_REFRESH_IDLE_INTERVALS,
        "scopes": len(order_cache.sessions()),
        "message": "Order refresh task is " + ("running" if _background_task_running else "stopped")
    }


@router_order_refresh.delete("/scope")
async def release_order_refresh_scope(session: Session = Depends(get_session)):
    """Stop refreshing this branch/terminal; called when the dashboard view closes"""
    released = order_cache.unregister(session)
    logger.info(f"ℹ️  Order refresh scope {order_cache.scope(session)} {'released' if released else 'was not registered'}")
    return {
        "released": released,
        "message": "Order refresh stopped for this terminal" if released else "This terminal was not being refreshed",
    }
