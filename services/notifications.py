from datetime import datetime
from typing import Any, Dict, Optional
import logging
import os

import httpx

logger = logging.getLogger(__name__)

# --- Dashboard sync configuration ---
DASHBOARD_SYNC_URL = os.getenv("DASHBOARD_SYNC_URL", "")

ORDER_UPDATED = "order_updated"
BILL_UPDATED = "bill_updated"
PAYMENT_UPDATED = "payment_updated"


async def broadcast_update(event_type: str, data: Dict[str, Any], url: Optional[str] = None) -> Optional[dict]:
    """
    Tell open dashboards that something changed so they re-fetch.
    Fire-and-forget: every failure is logged and swallowed here, never raised to the caller.
    """
    url = DASHBOARD_SYNC_URL if url is None else url
    if not url or url == "disabled":
        logger.info(f"ℹ️  Dashboard sync disabled - skipping {event_type}")
        return None

    payload = {
        "type": event_type,
        "data": data,
        "timestamp": datetime.now().isoformat(),
        "source": "dashboard_sync",
    }

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            logger.info(f"✅ Dashboard sync sent: {event_type}")
            return response.json() if response.content else {}
    except httpx.ConnectError as e:
        logger.warning(f"⚠️  Dashboard sync unavailable at {url}: {e}")
    except httpx.TimeoutException as e:
        logger.warning(f"⚠️  Dashboard sync timeout: {e}")
    except httpx.RequestError as e:
        logger.warning(f"⚠️  Dashboard sync failed (network error): {e}")
    except httpx.HTTPStatusError as e:
        logger.warning(f"⚠️  Dashboard sync failed (HTTP {e.response.status_code}): {e.response.text}")
    except ValueError as e:
        logger.warning(f"⚠️  Dashboard sync returned a non-JSON body: {e}")

    return None
