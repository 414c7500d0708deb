from typing import Any, Dict, List
import logging

from backend import PosBackend
from models import Customer
from services.projection import as_id, extract_list
from session import Session

logger = logging.getLogger(__name__)

CATEGORIES_ENDPOINT = "get_categories.php"
CUSTOMERS_ENDPOINT = "customer_management.php"


async def fetch_categories(backend: PosBackend, session: Session) -> List[Dict[str, Any]]:
    response = await backend.post(CATEGORIES_ENDPOINT, {
        "terminal": session.terminal,
        "branch_id": session.require_branch(),
    })
    if not response.ok:
        logger.warning(f"⚠️ Could not load categories: {response.message}")
        return []
    return extract_list(response.data)


async def fetch_customers(backend: PosBackend, session: Session) -> List[Customer]:
    response = await backend.get(CUSTOMERS_ENDPOINT, params={"branch_id": session.require_branch()})
    if not response.ok:
        logger.warning(f"⚠️ Could not load customers: {response.message}")
        return []
    customers = []
    for row in extract_list(response.data):
        customer_id = as_id(row.get("customer_id", row.get("id")))
        if customer_id is None:
            continue
        customers.append(Customer(
            customer_id=customer_id,
            name=row.get("name") or row.get("customer_name"),
            phone=row.get("phone") or row.get("phone_number") or row.get("mobile"),
        ))
    return customers
