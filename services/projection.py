from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

from models import (
    Order, OrderItem, OrderStatus, OrderType, PaymentMethod, PaymentStatus,
    money, record_value,
)
from services.amounts import (
    item_line_total, item_quantity, item_unit_price, normalize_amounts,
)

logger = logging.getLogger(__name__)

ITEM_NAME_KEYS = ("dish_name", "name", "title", "item_name", "product_name")
STATUS_KEYS = ("order_status", "status", "Status")

DETAILS_LIMITED_WARNING = "Order details could not be loaded from the server. Showing limited information."

Extractor = Callable[[Any], Optional[Dict[str, Any]]]


def as_id(value: Any) -> Optional[Union[int, str]]:
    """Backend ids arrive as ints or numeric strings; keep non-numeric ids as strings."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    return int(text) if text.isdigit() else text


def order_number_for(order_id: Any) -> str:
    return f"ORD-{order_id}"


def parse_order_ref(ref: Any) -> Tuple[Optional[Union[int, str]], Optional[str]]:
    """Split an order reference ("501" or "ORD-501") into (order_id, order_number)."""
    text = str(ref or "").strip()
    if text.upper().startswith("ORD-"):
        return as_id(text[4:]), text
    order_id = as_id(text)
    return order_id, order_number_for(order_id) if order_id is not None else None


# ============================================================================
# ENVELOPE EXTRACTORS - tried in order, first hit wins
# ============================================================================

def _from_list(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, list) and raw and isinstance(raw[0], dict):
        return raw[0]
    return None


def _from_data_list(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return _from_list(raw.get("data"))
    return None


def _from_success_data(raw: Any) -> Optional[Dict[str, Any]]:
    if not (isinstance(raw, dict) and raw.get("success") is True and isinstance(raw.get("data"), dict)):
        return None
    data = raw["data"]
    # {success, data: {success, data: {...}}}
    while "order_id" not in data and "id" not in data and isinstance(data.get("data"), dict):
        data = data["data"]
    if "order_id" not in data and "id" not in data:
        nested = data.get("order")
        if isinstance(nested, dict):
            return nested
        return _from_list(nested) or data
    return data


def _from_bare_record(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict) and ("order_id" in raw or "id" in raw):
        return raw
    return None


def _from_order_key(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    nested = raw.get("order")
    if isinstance(nested, dict):
        return nested
    return _from_list(nested)


def _from_first_array(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    for value in raw.values():
        if isinstance(value, list):
            return _from_list(value)
    return None


ORDER_EXTRACTORS: List[Extractor] = [
    _from_list,
    _from_data_list,
    _from_success_data,
    _from_bare_record,
    _from_order_key,
    _from_first_array,
]


def extract_order_record(raw: Any) -> Optional[Dict[str, Any]]:
    for extractor in ORDER_EXTRACTORS:
        record = extractor(raw)
        if record:
            return record
    return None


def extract_list(raw: Any) -> List[Dict[str, Any]]:
    """Rows of a list endpoint: bare array, data[], data.data[], data.orders[] or the first array inside data."""
    if isinstance(raw, list):
        return [row for row in raw if isinstance(row, dict)]
    if not isinstance(raw, dict):
        return []
    data = raw.get("data", raw)
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    if isinstance(data, dict):
        for key in ("data", "orders"):
            if isinstance(data.get(key), list):
                return [row for row in data[key] if isinstance(row, dict)]
        for value in data.values():
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
    return []


def extract_items(response: Any, record: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Items may sit on the order, at the top of the response, or one level under data."""
    candidates = []
    if isinstance(record, dict):
        candidates.append(record.get("items"))
    if isinstance(response, dict):
        candidates.append(response.get("items"))
        if isinstance(response.get("data"), dict):
            candidates.append(response["data"].get("items"))
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            return [item for item in candidate if isinstance(item, dict)]
    return []


# ============================================================================
# PROJECTION
# ============================================================================

def is_credit_payment(record: Dict[str, Any]) -> bool:
    for key in ("payment_status", "payment_method", "payment_mode"):
        if str(record.get(key) or "").strip().lower() == "credit":
            return True
    return record.get("is_credit") in (True, 1, "1", "true")


def project_item(raw: Dict[str, Any]) -> OrderItem:
    category = raw.get("category") if isinstance(raw.get("category"), dict) else {}
    name = record_value(raw, *ITEM_NAME_KEYS)
    return OrderItem(
        dish_id=as_id(record_value(raw, "dish_id", "product_id", "item_id", "id")),
        name=str(name) if name not in (None, "") else "Item",
        unit_price=money(item_unit_price(raw)),
        quantity=item_quantity(raw),
        line_total=money(item_line_total(raw)),
        category_id=as_id(record_value(raw, "category_id", "cat_id")),
        kitchen_id=as_id(raw.get("kitchen_id")),
        kitchen=as_id(raw.get("kitchen")),
        category_kitchen_id=as_id(record_value(category, "kitchen_id", "kitchen")),
    )


def project_order(record: Dict[str, Any], raw_items: Optional[List[Dict[str, Any]]] = None) -> Order:
    """Map one backend order record onto the canonical Order."""
    if raw_items is None:
        raw_items = record.get("items") if isinstance(record.get("items"), list) else []
    items = [project_item(item) for item in raw_items if isinstance(item, dict)]

    order_id = as_id(record_value(record, "order_id", "id"))
    order_number = record_value(record, "order_number", "order_no", "orderid")
    if order_number is None or (isinstance(order_number, str) and not order_number.strip()):
        order_number = order_number_for(order_id)

    raw_status = record_value(record, *STATUS_KEYS) or "Pending"
    amounts = normalize_amounts(record, items)
    payment_status = record.get("payment_status")

    return Order(
        order_id=order_id,
        order_number=str(order_number),
        order_type=OrderType.parse(record_value(record, "order_type", "type")),
        table_id=as_id(record.get("table_id")),
        table_number=_optional_str(record_value(record, "table_number", "table_no")),
        hall_id=as_id(record.get("hall_id")),
        hall_name=_optional_str(record.get("hall_name")),
        customer_id=as_id(record.get("customer_id")),
        customer_name=_optional_str(record_value(record, "customer_name", "customer")),
        payment_mode=PaymentMethod.parse(record_value(record, "payment_mode", "payment_method")),
        payment_status=PaymentStatus.parse(payment_status) if payment_status else None,
        is_credit=is_credit_payment(record),
        created_at=_optional_str(record_value(record, "created_at", "order_date", "date")),
        subtotal=amounts.subtotal,
        service_charge=amounts.service_charge,
        discount_amount=amounts.discount_amount,
        net_total=amounts.net_total,
        status=OrderStatus.parse(raw_status),
        raw_status=str(raw_status),
        status_key=str(raw_status).strip().lower(),
        items=items,
    )


def stub_order(order_id: Any, order_number: Optional[str] = None) -> Order:
    """Minimal order so callers can still render something; actions needing real data stay disabled."""
    order_id = as_id(order_id)
    return Order(
        order_id=order_id,
        order_number=order_number or order_number_for(order_id),
        details_limited=True,
    )


def find_cached(cached: Iterable[Order], order_id: Any = None, order_number: Optional[str] = None) -> Optional[Order]:
    for order in cached or []:
        if order_id is not None and str(order.order_id) == str(order_id):
            return order
        if order_number and order.order_number == order_number:
            return order
    return None


def resolve_order(
    response: Any,
    order_id: Any = None,
    order_number: Optional[str] = None,
    cached: Iterable[Order] = (),
) -> Tuple[Order, Optional[str]]:
    """
    Run the extractor chain, then the cached list, then a stub.
    Returns the order and a warning when only limited details were available.
    """
    record = extract_order_record(response)
    if record:
        order = project_order(record, extract_items(response, record))
        if order.order_id is None and order_id is not None:
            order.order_id = as_id(order_id)
            if order.order_number == order_number_for(None):
                order.order_number = order_number or order_number_for(order.order_id)
        return order, None

    hit = find_cached(cached, order_id, order_number)
    if hit is not None:
        logger.info(f"ℹ️  Order {order_number or order_id} resolved from cached list")
        return hit.model_copy(deep=True), None

    logger.warning(f"⚠️ Could not resolve order {order_number or order_id} from any source, using stub")
    return stub_order(order_id, order_number), DETAILS_LIMITED_WARNING


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
