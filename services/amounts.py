from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Sequence
import logging

from models import AmountBreakdown, OrderItem, ZERO, money, to_decimal

logger = logging.getLogger(__name__)

# Ordered source keys per canonical field; the first explicitly present, parseable value wins
SUBTOTAL_KEYS = ("g_total_amount", "g_total", "grand_total_amount", "total_amount", "total", "subtotal", "amount")
SERVICE_CHARGE_KEYS = ("service_charge", "serviceCharge", "service_charges")
DISCOUNT_KEYS = ("discount_amount", "discountAmount", "discount")
NET_TOTAL_KEYS = ("net_total_amount", "netTotal", "net_total", "grand_total", "grandTotal", "final_amount")

ITEM_TOTAL_KEYS = ("total_amount", "total", "total_price", "line_total", "subtotal")
ITEM_PRICE_KEYS = ("price", "unit_price", "rate", "dish_price")
ITEM_QUANTITY_KEYS = ("quantity", "qty")


def explicit_amount(record: Dict[str, Any], keys: Sequence[str]) -> Optional[Decimal]:
    """
    Return the first key's value that is present (not missing, not None) and parses as a number.
    An explicit 0 is a real value and is returned as such.
    """
    for key in keys:
        if key not in record or record[key] is None:
            continue
        parsed = to_decimal(record[key])
        if parsed is None:
            logger.warning(f"⚠️ Ignoring unparseable amount {key}={record[key]!r}")
            continue
        return parsed
    return None


def item_quantity(raw: Dict[str, Any]) -> int:
    for key in ITEM_QUANTITY_KEYS:
        parsed = to_decimal(raw.get(key))
        if parsed is not None:
            return max(int(parsed), 0)
    return 1


def item_unit_price(raw: Dict[str, Any]) -> Decimal:
    return explicit_amount(raw, ITEM_PRICE_KEYS) or ZERO


def item_line_total(raw: Dict[str, Any]) -> Decimal:
    """Explicit backend line total when present and consistent, else price x quantity."""
    computed = item_unit_price(raw) * item_quantity(raw)
    explicit = explicit_amount(raw, ITEM_TOTAL_KEYS)
    if explicit is None:
        return computed
    if explicit == ZERO and computed > ZERO:
        # A zero total next to a priced line is a backend placeholder, not a free item
        return computed
    return explicit


def items_total(items: Iterable[Any]) -> Optional[Decimal]:
    """Sum of line totals; None when there is nothing to sum."""
    total = None
    for item in items or []:
        if isinstance(item, OrderItem):
            line = item.line_total
        elif isinstance(item, dict):
            line = item_line_total(item)
        else:
            continue
        total = (total or ZERO) + line
    return total


def normalize_amounts(record: Dict[str, Any], items: Optional[Iterable[Any]] = None) -> AmountBreakdown:
    """
    Collapse the backend's money synonyms into one breakdown.

    Never fails and never mutates `record`. Discount and service charge are
    only ever taken from explicit fields; subtotal and net total fall back to
    the itemized sum, and net total falls back to subtotal when the record
    carries no net/grand field at all.
    """
    record = record if isinstance(record, dict) else {}
    if items is None:
        items = record.get("items") if isinstance(record.get("items"), list) else []
    itemized = items_total(items)

    subtotal = explicit_amount(record, SUBTOTAL_KEYS)
    if subtotal is None:
        subtotal = itemized if itemized is not None else ZERO

    service_charge = explicit_amount(record, SERVICE_CHARGE_KEYS)
    discount_amount = explicit_amount(record, DISCOUNT_KEYS)

    net_total = explicit_amount(record, NET_TOTAL_KEYS)
    if net_total is None:
        net_total = subtotal if subtotal > ZERO else (itemized or ZERO)

    return AmountBreakdown(
        subtotal=money(max(subtotal, ZERO)),
        service_charge=money(max(service_charge or ZERO, ZERO)),
        discount_amount=money(max(discount_amount or ZERO, ZERO)),
        net_total=money(max(net_total, ZERO)),
    )
