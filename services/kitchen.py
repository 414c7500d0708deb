from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import asyncio
import logging
import os

from pydantic import BaseModel, Field

from backend import BackendResponse, PosBackend
from errors import truncate
from models import Alert, Bill, Order, OrderItem, OrderStatus, PaymentStatus, Receipt, wire_money
from services.billing import render_receipt_html
from services.order_status import Actor, OrderStateMachine
from services.projection import as_id
from session import Session

logger = logging.getLogger(__name__)

KOT_ENDPOINT = "print_kitchen_receipt.php"
RECEIPT_ENDPOINT = "print.php"

# --- Print configuration ---
PRINT_TIMEOUT = float(os.getenv("PRINT_TIMEOUT", "10"))
PRINT_MAX_ATTEMPTS = int(os.getenv("PRINT_MAX_ATTEMPTS", "3"))
PRINT_RETRY_DELAY = float(os.getenv("PRINT_RETRY_DELAY", "1"))

ERROR_MARKERS = ("error", "failed", "timeout", "could not connect", "connection timed out", "connection refused")
PRINTED_MARKERS = ("printed", "sent to printer", "successfully")
REACHABILITY_MARKERS = ("reachable", "port open", "port is open", "connected to printer")


class PrintOutcome(str, Enum):
    SUCCESS = "success"
    UNREACHABLE = "unreachable"
    # printer answered but never confirmed the job; reported as a failure, never retried
    AMBIGUOUS = "ambiguous"


# ============================================================================
# KITCHEN ROUTING
# ============================================================================

def build_category_kitchen_map(categories: Iterable[Dict[str, Any]]) -> Dict[str, Union[int, str]]:
    mapping = {}
    for category in categories or []:
        category_id = as_id(category.get("category_id", category.get("id")))
        kitchen_id = as_id(category.get("kitchen_id", category.get("kitchen")))
        if category_id is not None and kitchen_id is not None:
            mapping[str(category_id)] = kitchen_id
    return mapping


def resolve_kitchen(item: OrderItem, category_map: Dict[str, Union[int, str]]) -> Optional[Union[int, str]]:
    if item.kitchen_id is not None:
        return item.kitchen_id
    if item.kitchen is not None:
        return item.kitchen
    if item.category_id is not None and str(item.category_id) in category_map:
        return category_map[str(item.category_id)]
    return item.category_kitchen_id


def group_items_by_kitchen(
    items: Iterable[OrderItem],
    category_map: Dict[str, Union[int, str]],
) -> Tuple[Dict[str, List[OrderItem]], List[OrderItem]]:
    """Returns ({kitchen_id: items}, items without a kitchen)."""
    groups: Dict[str, List[OrderItem]] = {}
    unresolved = []
    for item in items:
        kitchen_id = resolve_kitchen(item, category_map)
        if kitchen_id is None:
            logger.warning(f"⚠️ No kitchen for item '{item.name}' (category {item.category_id}); skipping KOT")
            unresolved.append(item)
            continue
        groups.setdefault(str(kitchen_id), []).append(item)
    return groups, unresolved


# ============================================================================
# PRINT RESPONSE INTERPRETATION
# ============================================================================

def interpret_print_response(response: BackendResponse) -> Tuple[PrintOutcome, str]:
    """
    Only an explicit confirmation counts as printed. A printer that is merely
    reachable, or a response with no recognizable signal, is AMBIGUOUS.
    """
    if response.status == 0 or response.timed_out:
        return PrintOutcome.UNREACHABLE, response.message or "Printer service unreachable"

    data = response.data
    if not isinstance(data, dict):
        if not response.ok:
            return PrintOutcome.UNREACHABLE, response.message or f"HTTP {response.status}"
        return PrintOutcome.AMBIGUOUS, "Unrecognized response from print service"

    message = str(data.get("message") or data.get("error") or "")
    lowered = message.lower()

    if data.get("success") is False or not response.ok:
        return PrintOutcome.UNREACHABLE, message or f"HTTP {response.status}"
    flags = [data[key] for key in ("printed", "print_success") if key in data]
    if any(flag is True for flag in flags):
        return PrintOutcome.SUCCESS, message or "Printed"
    # error wording only decides when the service sent no explicit print flag
    if not flags and any(marker in lowered for marker in ERROR_MARKERS):
        return PrintOutcome.UNREACHABLE, message

    results = data.get("results") if isinstance(data.get("results"), list) else []
    for entry in results:
        if not isinstance(entry, dict):
            continue
        confirmed = entry.get("write_test") == "passed" or entry.get("printed") is True or entry.get("print_success") is True
        if entry.get("status") == "success" and confirmed:
            return PrintOutcome.SUCCESS, message or "Printed"
    if results and all(isinstance(entry, dict) and entry.get("status") in ("error", "failed") for entry in results):
        details = "; ".join(str(entry.get("message") or entry.get("error") or entry.get("status")) for entry in results)
        return PrintOutcome.UNREACHABLE, message or details

    if any(marker in lowered for marker in REACHABILITY_MARKERS):
        return PrintOutcome.AMBIGUOUS, message
    if any(marker in lowered for marker in PRINTED_MARKERS):
        return PrintOutcome.SUCCESS, message

    return PrintOutcome.AMBIGUOUS, message or "Print service did not confirm printing"


# ============================================================================
# DISPATCH
# ============================================================================

class PrintResult(BaseModel):
    kitchen_id: Optional[Union[int, str]] = None
    kitchen_name: Optional[str] = None
    printer_ip: Optional[str] = None
    outcome: PrintOutcome
    message: str = ""
    attempts: int = 1
    diagnostics: Dict[str, Any] = Field(default_factory=dict)

    @property
    def printed(self) -> bool:
        return self.outcome == PrintOutcome.SUCCESS


class KotDispatchResult(BaseModel):
    alert: Alert
    results: List[PrintResult] = Field(default_factory=list)
    skipped_items: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ReceiptPrintResult(BaseModel):
    alert: Alert
    outcome: PrintOutcome
    printers: List[Any] = Field(default_factory=list)
    manual_print_required: bool = False
    receipt_content: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    attempts: int = 1
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class PrintDispatcher:
    def __init__(
        self,
        backend: PosBackend,
        session: Session,
        max_attempts: int = None,
        retry_delay: float = None,
        timeout: float = None,
    ):
        self.backend = backend
        self.session = session
        self.max_attempts = max(1, max_attempts if max_attempts is not None else PRINT_MAX_ATTEMPTS)
        self.retry_delay = PRINT_RETRY_DELAY if retry_delay is None else retry_delay
        self.timeout = PRINT_TIMEOUT if timeout is None else timeout

    async def _send(self, endpoint: str, payload: Dict[str, Any]) -> Tuple[PrintOutcome, str, BackendResponse, int]:
        attempt = 0
        while True:
            attempt += 1
            response = await self.backend.post(endpoint, payload, timeout=self.timeout)
            outcome, message = interpret_print_response(response)
            if outcome != PrintOutcome.UNREACHABLE or attempt >= self.max_attempts:
                return outcome, message, response, attempt
            logger.warning(f"⚠️ {endpoint} attempt {attempt}/{self.max_attempts} failed: {message}. Retrying...")
            await asyncio.sleep(self.retry_delay)

    @staticmethod
    def _diagnostics(response: BackendResponse) -> Dict[str, Any]:
        return {
            "status_code": response.status,
            "details": truncate(response.data),
            "triedUrls": response.tried_urls,
        }

    async def print_kot(self, order: Order, kitchen_id: Union[int, str]) -> PrintResult:
        payload = {
            "order_id": order.order_id,
            "kitchen_id": as_id(kitchen_id),
            "branch_id": self.session.require_branch(),
            "terminal": self.session.terminal,
        }
        outcome, message, response, attempts = await self._send(KOT_ENDPOINT, payload)
        data = response.data if isinstance(response.data, dict) else {}
        result = PrintResult(
            kitchen_id=as_id(kitchen_id),
            kitchen_name=data.get("kitchen_name"),
            printer_ip=data.get("printer_ip"),
            outcome=outcome,
            message=message,
            attempts=attempts,
            diagnostics={} if outcome == PrintOutcome.SUCCESS else self._diagnostics(response),
        )
        if result.printed:
            logger.info(f"✅ KOT for {order.order_number} printed at kitchen {kitchen_id} ({result.kitchen_name or '-'})")
        else:
            logger.error(f"❌ KOT for {order.order_number} at kitchen {kitchen_id}: {outcome.value} - {message}")
        return result

    async def dispatch_kot(self, order: Order, category_map: Dict[str, Union[int, str]]) -> KotDispatchResult:
        """One ticket per kitchen, sent concurrently; one kitchen failing never affects another."""
        groups, unresolved = group_items_by_kitchen(order.items, category_map)
        skipped = [item.name for item in unresolved]
        warnings = []
        if skipped:
            warnings.append(f"No kitchen assigned for: {', '.join(skipped)}")

        if not groups:
            return KotDispatchResult(
                alert=Alert.warning("No kitchen tickets were sent: no items could be routed to a kitchen."),
                skipped_items=skipped,
                warnings=warnings,
            )

        results = list(await asyncio.gather(*(self.print_kot(order, kitchen_id) for kitchen_id in groups)))
        printed = [result for result in results if result.printed]
        failed = [result for result in results if not result.printed]
        for result in failed:
            name = result.kitchen_name or f"kitchen {result.kitchen_id}"
            warnings.append(f"KOT not confirmed for {name}: {result.message}")

        if not failed and not skipped:
            alert = Alert.success(f"KOT sent to {len(printed)} kitchen(s).")
        elif not failed:
            alert = Alert.warning(f"KOT sent to {len(printed)} kitchen(s); some items had no kitchen.")
        elif printed:
            alert = Alert.warning(f"KOT sent to {len(printed)} of {len(results)} kitchen(s). Check the failed kitchens.")
        else:
            alert = Alert.error("Kitchen tickets could not be printed. Please print them manually.")
        return KotDispatchResult(alert=alert, results=results, skipped_items=skipped, warnings=warnings)

    def receipt_payload(self, receipt: Receipt, content: str) -> Dict[str, Any]:
        category_ids = sorted({str(line.category_id) for line in receipt.lines if line.category_id is not None})
        return {
            "order_id": receipt.order_id,
            "bill_id": receipt.bill_id,
            "receipt_content": content,
            "category_ids": category_ids,
            "items": [
                {
                    "item_id": line.dish_id,
                    "category_id": line.category_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "price": wire_money(line.unit_price),
                }
                for line in receipt.lines
            ],
            "terminal": self.session.terminal,
            "branch_id": self.session.require_branch(),
        }

    async def print_receipt(self, receipt: Receipt) -> ReceiptPrintResult:
        content = render_receipt_html(receipt)
        outcome, message, response, attempts = await self._send(RECEIPT_ENDPOINT, self.receipt_payload(receipt, content))
        data = response.data if isinstance(response.data, dict) else {}
        printers = data.get("printers") if isinstance(data.get("printers"), list) else []

        if outcome == PrintOutcome.SUCCESS or (outcome == PrintOutcome.AMBIGUOUS and _printers_confirmed(printers)):
            logger.info(f"✅ Receipt for {receipt.order_number} printed on {len(printers) or 1} printer(s)")
            return ReceiptPrintResult(
                alert=Alert.success(f"Receipt for {receipt.order_number} sent to printer."),
                outcome=PrintOutcome.SUCCESS,
                printers=printers,
                attempts=attempts,
            )

        logger.warning(f"⚠️ Receipt print for {receipt.order_number} not confirmed ({outcome.value}): {message}")
        reason = "printer did not confirm the job" if outcome == PrintOutcome.AMBIGUOUS else message
        return ReceiptPrintResult(
            alert=Alert.warning(f"Receipt could not be printed automatically ({reason}). Please print it manually."),
            outcome=outcome,
            printers=printers,
            manual_print_required=True,
            receipt_content=content,
            attempts=attempts,
            diagnostics=self._diagnostics(response),
        )


def _printers_confirmed(printers: List[Any]) -> bool:
    return any(
        isinstance(printer, dict) and (printer.get("printed") is True or printer.get("print_success") is True)
        for printer in printers
    )


async def print_bill_receipt(
    dispatcher: PrintDispatcher,
    machine: OrderStateMachine,
    order: Order,
    bill: Bill,
    receipt: Receipt,
) -> ReceiptPrintResult:
    """Print the customer receipt; a confirmed print of an unpaid bill moves a running order to Bill Generated."""
    result = await dispatcher.print_receipt(receipt)
    result.order_status = order.display_status
    if result.outcome != PrintOutcome.SUCCESS or bill.payment_status != PaymentStatus.UNPAID:
        return result
    if order.display_status != OrderStatus.RUNNING:
        return result

    transition = await machine.transition(order, OrderStatus.BILL_GENERATED, Actor.RECEIPT_PRINT, credit=order.is_credit)
    result.order_status = transition.status
    result.warnings.extend(transition.warnings)
    if not transition.updated:
        result.warnings.append(f"Receipt printed but the order status could not be updated: {transition.message or 'unknown error'}")
        result.alert = Alert.warning("Receipt printed, but the order status update failed. Please update it manually.")
    return result
