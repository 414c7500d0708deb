from enum import Enum
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Union
import logging

from pydantic import BaseModel, Field, PlainSerializer

logger = logging.getLogger(__name__)

# Money is kept as Decimal for arithmetic and rendered as float in JSON responses
Money = Annotated[Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")]

ZERO = Decimal("0")
CENT = Decimal("0.01")


def _squash(value: Any) -> str:
    """Lower-case a wire value and drop spaces, dashes and underscores."""
    return "".join(ch for ch in str(value or "").strip().lower() if ch not in " -_")


# ============================================================================
# ENUMS - closed sets, normalized on ingest
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    BILL_GENERATED = "Bill Generated"
    CREDIT = "Credit"  # display-only, never sent as an order_status
    COMPLETE = "Complete"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, raw: Any) -> "OrderStatus":
        key = _squash(raw)
        aliases = {
            "pending": cls.PENDING,
            "running": cls.RUNNING,
            "billgenerated": cls.BILL_GENERATED,
            "billed": cls.BILL_GENERATED,
            "credit": cls.CREDIT,
            "complete": cls.COMPLETE,
            "completed": cls.COMPLETE,
            "cancelled": cls.CANCELLED,
            "canceled": cls.CANCELLED,
        }
        if key not in aliases:
            if key:
                logger.warning(f"⚠️ Unknown order status '{raw}', treating as Pending")
            return cls.PENDING
        return aliases[key]


class OrderType(str, Enum):
    DINE_IN = "Dine In"
    TAKE_AWAY = "Take Away"
    DELIVERY = "Delivery"

    @classmethod
    def parse(cls, raw: Any) -> "OrderType":
        key = _squash(raw)
        if key in ("takeaway", "takeout", "pickup"):
            return cls.TAKE_AWAY
        if key == "delivery":
            return cls.DELIVERY
        return cls.DINE_IN


class PaymentMethod(str, Enum):
    CASH = "Cash"
    CARD = "Card"
    ONLINE = "Online"
    CREDIT = "Credit"

    @classmethod
    def parse(cls, raw: Any, default: Optional["PaymentMethod"] = None) -> "PaymentMethod":
        key = _squash(raw)
        for member in cls:
            if member.value.lower() == key:
                return member
        return default or cls.CASH


class PaymentStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    CREDIT = "Credit"

    @classmethod
    def parse(cls, raw: Any) -> "PaymentStatus":
        key = _squash(raw)
        if key == "paid":
            return cls.PAID
        if key == "credit":
            return cls.CREDIT
        return cls.UNPAID


class TableStatus(str, Enum):
    AVAILABLE = "Available"
    RUNNING = "Running"

    @classmethod
    def parse(cls, raw: Any) -> "TableStatus":
        return cls.RUNNING if _squash(raw) in ("running", "occupied") else cls.AVAILABLE


class AlertType(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


# ============================================================================
# DOMAIN MODELS
# ============================================================================

class Alert(BaseModel):
    """Single-line operator banner; every response replaces the previous one."""
    type: AlertType
    message: str

    @classmethod
    def success(cls, message: str) -> "Alert":
        return cls(type=AlertType.SUCCESS, message=message)

    @classmethod
    def warning(cls, message: str) -> "Alert":
        return cls(type=AlertType.WARNING, message=message)

    @classmethod
    def error(cls, message: str) -> "Alert":
        return cls(type=AlertType.ERROR, message=message)

    @classmethod
    def info(cls, message: str) -> "Alert":
        return cls(type=AlertType.INFO, message=message)


class AmountBreakdown(BaseModel):
    subtotal: Money = ZERO
    service_charge: Money = ZERO
    discount_amount: Money = ZERO
    net_total: Money = ZERO


class OrderItem(BaseModel):
    dish_id: Optional[Union[int, str]] = None
    name: str = "Item"
    unit_price: Money = ZERO
    quantity: int = 1
    line_total: Money = ZERO
    category_id: Optional[Union[int, str]] = None
    kitchen_id: Optional[Union[int, str]] = None
    kitchen: Optional[Union[int, str]] = None
    category_kitchen_id: Optional[Union[int, str]] = None


class Order(BaseModel):
    order_id: Optional[Union[int, str]] = None
    order_number: str
    order_type: OrderType = OrderType.DINE_IN
    table_id: Optional[Union[int, str]] = None
    table_number: Optional[str] = None
    hall_id: Optional[Union[int, str]] = None
    hall_name: Optional[str] = None
    customer_id: Optional[Union[int, str]] = None
    customer_name: Optional[str] = None
    payment_mode: PaymentMethod = PaymentMethod.CASH
    payment_status: Optional[PaymentStatus] = None
    is_credit: bool = False
    created_at: Optional[str] = None
    subtotal: Money = ZERO
    service_charge: Money = ZERO
    discount_amount: Money = ZERO
    net_total: Money = ZERO
    status: OrderStatus = OrderStatus.PENDING
    raw_status: str = "Pending"
    status_key: str = "pending"
    items: List[OrderItem] = Field(default_factory=list)
    details_limited: bool = False

    @property
    def is_dine_in(self) -> bool:
        return self.order_type == OrderType.DINE_IN

    @property
    def display_status(self) -> OrderStatus:
        # Credit-ness lives in the payment fields, not in order_status
        if self.is_credit or self.status == OrderStatus.CREDIT:
            return OrderStatus.CREDIT
        return self.status


class Bill(BaseModel):
    bill_id: Optional[Union[int, str]] = None
    order_id: Union[int, str]
    total_amount: Money = ZERO
    service_charge: Money = ZERO
    discount_amount: Money = ZERO
    discount_percentage: Money = ZERO
    grand_total: Money = ZERO
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_method: PaymentMethod = PaymentMethod.CASH
    cash_received: Money = ZERO
    change: Money = ZERO
    customer_id: Optional[Union[int, str]] = None

    @property
    def is_settled(self) -> bool:
        return self.payment_status in (PaymentStatus.PAID, PaymentStatus.CREDIT)


class Table(BaseModel):
    table_id: Union[int, str]
    hall_id: Optional[Union[int, str]] = None
    table_number: Optional[str] = None
    capacity: int = 0
    status: TableStatus = TableStatus.AVAILABLE


class ReceiptLine(BaseModel):
    dish_id: Optional[Union[int, str]] = None
    name: str
    quantity: int
    unit_price: Money
    line_total: Money
    category_id: Optional[Union[int, str]] = None


class Receipt(BaseModel):
    order_id: Union[int, str]
    order_number: str
    bill_id: Optional[Union[int, str]] = None
    order_type: OrderType = OrderType.DINE_IN
    table_number: Optional[str] = None
    lines: List[ReceiptLine]
    subtotal: Money
    service_charge: Money
    discount_percentage: Money = ZERO
    discount_amount: Money
    grand_total: Money
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.UNPAID


class Customer(BaseModel):
    customer_id: Union[int, str]
    name: Optional[str] = None
    phone: Optional[str] = None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a backend number (int, float or numeric string); None when unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        parsed = Decimal(text)
    except (ArithmeticError, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT)


def wire_money(value: Decimal) -> float:
    """Backend payloads carry plain JSON numbers."""
    return float(money(value))


def record_value(record: Dict[str, Any], *keys: str) -> Any:
    """First value among keys that is present and not None (explicit 0 counts)."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None
