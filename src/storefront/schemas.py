from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, List, Optional
from uuid import UUID, uuid4

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_cents(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# Decimal internally, plain JSON number on the wire
Money = Annotated[
    Decimal,
    AfterValidator(to_cents),
    PlainSerializer(float, return_type=float, when_used="json"),
]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class OrderStatus(str, Enum):
    CREATED = "Created"
    PAID = "Paid"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "CashOnDelivery"
    EXTERNAL_PROCESSOR = "ExternalProcessor"


class OrderItem(CamelModel):
    product_ref: str = Field(..., validation_alias=AliasChoices("productRef", "product_ref", "product"))
    name: str = ""
    unit_price: Money = Field(..., ge=0, validation_alias=AliasChoices("unitPrice", "unit_price", "price"))
    quantity: int = Field(..., ge=1)
    image_ref: Optional[str] = Field(None, validation_alias=AliasChoices("imageRef", "image_ref", "image"))

    @property
    def line_total(self) -> Decimal:
        return to_cents(self.unit_price * self.quantity)


class ShippingAddress(CamelModel):
    # blanks are rejected by OrderStateMachine.create with a field-specific message
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""

    def missing_fields(self) -> List[str]:
        return [
            name for name in ("address", "city", "postal_code", "country")
            if not getattr(self, name).strip()
        ]


class PriceBreakdown(CamelModel):
    items_price: Optional[Money] = None
    tax_price: Money = Field(Decimal("0"), ge=0)
    shipping_price: Money = Field(Decimal("0"), ge=0)
    total_price: Optional[Money] = None


class OrderCreateRequest(CamelModel):
    items: List[OrderItem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "orderItems"),
    )
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    items_price: Optional[Money] = None
    tax_price: Money = Field(Decimal("0"), ge=0)
    shipping_price: Money = Field(Decimal("0"), ge=0)
    total_price: Optional[Money] = None

    def prices(self) -> PriceBreakdown:
        return PriceBreakdown(
            items_price=self.items_price,
            tax_price=self.tax_price,
            shipping_price=self.shipping_price,
            total_price=self.total_price,
        )


class PaymentResult(CamelModel):
    external_id: str = ""
    status: str = "COMPLETED"
    update_time: datetime
    payer_email: str = ""


class Payer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email_address: Optional[str] = None


class PaymentPayload(BaseModel):
    """Capture confirmation as returned by the external processor.

    Every field is optional; :meth:`to_result` applies the defaults.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    order_id: Optional[str] = Field(None, alias="orderID")
    status: Optional[str] = None
    update_time: Optional[datetime] = None
    payer: Optional[Payer] = None

    @property
    def capture_id(self) -> str:
        return self.id or self.order_id or ""

    def to_result(self, now: datetime) -> PaymentResult:
        return PaymentResult(
            external_id=self.capture_id,
            status=(self.status or "COMPLETED").upper(),
            update_time=self.update_time or now,
            payer_email=(self.payer.email_address if self.payer else None) or "",
        )


class PaymentWebhook(CamelModel):
    order_id: UUID
    capture: PaymentPayload


class Order(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    items_price: Money
    tax_price: Money
    shipping_price: Money
    total_price: Money
    status: OrderStatus = OrderStatus.CREATED
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    version: int = 1


class OrderEvent(BaseModel):
    """Outbox record describing an applied order transition."""

    id: UUID = Field(default_factory=uuid4)
    aggregate_id: UUID
    event_type: str
    payload: dict
    created_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None


class OwnerSummary(CamelModel):
    id: str
    name: str
    email: str


class OrderRead(Order):
    user: Optional[OwnerSummary] = None


class User(CamelModel):
    id: str
    name: str
    email: str
    password_hash: str = Field("", exclude=True)
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class StatusUpdateRequest(BaseModel):
    status: str


class DatabaseStatus(CamelModel):
    connected: bool
    state: str
    host: Optional[str] = None
    last_error: Optional[str] = None
    retry_attempts: int = 0
    last_connect_attempt: Optional[datetime] = None
    uptime: float = 0


class SystemStatus(CamelModel):
    server: str = "online"
    timestamp: datetime
    mode: str
    database: DatabaseStatus
    uptime: int


class ReconnectResult(CamelModel):
    success: bool
    message: str
    status: str
    host: Optional[str] = None
    error: Optional[str] = None
    retry_attempts: Optional[int] = None


class PaymentConfig(CamelModel):
    client_id: str
