"""
Orderflow — domain models

Orders are created once at checkout and then only change status. Prices
on OrderItem are copied from the catalog at purchase time and never
re-read. All money fields are integer minor-currency units.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DRAFT = "DRAFT"


class ShippingAddress(BaseModel):
    """Snapshot of where the order ships; never edited after checkout."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    address1: str = Field(min_length=1)
    address2: str | None = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = "US"


class ProductSnapshot(BaseModel):
    id: str
    name: str
    price: int
    inventory: int
    status: ProductStatus

    @property
    def purchasable(self) -> bool:
        return self.status == ProductStatus.ACTIVE


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(gt=0)


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    product_id: str
    quantity: int
    price: int

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    status: OrderStatus
    subtotal: int
    tax: int
    shipping: int
    total: int
    payment_reference: str
    shipping_address: ShippingAddress
    items: list[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_total(self) -> "Order":
        if self.total != self.subtotal + self.tax + self.shipping:
            raise ValueError("total must equal subtotal + tax + shipping")
        return self


class OrderStatusChange(BaseModel):
    id: str
    order_id: str
    previous_status: OrderStatus | None
    new_status: OrderStatus
    changed_by: str | None
    notes: str | None
    created_at: datetime


class WebhookEventEntry(BaseModel):
    """One ledger row per external payment event id."""

    id: str
    external_event_id: str
    event_type: str
    payload: dict
    processed: bool
    processing_error: str | None
    attempts: int
    claimed_at: datetime
    created_at: datetime
    updated_at: datetime
