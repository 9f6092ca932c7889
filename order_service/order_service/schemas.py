"""Pydantic data contracts for the orders service."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    """Lifecycle states of an order.

    The set is opaque to the workflow: any status different from the current
    one is accepted as a transition target.
    """

    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class OrderItemRequest(BaseModel):
    """A single line of an order creation request.

    Attributes:
        product_id (str): Catalog identifier of the product.
        quantity (int): Number of units ordered, at least 1.
    """

    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., ge=1)

    model_config = ConfigDict(
        coerce_numbers_to_str=True,
        json_schema_extra={"example": {"product_id": "1", "quantity": 2}},
    )


class CreateOrderRequest(BaseModel):
    """Request body for order creation."""

    items: list[OrderItemRequest] = Field(..., min_length=1, description="At least one item required")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [
                    {"product_id": "1", "quantity": 2},
                    {"product_id": "5", "quantity": 1},
                ]
            }
        }
    )


class ChangeOrderStatusRequest(BaseModel):
    """Request body for a status transition."""

    status: OrderStatus


class Product(BaseModel):
    """Product record as returned by the catalog service."""

    id: str
    price: Decimal = Field(..., ge=0)
    name: str

    model_config = ConfigDict(coerce_numbers_to_str=True)


class OrderTotals(BaseModel):
    """Aggregates computed once, at order creation.

    Attributes:
        total_amount (Decimal): Sum of price snapshot times quantity over all items.
        total_items (int): Sum of item quantities.
    """

    total_amount: Decimal
    total_items: int


class OrderItemRecord(BaseModel):
    """A persisted order line with its unit price snapshot."""

    product_id: str
    quantity: int
    price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderSummary(BaseModel):
    """A persisted order without its items, as returned by listings."""

    id: str
    total_amount: Decimal
    total_items: int
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        """Timestamps are stored in UTC; some backends return them without an offset."""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class OrderRecord(OrderSummary):
    """A persisted order together with its items."""

    items: list[OrderItemRecord] = Field(default_factory=list)


class EnrichedOrderItem(OrderItemRecord):
    """An order line annotated with the catalog product name."""

    name: str


class EnrichedOrder(OrderSummary):
    """Response view of an order whose items carry catalog names.

    Names are never persisted; they are joined from a catalog reply.
    """

    items: list[EnrichedOrderItem]


class PageMeta(BaseModel):
    """Pagination metadata of an order listing."""

    total: int
    page: int
    last_page: int


class OrderPage(BaseModel):
    """One page of orders plus pagination metadata."""

    data: list[OrderSummary]
    meta: PageMeta
