"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table; `migrations/*.sql` holds the same schema as
plain SQL for deployments.
"""

from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, Index, JSON, UniqueConstraint
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """ISO-8601 string for `value`; naive datetimes (SQLite) are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


ORDER_STATUSES = (
    "pending",
    "confirmed",
    "preparing",
    "ready",
    "dispatched",
    "delivered",
    "cancelled",
    "failed",
    "refunded",
)
TERMINAL_ORDER_STATUSES = ("delivered", "cancelled", "failed", "refunded")
DELIVERY_TYPES = ("pickup", "delivery")
DELIVERY_STATUSES = ("assigned", "accepted", "picked_up", "in_transit", "delivered", "failed", "canceled")
TERMINAL_DELIVERY_STATUSES = ("delivered", "failed", "canceled")
PARTNER_STATUSES = ("pending", "approved", "rejected")
PARTNER_DELIVERY_METHODS = ("delivery", "pickup", "both")
PAYMENT_STATUSES = ("pending", "completed", "failed")
PAYMENT_METHODS = ("credit_card", "debit_card", "paypal", "mobile_pay")
SCHEDULE_STATUSES = ("scheduled", "confirmed", "completed", "canceled")


class User(SQLModel, table=True):
    """A registered account.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=_utcnow)


class Role(SQLModel, table=True):
    """A named role (`customer`, `courier`, `partner`, `admin`)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)


class UserRole(SQLModel, table=True):
    """Membership of a user in a role."""
    __tablename__ = "user_role"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="unique_user_role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role_id: int = Field(foreign_key="role.id")


class Order(SQLModel, table=True):
    """A customer order placed with a partner."""
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: int = Field(foreign_key="user.id", index=True)
    partner_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    status: str = "pending"
    delivery_type: str = "delivery"
    total_amount: float = 0.0
    tip_amount: float = 0.0
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class OrderItem(SQLModel, table=True):
    """A line of an `Order`."""
    __tablename__ = "order_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    item_name: str
    quantity: int
    price: float
    note: Optional[str] = None


class Delivery(SQLModel, table=True):
    """Assignment of an order to a courier and its progress."""
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True, unique=True)
    courier_id: int = Field(foreign_key="user.id", index=True)
    status: str = "assigned"
    assigned_at: datetime = Field(default_factory=_utcnow)
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class DeliveryTracking(SQLModel, table=True):
    """An append-only courier position reported for an order."""
    __tablename__ = "delivery_tracking"
    __table_args__ = (Index("idx_delivery_tracking_order_id_timestamp", "order_id", "timestamp"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int
    courier_id: str
    latitude: float
    longitude: float
    timestamp: datetime = Field(default_factory=_utcnow)


class Chat(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = "New Chat"
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class UserChat(SQLModel, table=True):
    """Participation of a user in a `Chat`."""
    __tablename__ = "user_chat"
    __table_args__ = (UniqueConstraint("chat_id", "user_id", name="unique_user_chat"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(foreign_key="chat.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    user_role: str = "participant"
    joined_at: datetime = Field(default_factory=_utcnow)


class Message(SQLModel, table=True):
    """A chat message; `content` holds text, images or a video url."""
    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(foreign_key="chat.id", index=True)
    sender_id: int = Field(foreign_key="user.id")
    content: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)


class Partner(SQLModel, table=True):
    """A business application; approval grants its user the `partner` role.

    `latitude`/`longitude` locate the pickup point used when picking the
    nearest courier.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True, unique=True)
    name: str
    phone_number: Optional[str] = None
    business_type: str = "restaurant"
    delivery_method: str = "delivery"
    status: str = "pending"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Catalog(SQLModel, table=True):
    """A partner's menu."""
    id: Optional[int] = Field(default=None, primary_key=True)
    partner_id: int = Field(foreign_key="user.id", index=True)
    name: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CatalogCategory(SQLModel, table=True):
    __tablename__ = "catalog_category"

    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_id: int = Field(foreign_key="catalog.id", index=True)
    name: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CatalogItem(SQLModel, table=True):
    __tablename__ = "catalog_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_category_id: int = Field(foreign_key="catalog_category.id", index=True)
    name: str
    description: str = ""
    price: float
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Payment(SQLModel, table=True):
    """The payment recorded for an order (at most one)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True, unique=True)
    payment_status: str = "pending"
    payment_method: str
    transaction_id: Optional[str] = None
    transaction_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CourierSchedule(SQLModel, table=True):
    """A planned shift of a courier."""
    __tablename__ = "courier_schedule"

    id: Optional[int] = Field(default=None, primary_key=True)
    courier_id: int = Field(foreign_key="user.id", index=True)
    start_datetime: datetime
    end_datetime: datetime
    status: str = "scheduled"
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CourierAvailability(SQLModel, table=True):
    """Whether a courier is working and accepting new deliveries."""
    __tablename__ = "courier_availability"

    courier_id: int = Field(foreign_key="user.id", primary_key=True)
    is_available: bool = False
    is_working: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)
