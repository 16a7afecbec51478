"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers, websocket frames and tests.
"""

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1)
    role: Optional[str] = None


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class OrderItemIn(BaseModel):
    item_name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    note: Optional[str] = None


class OrderCreate(BaseModel):
    """Request body for placing an order."""
    partner_id: Optional[int] = None
    delivery_type: Literal["pickup", "delivery"] = "delivery"
    tip_amount: float = Field(default=0.0, ge=0)
    note: Optional[str] = None
    items: List[OrderItemIn]


class OrderStatusUpdate(BaseModel):
    status: str


class DeliveryCreate(BaseModel):
    """Manual assignment of an order to a courier."""
    order_id: int
    courier_id: int


class DeliveryStatusUpdate(BaseModel):
    status: Literal["accepted", "picked_up", "in_transit", "delivered", "failed", "canceled"]


class ImageContent(BaseModel):
    url: str = Field(min_length=1)
    caption: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class MessageContent(BaseModel):
    """Chat message body: non-empty text, at least one image, or a video url."""
    text: Optional[str] = None
    images: Optional[List[ImageContent]] = None
    video: Optional[str] = None

    @model_validator(mode="after")
    def _require_body(self):
        if self.text is not None and self.text.strip():
            return self
        if self.images:
            return self
        if self.video:
            return self
        raise ValueError("message content must contain text, images or video")


class ChatCreate(BaseModel):
    participant_ids: List[int] = Field(default_factory=list)


class MessageIn(BaseModel):
    content: MessageContent


class PartnerApplicationIn(BaseModel):
    """A business applying to sell on the marketplace."""
    name: str = Field(min_length=1)
    phone_number: Optional[str] = None
    business_type: str = Field(default="restaurant", min_length=1)
    delivery_method: Literal["delivery", "pickup", "both"] = "delivery"
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class PartnerApplicationUpdate(BaseModel):
    status: Optional[Literal["pending", "approved", "rejected"]] = None
    name: Optional[str] = Field(default=None, min_length=1)
    phone_number: Optional[str] = None
    business_type: Optional[str] = Field(default=None, min_length=1)
    delivery_method: Optional[Literal["delivery", "pickup", "both"]] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class NameIn(BaseModel):
    """Body for creating or renaming a catalog or category."""
    name: str = Field(min_length=1, max_length=255)


class CatalogItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    price: float = Field(ge=0)


class CatalogItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)


class PaymentCreate(BaseModel):
    payment_method: Literal["credit_card", "debit_card", "paypal", "mobile_pay"]
    transaction_id: Optional[str] = None
    transaction_data: Dict[str, object] = Field(default_factory=dict)


class PaymentStatusUpdate(BaseModel):
    payment_status: Literal["pending", "completed", "failed"]


class ScheduleCreate(BaseModel):
    """A courier shift; naive datetimes are taken as UTC."""
    start_datetime: datetime
    end_datetime: datetime
    status: Literal["scheduled", "confirmed", "completed", "canceled"] = "scheduled"
    notes: Optional[str] = None


class ScheduleUpdate(BaseModel):
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    status: Optional[Literal["scheduled", "confirmed", "completed", "canceled"]] = None
    notes: Optional[str] = None


class AvailabilityIn(BaseModel):
    is_available: bool
    is_working: bool = True


class AutoAssignIn(BaseModel):
    order_id: int


# Websocket frames

class SubscribeFrame(BaseModel):
    """`{"action": "subscribe", "order_id": ...}`"""
    action: Literal["subscribe"]
    order_id: int


class UpdateLocationFrame(BaseModel):
    """Courier position report for an order."""
    action: Literal["update_location"]
    order_id: int
    courier_id: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


TrackingFrame = Annotated[Union[SubscribeFrame, UpdateLocationFrame], Field(discriminator="action")]
tracking_frame_adapter = TypeAdapter(TrackingFrame)


class SendMessageFrame(BaseModel):
    action: Literal["send_message"]
    content: MessageContent
