"""Business logic services used by HTTP controllers and websocket relays.

This module holds small service classes that coordinate repositories and
auxiliary logic. Services are intentionally thin: they perform
validation, execute domain logic and persist aggregates via
repositories. Validation problems raise `ValueError`, authorization
problems raise `PermissionError` and missing rows are reported as `None`.
"""

from datetime import datetime, timedelta, timezone
from passlib.context import CryptContext
import jwt
from typing import List, Optional
from sqlmodel import Session
from . import models, repositories
from .config import settings
from .utils.geo import haversine_km

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
SELF_ASSIGNABLE_ROLES = ("customer", "courier", "partner")

# next allowed statuses; `accepted` and `in_transit` may be skipped
DELIVERY_TRANSITIONS = {
    "assigned": {"accepted", "picked_up", "failed", "canceled"},
    "accepted": {"picked_up", "failed", "canceled"},
    "picked_up": {"in_transit", "delivered", "failed", "canceled"},
    "in_transit": {"delivered", "failed", "canceled"},
}
ORDER_STATUS_FOR_DELIVERY = {
    "picked_up": "dispatched",
    "delivered": "delivered",
    "failed": "failed",
    "canceled": "cancelled",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.role_repo = repositories.RoleRepository(session)

    def register(self, username: str, password: str, role: Optional[str] = None) -> models.User:
        """Create a new user with a hashed password and an initial role.

        `role` defaults to `customer`; `admin` cannot be self-assigned.
        Returns the persisted `User` instance.
        """
        role_name = role or "customer"
        if role_name not in SELF_ASSIGNABLE_ROLES:
            raise ValueError(f"role not allowed: {role_name}")
        db_role = self.role_repo.get_by_name(role_name)
        if not db_role:
            raise ValueError(f"unknown role: {role_name}")
        hashed = PWD_CTX.hash(password)
        u = self.user_repo.create(models.User(username=username, password_hash=hashed))
        self.role_repo.assign(u.id, db_role)
        return u

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = _now() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "roles": self.role_repo.role_names_for_user(user.id),
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def roles(self, user_id: int) -> List[str]:
        return self.role_repo.role_names_for_user(user_id)


class OrderService:
    """Place orders and manage their lifecycle."""
    def __init__(self, session: Session):
        self.session = session
        self.order_repo = repositories.OrderRepository(session)
        self.delivery_repo = repositories.DeliveryRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def create_order(self, customer_id: int, partner_id: Optional[int], delivery_type: str,
                     items: List[dict], tip_amount: float = 0.0, note: Optional[str] = None) -> models.Order:
        """Create an order; the total is the sum of item lines plus the tip."""
        if not items:
            raise ValueError("order must contain at least one item")
        if delivery_type not in models.DELIVERY_TYPES:
            raise ValueError(f"invalid delivery_type: {delivery_type}")
        if tip_amount < 0:
            raise ValueError("tip_amount must be >= 0")
        if partner_id is not None and not self.user_repo.get(partner_id):
            raise ValueError(f"partner not found: {partner_id}")
        lines = []
        subtotal = 0.0
        for it in items:
            if it["quantity"] < 1:
                raise ValueError("quantity must be >= 1")
            if it["price"] < 0:
                raise ValueError("price must be >= 0")
            subtotal += it["quantity"] * it["price"]
            lines.append(models.OrderItem(item_name=it["item_name"], quantity=it["quantity"], price=it["price"], note=it.get("note")))
        order = models.Order(
            customer_id=customer_id,
            partner_id=partner_id,
            status="pending",
            delivery_type=delivery_type,
            tip_amount=tip_amount,
            total_amount=round(subtotal + tip_amount, 2),
            note=note,
        )
        return self.order_repo.create(order, lines)

    def can_view(self, order: models.Order, user_id: int, roles: List[str]) -> bool:
        """Customer, partner, assigned courier and admins may see an order."""
        if "admin" in roles or user_id in (order.customer_id, order.partner_id):
            return True
        delivery = self.delivery_repo.get_by_order(order.id)
        return delivery is not None and delivery.courier_id == user_id

    def get_for_user(self, order_id: int, user_id: int, roles: List[str]) -> Optional[models.Order]:
        order = self.order_repo.get(order_id)
        if not order:
            return None
        if not self.can_view(order, user_id, roles):
            raise PermissionError("not allowed to view this order")
        return order

    def list_for_user(self, user_id: int, roles: List[str]) -> List[models.Order]:
        """Own orders for customers, received orders for partners."""
        orders = {o.id: o for o in self.order_repo.list_for_customer(user_id)}
        if "partner" in roles:
            for o in self.order_repo.list_for_partner(user_id):
                orders[o.id] = o
        return sorted(orders.values(), key=lambda o: o.id, reverse=True)

    def update_status(self, order_id: int, status: str, user_id: int, roles: List[str]) -> Optional[models.Order]:
        """Set an order status; terminal orders cannot change."""
        if status not in models.ORDER_STATUSES:
            raise ValueError(f"invalid order status: {status}")
        order = self.order_repo.get(order_id)
        if not order:
            return None
        if "admin" not in roles and order.partner_id != user_id:
            raise PermissionError("only the order's partner may change its status")
        if order.status in models.TERMINAL_ORDER_STATUSES:
            raise ValueError(f"order is already {order.status}")
        order.status = status
        order.updated_at = _now()
        return self.order_repo.save(order)

    def items(self, order_id: int) -> List[models.OrderItem]:
        return self.order_repo.list_items(order_id)


class DeliveryService:
    """Assign orders to couriers and move deliveries through their statuses."""
    def __init__(self, session: Session):
        self.session = session
        self.delivery_repo = repositories.DeliveryRepository(session)
        self.order_repo = repositories.OrderRepository(session)
        self.role_repo = repositories.RoleRepository(session)
        self.availability_repo = repositories.AvailabilityRepository(session)
        self.partner_repo = repositories.PartnerRepository(session)
        self.location_repo = repositories.LocationRepository(session)

    def _assignable_order(self, order_id: int) -> models.Order:
        order = self.order_repo.get(order_id)
        if not order:
            raise ValueError(f"order not found: {order_id}")
        if order.delivery_type != "delivery":
            raise ValueError("order is not a delivery order")
        if order.status in models.TERMINAL_ORDER_STATUSES:
            raise ValueError(f"order is already {order.status}")
        if self.delivery_repo.get_by_order(order_id):
            raise ValueError("order already has a delivery")
        return order

    def assign(self, order_id: int, courier_id: int) -> models.Delivery:
        """Create a delivery for `order_id` handled by `courier_id`.

        The estimated delivery time is 30 minutes from assignment.
        """
        self._assignable_order(order_id)
        if "courier" not in self.role_repo.role_names_for_user(courier_id):
            raise ValueError(f"user is not a courier: {courier_id}")
        return self._create(order_id, courier_id)

    def assign_nearest(self, order_id: int) -> models.Delivery:
        """Assign `order_id` to the closest ready courier.

        Ready couriers are working, available and have no active delivery.
        When the order's partner has a location, couriers with a known last
        position are ranked by distance to it; otherwise, or when no
        candidate has a position, the lowest courier id wins.
        """
        order = self._assignable_order(order_id)
        candidates = self.availability_repo.list_ready_courier_ids()
        if not candidates:
            raise ValueError("no available couriers")
        chosen = candidates[0]
        partner = self.partner_repo.get_by_user(order.partner_id) if order.partner_id else None
        if partner and partner.latitude is not None and partner.longitude is not None:
            ranked = []
            for courier_id in candidates:
                position = self.location_repo.latest_for_courier(str(courier_id))
                if position:
                    distance = haversine_km(partner.latitude, partner.longitude, position.latitude, position.longitude)
                    ranked.append((distance, courier_id))
            if ranked:
                chosen = min(ranked)[1]
        return self._create(order_id, chosen)

    def _create(self, order_id: int, courier_id: int) -> models.Delivery:
        now = _now()
        delivery = models.Delivery(
            order_id=order_id,
            courier_id=courier_id,
            status="assigned",
            assigned_at=now,
            updated_at=now,
            estimated_delivery_time=now + timedelta(minutes=30),
        )
        return self.delivery_repo.create(delivery)

    def get(self, delivery_id: int) -> Optional[models.Delivery]:
        return self.delivery_repo.get(delivery_id)

    def active_for_courier(self, courier_id: int) -> List[models.Delivery]:
        return self.delivery_repo.list_active_for_courier(courier_id)

    def update_status(self, delivery_id: int, status: str, courier_id: int) -> Optional[models.Delivery]:
        """Apply a courier-reported status change.

        Only the assigned courier may update a delivery. Entering a status
        stamps its timestamp and the order status follows the delivery.
        """
        delivery = self.delivery_repo.get(delivery_id)
        if not delivery:
            return None
        if delivery.courier_id != courier_id:
            raise PermissionError("not authorized to update this delivery")
        allowed = DELIVERY_TRANSITIONS.get(delivery.status, set())
        if status not in allowed:
            raise ValueError(f"invalid status transition: {delivery.status} -> {status}")
        now = _now()
        delivery.status = status
        delivery.updated_at = now
        if status == "accepted":
            delivery.accepted_at = now
        elif status == "picked_up":
            delivery.picked_up_at = now
        elif status == "delivered":
            delivery.delivered_at = now
        delivery = self.delivery_repo.save(delivery)
        order_status = ORDER_STATUS_FOR_DELIVERY.get(status)
        if order_status:
            order = self.order_repo.get(delivery.order_id)
            if order and order.status not in models.TERMINAL_ORDER_STATUSES:
                order.status = order_status
                order.updated_at = now
                self.order_repo.save(order)
        return delivery


class DeliveryTokenService:
    """Sign and verify customer tracking tokens for a delivery."""

    def generate_token(self, delivery_id: int, order_id: Optional[int] = None) -> str:
        now = _now()
        payload = {
            "delivery_id": delivery_id,
            "order_id": order_id,
            "created_at": now.isoformat(),
            "exp": int((now + timedelta(hours=settings.DELIVERY_TOKEN_EXPIRE_HOURS)).timestamp()),
        }
        return jwt.encode(payload, settings.DELIVERY_TOKEN_SECRET, algorithm="HS256")

    def verify_token(self, token: str) -> Optional[dict]:
        """Return the decoded payload or `None` for an invalid/expired token."""
        try:
            payload = jwt.decode(token, settings.DELIVERY_TOKEN_SECRET, algorithms=["HS256"])
        except jwt.PyJWTError:
            return None
        if not isinstance(payload.get("delivery_id"), int):
            return None
        return payload


def location_to_dict(record: models.DeliveryTracking) -> dict:
    return {
        "id": record.id,
        "order_id": record.order_id,
        "courier_id": record.courier_id,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "timestamp": models.isoformat_utc(record.timestamp),
    }


class TrackingService:
    """Courier location persistence and publish authorization."""
    def __init__(self, session: Session):
        self.session = session
        self.location_repo = repositories.LocationRepository(session)
        self.delivery_repo = repositories.DeliveryRepository(session)
        self.role_repo = repositories.RoleRepository(session)

    def save_location(self, order_id: int, courier_id: str, latitude: float, longitude: float,
                      timestamp: Optional[datetime] = None) -> models.DeliveryTracking:
        record = models.DeliveryTracking(
            order_id=order_id,
            courier_id=courier_id,
            latitude=latitude,
            longitude=longitude,
            timestamp=timestamp or _now(),
        )
        return self.location_repo.save_location(record)

    def get_latest_location(self, order_id: int) -> Optional[models.DeliveryTracking]:
        return self.location_repo.get_latest_location(order_id)

    def can_publish(self, order_id: int, user_id: int) -> bool:
        """The assigned courier of an assigned order, or any courier otherwise."""
        delivery = self.delivery_repo.get_by_order(order_id)
        if delivery is not None:
            return delivery.courier_id == user_id
        return "courier" in self.role_repo.role_names_for_user(user_id)

    def can_watch(self, order_id: int, user_id: int) -> bool:
        """Watching an order's position requires being able to view the order."""
        orders = OrderService(self.session)
        order = orders.order_repo.get(order_id)
        if order is None:
            return False
        return orders.can_view(order, user_id, self.role_repo.role_names_for_user(user_id))


class DatabaseLocationStore:
    """Location store for the tracking relay; opens one session per call.

    Websocket connections outlive request scopes, so each operation
    uses its own short-lived session and returns plain dicts.
    """
    def __init__(self, engine):
        self.engine = engine

    def save_location(self, order_id: int, courier_id: str, latitude: float, longitude: float,
                      timestamp: Optional[datetime] = None) -> dict:
        with Session(self.engine) as session:
            record = TrackingService(session).save_location(order_id, courier_id, latitude, longitude, timestamp)
            return location_to_dict(record)

    def get_latest_location(self, order_id: int) -> Optional[dict]:
        with Session(self.engine) as session:
            record = TrackingService(session).get_latest_location(order_id)
            return location_to_dict(record) if record else None

    def can_publish(self, order_id: int, user_id: int) -> bool:
        with Session(self.engine) as session:
            return TrackingService(session).can_publish(order_id, user_id)

    def can_watch(self, order_id: int, user_id: int) -> bool:
        with Session(self.engine) as session:
            return TrackingService(session).can_watch(order_id, user_id)

    def delivery_snapshot(self, delivery_id: int) -> Optional[dict]:
        """Status and last known courier position of a delivery, or `None`."""
        with Session(self.engine) as session:
            delivery = repositories.DeliveryRepository(session).get(delivery_id)
            if not delivery:
                return None
            latest = TrackingService(session).get_latest_location(delivery.order_id)
            return {
                "delivery_id": delivery.id,
                "order_id": delivery.order_id,
                "status": delivery.status,
                "last_location": location_to_dict(latest) if latest else None,
            }


class ChatService:
    """Create chats and exchange messages between participants."""
    def __init__(self, session: Session):
        self.session = session
        self.chat_repo = repositories.ChatRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def create_chat(self, current_user_id: int, participant_ids: List[int]) -> models.Chat:
        """Create a chat with the current user plus `participant_ids` (deduplicated)."""
        ids = list(dict.fromkeys([current_user_id, *participant_ids]))
        for uid in ids:
            if not self.user_repo.get(uid):
                raise ValueError(f"user not found: {uid}")
        return self.chat_repo.create_chat(ids)

    def list_chats(self, user_id: int) -> List[models.Chat]:
        return self.chat_repo.list_for_user(user_id)

    def _require_participant(self, chat_id: int, user_id: int) -> Optional[models.Chat]:
        chat = self.chat_repo.get(chat_id)
        if not chat:
            return None
        if not self.chat_repo.is_participant(chat_id, user_id):
            raise PermissionError("not a participant of this chat")
        return chat

    def get_messages(self, chat_id: int, user_id: int) -> Optional[List[models.Message]]:
        if not self._require_participant(chat_id, user_id):
            return None
        return self.chat_repo.list_messages(chat_id)

    def send_message(self, chat_id: int, sender_id: int, content: dict) -> Optional[models.Message]:
        """Persist a message; `content` is already validated by the caller."""
        if not self._require_participant(chat_id, sender_id):
            return None
        return self.chat_repo.create_message(models.Message(chat_id=chat_id, sender_id=sender_id, content=content))

    def participants(self, chat_id: int) -> List[int]:
        return self.chat_repo.participant_ids(chat_id)


def message_to_dict(message: models.Message) -> dict:
    return {
        "id": message.id,
        "chat_id": message.chat_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "created_at": models.isoformat_utc(message.created_at),
    }


class DatabaseChatStore:
    """Chat persistence for the chat relay; opens one session per call."""
    def __init__(self, engine):
        self.engine = engine

    def is_participant(self, chat_id: int, user_id: int) -> bool:
        with Session(self.engine) as session:
            return repositories.ChatRepository(session).is_participant(chat_id, user_id)

    def save_message(self, chat_id: int, sender_id: int, content: dict) -> Optional[dict]:
        with Session(self.engine) as session:
            message = ChatService(session).send_message(chat_id, sender_id, content)
            return message_to_dict(message) if message else None


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive input is taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PartnerService:
    """Partner applications and their review by admins."""
    def __init__(self, session: Session):
        self.session = session
        self.partner_repo = repositories.PartnerRepository(session)
        self.role_repo = repositories.RoleRepository(session)

    def apply(self, user_id: int, fields: dict) -> models.Partner:
        """Submit the application of `user_id`; one application per user."""
        if self.partner_repo.get_by_user(user_id):
            raise ValueError("an application already exists for this user")
        if fields.get("delivery_method", "delivery") not in models.PARTNER_DELIVERY_METHODS:
            raise ValueError(f"invalid delivery method: {fields['delivery_method']}")
        return self.partner_repo.create(models.Partner(user_id=user_id, status="pending", **fields))

    def list_applications(self, status: Optional[str] = None) -> List[models.Partner]:
        if status is not None and status not in models.PARTNER_STATUSES:
            raise ValueError(f"invalid application status: {status}")
        return self.partner_repo.list_all(status)

    def get_for_user(self, partner_id: int, user_id: int, roles: List[str]) -> Optional[models.Partner]:
        partner = self.partner_repo.get(partner_id)
        if not partner:
            return None
        if "admin" not in roles and partner.user_id != user_id:
            raise PermissionError("not allowed to view this application")
        return partner

    def update(self, partner_id: int, changes: dict, user_id: int, roles: List[str]) -> Optional[models.Partner]:
        """Edit an application.

        Applicants may edit their own details; only admins change the
        status. Approving grants the applicant the `partner` role.
        """
        partner = self.get_for_user(partner_id, user_id, roles)
        if not partner:
            return None
        status = changes.pop("status", None)
        if status is not None and "admin" not in roles:
            raise PermissionError("only admins may review applications")
        for key, value in changes.items():
            setattr(partner, key, value)
        if status is not None:
            partner.status = status
            if status == "approved":
                self.role_repo.assign(partner.user_id, self.role_repo.get_by_name("partner"))
        partner.updated_at = _now()
        return self.partner_repo.save(partner)

    def delete(self, partner_id: int) -> bool:
        partner = self.partner_repo.get(partner_id)
        if not partner:
            return False
        self.partner_repo.delete(partner)
        return True


class CatalogService:
    """Catalogs of a partner, with categories and items.

    Only the owning partner or an admin may change a catalog.
    """
    def __init__(self, session: Session):
        self.session = session
        self.catalog_repo = repositories.CatalogRepository(session)

    def _owned_catalog(self, catalog_id: int, user_id: int, roles: List[str]) -> Optional[models.Catalog]:
        catalog = self.catalog_repo.get_catalog(catalog_id)
        if not catalog:
            return None
        if "admin" not in roles and catalog.partner_id != user_id:
            raise PermissionError("not the owner of this catalog")
        return catalog

    def _owned_category(self, category_id: int, user_id: int, roles: List[str]) -> Optional[models.CatalogCategory]:
        category = self.catalog_repo.get_category(category_id)
        if not category:
            return None
        self._owned_catalog(category.catalog_id, user_id, roles)
        return category

    def _owned_item(self, item_id: int, user_id: int, roles: List[str]) -> Optional[models.CatalogItem]:
        item = self.catalog_repo.get_item(item_id)
        if not item:
            return None
        self._owned_category(item.catalog_category_id, user_id, roles)
        return item

    def create_catalog(self, partner_id: int, name: str) -> models.Catalog:
        return self.catalog_repo.save(models.Catalog(partner_id=partner_id, name=name))

    def rename_catalog(self, catalog_id: int, name: str, user_id: int, roles: List[str]) -> Optional[models.Catalog]:
        catalog = self._owned_catalog(catalog_id, user_id, roles)
        if not catalog:
            return None
        catalog.name = name
        catalog.updated_at = _now()
        return self.catalog_repo.save(catalog)

    def delete_catalog(self, catalog_id: int, user_id: int, roles: List[str]) -> bool:
        catalog = self._owned_catalog(catalog_id, user_id, roles)
        if not catalog:
            return False
        self.catalog_repo.delete_catalog(catalog)
        return True

    def add_category(self, catalog_id: int, name: str, user_id: int, roles: List[str]) -> Optional[models.CatalogCategory]:
        if not self._owned_catalog(catalog_id, user_id, roles):
            return None
        return self.catalog_repo.save(models.CatalogCategory(catalog_id=catalog_id, name=name))

    def rename_category(self, category_id: int, name: str, user_id: int, roles: List[str]) -> Optional[models.CatalogCategory]:
        category = self._owned_category(category_id, user_id, roles)
        if not category:
            return None
        category.name = name
        category.updated_at = _now()
        return self.catalog_repo.save(category)

    def delete_category(self, category_id: int, user_id: int, roles: List[str]) -> bool:
        category = self._owned_category(category_id, user_id, roles)
        if not category:
            return False
        self.catalog_repo.delete_category(category)
        return True

    def add_item(self, category_id: int, fields: dict, user_id: int, roles: List[str]) -> Optional[models.CatalogItem]:
        if not self._owned_category(category_id, user_id, roles):
            return None
        return self.catalog_repo.save(models.CatalogItem(catalog_category_id=category_id, **fields))

    def update_item(self, item_id: int, changes: dict, user_id: int, roles: List[str]) -> Optional[models.CatalogItem]:
        item = self._owned_item(item_id, user_id, roles)
        if not item:
            return None
        for key, value in changes.items():
            setattr(item, key, value)
        item.updated_at = _now()
        return self.catalog_repo.save(item)

    def delete_item(self, item_id: int, user_id: int, roles: List[str]) -> bool:
        item = self._owned_item(item_id, user_id, roles)
        if not item:
            return False
        self.catalog_repo.delete_item(item)
        return True

    def menu(self, partner_id: int) -> List[dict]:
        """Catalogs of `partner_id` with nested categories and items."""
        out = []
        for catalog in self.catalog_repo.list_for_partner(partner_id):
            categories = []
            for category in self.catalog_repo.list_categories(catalog.id):
                items = [
                    {"id": i.id, "name": i.name, "description": i.description, "price": i.price}
                    for i in self.catalog_repo.list_items(category.id)
                ]
                categories.append({"id": category.id, "name": category.name, "items": items})
            out.append({"id": catalog.id, "partner_id": catalog.partner_id, "name": catalog.name, "categories": categories})
        return out


class PaymentService:
    """The payment record attached to an order."""
    def __init__(self, session: Session):
        self.session = session
        self.payment_repo = repositories.PaymentRepository(session)
        self.orders = OrderService(session)

    def create_payment(self, order_id: int, user_id: int, payment_method: str,
                       transaction_id: Optional[str] = None,
                       transaction_data: Optional[dict] = None) -> Optional[models.Payment]:
        """Record the customer's payment for an order; starts as `pending`."""
        order = self.orders.order_repo.get(order_id)
        if not order:
            return None
        if order.customer_id != user_id:
            raise PermissionError("only the customer can pay for this order")
        if payment_method not in models.PAYMENT_METHODS:
            raise ValueError(f"invalid payment method: {payment_method}")
        if self.payment_repo.get_by_order(order_id):
            raise ValueError("order already has a payment")
        payment = models.Payment(
            order_id=order_id,
            payment_status="pending",
            payment_method=payment_method,
            transaction_id=transaction_id,
            transaction_data=transaction_data or {},
        )
        return self.payment_repo.save(payment)

    def get_for_user(self, order_id: int, user_id: int, roles: List[str]) -> Optional[models.Payment]:
        if not self.orders.get_for_user(order_id, user_id, roles):
            return None
        return self.payment_repo.get_by_order(order_id)

    def update_status(self, order_id: int, status: str, user_id: int, roles: List[str]) -> Optional[models.Payment]:
        """Settle a pending payment (order's partner or an admin)."""
        if status not in models.PAYMENT_STATUSES:
            raise ValueError(f"invalid payment status: {status}")
        order = self.orders.order_repo.get(order_id)
        if not order:
            return None
        if "admin" not in roles and order.partner_id != user_id:
            raise PermissionError("only the order's partner may settle its payment")
        payment = self.payment_repo.get_by_order(order_id)
        if not payment:
            return None
        if payment.payment_status != "pending":
            raise ValueError(f"payment is already {payment.payment_status}")
        payment.payment_status = status
        payment.updated_at = _now()
        return self.payment_repo.save(payment)


class ScheduleService:
    """Courier shifts, managed by the courier who works them."""
    def __init__(self, session: Session):
        self.session = session
        self.schedule_repo = repositories.ScheduleRepository(session)

    def create(self, courier_id: int, start: datetime, end: datetime, status: str = "scheduled",
               notes: Optional[str] = None) -> models.CourierSchedule:
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise ValueError("end_datetime must be after start_datetime")
        if status not in models.SCHEDULE_STATUSES:
            raise ValueError(f"invalid schedule status: {status}")
        schedule = models.CourierSchedule(
            courier_id=courier_id, start_datetime=start, end_datetime=end, status=status, notes=notes
        )
        return self.schedule_repo.save(schedule)

    def list_for_courier(self, courier_id: int, status: Optional[str] = None,
                         from_date: Optional[datetime] = None,
                         to_date: Optional[datetime] = None) -> List[models.CourierSchedule]:
        return self.schedule_repo.list_for_courier(
            courier_id,
            status,
            as_utc(from_date) if from_date else None,
            as_utc(to_date) if to_date else None,
        )

    def _own(self, schedule_id: int, courier_id: int) -> Optional[models.CourierSchedule]:
        schedule = self.schedule_repo.get(schedule_id)
        if not schedule:
            return None
        if schedule.courier_id != courier_id:
            raise PermissionError("not your schedule")
        return schedule

    def update(self, schedule_id: int, courier_id: int, changes: dict) -> Optional[models.CourierSchedule]:
        schedule = self._own(schedule_id, courier_id)
        if not schedule:
            return None
        start = as_utc(changes.get("start_datetime") or schedule.start_datetime)
        end = as_utc(changes.get("end_datetime") or schedule.end_datetime)
        if end <= start:
            raise ValueError("end_datetime must be after start_datetime")
        schedule.start_datetime = start
        schedule.end_datetime = end
        if changes.get("status") is not None:
            schedule.status = changes["status"]
        if "notes" in changes:
            schedule.notes = changes["notes"]
        schedule.updated_at = _now()
        return self.schedule_repo.save(schedule)

    def delete(self, schedule_id: int, courier_id: int) -> bool:
        schedule = self._own(schedule_id, courier_id)
        if not schedule:
            return False
        self.schedule_repo.delete(schedule)
        return True


class AvailabilityService:
    def __init__(self, session: Session):
        self.session = session
        self.availability_repo = repositories.AvailabilityRepository(session)

    def set(self, courier_id: int, is_available: bool, is_working: bool) -> models.CourierAvailability:
        """Record whether a courier takes new deliveries."""
        row = self.availability_repo.get(courier_id) or models.CourierAvailability(courier_id=courier_id)
        row.is_available = is_available
        row.is_working = is_working
        row.updated_at = _now()
        return self.availability_repo.save(row)
