"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users and
roles, orders, deliveries, courier locations, chats, partners, catalogs,
payments, schedules). Repositories return SQLModel objects and perform
commits/refreshes where appropriate.
"""

from datetime import datetime
from typing import List, Optional
from sqlmodel import Session, select
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class RoleRepository:
    """Role lookups and user/role membership."""
    def __init__(self, session: Session):
        self.session = session

    def get_by_name(self, name: str) -> Optional[models.Role]:
        stmt = select(models.Role).where(models.Role.name == name)
        return self.session.exec(stmt).first()

    def assign(self, user_id: int, role: models.Role) -> None:
        """Add `user_id` to `role`; no-op when already a member."""
        stmt = select(models.UserRole).where(models.UserRole.user_id == user_id, models.UserRole.role_id == role.id)
        if self.session.exec(stmt).first():
            return
        self.session.add(models.UserRole(user_id=user_id, role_id=role.id))
        self.session.commit()

    def role_names_for_user(self, user_id: int) -> List[str]:
        stmt = (
            select(models.Role.name)
            .join(models.UserRole, models.UserRole.role_id == models.Role.id)
            .where(models.UserRole.user_id == user_id)
            .order_by(models.Role.name)
        )
        return list(self.session.exec(stmt).all())


class OrderRepository:
    """Persist orders together with their items."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, order: models.Order, items: List[models.OrderItem]) -> models.Order:
        """Store an `Order` and attach its `OrderItem`s."""
        self.session.add(order)
        self.session.commit()
        self.session.refresh(order)
        for it in items:
            it.order_id = order.id
            self.session.add(it)
        self.session.commit()
        self.session.refresh(order)
        return order

    def get(self, order_id: int) -> Optional[models.Order]:
        return self.session.get(models.Order, order_id)

    def list_items(self, order_id: int) -> List[models.OrderItem]:
        stmt = select(models.OrderItem).where(models.OrderItem.order_id == order_id).order_by(models.OrderItem.id)
        return list(self.session.exec(stmt).all())

    def list_for_customer(self, customer_id: int) -> List[models.Order]:
        stmt = select(models.Order).where(models.Order.customer_id == customer_id).order_by(models.Order.created_at.desc())
        return list(self.session.exec(stmt).all())

    def list_for_partner(self, partner_id: int) -> List[models.Order]:
        stmt = select(models.Order).where(models.Order.partner_id == partner_id).order_by(models.Order.created_at.desc())
        return list(self.session.exec(stmt).all())

    def save(self, order: models.Order) -> models.Order:
        self.session.add(order)
        self.session.commit()
        self.session.refresh(order)
        return order


class DeliveryRepository:
    """Delivery assignments and their status changes."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, delivery: models.Delivery) -> models.Delivery:
        self.session.add(delivery)
        self.session.commit()
        self.session.refresh(delivery)
        return delivery

    def get(self, delivery_id: int) -> Optional[models.Delivery]:
        return self.session.get(models.Delivery, delivery_id)

    def get_by_order(self, order_id: int) -> Optional[models.Delivery]:
        stmt = select(models.Delivery).where(models.Delivery.order_id == order_id)
        return self.session.exec(stmt).first()

    def list_active_for_courier(self, courier_id: int) -> List[models.Delivery]:
        """Deliveries of `courier_id` that are not yet in a terminal status."""
        stmt = (
            select(models.Delivery)
            .where(
                models.Delivery.courier_id == courier_id,
                models.Delivery.status.not_in(models.TERMINAL_DELIVERY_STATUSES),
            )
            .order_by(models.Delivery.assigned_at.desc())
        )
        return list(self.session.exec(stmt).all())

    def save(self, delivery: models.Delivery) -> models.Delivery:
        self.session.add(delivery)
        self.session.commit()
        self.session.refresh(delivery)
        return delivery


class LocationRepository:
    """Append-only store of courier positions per order."""
    def __init__(self, session: Session):
        self.session = session

    def save_location(self, record: models.DeliveryTracking) -> models.DeliveryTracking:
        """Insert a location record and return the stored row."""
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def get_latest_location(self, order_id: int) -> Optional[models.DeliveryTracking]:
        """Return the most recent record for `order_id` or `None`."""
        stmt = (
            select(models.DeliveryTracking)
            .where(models.DeliveryTracking.order_id == order_id)
            .order_by(models.DeliveryTracking.timestamp.desc(), models.DeliveryTracking.id.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()

    def latest_for_courier(self, courier_id: str) -> Optional[models.DeliveryTracking]:
        """Most recent position reported by `courier_id` on any order."""
        stmt = (
            select(models.DeliveryTracking)
            .where(models.DeliveryTracking.courier_id == courier_id)
            .order_by(models.DeliveryTracking.timestamp.desc(), models.DeliveryTracking.id.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()


class ChatRepository:
    """Chats, their participants and messages."""
    def __init__(self, session: Session):
        self.session = session

    def create_chat(self, user_ids: List[int]) -> models.Chat:
        """Create a chat and add every id in `user_ids` as a participant."""
        chat = models.Chat()
        self.session.add(chat)
        self.session.commit()
        self.session.refresh(chat)
        for uid in user_ids:
            self.session.add(models.UserChat(chat_id=chat.id, user_id=uid))
        self.session.commit()
        return chat

    def get(self, chat_id: int) -> Optional[models.Chat]:
        return self.session.get(models.Chat, chat_id)

    def is_participant(self, chat_id: int, user_id: int) -> bool:
        stmt = select(models.UserChat.id).where(models.UserChat.chat_id == chat_id, models.UserChat.user_id == user_id)
        return self.session.exec(stmt).first() is not None

    def list_for_user(self, user_id: int) -> List[models.Chat]:
        stmt = (
            select(models.Chat)
            .join(models.UserChat, models.UserChat.chat_id == models.Chat.id)
            .where(models.UserChat.user_id == user_id)
            .order_by(models.Chat.id)
        )
        return list(self.session.exec(stmt).all())

    def participant_ids(self, chat_id: int) -> List[int]:
        stmt = select(models.UserChat.user_id).where(models.UserChat.chat_id == chat_id).order_by(models.UserChat.user_id)
        return list(self.session.exec(stmt).all())

    def create_message(self, message: models.Message) -> models.Message:
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        return message

    def list_messages(self, chat_id: int) -> List[models.Message]:
        stmt = select(models.Message).where(models.Message.chat_id == chat_id).order_by(models.Message.created_at, models.Message.id)
        return list(self.session.exec(stmt).all())


class PartnerRepository:
    """Partner applications."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, partner: models.Partner) -> models.Partner:
        self.session.add(partner)
        self.session.commit()
        self.session.refresh(partner)
        return partner

    def get(self, partner_id: int) -> Optional[models.Partner]:
        return self.session.get(models.Partner, partner_id)

    def get_by_user(self, user_id: int) -> Optional[models.Partner]:
        stmt = select(models.Partner).where(models.Partner.user_id == user_id)
        return self.session.exec(stmt).first()

    def list_all(self, status: Optional[str] = None) -> List[models.Partner]:
        stmt = select(models.Partner)
        if status:
            stmt = stmt.where(models.Partner.status == status)
        return list(self.session.exec(stmt.order_by(models.Partner.id)).all())

    def save(self, partner: models.Partner) -> models.Partner:
        self.session.add(partner)
        self.session.commit()
        self.session.refresh(partner)
        return partner

    def delete(self, partner: models.Partner) -> None:
        self.session.delete(partner)
        self.session.commit()


class CatalogRepository:
    """Catalogs with their categories and items.

    Deletes cascade by hand: SQLite does not enforce foreign keys unless
    asked to.
    """
    def __init__(self, session: Session):
        self.session = session

    def save(self, row):
        """Insert or update any catalog row and return it refreshed."""
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def get_catalog(self, catalog_id: int) -> Optional[models.Catalog]:
        return self.session.get(models.Catalog, catalog_id)

    def get_category(self, category_id: int) -> Optional[models.CatalogCategory]:
        return self.session.get(models.CatalogCategory, category_id)

    def get_item(self, item_id: int) -> Optional[models.CatalogItem]:
        return self.session.get(models.CatalogItem, item_id)

    def list_for_partner(self, partner_id: int) -> List[models.Catalog]:
        stmt = select(models.Catalog).where(models.Catalog.partner_id == partner_id).order_by(models.Catalog.id)
        return list(self.session.exec(stmt).all())

    def list_categories(self, catalog_id: int) -> List[models.CatalogCategory]:
        stmt = (
            select(models.CatalogCategory)
            .where(models.CatalogCategory.catalog_id == catalog_id)
            .order_by(models.CatalogCategory.id)
        )
        return list(self.session.exec(stmt).all())

    def list_items(self, category_id: int) -> List[models.CatalogItem]:
        stmt = (
            select(models.CatalogItem)
            .where(models.CatalogItem.catalog_category_id == category_id)
            .order_by(models.CatalogItem.id)
        )
        return list(self.session.exec(stmt).all())

    def delete_item(self, item: models.CatalogItem) -> None:
        self.session.delete(item)
        self.session.commit()

    def delete_category(self, category: models.CatalogCategory) -> None:
        for item in self.list_items(category.id):
            self.session.delete(item)
        self.session.delete(category)
        self.session.commit()

    def delete_catalog(self, catalog: models.Catalog) -> None:
        for category in self.list_categories(catalog.id):
            for item in self.list_items(category.id):
                self.session.delete(item)
            self.session.delete(category)
        self.session.delete(catalog)
        self.session.commit()


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_order(self, order_id: int) -> Optional[models.Payment]:
        stmt = select(models.Payment).where(models.Payment.order_id == order_id)
        return self.session.exec(stmt).first()

    def save(self, payment: models.Payment) -> models.Payment:
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        return payment


class ScheduleRepository:
    """Courier shifts."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, schedule_id: int) -> Optional[models.CourierSchedule]:
        return self.session.get(models.CourierSchedule, schedule_id)

    def list_for_courier(self, courier_id: int, status: Optional[str] = None,
                         from_date: Optional[datetime] = None,
                         to_date: Optional[datetime] = None) -> List[models.CourierSchedule]:
        """Shifts of `courier_id`, optionally overlapping `[from_date, to_date]`."""
        stmt = select(models.CourierSchedule).where(models.CourierSchedule.courier_id == courier_id)
        if status:
            stmt = stmt.where(models.CourierSchedule.status == status)
        if from_date is not None:
            stmt = stmt.where(models.CourierSchedule.end_datetime >= from_date)
        if to_date is not None:
            stmt = stmt.where(models.CourierSchedule.start_datetime <= to_date)
        return list(self.session.exec(stmt.order_by(models.CourierSchedule.start_datetime)).all())

    def save(self, schedule: models.CourierSchedule) -> models.CourierSchedule:
        self.session.add(schedule)
        self.session.commit()
        self.session.refresh(schedule)
        return schedule

    def delete(self, schedule: models.CourierSchedule) -> None:
        self.session.delete(schedule)
        self.session.commit()


class AvailabilityRepository:
    """Courier availability flags."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, courier_id: int) -> Optional[models.CourierAvailability]:
        return self.session.get(models.CourierAvailability, courier_id)

    def save(self, availability: models.CourierAvailability) -> models.CourierAvailability:
        self.session.add(availability)
        self.session.commit()
        self.session.refresh(availability)
        return availability

    def list_ready_courier_ids(self) -> List[int]:
        """Couriers that are working, available and have no active delivery."""
        busy = select(models.Delivery.courier_id).where(
            models.Delivery.status.not_in(models.TERMINAL_DELIVERY_STATUSES)
        )
        stmt = (
            select(models.CourierAvailability.courier_id)
            .where(
                models.CourierAvailability.is_available == True,  # noqa: E712
                models.CourierAvailability.is_working == True,  # noqa: E712
                models.CourierAvailability.courier_id.not_in(busy),
            )
            .order_by(models.CourierAvailability.courier_id)
        )
        return list(self.session.exec(stmt).all())
