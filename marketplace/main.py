"""FastAPI application entrypoint, HTTP controllers and websocket routes.

This module defines the HTTP endpoints of the delivery marketplace
backend. Controllers are intentionally thin: they accept requests,
delegate to services, and return JSON responses. Websocket routes hand
accepted connections to the relays stored on `app.state`.

Endpoints implemented:
- POST /auth/register, POST /auth/login, GET /users/me
- POST /orders, GET /orders, GET /orders/{id}, PATCH /orders/{id}/status
- GET /orders/{id}/location, POST|GET|PATCH /orders/{id}/payment
- POST /deliveries, POST /deliveries/auto, GET /courier/deliveries,
  PATCH /deliveries/{id}/status, POST /deliveries/{id}/tracking-token
- POST|GET /partners/applications, GET|PATCH|DELETE /partners/applications/{id}
- POST /catalogs, GET /partners/{id}/catalogs, PATCH|DELETE /catalogs/{id},
  POST /catalogs/{id}/categories, PATCH|DELETE /categories/{id},
  POST /categories/{id}/items, PATCH|DELETE /items/{id}
- POST|GET /courier/schedules, PATCH|DELETE /courier/schedules/{id},
  PUT /courier/availability
- POST /chats, GET /chats, GET|POST /chats/{id}/messages
- WS /ws/delivery-tracking, WS /ws/tracking, WS /ws/chat/{chat_id}
"""

from fastapi import FastAPI, BackgroundTasks, Depends, HTTPException, Request, WebSocket
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from sqlmodel import Session
from datetime import datetime
from typing import Optional
import json
import logging
import time
import uuid
from .database import engine, create_db_and_tables, get_session
from . import services, models
from .auth import get_current_user, get_user_roles, require_roles, user_from_token
from .schemas import (
    AutoAssignIn,
    AvailabilityIn,
    CatalogItemIn,
    CatalogItemUpdate,
    ChatCreate,
    DeliveryCreate,
    DeliveryStatusUpdate,
    MessageIn,
    NameIn,
    OrderCreate,
    OrderStatusUpdate,
    PartnerApplicationIn,
    PartnerApplicationUpdate,
    PaymentCreate,
    PaymentStatusUpdate,
    RegisterIn,
    ScheduleCreate,
    ScheduleUpdate,
)
from .relay import ChatRelay, DeliveryFeed, LocationRelay
from .utils.rate_limit import InMemoryRateLimiter
from .config import settings

app = FastAPI(title="Delivery Marketplace API")
logger = logging.getLogger("marketplace.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_login_rate_limiter = InMemoryRateLimiter()

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

_tracking_store = services.DatabaseLocationStore(engine)
_delivery_tokens = services.DeliveryTokenService()
app.state.location_relay = LocationRelay(
    _tracking_store, authorize=_tracking_store.can_publish, can_watch=_tracking_store.can_watch
)
app.state.delivery_feed = DeliveryFeed(_delivery_tokens, _tracking_store.delivery_snapshot)
app.state.chat_relay = ChatRelay(services.DatabaseChatStore(engine))


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


def _enforce_login_rate_limit(request: Request) -> str:
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    allowed, retry_after = _login_rate_limiter.allow(
        key, settings.LOGIN_RATE_LIMIT_PER_MIN, settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    return key


def _iso(value):
    return models.isoformat_utc(value) if value else None


def _order_out(order: models.Order, items) -> dict:
    return {
        'id': order.id,
        'customer_id': order.customer_id,
        'partner_id': order.partner_id,
        'status': order.status,
        'delivery_type': order.delivery_type,
        'total_amount': order.total_amount,
        'tip_amount': order.tip_amount,
        'note': order.note,
        'created_at': _iso(order.created_at),
        'updated_at': _iso(order.updated_at),
        'items': [
            {'id': it.id, 'item_name': it.item_name, 'quantity': it.quantity, 'price': it.price, 'note': it.note}
            for it in items
        ],
    }


def _delivery_out(d: models.Delivery) -> dict:
    return {
        'id': d.id,
        'order_id': d.order_id,
        'courier_id': d.courier_id,
        'status': d.status,
        'assigned_at': _iso(d.assigned_at),
        'accepted_at': _iso(d.accepted_at),
        'picked_up_at': _iso(d.picked_up_at),
        'delivered_at': _iso(d.delivered_at),
        'estimated_delivery_time': _iso(d.estimated_delivery_time),
    }


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken so the
    operation can be repeated by automation and tests.
    """
    auth = services.AuthService(db)
    existing = auth.user_repo.get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username, 'roles': auth.roles(existing.id)}
    try:
        user = auth.register(payload.username, payload.password, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'id': user.id, 'username': user.username, 'roles': auth.roles(user.id)}


@app.post('/auth/login')
def login(payload: RegisterIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id`, `username` and `roles` and is
    signed using the configured JWT secret.
    """
    key = _enforce_login_rate_limit(request)
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    _login_rate_limiter.reset(key)
    return {'access_token': token}


@app.get('/users/me')
def me(user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    return {'id': user.id, 'username': user.username, 'roles': roles}


@app.post('/orders', status_code=201)
def create_order(payload: OrderCreate, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('customer'))):
    """Place an order for the authenticated customer."""
    svc = services.OrderService(db)
    try:
        order = svc.create_order(
            customer_id=user.id,
            partner_id=payload.partner_id,
            delivery_type=payload.delivery_type,
            items=[it.model_dump() for it in payload.items],
            tip_amount=payload.tip_amount,
            note=payload.note,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _order_out(order, svc.items(order.id))


@app.get('/orders')
def list_orders(db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                roles: list = Depends(get_user_roles)):
    svc = services.OrderService(db)
    return [_order_out(o, svc.items(o.id)) for o in svc.list_for_user(user.id, roles)]


@app.get('/orders/{order_id}')
def get_order(order_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
              roles: list = Depends(get_user_roles)):
    svc = services.OrderService(db)
    try:
        order = svc.get_for_user(order_id, user.id, roles)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not order:
        raise HTTPException(status_code=404, detail='order not found')
    return _order_out(order, svc.items(order.id))


@app.patch('/orders/{order_id}/status')
def update_order_status(order_id: int, payload: OrderStatusUpdate, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user),
                        roles: list = Depends(require_roles('partner', 'admin'))):
    """Change an order status (order's partner or an admin)."""
    svc = services.OrderService(db)
    try:
        order = svc.update_status(order_id, payload.status, user.id, roles)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not order:
        raise HTTPException(status_code=404, detail='order not found')
    return _order_out(order, svc.items(order.id))


@app.get('/orders/{order_id}/location')
def order_location(order_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                   roles: list = Depends(get_user_roles)):
    """Return the last known courier position for an order."""
    try:
        if not services.OrderService(db).get_for_user(order_id, user.id, roles):
            raise HTTPException(status_code=404, detail='order not found')
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    latest = services.TrackingService(db).get_latest_location(order_id)
    if not latest:
        raise HTTPException(status_code=404, detail='no location recorded for this order')
    return services.location_to_dict(latest)


@app.post('/deliveries', status_code=201)
def assign_delivery(payload: DeliveryCreate, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user),
                    roles: list = Depends(require_roles('partner', 'admin'))):
    """Assign an order to a courier."""
    order = services.OrderService(db).order_repo.get(payload.order_id)
    if order and 'admin' not in roles and order.partner_id != user.id:
        raise HTTPException(status_code=403, detail="only the order's partner may assign it")
    try:
        delivery = services.DeliveryService(db).assign(payload.order_id, payload.courier_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("delivery_assigned %s", json.dumps({'delivery_id': delivery.id, 'order_id': delivery.order_id, 'courier_id': delivery.courier_id}))
    return _delivery_out(delivery)


@app.post('/deliveries/auto', status_code=201)
def auto_assign_delivery(payload: AutoAssignIn, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user),
                         roles: list = Depends(require_roles('partner', 'admin'))):
    """Assign an order to the nearest ready courier."""
    order = services.OrderService(db).order_repo.get(payload.order_id)
    if order and 'admin' not in roles and order.partner_id != user.id:
        raise HTTPException(status_code=403, detail="only the order's partner may assign it")
    try:
        delivery = services.DeliveryService(db).assign_nearest(payload.order_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("delivery_assigned %s", json.dumps({'delivery_id': delivery.id, 'order_id': delivery.order_id, 'courier_id': delivery.courier_id, 'auto': True}))
    return _delivery_out(delivery)


@app.get('/courier/deliveries')
def courier_deliveries(db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                       roles: list = Depends(require_roles('courier'))):
    """Active (not yet finished) deliveries of the authenticated courier."""
    return [_delivery_out(d) for d in services.DeliveryService(db).active_for_courier(user.id)]


@app.patch('/deliveries/{delivery_id}/status')
def update_delivery_status(delivery_id: int, payload: DeliveryStatusUpdate, background_tasks: BackgroundTasks,
                           db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                           roles: list = Depends(require_roles('courier'))):
    """Move a delivery to its next status and notify tracking customers."""
    try:
        delivery = services.DeliveryService(db).update_status(delivery_id, payload.status, user.id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not delivery:
        raise HTTPException(status_code=404, detail='delivery not found')
    background_tasks.add_task(app.state.delivery_feed.publish_status, delivery.id, delivery.order_id, delivery.status)
    return {'success': True, 'delivery': _delivery_out(delivery)}


@app.post('/deliveries/{delivery_id}/tracking-token')
def create_tracking_token(delivery_id: int, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    """Issue a tracking token the order's customer can use on /ws/tracking."""
    delivery = services.DeliveryService(db).get(delivery_id)
    if not delivery:
        raise HTTPException(status_code=404, detail='delivery not found')
    order = services.OrderService(db).order_repo.get(delivery.order_id)
    if not order or order.customer_id != user.id:
        raise HTTPException(status_code=403, detail='only the customer can track this delivery')
    token = _delivery_tokens.generate_token(delivery.id, delivery.order_id)
    return {'token': token, 'tracking_url': f'/ws/tracking?token={token}'}


@app.post('/chats', status_code=201)
def create_chat(payload: ChatCreate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.ChatService(db)
    try:
        chat = svc.create_chat(user.id, payload.participant_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'id': chat.id, 'name': chat.name, 'participant_ids': svc.participants(chat.id)}


@app.get('/chats')
def list_chats(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.ChatService(db)
    return [{'id': c.id, 'name': c.name, 'participant_ids': svc.participants(c.id)} for c in svc.list_chats(user.id)]


@app.get('/chats/{chat_id}/messages')
def chat_messages(chat_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        messages = services.ChatService(db).get_messages(chat_id, user.id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if messages is None:
        raise HTTPException(status_code=404, detail='chat not found')
    return [services.message_to_dict(m) for m in messages]


@app.post('/chats/{chat_id}/messages', status_code=201)
def post_chat_message(chat_id: int, payload: MessageIn, background_tasks: BackgroundTasks,
                      db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Store a message and push it to participants connected over websocket."""
    content = payload.content.model_dump(exclude_none=True)
    try:
        message = services.ChatService(db).send_message(chat_id, user.id, content)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if message is None:
        raise HTTPException(status_code=404, detail='chat not found')
    out = services.message_to_dict(message)
    background_tasks.add_task(app.state.chat_relay.publish, chat_id, out)
    return out


def _partner_out(p: models.Partner) -> dict:
    return {
        'id': p.id,
        'user_id': p.user_id,
        'name': p.name,
        'phone_number': p.phone_number,
        'business_type': p.business_type,
        'delivery_method': p.delivery_method,
        'status': p.status,
        'latitude': p.latitude,
        'longitude': p.longitude,
        'created_at': _iso(p.created_at),
    }


def _payment_out(p: models.Payment) -> dict:
    return {
        'id': p.id,
        'order_id': p.order_id,
        'payment_status': p.payment_status,
        'payment_method': p.payment_method,
        'transaction_id': p.transaction_id,
        'transaction_data': p.transaction_data,
        'created_at': _iso(p.created_at),
        'updated_at': _iso(p.updated_at),
    }


def _schedule_out(s: models.CourierSchedule) -> dict:
    return {
        'id': s.id,
        'courier_id': s.courier_id,
        'start_datetime': _iso(s.start_datetime),
        'end_datetime': _iso(s.end_datetime),
        'status': s.status,
        'notes': s.notes,
    }


@app.post('/partners/applications', status_code=201)
def apply_as_partner(payload: PartnerApplicationIn, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """Submit a partner application for review."""
    try:
        partner = services.PartnerService(db).apply(user.id, payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _partner_out(partner)


@app.get('/partners/applications')
def list_partner_applications(status: Optional[str] = None, db: Session = Depends(get_session),
                              roles: list = Depends(require_roles('admin'))):
    try:
        partners = services.PartnerService(db).list_applications(status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_partner_out(p) for p in partners]


@app.get('/partners/applications/{partner_id}')
def get_partner_application(partner_id: int, db: Session = Depends(get_session),
                            user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    try:
        partner = services.PartnerService(db).get_for_user(partner_id, user.id, roles)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not partner:
        raise HTTPException(status_code=404, detail='application not found')
    return _partner_out(partner)


@app.patch('/partners/applications/{partner_id}')
def update_partner_application(partner_id: int, payload: PartnerApplicationUpdate,
                               db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                               roles: list = Depends(get_user_roles)):
    """Edit an application; admins may also approve or reject it."""
    try:
        partner = services.PartnerService(db).update(
            partner_id, payload.model_dump(exclude_unset=True), user.id, roles
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not partner:
        raise HTTPException(status_code=404, detail='application not found')
    if payload.status:
        logger.info("partner_reviewed %s", json.dumps({'partner_id': partner.id, 'status': partner.status}))
    return _partner_out(partner)


@app.delete('/partners/applications/{partner_id}')
def delete_partner_application(partner_id: int, db: Session = Depends(get_session),
                               roles: list = Depends(require_roles('admin'))):
    if not services.PartnerService(db).delete(partner_id):
        raise HTTPException(status_code=404, detail='application not found')
    return {'success': True}


@app.post('/catalogs', status_code=201)
def create_catalog(payload: NameIn, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('partner'))):
    catalog = services.CatalogService(db).create_catalog(user.id, payload.name)
    return {'id': catalog.id, 'partner_id': catalog.partner_id, 'name': catalog.name}


@app.get('/partners/{partner_id}/catalogs')
def partner_catalogs(partner_id: int, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """A partner's menu: catalogs with their categories and items."""
    return services.CatalogService(db).menu(partner_id)


def _catalog_call(method, *args):
    """Run a CatalogService mutation, mapping its outcome to HTTP errors."""
    try:
        result = method(*args)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not result:
        raise HTTPException(status_code=404, detail='not found')
    return result


@app.patch('/catalogs/{catalog_id}')
def rename_catalog(catalog_id: int, payload: NameIn, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    catalog = _catalog_call(services.CatalogService(db).rename_catalog, catalog_id, payload.name, user.id, roles)
    return {'id': catalog.id, 'partner_id': catalog.partner_id, 'name': catalog.name}


@app.delete('/catalogs/{catalog_id}')
def delete_catalog(catalog_id: int, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    _catalog_call(services.CatalogService(db).delete_catalog, catalog_id, user.id, roles)
    return {'success': True}


@app.post('/catalogs/{catalog_id}/categories', status_code=201)
def add_category(catalog_id: int, payload: NameIn, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    category = _catalog_call(services.CatalogService(db).add_category, catalog_id, payload.name, user.id, roles)
    return {'id': category.id, 'catalog_id': category.catalog_id, 'name': category.name}


@app.patch('/categories/{category_id}')
def rename_category(category_id: int, payload: NameIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    category = _catalog_call(services.CatalogService(db).rename_category, category_id, payload.name, user.id, roles)
    return {'id': category.id, 'catalog_id': category.catalog_id, 'name': category.name}


@app.delete('/categories/{category_id}')
def delete_category(category_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    _catalog_call(services.CatalogService(db).delete_category, category_id, user.id, roles)
    return {'success': True}


def _item_out(item: models.CatalogItem) -> dict:
    return {
        'id': item.id,
        'catalog_category_id': item.catalog_category_id,
        'name': item.name,
        'description': item.description,
        'price': item.price,
    }


@app.post('/categories/{category_id}/items', status_code=201)
def add_item(category_id: int, payload: CatalogItemIn, db: Session = Depends(get_session),
             user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    item = _catalog_call(services.CatalogService(db).add_item, category_id, payload.model_dump(), user.id, roles)
    return _item_out(item)


@app.patch('/items/{item_id}')
def update_item(item_id: int, payload: CatalogItemUpdate, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    item = _catalog_call(
        services.CatalogService(db).update_item, item_id, payload.model_dump(exclude_unset=True), user.id, roles
    )
    return _item_out(item)


@app.delete('/items/{item_id}')
def delete_item(item_id: int, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user), roles: list = Depends(get_user_roles)):
    _catalog_call(services.CatalogService(db).delete_item, item_id, user.id, roles)
    return {'success': True}


@app.post('/orders/{order_id}/payment', status_code=201)
def create_payment(order_id: int, payload: PaymentCreate, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Record the customer's payment for an order."""
    try:
        payment = services.PaymentService(db).create_payment(
            order_id, user.id, payload.payment_method, payload.transaction_id, payload.transaction_data
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not payment:
        raise HTTPException(status_code=404, detail='order not found')
    return _payment_out(payment)


@app.get('/orders/{order_id}/payment')
def get_payment(order_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user),
                roles: list = Depends(get_user_roles)):
    try:
        payment = services.PaymentService(db).get_for_user(order_id, user.id, roles)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not payment:
        raise HTTPException(status_code=404, detail='payment not found')
    return _payment_out(payment)


@app.patch('/orders/{order_id}/payment')
def update_payment_status(order_id: int, payload: PaymentStatusUpdate, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user),
                          roles: list = Depends(require_roles('partner', 'admin'))):
    try:
        payment = services.PaymentService(db).update_status(order_id, payload.payment_status, user.id, roles)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not payment:
        raise HTTPException(status_code=404, detail='payment not found')
    logger.info("payment_updated %s", json.dumps({'order_id': order_id, 'payment_status': payment.payment_status}))
    return _payment_out(payment)


@app.post('/courier/schedules', status_code=201)
def create_schedule(payload: ScheduleCreate, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('courier'))):
    try:
        schedule = services.ScheduleService(db).create(
            user.id, payload.start_datetime, payload.end_datetime, payload.status, payload.notes
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _schedule_out(schedule)


@app.get('/courier/schedules')
def list_schedules(status: Optional[str] = None, from_date: Optional[datetime] = None,
                   to_date: Optional[datetime] = None, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('courier'))):
    """The courier's shifts, optionally filtered by status and date range."""
    schedules = services.ScheduleService(db).list_for_courier(user.id, status, from_date, to_date)
    return [_schedule_out(s) for s in schedules]


@app.patch('/courier/schedules/{schedule_id}')
def update_schedule(schedule_id: int, payload: ScheduleUpdate, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('courier'))):
    try:
        schedule = services.ScheduleService(db).update(schedule_id, user.id, payload.model_dump(exclude_unset=True))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not schedule:
        raise HTTPException(status_code=404, detail='schedule not found')
    return _schedule_out(schedule)


@app.delete('/courier/schedules/{schedule_id}')
def delete_schedule(schedule_id: int, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('courier'))):
    try:
        deleted = services.ScheduleService(db).delete(schedule_id, user.id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail='schedule not found')
    return {'success': True}


@app.put('/courier/availability')
def set_availability(payload: AvailabilityIn, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user), roles: list = Depends(require_roles('courier'))):
    row = services.AvailabilityService(db).set(user.id, payload.is_available, payload.is_working)
    return {'courier_id': row.courier_id, 'is_available': row.is_available, 'is_working': row.is_working}


@app.websocket('/ws/delivery-tracking')
async def delivery_tracking_ws(websocket: WebSocket, token: Optional[str] = None):
    """Courier location relay; `token` is the user's access token."""
    await websocket.accept()
    user = await run_in_threadpool(user_from_token, token)
    await websocket.app.state.location_relay.handle(websocket, user.id if user else None)


@app.websocket('/ws/tracking')
async def customer_tracking_ws(websocket: WebSocket, token: Optional[str] = None):
    """Delivery status feed for a customer holding a tracking token."""
    await websocket.accept()
    await websocket.app.state.delivery_feed.handle(websocket, token)


@app.websocket('/ws/chat/{chat_id}')
async def chat_ws(websocket: WebSocket, chat_id: int, token: Optional[str] = None):
    """Live chat; `token` is the participant's access token."""
    await websocket.accept()
    user = await run_in_threadpool(user_from_token, token)
    await websocket.app.state.chat_relay.handle(websocket, chat_id, user.id if user else None)


@app.get("/")
def root():
    return {"app": app.title, "docs": "/docs", "health": "/health"}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
