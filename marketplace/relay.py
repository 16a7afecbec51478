"""Websocket relays: courier location tracking, customer delivery feed and chat.

Each relay is an object holding its own `SubscriptionRegistry` and a
storage collaborator, created once per application and shared by all of
its connections. A connection is served by one sequential message loop;
loops of different connections interleave on the event loop. Blocking
storage calls run in the thread pool.

Location tracking protocol (`/ws/delivery-tracking?token=...`, JSON text frames):

- in:  `{"action": "subscribe", "order_id": 7}`
- in:  `{"action": "update_location", "order_id": 7, "courier_id": "k1",
  "latitude": 10.1, "longitude": 20.2}`
- out: `{"type": "location", "order_id", "courier_id", "latitude",
  "longitude", "timestamp"}`
- out: `{"type": "error", "error": "..."}`
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Optional

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .schemas import SendMessageFrame, SubscribeFrame, tracking_frame_adapter
from .utils.subscriptions import SubscriptionRegistry

_LOGGER = logging.getLogger("marketplace.realtime")

INVALID_FORMAT = {"type": "error", "error": "Invalid message format"}
SAVE_FAILED = {"type": "error", "error": "Failed to save location"}
NOT_AUTHORIZED = {"type": "error", "error": "Not authorized to update this order"}
WATCH_DENIED = {"type": "error", "error": "Not authorized to view this order"}
CHECK_FAILED = {"type": "error", "error": "Failed to verify authorization"}
UNAUTHORIZED = {"type": "error", "error": "Unauthorized"}

POLICY_VIOLATION = 1008


async def _next_frame(websocket) -> Optional[Any]:
    """Return the next text/bytes payload, or `None` once the peer disconnects."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        return None
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


async def _send(websocket, payload: dict) -> None:
    await websocket.send_text(json.dumps(payload))


async def _refuse(websocket, payload: dict) -> None:
    await _send(websocket, payload)
    await websocket.close(code=POLICY_VIOLATION)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class TrackingSession:
    """One tracking connection: the authenticated user and the watched order.

    `order_id` is set before any await that follows a registry subscribe,
    so the connection's cleanup always sees what it joined.
    """

    def __init__(self, websocket, user_id: Hashable):
        self.websocket = websocket
        self.user_id = user_id
        self.order_id: Optional[int] = None


class LocationRelay:
    """Relay courier positions to everyone watching an order.

    `store` provides `save_location(...) -> dict` and
    `get_latest_location(order_id) -> dict | None`. The optional hooks run
    in the thread pool with the authenticated user id:

    - `authorize(order_id, user_id)` before an update is stored,
    - `can_watch(order_id, user_id)` before a subscription is made.

    A falsy result rejects the frame.
    """

    def __init__(self, store, registry: Optional[SubscriptionRegistry] = None,
                 authorize: Optional[Callable[[int, Any], bool]] = None,
                 can_watch: Optional[Callable[[int, Any], bool]] = None):
        self.store = store
        self.registry = registry if registry is not None else SubscriptionRegistry("tracking")
        self.authorize = authorize
        self.can_watch = can_watch

    async def handle(self, websocket, user_id: Optional[Hashable]) -> None:
        """Serve an accepted connection until the client goes away."""
        if user_id is None:
            await _refuse(websocket, UNAUTHORIZED)
            return
        session = TrackingSession(websocket, user_id)
        _LOGGER.debug("tracking_connected %s", json.dumps({"user_id": str(user_id)}))
        try:
            while True:
                raw = await _next_frame(websocket)
                if raw is None:
                    break
                await self.on_frame(session, raw)
        finally:
            closed_order = session.order_id
            self.leave(session)
            _LOGGER.debug("tracking_closed %s", json.dumps({"order_id": closed_order}))

    def leave(self, session: TrackingSession) -> None:
        """Drop the session's subscription, if any."""
        if session.order_id is not None:
            self.registry.unsubscribe(session.order_id, session.websocket)
            session.order_id = None

    async def on_frame(self, session: TrackingSession, raw) -> None:
        """Apply one inbound frame."""
        try:
            frame = tracking_frame_adapter.validate_json(raw)
        except ValidationError:
            await _send(session.websocket, INVALID_FORMAT)
            return
        if isinstance(frame, SubscribeFrame):
            await self._subscribe(session, frame.order_id)
        else:
            await self._update_location(session, frame)

    async def _check(self, hook, event: str, order_id: int, session: TrackingSession) -> Optional[bool]:
        """Run an authorization hook; `None` means the check itself failed."""
        if hook is None:
            return True
        try:
            return bool(await run_in_threadpool(hook, order_id, session.user_id))
        except Exception:
            _LOGGER.exception(event + " %s", json.dumps({"order_id": order_id, "user_id": str(session.user_id)}))
            await _send(session.websocket, CHECK_FAILED)
            return None

    async def _subscribe(self, session: TrackingSession, order_id: int) -> None:
        allowed = await self._check(self.can_watch, "watch_check_failed", order_id, session)
        if allowed is None:
            return
        if not allowed:
            await _send(session.websocket, WATCH_DENIED)
            return
        if session.order_id != order_id:
            self.leave(session)
            session.order_id = order_id
            self.registry.subscribe(order_id, session.websocket)
        _LOGGER.debug("tracking_subscribed %s", json.dumps({"order_id": order_id}))
        try:
            latest = await run_in_threadpool(self.store.get_latest_location, order_id)
        except Exception:
            _LOGGER.exception("latest_location_failed %s", json.dumps({"order_id": order_id}))
            return
        if latest:
            await _send(session.websocket, {"type": "location", **latest})

    async def _update_location(self, session: TrackingSession, frame) -> None:
        websocket = session.websocket
        if frame.courier_id != str(session.user_id):
            await _send(websocket, NOT_AUTHORIZED)
            return
        allowed = await self._check(self.authorize, "publish_check_failed", frame.order_id, session)
        if allowed is None:
            return
        if not allowed:
            await _send(websocket, NOT_AUTHORIZED)
            return
        now = datetime.now(timezone.utc)
        try:
            await run_in_threadpool(
                self.store.save_location,
                frame.order_id,
                frame.courier_id,
                frame.latitude,
                frame.longitude,
                now,
            )
        except Exception:
            _LOGGER.exception(
                "save_location_failed %s",
                json.dumps({"order_id": frame.order_id, "courier_id": frame.courier_id}),
            )
            await _send(websocket, SAVE_FAILED)
            return
        payload = {
            "type": "location",
            "order_id": frame.order_id,
            "courier_id": frame.courier_id,
            "latitude": frame.latitude,
            "longitude": frame.longitude,
            "timestamp": now.isoformat(),
        }
        await self.registry.broadcast(frame.order_id, payload, exclude=websocket)


class DeliveryFeed:
    """Push delivery status changes to customers holding a tracking token.

    `snapshot(delivery_id) -> dict | None` describes the delivery when a
    customer connects.
    """

    def __init__(self, token_service, snapshot: Callable[[int], Optional[dict]],
                 registry: Optional[SubscriptionRegistry] = None):
        self.token_service = token_service
        self.snapshot = snapshot
        self.registry = registry if registry is not None else SubscriptionRegistry("deliveries")

    async def _reject(self, websocket, message: str) -> None:
        await _refuse(websocket, {"type": "error", "payload": {"message": message}, "timestamp": _timestamp()})

    async def handle(self, websocket, token: Optional[str]) -> None:
        decoded = self.token_service.verify_token(token) if token else None
        if not decoded:
            await self._reject(websocket, "Invalid tracking token")
            return
        delivery_id = decoded["delivery_id"]
        try:
            info = await run_in_threadpool(self.snapshot, delivery_id)
        except Exception:
            _LOGGER.exception("tracking_setup_failed %s", json.dumps({"delivery_id": delivery_id}))
            await self._reject(websocket, "Failed to set up tracking")
            return
        if not info:
            await self._reject(websocket, "Delivery not found")
            return
        self.registry.subscribe(delivery_id, websocket)
        try:
            await _send(websocket, {"type": "connection_confirmed", "payload": info, "timestamp": _timestamp()})
            # inbound frames carry no meaning here; wait for the disconnect
            while await _next_frame(websocket) is not None:
                pass
        finally:
            self.registry.unsubscribe(delivery_id, websocket)

    async def publish_status(self, delivery_id: int, order_id: int, status: str) -> int:
        payload = {
            "type": "status_update",
            "payload": {"delivery_id": delivery_id, "order_id": order_id, "status": status},
            "timestamp": _timestamp(),
        }
        return await self.registry.broadcast(delivery_id, payload)


class ChatRelay:
    """Live chat between the participants of a chat.

    `store` provides `is_participant(chat_id, user_id) -> bool` and
    `save_message(chat_id, user_id, content) -> dict | None`.
    """

    def __init__(self, store, registry: Optional[SubscriptionRegistry] = None):
        self.store = store
        self.registry = registry if registry is not None else SubscriptionRegistry("chat")

    async def handle(self, websocket, chat_id: int, user_id: Optional[int]) -> None:
        if user_id is None:
            await _refuse(websocket, UNAUTHORIZED)
            return
        try:
            allowed = await run_in_threadpool(self.store.is_participant, chat_id, user_id)
        except Exception:
            _LOGGER.exception("chat_setup_failed %s", json.dumps({"chat_id": chat_id, "user_id": user_id}))
            await _refuse(websocket, {"type": "error", "error": "Failed to join chat"})
            return
        if not allowed:
            await _refuse(websocket, {"type": "error", "error": "Not a participant of this chat"})
            return
        self.registry.subscribe(chat_id, websocket)
        try:
            while True:
                raw = await _next_frame(websocket)
                if raw is None:
                    break
                await self._on_frame(websocket, chat_id, user_id, raw)
        finally:
            self.registry.unsubscribe(chat_id, websocket)

    async def _on_frame(self, websocket, chat_id: int, user_id: int, raw) -> None:
        try:
            frame = SendMessageFrame.model_validate_json(raw)
        except ValidationError:
            await _send(websocket, INVALID_FORMAT)
            return
        content = frame.content.model_dump(exclude_none=True)
        try:
            message = await run_in_threadpool(self.store.save_message, chat_id, user_id, content)
        except Exception:
            _LOGGER.exception("save_message_failed %s", json.dumps({"chat_id": chat_id, "sender_id": user_id}))
            await _send(websocket, {"type": "error", "error": "Failed to send message"})
            return
        if message:
            await self.publish(chat_id, message)

    async def publish(self, chat_id: int, message: dict) -> int:
        return await self.registry.broadcast(chat_id, {"type": "message", "message": message})
