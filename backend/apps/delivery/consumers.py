# apps/delivery/consumers.py
import json
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer
from rest_framework_simplejwt.exceptions import AuthenticationFailed, InvalidToken, TokenError
from rest_framework_simplejwt.settings import api_settings as jwt_settings

from apps.accounts.authentication import SecureJWTAuthentication
from apps.accounts.models import Role
from apps.core.middleware import bind_correlation_id, correlation_id_from_scope
from apps.orders.models import Order
from apps.utils.exceptions import TransportDisconnected
from . import realtime
from .models import Delivery

logger = logging.getLogger(__name__)


class DeliveryTrackingConsumer(AsyncJsonWebsocketConsumer):
    """
    /ws hub for customers, shopkeepers and delivery partners.

    Protocol:
      -> {"type": "auth", "userId", "userType", "token"}   <- auth_success | error
      -> {"type": "subscribe", "deliveryId" | "orderId"}   <- subscribed | error
      -> {"type": "ping"}                                   <- pong
      <- {"type", "orderId", "deliveryId"?, "data"} pushed by the server
    """

    async def connect(self):
        self.session = None
        self.user = None
        self.subscriptions = set()
        self.correlation_id = correlation_id_from_scope(self.scope)
        await self.accept()

    async def disconnect(self, close_code):
        for group in self.subscriptions:
            await self.channel_layer.group_discard(group, self.channel_name)
        self.subscriptions.clear()

        if self.session is not None:
            await self.channel_layer.group_discard(realtime.user_group(self.session.user_id), self.channel_name)
            realtime.registry.deregister(self.session)
            logger.debug(f"Session {self.session.session_id} closed ({close_code})")

    @classmethod
    async def decode_json(cls, text_data):
        try:
            return json.loads(text_data)
        except ValueError:
            return None

    async def receive_json(self, content, **kwargs):
        if not isinstance(content, dict):
            await self.send_error("invalid_message", "Messages must be JSON objects")
            return

        handlers = {
            "auth": self.handle_auth,
            "subscribe": self.handle_subscribe,
            "ping": self.handle_ping,
        }
        handler = handlers.get(content.get("type"))
        if handler is None:
            await self.send_error("unknown_message_type", f"Unsupported message type: {content.get('type')}")
            return

        if self.session is not None:
            try:
                realtime.registry.touch(self.session)
            except TransportDisconnected:
                await self.close()
                return

        with bind_correlation_id(self.correlation_id):
            await handler(content)

    async def send_error(self, code, message):
        await self.send_json({"type": "error", "code": code, "message": message})

    async def handle_ping(self, content):
        await self.send_json({"type": "pong"})

    async def handle_auth(self, content):
        if self.session is not None:
            await self.send_error("already_authenticated", "This connection is already authenticated")
            return

        user_id = content.get("userId")
        user_type = content.get("userType")
        token = content.get("token")

        if user_type not in Role.values:
            await self.send_error("invalid_user_type", f"userType must be one of {', '.join(Role.values)}")
            return
        if not isinstance(token, str) or not token or user_id in (None, ""):
            await self.send_error("auth_failed", "userId and token are required")
            return

        user = await self.authenticate(token, user_id, user_type)
        if user is None:
            await self.send_error("auth_failed", "Authentication failed")
            return

        self.user = user
        self.session = realtime.registry.register(user.id, user_type)
        await self.channel_layer.group_add(realtime.user_group(user.id), self.channel_name)
        logger.info(f"Session {self.session.session_id} opened for user {user.id} ({user_type})")

        await self.send_json({
            "type": "auth_success",
            "sessionId": self.session.session_id,
            "userId": user.id,
            "userType": user_type,
        })

    async def handle_subscribe(self, content):
        if self.session is None:
            await self.send_error("not_authenticated", "Authenticate before subscribing")
            return

        delivery_id = content.get("deliveryId")
        order_id = content.get("orderId")
        if delivery_id is None and order_id is None:
            await self.send_error("invalid_subscription", "deliveryId or orderId is required")
            return

        resolved = await self.resolve_subscription(delivery_id, order_id)
        if resolved is None:
            await self.send_error("forbidden", "You cannot watch this delivery")
            return

        order_id, delivery_id = resolved
        group = realtime.order_group(order_id, self.session.user_type)
        if group not in self.subscriptions:
            await self.channel_layer.group_add(group, self.channel_name)
            self.subscriptions.add(group)

        await self.send_json({"type": "subscribed", "orderId": order_id, "deliveryId": delivery_id})

    async def dispatch_event(self, message):
        """Handler for realtime.HANDLER_TYPE messages from the channel layer."""
        try:
            realtime.registry.require(self.session)
        except TransportDisconnected:
            logger.debug(f"Dropping {message['event']['type']} for a closed session")
            return
        await self.send_json(message["event"])

    @database_sync_to_async
    def authenticate(self, token, user_id, user_type):
        """
        Same token validation as the HTTP API, plus: the token's user must be the claimed
        userId and must hold the claimed role.
        """
        try:
            user, validated_token = SecureJWTAuthentication().authenticate_raw(token)
        except (InvalidToken, AuthenticationFailed, TokenError):
            return None

        if str(validated_token.get(jwt_settings.USER_ID_CLAIM)) != str(user_id):
            return None
        if not user.is_active or not user.has_role(user_type):
            return None
        return user

    @database_sync_to_async
    def resolve_subscription(self, delivery_id, order_id):
        """
        Returns (order_id, delivery_id) when the session's user may watch it, else None.
        Customers watch their own orders, shopkeepers their store's, partners the ones assigned to them.
        """
        try:
            if delivery_id is not None:
                delivery = Delivery.objects.select_related("order__store").filter(pk=int(delivery_id)).first()
                order = delivery.order if delivery else None
            else:
                order = Order.objects.select_related("store").filter(pk=int(order_id)).first()
                delivery = order.deliveries.order_by("-created_at").first() if order else None
        except (TypeError, ValueError):
            return None

        if order is None:
            return None

        user_type = self.session.user_type
        user_id = self.user.id
        if user_type == Role.CUSTOMER:
            allowed = order.customer_id == user_id
        elif user_type == Role.SHOPKEEPER:
            allowed = order.store.owner_id == user_id
        else:
            allowed = order.deliveries.filter(delivery_partner__user_id=user_id).exists()

        if not allowed:
            return None
        return order.id, delivery.id if delivery else None
