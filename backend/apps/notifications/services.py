# apps/notifications/services.py
import logging

from django.db import transaction, DatabaseError
from rest_framework import serializers

from apps.utils.exceptions import NotificationDispatchError
from .models import Notification
from .payloads import validate_payload, default_text
from .tasks import send_push_notification

logger = logging.getLogger(__name__)


class NotificationService:

    @staticmethod
    def notify(user, notification_type, payload, title=None, message=None, order=None):
        """
        Validate the payload against its type's schema, persist the notification,
        and queue a push once the surrounding transaction commits.
        """
        try:
            data = validate_payload(notification_type, payload)
        except KeyError:
            raise NotificationDispatchError(f"Unknown notification type: {notification_type}")
        except serializers.ValidationError as exc:
            raise NotificationDispatchError(
                f"Invalid {notification_type} payload: {exc.detail}"
            ) from exc

        if title is None or message is None:
            default_title, default_message = default_text(notification_type, payload)
            title = title or default_title
            message = message or default_message

        try:
            # A failed insert must not break an enclosing transaction
            with transaction.atomic():
                notification = Notification.objects.create(
                    user=user,
                    order=order,
                    type=notification_type,
                    title=title[:100],
                    message=message,
                    data=data,
                )
        except DatabaseError as exc:
            raise NotificationDispatchError(f"Could not persist notification: {exc}") from exc

        transaction.on_commit(lambda: NotificationService.queue_push(notification.id))
        return notification

    @staticmethod
    def queue_push(notification_id):
        """
        Hands the push to Celery. A broker outage is logged and swallowed: the
        Notification row is already committed and the recipient can still poll it.
        """
        try:
            send_push_notification.delay(notification_id)
        except Exception as e:
            logger.error(
                f"Notification dispatch failed: could not queue push for notification {notification_id}: {e}",
                extra={"metadata": {"notification_id": notification_id, "error": type(e).__name__}},
            )
            return False
        return True

    @staticmethod
    def notify_safely(user, notification_type, payload, **kwargs):
        """
        Best-effort variant for side effects of business transitions.
        Failures are logged and never propagated.
        """
        try:
            return NotificationService.notify(user, notification_type, payload, **kwargs)
        except NotificationDispatchError as exc:
            logger.error(
                f"Notification dispatch failed for user {getattr(user, 'id', None)}: {exc}",
                extra={"metadata": {"type": str(notification_type), "payload": payload}},
            )
            return None

    @staticmethod
    def mark_read(user, notification_id):
        return Notification.objects.filter(id=notification_id, user=user, is_read=False).update(is_read=True)
