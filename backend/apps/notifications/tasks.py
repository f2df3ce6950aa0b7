# apps/notifications/tasks.py
import requests
from celery import shared_task
from celery.utils.log import get_task_logger
from django.conf import settings

logger = get_task_logger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    queue='high_priority'
)
def send_push_notification(self, notification_id):
    """
    Fire-and-forget push through the configured provider.
    The durable Notification row is the source of truth; a lost push is acceptable.
    """
    from .models import Notification

    push_url = getattr(settings, "PUSH_PROVIDER_URL", "")
    push_key = getattr(settings, "PUSH_PROVIDER_KEY", "")

    if not push_url or not push_key:
        logger.debug("Push provider not configured, skipping notification %s", notification_id)
        return "Config Missing"

    notification = Notification.objects.select_related("user").filter(id=notification_id).first()
    if notification is None:
        logger.warning(f"Notification {notification_id} vanished before push")
        return "Missing"

    try:
        response = requests.post(
            push_url,
            json={
                "to": f"user:{notification.user_id}",
                "title": notification.title,
                "body": notification.message,
                "data": {"type": notification.type, **notification.data},
            },
            headers={"Authorization": f"Bearer {push_key}"},
            timeout=5
        )
        response.raise_for_status()
        return "Sent"

    except requests.RequestException as e:
        logger.warning(f"Push Provider Failed: {e}. Retrying...")
        raise self.retry(exc=e, countdown=2 ** self.request.retries * 5)
