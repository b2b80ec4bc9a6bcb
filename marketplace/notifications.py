import httpx
import structlog

from marketplace.errors import ExternalServiceError

logger = structlog.get_logger(__name__)


class LogNotificationSender:
    """Used when no notification service is configured."""

    def send(self, to: str, template: str, data: dict) -> None:
        logger.info("notification_logged", to=to, template=template)

    def close(self):
        pass


class HttpNotificationSender:
    """Posts {to, template, data} to the mail service."""

    def __init__(self, url: str, timeout: float = 5.0, transport=None):
        self.url = url
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def close(self):
        self.client.close()

    def send(self, to: str, template: str, data: dict) -> None:
        try:
            response = self.client.post(self.url, json={"to": to, "template": template, "data": data})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Notification failed: {exc}", service="notifications") from exc


def notify_quietly(sender, to, template, data, **context) -> bool:
    """Send a notification; a failure is logged and never raised."""
    if not to:
        logger.warning("notification_skipped_no_recipient", template=template, **context)
        return False
    try:
        sender.send(to, template, data)
    except Exception as exc:
        logger.warning("notification_failed", template=template, error=str(exc), **context)
        return False
    return True


def build_notification_sender(settings):
    if settings.notification_url:
        return HttpNotificationSender(settings.notification_url, settings.notification_timeout)
    return LogNotificationSender()
