"""
Notification dispatchers - tell the user's device a proactive message arrived

The message itself is already stored in the session when deliver() is
called; a dispatcher only nudges the client. Delivery is best effort and
returns False instead of raising on transport errors.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger("companion.notifications")


class NotificationDispatcher(ABC):

    @abstractmethod
    async def deliver(self, user_id: str, message: str, push_token: Optional[str] = None) -> bool:
        """Push `message` to the user. Returns whether delivery was accepted."""

    async def close(self) -> None:
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Logs instead of pushing. Used when no webhook is configured."""

    async def deliver(self, user_id: str, message: str, push_token: Optional[str] = None) -> bool:
        logger.info(f"[NOTIFY] user={user_id} token={'yes' if push_token else 'no'}: {message[:80]}")
        return True


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs `{user_id, message, push_token}` as JSON to a push gateway."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def deliver(self, user_id: str, message: str, push_token: Optional[str] = None) -> bool:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await self._http.post(
                self.url,
                json={"user_id": user_id, "message": message, "push_token": push_token},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"[NOTIFY] Webhook delivery to user {user_id} failed: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http:
            await self._http.aclose()
            self._http = None


_notification_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Webhook dispatcher when a URL is configured, logging dispatcher otherwise."""
    global _notification_dispatcher
    if _notification_dispatcher is None:
        from companion_memory.config import settings

        if settings.notification_webhook_url:
            _notification_dispatcher = WebhookNotificationDispatcher(
                settings.notification_webhook_url,
                timeout=settings.notification_timeout_seconds,
            )
        else:
            _notification_dispatcher = LoggingNotificationDispatcher()
    return _notification_dispatcher
