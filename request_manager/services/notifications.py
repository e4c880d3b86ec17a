"""Notification sink: fire-and-forget dispatch of lifecycle events to agents."""
from dataclasses import asdict
from enum import Enum
from typing import Dict, List, Optional

import structlog

from request_manager.config import NotificationsConfig
from request_manager.core.executor import TaskSupervisor, get_supervisor
from request_manager.core.models import NotificationPayload
from request_manager.utils.http_client import RobustHTTPClient, get_http_client

logger = structlog.get_logger(__name__)


class Notification(str, Enum):
    MEDIA_PENDING = "media_pending"
    MEDIA_APPROVED = "media_approved"
    MEDIA_AUTO_APPROVED = "media_auto_approved"
    MEDIA_AVAILABLE = "media_available"
    MEDIA_FAILED = "media_failed"
    MEDIA_DECLINED = "media_declined"


# Événements adressés à l'utilisateur plutôt qu'aux administrateurs
USER_NOTIFICATION_TYPES = frozenset({
    Notification.MEDIA_APPROVED,
    Notification.MEDIA_DECLINED,
    Notification.MEDIA_AVAILABLE,
})


class NotificationAgent:
    """Agent de notification : décide (should_send) puis envoie (send)."""

    name = "agent"

    def should_send(self, kind: Notification, payload: NotificationPayload) -> bool:
        return True

    async def send(self, kind: Notification, payload: NotificationPayload) -> bool:
        raise NotImplementedError


class LogAgent(NotificationAgent):
    name = "log"

    async def send(self, kind: Notification, payload: NotificationPayload) -> bool:
        logger.info(
            "notification",
            kind=kind.value,
            subject=payload.subject,
            notify_user_id=payload.notify_user_id,
            media_id=payload.media_id,
            request_id=payload.request_id,
            user_facing=kind in USER_NOTIFICATION_TYPES,
        )
        return True


class WebhookAgent(NotificationAgent):
    """POSTs the event as JSON to a configured URL."""

    name = "webhook"

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, http_client: Optional[RobustHTTPClient] = None):
        self.url = url
        self.headers = headers or {}
        self.http = http_client or get_http_client()

    def should_send(self, kind: Notification, payload: NotificationPayload) -> bool:
        return bool(self.url)

    async def send(self, kind: Notification, payload: NotificationPayload) -> bool:
        body = {"notification_type": kind.value, **asdict(payload)}
        await self.http.post_async(self.url, service_name="webhook", json=body, headers=self.headers)
        return True


class NotificationManager:
    """Envoie chaque événement à tous les agents concernés, sans attendre."""

    def __init__(self, agents: List[NotificationAgent], supervisor: Optional[TaskSupervisor] = None):
        self.agents = agents
        self.supervisor = supervisor or get_supervisor()

    def send_notification(self, kind: Notification, payload: NotificationPayload) -> None:
        for agent in self.agents:
            if not agent.should_send(kind, payload):
                continue
            self.supervisor.spawn(
                agent.send(kind, payload),
                name=f"notify:{agent.name}:{kind.value}",
                request_id=payload.request_id,
            )


def build_notification_manager(
    notifications_config: NotificationsConfig,
    supervisor: Optional[TaskSupervisor] = None,
) -> NotificationManager:
    agents: List[NotificationAgent] = []
    if notifications_config.log_enabled:
        agents.append(LogAgent())
    if notifications_config.webhook:
        agents.append(WebhookAgent(notifications_config.webhook.url, notifications_config.webhook.headers))
    return NotificationManager(agents, supervisor)
