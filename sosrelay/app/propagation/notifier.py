"""
notifier.py — Local notification dispatcher for newly merged alerts.

The dispatcher is only ever called by the merge engine after an id has
been seen for the first time, so it keeps no notified-set of its own:
the cache's seen ids (which survive restart) are what suppress repeats.
`delivered` keeps only the most recent notifications.

Delivery is governed by the operator's permission state. A denied or
undecided permission, or a sink that raises, is logged and swallowed:
the alert is already in the in-app list, which is what must succeed.

Sinks:
    log_sink   — writes the notification to the log (default; development
                 and headless devices)
    any callable taking a LocalNotification — an OS notification bridge
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from sosrelay.app.core.config import settings
from sosrelay.app.emergency.models import EmergencyRecord

logger = logging.getLogger(__name__)


class NotificationPermission(str, Enum):
    GRANTED = "granted"
    DENIED  = "denied"
    DEFAULT = "default"   # not asked yet


@dataclass
class LocalNotification:
    """An alert-style notification shown to the operator."""
    tag: str
    alert_id: str
    title: str
    body: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "alert_id": self.alert_id,
            "title": self.title,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }


NotificationSink = Callable[[LocalNotification], None]


def build_notification(record: EmergencyRecord) -> LocalNotification:
    return LocalNotification(
        tag=f"sos-{record.id}",
        alert_id=record.id,
        title=f"SOS Alert: {record.type.value}",
        body=f"{record.name} - {record.type.value} at {record.location} ({record.ward_no})",
    )


def log_sink(notification: LocalNotification) -> None:
    logger.info(
        "[NOTIFY] %s | %s", notification.title, notification.body,
        extra={"alert_id": notification.alert_id},
    )


class NotificationDispatcher:
    """Surfaces merged alerts to the operator."""

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        *,
        permission: NotificationPermission = NotificationPermission.GRANTED,
        history_size: Optional[int] = None,
    ):
        self._sink = sink or log_sink
        self.permission = permission
        self.delivered: Deque[LocalNotification] = deque(
            maxlen=history_size or settings.NOTIFICATION_HISTORY_MAX,
        )

    def set_permission(self, permission: NotificationPermission) -> None:
        if permission != self.permission:
            logger.info("Notification permission: %s → %s", self.permission.value, permission.value)
        self.permission = permission

    def dispatch(self, record: EmergencyRecord) -> Optional[LocalNotification]:
        """Notify for one record; returns the notification, or None if not shown."""
        if self.permission != NotificationPermission.GRANTED:
            logger.warning(
                "Notification permission %s — alert %s shown in-app only",
                self.permission.value, record.id,
                extra={"alert_id": record.id},
            )
            return None

        notification = build_notification(record)
        try:
            self._sink(notification)
        except Exception as exc:
            logger.error(
                "Notification delivery failed for %s: %s", record.id, exc,
                extra={"alert_id": record.id},
            )
            return None

        self.delivered.append(notification)
        return notification
