"""Persist notifications and push them over Redis pub/sub for per-user delivery."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from questline.db.base import utcnow
from questline.db.models import Notification

if TYPE_CHECKING:
    from datetime import datetime

logger = logging.getLogger(__name__)


def build_notification(
    user_id: int,
    subtype: str,
    title: str,
    description: str | None = None,
    action_url: str | None = None,
    type_: str = "gamification",
    now: datetime | None = None,
) -> Notification:
    """Build an unsaved Notification row."""
    return Notification(
        user_id=user_id,
        type=type_,
        subtype=subtype,
        title=title,
        description=description,
        action_url=action_url,
        created_at=now or utcnow(),
    )


async def push_notification_to_user(redis: object | None, notification: Notification) -> None:
    """Publish a formatted notification dict to ws:user:{user_id}.

    The notification must already be flushed (have an ``id``). Delivery is
    best-effort: publish failures are logged and dropped.
    """
    if redis is None:
        return

    payload = {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "type": notification.type,
            "subtype": notification.subtype,
            "title": notification.title,
            "description": notification.description,
            "timestamp": (
                notification.created_at.isoformat()
                if notification.created_at
                else None
            ),
            "read": False,
            "actionUrl": notification.action_url,
        },
    }
    try:
        await redis.publish(  # type: ignore[union-attr]
            f"ws:user:{notification.user_id}",
            json.dumps(payload),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via ws:user:%s",
            notification.user_id,
            exc_info=True,
        )


async def push_all(redis: object | None, notifications: list[Notification]) -> None:
    for notification in notifications:
        await push_notification_to_user(redis, notification)


async def publish_event(redis: object | None, channel: str, data: dict) -> None:
    """Broadcast a raw event for activity feeds. Failures are logged and dropped."""
    if redis is None:
        return
    try:
        await redis.publish(channel, json.dumps(data))  # type: ignore[union-attr]
    except Exception:
        logger.warning("Failed to publish %s broadcast", channel, exc_info=True)
