# =====================================================
# FILE: app/services/notification_service.py
# Fire-and-forget in-app notifications
# =====================================================

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from app.core.database import get_db_session
from app.models.notification import Notification
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """
    send() returns True when the notification was handed off.
    Implementations must never raise: failures are logged and reported as False.
    """

    @abstractmethod
    def send(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        ...


class DatabaseNotificationDispatcher(NotificationDispatcher):
    """
    Writes rows into `notifications`. Uses its own session so a failed
    notification never touches the caller's transaction.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def send(self, user_id, title, body, data=None):
        try:
            with get_db_session(self.session_factory) as session:
                session.add(Notification(
                    user_id=user_id,
                    notification_type=(data or {}).get("type", "signature"),
                    title=title,
                    message=body,
                    data=data or {},
                    is_read=False,
                    created_at=utcnow()
                ))
            logger.info(f"Notification sent to user {user_id}: {title}")
            return True
        except Exception as e:
            logger.error(f"Error sending notification to user {user_id}: {e}")
            return False
