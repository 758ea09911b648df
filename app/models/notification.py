# =====================================================
# FILE: app/models/notification.py
# In-app notifications written by the dispatcher
# =====================================================

from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text, JSON

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    notification_type = Column(String(100))
    title = Column(String(255))
    message = Column(Text)
    data = Column(JSON)
    is_read = Column(Boolean, default=False)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
