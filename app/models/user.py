# =====================================================
# FILE: app/models/user.py
# Identity records resolved for signers and requesters
# =====================================================

from sqlalchemy import Column, String, DateTime, Boolean

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class User(Base):
    __tablename__ = "users"
    __table_args__ = {'extend_existing': True}

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
