# =====================================================
# FILE: app/services/identity_service.py
# Signer / requester identity lookup
# =====================================================

import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import DependencyFailureError
from app.models.user import User

logger = logging.getLogger(__name__)


class UserIdentity(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    class Config:
        from_attributes = True

    @property
    def full_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email


class IdentityResolver(ABC):

    @abstractmethod
    def find_user_by_id(self, user_id: str) -> Optional[UserIdentity]:
        ...

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[UserIdentity]:
        ...


class SqlIdentityResolver(IdentityResolver):
    """Resolves identities from the `users` table"""

    def __init__(self, db: Session):
        self.db = db

    def find_user_by_id(self, user_id):
        if not user_id:
            return None
        try:
            user = self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as e:
            logger.error(f"Identity lookup failed for user {user_id}: {str(e)}")
            raise DependencyFailureError("Identity lookup failed", reason="IdentityUnavailable") from e
        return UserIdentity.model_validate(user) if user else None

    def find_user_by_email(self, email):
        if not email:
            return None
        try:
            user = self.db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
        except SQLAlchemyError as e:
            logger.error(f"Identity lookup failed for {email}: {str(e)}")
            raise DependencyFailureError("Identity lookup failed", reason="IdentityUnavailable") from e
        return UserIdentity.model_validate(user) if user else None
