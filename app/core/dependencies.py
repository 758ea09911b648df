# =====================================================
# FILE: app/core/dependencies.py
# FastAPI dependencies shared by the API routers
# =====================================================

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db, SessionLocal
from app.services.digital_signature_service import DigitalSignatureService
from app.services.notification_service import DatabaseNotificationDispatcher, NotificationDispatcher
from app.services.storage_service import BlobStore, get_blob_store


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Caller identity. Authentication happens upstream; the gateway forwards
    the authenticated user id in `X-User-Id`.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )
    return x_user_id


@lru_cache()
def get_configured_blob_store() -> BlobStore:
    return get_blob_store(settings)


def get_notification_dispatcher() -> NotificationDispatcher:
    return DatabaseNotificationDispatcher(SessionLocal)


def get_signature_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_configured_blob_store),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher)
) -> DigitalSignatureService:
    return DigitalSignatureService(db, blob_store, notifier, config=settings)
