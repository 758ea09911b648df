# =====================================================
# FILE: app/models/__init__.py
# =====================================================

from app.core.database import Base

from app.models.user import User
from app.models.document import Document, DocumentShare
from app.models.notification import Notification
from app.models.signature import (
    SignatureRequest,
    SignatureAuditEvent,
    SignatureStatus,
    SignatureWorkflowStatus,
    SignatureType,
    AuditEventType,
)

__all__ = [
    "Base",

    # Collaborators
    "User",
    "Document",
    "DocumentShare",
    "Notification",

    # Signatures
    "SignatureRequest",
    "SignatureAuditEvent",
    "SignatureStatus",
    "SignatureWorkflowStatus",
    "SignatureType",
    "AuditEventType",
]
