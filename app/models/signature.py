# =====================================================
# FILE: app/models/signature.py
# Signature requests (one row per signer) and the
# append-only signature audit ledger
# =====================================================

from enum import Enum

from sqlalchemy import (
    Column, String, Boolean, DateTime, Integer, ForeignKey, Text, JSON,
    UniqueConstraint, Index
)

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class SignatureStatus(str, Enum):
    INVITED = "INVITED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class SignatureWorkflowStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SignatureType(str, Enum):
    ELECTRONIC = "electronic"
    DIGITAL = "digital"
    BIOMETRIC = "biometric"


class AuditEventType(str, Enum):
    REQUEST_CREATED = "REQUEST_CREATED"
    INVITATION_SENT = "INVITATION_SENT"
    SIGNED = "SIGNED"
    SIGNATURE_VALIDATED = "SIGNATURE_VALIDATED"
    NOTARIZED = "NOTARIZED"
    CANCELLED = "CANCELLED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    REMINDER_SCHEDULED = "REMINDER_SCHEDULED"


class SignatureRequest(Base):
    __tablename__ = "document_signatures"
    __table_args__ = (
        UniqueConstraint("workflow_id", "signature_order", name="uq_signature_workflow_order"),
    )

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(64), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=False, index=True)

    # Signer
    signer_id = Column(String(36), ForeignKey("users.id"), index=True)
    signer_email = Column(String(255), nullable=False)
    signer_name = Column(String(255))
    signer_role = Column(String(100))
    signature_order = Column(Integer, nullable=False)
    is_required = Column(Boolean, nullable=False, default=True)
    allow_delegation = Column(Boolean, nullable=False, default=False)
    signature_type = Column(String(20), nullable=False, default=SignatureType.ELECTRONIC.value)

    # State
    status = Column(String(20), nullable=False, default=SignatureStatus.INVITED.value)
    workflow_status = Column(String(20), nullable=False, default=SignatureWorkflowStatus.PENDING.value)
    workflow_completed_at = Column(DateTime)

    # Invitation
    invitation_token = Column(String(64), nullable=False, unique=True)
    invited_at = Column(DateTime)
    invitation_expires_at = Column(DateTime)

    # Signing evidence
    signed_at = Column(DateTime)
    signature_image_url = Column(Text)
    signature_certificate_url = Column(Text)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    coordinates = Column(JSON)
    location_info = Column(JSON)
    signature_fields = Column(JSON)

    # Cancellation
    declined_at = Column(DateTime)
    decline_reason = Column(Text)

    # Workflow attributes shared by every member record
    requested_by = Column(String(36), ForeignKey("users.id"))
    workflow_title = Column(String(255))
    workflow_message = Column(Text)
    due_date = Column(DateTime)
    reminder_settings = Column(JSON)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SignatureAuditEvent(Base):
    __tablename__ = "signature_audit_events"
    __table_args__ = (
        Index("ix_signature_audit_workflow_created", "workflow_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(36), nullable=False, index=True)
    workflow_id = Column(String(64), nullable=False)
    signature_id = Column(String(36))
    event_type = Column(String(50), nullable=False)
    event_description = Column(Text)
    performed_by = Column(String(36))
    performed_by_email = Column(String(255))
    performed_by_name = Column(String(255))
    ip_address = Column(String(45))
    user_agent = Column(Text)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)
