# =====================================================
# FILE: app/schemas/signature.py
# Pydantic Schemas for the Signature Workflow Engine
# =====================================================

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from app.models.signature import SignatureStatus, SignatureType, SignatureWorkflowStatus

logger = logging.getLogger(__name__)


# =====================================================
# WORKFLOW CREATION
# =====================================================

class SignerInput(BaseModel):
    """A designated signer, identified by user id or email"""
    user_id: Optional[str] = None
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    role: str = "signer"
    is_required: bool = True
    order: Optional[int] = Field(None, description="Explicit signing order; positional when omitted")
    allow_delegation: bool = False
    signer_message: Optional[str] = None


class ReminderSettings(BaseModel):
    send_reminders: bool = False
    reminder_intervals: List[int] = Field(default_factory=list, description="Days before the due date")


class CreateSignatureRequest(BaseModel):
    document_id: str
    requested_by: str
    signers: List[SignerInput] = Field(default_factory=list)
    title: str
    message: Optional[str] = None
    due_date: Optional[datetime] = None
    reminder_settings: Optional[ReminderSettings] = None
    signature_type: SignatureType = SignatureType.ELECTRONIC


class ReminderScheduleEntry(BaseModel):
    workflow_id: str
    document_id: str
    send_at: datetime
    interval_days: int


# =====================================================
# SIGNING
# =====================================================

class Coordinates(BaseModel):
    x: float
    y: float
    page: int = 1


class SignatureData(BaseModel):
    type: SignatureType = SignatureType.ELECTRONIC
    signature: str
    # datetime, ISO string or epoch milliseconds
    timestamp: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    location: Optional[str] = None


class NormalizedSignatureData(SignatureData):
    timestamp: datetime


class AttachmentMetadata(BaseModel):
    file_name: str
    mime_type: Optional[str] = None
    size: Optional[int] = None


class SignDocumentRequest(BaseModel):
    signature_request_id: str
    signer_id: str
    signature_data: SignatureData
    comments: Optional[str] = None
    attachments: List[AttachmentMetadata] = Field(default_factory=list)


class SignatureCertificate(BaseModel):
    """Compliance artifact binding signer, document and signature hashes"""
    issuer: str
    subject: str
    valid_from: datetime
    valid_to: datetime
    serial_number: str
    algorithm: str
    document_hash: str
    signature_hash: str
    timestamp: datetime


# =====================================================
# NOTARIZATION
# =====================================================

class NotaryCommission(BaseModel):
    commission_number: str
    expiration_date: date
    jurisdiction: str


class WitnessInformation(BaseModel):
    name: str
    address: str
    identification: str


class NotarizeDocumentRequest(BaseModel):
    signature_request_id: str
    notary_id: str
    notary_seal: str = Field(..., description="Base64 encoded notary seal image")
    notary_commission: NotaryCommission
    witness_information: Optional[List[WitnessInformation]] = None


class NotarizationRecord(BaseModel):
    notary_id: str
    notary_seal_url: str
    notary_commission: NotaryCommission
    witness_information: Optional[List[WitnessInformation]] = None
    notarized_at: datetime


# =====================================================
# EXTENSION FIELDS
# =====================================================

class SignatureFields(BaseModel):
    """
    Typed extension bag stored on each signature request.

    Updates go through `merge`: only members explicitly set on the patch
    (and not None or empty string) are written; everything else is kept.
    """
    allow_delegation: Optional[bool] = None
    signer_message: Optional[str] = None
    comments: Optional[str] = None
    attachments: Optional[List[AttachmentMetadata]] = None
    notarization: Optional[NotarizationRecord] = None

    @classmethod
    def from_stored(cls, value: Any) -> "SignatureFields":
        if not value:
            return cls()

        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                logger.warning(f"Failed to parse signature fields JSON string: {e}")
                return cls()

        if not isinstance(value, dict):
            return cls()

        return cls.model_validate(value)

    def merge(self, patch: "SignatureFields") -> "SignatureFields":
        updates = {}
        for name in patch.model_fields_set:
            value = getattr(patch, name)
            if value is None or value == "":
                continue
            updates[name] = value

        if not updates:
            return self

        return self.model_copy(update=updates)

    def to_stored(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# =====================================================
# CANCELLATION
# =====================================================

class CancelSignatureRequest(BaseModel):
    signature_request_id: str
    cancelled_by: str
    reason: str


# =====================================================
# RESPONSE SCHEMAS
# =====================================================

class SignerSummary(BaseModel):
    id: str
    signer_id: Optional[str] = None
    signer_email: str
    signer_name: Optional[str] = None
    signer_role: Optional[str] = None
    signature_order: int
    is_required: bool
    status: SignatureStatus
    workflow_status: SignatureWorkflowStatus
    invitation_token: Optional[str] = None
    invitation_expires_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowSummary(BaseModel):
    workflow_id: str
    document_id: str
    requested_by: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    due_date: Optional[datetime] = None
    reminder_settings: Optional[ReminderSettings] = None
    status: SignatureWorkflowStatus
    signers: List[SignerSummary] = Field(default_factory=list)


class SignatureResult(BaseModel):
    signature: SignerSummary
    certificate: SignatureCertificate
    workflow: WorkflowSummary
    workflow_completed: bool = False


class NotarizationResult(BaseModel):
    signature: SignerSummary
    notarization: NotarizationRecord


class SignatureValidationResult(BaseModel):
    is_valid: bool
    certificate: Optional[SignatureCertificate] = None
    timestamp: datetime
    integrity_check: bool
    error_message: Optional[str] = None


class AuditTrailEvent(BaseModel):
    timestamp: datetime
    event: str
    user_id: Optional[str] = None
    user_name: str
    ip_address: str
    user_agent: str
    details: Any = None


class ComplianceChecks(BaseModel):
    legal_validity: bool
    technical_compliance: bool
    audit_trail_complete: bool
    timestamp_verified: bool


class CertificateChainEntry(BaseModel):
    certificate_url: str
    signed_at: Optional[datetime] = None
    signer_email: str
    signer_name: Optional[str] = None


class SignatureAuditTrail(BaseModel):
    document_id: str
    workflow_id: str
    events: List[AuditTrailEvent] = Field(default_factory=list)
    certificate_chain: List[CertificateChainEntry] = Field(default_factory=list)
    compliance_checks: ComplianceChecks


class OperationResult(BaseModel):
    """Envelope returned by every public operation"""
    success: bool
    data: Any = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None
