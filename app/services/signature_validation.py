# =====================================================
# FILE: app/services/signature_validation.py
# Payload normalization, certificates, integrity
# re-verification and audit trail compliance checks
# =====================================================

import base64
import binascii
import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    DependencyFailureError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
)
from app.models.document import Document
from app.models.signature import (
    AuditEventType,
    SignatureAuditEvent,
    SignatureRequest,
    SignatureStatus,
    SignatureType,
    SignatureWorkflowStatus,
)
from app.schemas.signature import (
    AuditTrailEvent,
    CertificateChainEntry,
    ComplianceChecks,
    NormalizedSignatureData,
    SignatureAuditTrail,
    SignatureCertificate,
    SignatureData,
    SignatureValidationResult,
)
from app.services.audit_service import SignatureAuditLedger
from app.services.signature_hooks import SignatureHooks
from app.services.storage_service import BlobStore
from app.utils.datetime_helpers import to_naive_utc, utcnow
from app.utils.hashing import compute_content_hash

logger = logging.getLogger(__name__)

BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")


# =====================================================
# PAYLOAD NORMALIZATION
# =====================================================

def extract_base64_payload(data: Optional[str]) -> str:
    """
    Strip a data-URI prefix, convert the URL-safe alphabet to standard
    base64 and recompute padding. Returns '' when nothing is left.
    """
    if not data:
        return ""

    trimmed = data.strip()
    comma_index = trimmed.find(",")
    if trimmed.startswith("data:") and comma_index != -1:
        payload = trimmed[comma_index + 1:]
    else:
        payload = trimmed

    normalized = re.sub(r"\s+", "", payload).replace("-", "+").replace("_", "/")
    stripped = normalized.rstrip("=")
    if not stripped:
        return ""

    padding_needed = (4 - len(stripped) % 4) % 4
    return stripped + "=" * padding_needed


def is_valid_base64(value: Optional[str]) -> bool:
    if not value or not BASE64_PATTERN.match(value):
        return False
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def decode_signature(normalized: str) -> bytes:
    """Decode an already normalized payload"""
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("Signature payload is not valid base64", reason="InvalidSignaturePayload") from e


def ensure_valid_timestamp(value: Any) -> datetime:
    """
    Accept a datetime, an ISO 8601 string or an epoch number in milliseconds.
    Returns naive UTC.
    """
    if value is None or value == "":
        raise InvalidInputError("Signature timestamp is required", reason="InvalidTimestamp")

    if isinstance(value, datetime):
        return to_naive_utc(value)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    if isinstance(value, bool):
        raise InvalidInputError("Invalid signature timestamp", reason="InvalidTimestamp")

    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)

        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return to_naive_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidInputError("Invalid signature timestamp", reason="InvalidTimestamp") from e

    raise InvalidInputError("Invalid signature timestamp", reason="InvalidTimestamp")


def normalize_signature_payload(signature_data: Optional[SignatureData]) -> NormalizedSignatureData:
    if signature_data is None or not signature_data.signature:
        raise InvalidInputError("Signature data is required", reason="InvalidSignaturePayload")

    sanitized = extract_base64_payload(signature_data.signature)
    if not sanitized or not is_valid_base64(sanitized):
        raise InvalidInputError("Invalid signature payload", reason="InvalidSignaturePayload")

    return NormalizedSignatureData(
        **signature_data.model_dump(exclude={"signature", "timestamp", "coordinates"}),
        coordinates=signature_data.coordinates,
        signature=sanitized,
        timestamp=ensure_valid_timestamp(signature_data.timestamp)
    )


def validate_signature_data(
    signature_data: NormalizedSignatureData,
    hooks: SignatureHooks
) -> Tuple[bool, Optional[str]]:
    if not signature_data.signature:
        return False, "Signature data is required"

    if not is_valid_base64(signature_data.signature):
        return False, "Signature payload is not valid base64"

    if signature_data.type == SignatureType.DIGITAL:
        if not hooks.is_valid_digital_signature(signature_data.signature):
            return False, "Invalid digital signature format"

    return True, None


def generate_signature_certificate(
    signer_id: str,
    signature_data: NormalizedSignatureData,
    document_text: Optional[str],
    config: Optional[Settings] = None
) -> SignatureCertificate:
    config = config or default_settings
    now = utcnow()

    return SignatureCertificate(
        issuer=config.CERTIFICATE_ISSUER,
        subject=signer_id,
        valid_from=now,
        valid_to=now + timedelta(days=config.CERTIFICATE_VALIDITY_DAYS),
        serial_number=str(uuid.uuid4()),
        algorithm=config.SIGNATURE_ALGORITHM,
        document_hash=compute_content_hash(document_text or ""),
        signature_hash=compute_content_hash(decode_signature(signature_data.signature)),
        timestamp=signature_data.timestamp
    )


# =====================================================
# AGGREGATE STATUS AND COMPLIANCE CHECKS
# =====================================================

def compute_aggregate_status(records: Sequence[SignatureRequest]) -> SignatureWorkflowStatus:
    """Workflow status derived from its member records"""
    if not records:
        return SignatureWorkflowStatus.PENDING

    statuses = [r.status for r in records]

    if all(s == SignatureStatus.DECLINED.value for s in statuses):
        return SignatureWorkflowStatus.CANCELLED

    required = [r for r in records if r.is_required]
    if all(r.status == SignatureStatus.SIGNED.value for r in required):
        return SignatureWorkflowStatus.COMPLETED

    if any(s == SignatureStatus.SIGNED.value for s in statuses):
        return SignatureWorkflowStatus.IN_PROGRESS

    return SignatureWorkflowStatus.PENDING


def verify_timestamps(events: Sequence[SignatureAuditEvent]) -> bool:
    """False if any event is older than its immediate predecessor"""
    for previous, current in zip(events, events[1:]):
        if current.created_at is None or previous.created_at is None:
            return False
        if current.created_at < previous.created_at:
            return False
    return True


def check_legal_validity(records: Sequence[SignatureRequest]) -> bool:
    if compute_aggregate_status(records) == SignatureWorkflowStatus.COMPLETED:
        return True
    return any(r.status == SignatureStatus.SIGNED.value for r in records)


def check_technical_compliance(events: Iterable[SignatureAuditEvent]) -> bool:
    event_types = {e.event_type for e in events}
    return {AuditEventType.REQUEST_CREATED.value, AuditEventType.SIGNED.value} <= event_types


def check_audit_trail_completeness(events: Iterable[SignatureAuditEvent]) -> bool:
    for event in events:
        if event.created_at is None or not event.event_type:
            return False
        if not (event.performed_by or event.performed_by_email or event.performed_by_name):
            return False
    return True


def project_audit_event(event: SignatureAuditEvent) -> AuditTrailEvent:
    return AuditTrailEvent(
        timestamp=event.created_at,
        event=event.event_type,
        user_id=event.performed_by,
        user_name=event.performed_by_name or event.performed_by_email or "system",
        ip_address=event.ip_address or "unknown",
        user_agent=event.user_agent or "unknown",
        details=event.event_metadata
    )


# =====================================================
# VALIDATION SERVICE
# =====================================================

class SignatureValidationService:
    """
    Read-side re-verification of signed requests and audit trail generation.
    Never mutates signature records; only appends audit events.
    """

    def __init__(
        self,
        db: Session,
        blob_store: BlobStore,
        ledger: SignatureAuditLedger,
        hooks: Optional[SignatureHooks] = None
    ):
        self.db = db
        self.blob_store = blob_store
        self.ledger = ledger
        self.hooks = hooks or SignatureHooks()

    def _get_record(self, request_id: str) -> SignatureRequest:
        record = self.db.query(SignatureRequest).filter(SignatureRequest.id == request_id).first()
        if not record:
            raise NotFoundError(f"Signature request {request_id} not found", reason="SignatureRequestNotFound")
        return record

    def load_certificate(self, record: SignatureRequest) -> SignatureCertificate:
        if not record.signature_certificate_url:
            raise DependencyFailureError("Signature certificate not found", reason="CertificateMissing")

        raw = self.blob_store.get_by_url(record.signature_certificate_url)
        try:
            return SignatureCertificate.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Unreadable certificate for signature request {record.id}: {str(e)}")
            raise DependencyFailureError("Signature certificate is unreadable", reason="CertificateUnreadable") from e

    def validate_signature(self, request_id: str, signer_id: str) -> SignatureValidationResult:
        record = self._get_record(request_id)

        if record.signer_id and record.signer_id != signer_id:
            raise PermissionDeniedError("Signer does not match this signature request", reason="SignerMismatch")

        if record.status != SignatureStatus.SIGNED.value:
            raise StateConflictError("Signature request has not been signed", reason="NotSigned")

        certificate = self.load_certificate(record)

        if not record.signature_image_url:
            raise DependencyFailureError("Stored signature not found", reason="SignatureMissing")
        signature_bytes = self.blob_store.get_by_url(record.signature_image_url)

        document = self.db.query(Document).filter(Document.id == record.document_id).first()
        document_text = document.extracted_text if document else None

        integrity_check = self.hooks.check_integrity(document_text, signature_bytes, certificate)
        certificate_valid = self.hooks.validate_certificate(certificate, record.signer_id)

        error_message = None
        if not integrity_check:
            error_message = "Signature integrity check failed"
        elif not certificate_valid:
            error_message = "Signature certificate is invalid"

        self.ledger.append(
            document_id=record.document_id,
            workflow_id=record.workflow_id,
            event_type=AuditEventType.SIGNATURE_VALIDATED,
            signature_id=record.id,
            description="Signature re-validated",
            performed_by=signer_id,
            metadata={
                "validation_source": "manual",
                "integrity_check": integrity_check,
                "certificate_valid": certificate_valid,
                "serial_number": certificate.serial_number,
            }
        )

        logger.info(f"Signature {request_id} validated: integrity={integrity_check}, certificate={certificate_valid}")

        return SignatureValidationResult(
            is_valid=integrity_check and certificate_valid,
            certificate=certificate,
            timestamp=utcnow(),
            integrity_check=integrity_check,
            error_message=error_message
        )

    def generate_audit_trail(self, request_id: str) -> SignatureAuditTrail:
        record = self._get_record(request_id)

        events = self.ledger.list_events(record.workflow_id)
        records = (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.workflow_id == record.workflow_id)
            .order_by(SignatureRequest.signature_order)
            .all()
        )

        # Timestamps are verified in append order, independent of the listing sort
        compliance = ComplianceChecks(
            legal_validity=check_legal_validity(records),
            technical_compliance=check_technical_compliance(events),
            audit_trail_complete=check_audit_trail_completeness(events),
            timestamp_verified=verify_timestamps(sorted(events, key=lambda e: e.id))
        )

        certificate_chain: List[CertificateChainEntry] = []
        if record.signature_certificate_url:
            certificate_chain.append(CertificateChainEntry(
                certificate_url=record.signature_certificate_url,
                signed_at=record.signed_at,
                signer_email=record.signer_email,
                signer_name=record.signer_name
            ))

        return SignatureAuditTrail(
            document_id=record.document_id,
            workflow_id=record.workflow_id,
            events=[project_audit_event(e) for e in events],
            certificate_chain=certificate_chain,
            compliance_checks=compliance
        )
