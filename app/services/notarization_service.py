# =====================================================
# FILE: app/services/notarization_service.py
# Notarial attestation attached to a signature request
# =====================================================

from sqlalchemy.orm import Session
from sqlalchemy import update
from typing import Optional
import logging

from app.core.exceptions import (
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
)
from app.models.signature import (
    SignatureRequest,
    SignatureStatus,
    SignatureWorkflowStatus,
    AuditEventType,
)
from app.schemas.signature import (
    NotarizationRecord,
    NotarizationResult,
    NotarizeDocumentRequest,
    SignatureFields,
    SignerSummary,
)
from app.services.audit_service import SignatureAuditLedger
from app.services.signature_hooks import SignatureHooks
from app.services.signature_validation import decode_signature, extract_base64_payload, is_valid_base64
from app.services.storage_service import BlobStore
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


def notary_seal_key(workflow_id: str, request_id: str, notary_id: str) -> str:
    return f"notary-seals/{workflow_id}/{request_id}/{notary_id}/seal.png"


class NotarizationService:

    def __init__(
        self,
        db: Session,
        ledger: SignatureAuditLedger,
        blob_store: BlobStore,
        hooks: Optional[SignatureHooks] = None
    ):
        self.db = db
        self.ledger = ledger
        self.blob_store = blob_store
        self.hooks = hooks or SignatureHooks()

    def notarize_document(self, request: NotarizeDocumentRequest) -> NotarizationResult:
        """
        Attach notarial metadata to one signature request and mark its
        workflow status COMPLETED. Declined requests cannot be notarized.
        """
        record = (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.id == request.signature_request_id)
            .first()
        )
        if not record:
            raise NotFoundError(
                f"Signature request {request.signature_request_id} not found",
                reason="SignatureRequestNotFound"
            )

        if record.status == SignatureStatus.DECLINED.value:
            raise StateConflictError("Cannot notarize a declined signature request", reason="RequestDeclined")

        if not self.hooks.verify_notary_credentials(request.notary_id, request.notary_commission):
            raise PermissionDeniedError("Invalid notary credentials", reason="InvalidNotaryCredentials")

        seal = extract_base64_payload(request.notary_seal)
        if not is_valid_base64(seal):
            raise InvalidInputError("Invalid notary seal payload", reason="InvalidSealPayload")

        seal_url = self.blob_store.put(
            notary_seal_key(record.workflow_id, record.id, request.notary_id),
            decode_signature(seal),
            "image/png",
            {
                "workflow_id": record.workflow_id,
                "signature_request_id": record.id,
                "notary_id": request.notary_id,
            }
        )

        now = utcnow()
        notarization = NotarizationRecord(
            notary_id=request.notary_id,
            notary_seal_url=seal_url,
            notary_commission=request.notary_commission,
            witness_information=request.witness_information,
            notarized_at=now
        )
        fields = SignatureFields.from_stored(record.signature_fields).merge(
            SignatureFields(notarization=notarization)
        )

        result = self.db.execute(
            update(SignatureRequest)
            .where(
                SignatureRequest.id == record.id,
                SignatureRequest.status != SignatureStatus.DECLINED.value
            )
            .values(
                signature_fields=fields.to_stored(),
                workflow_status=SignatureWorkflowStatus.COMPLETED.value,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self.db.rollback()
            raise StateConflictError("Cannot notarize a declined signature request", reason="RequestDeclined")

        self.ledger.append(
            document_id=record.document_id,
            workflow_id=record.workflow_id,
            event_type=AuditEventType.NOTARIZED,
            signature_id=record.id,
            description=f"Document notarized by {request.notary_id}",
            performed_by=request.notary_id,
            metadata={
                "notary_id": request.notary_id,
                "notary_seal_url": seal_url,
                "commission_number": request.notary_commission.commission_number,
                "jurisdiction": request.notary_commission.jurisdiction,
                "witness_count": len(request.witness_information or []),
            },
            commit=False
        )
        self.db.commit()
        self.db.expire_all()

        logger.info(f"Signature request {record.id} notarized by {request.notary_id}")

        self.db.refresh(record)
        return NotarizationResult(
            signature=SignerSummary.model_validate(record),
            notarization=notarization
        )
