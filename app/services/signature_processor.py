# =====================================================
# FILE: app/services/signature_processor.py
# Signing, completion detection and finalization
# =====================================================

from sqlalchemy.orm import Session
from sqlalchemy import update, or_
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List, Dict
import logging

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    SignatureWorkflowError,
    StateConflictError,
)
from app.core.logging_config import current_workflow_id
from app.models.signature import (
    SignatureRequest,
    SignatureStatus,
    SignatureWorkflowStatus,
    AuditEventType,
)
from app.schemas.signature import (
    NormalizedSignatureData,
    SignatureCertificate,
    SignatureFields,
    SignatureResult,
    SignDocumentRequest,
    SignerSummary,
)
from app.services.audit_service import SignatureAuditLedger
from app.services.document_access import DocumentAccess
from app.services.identity_service import IdentityResolver
from app.services.notification_service import NotificationDispatcher
from app.services.signature_hooks import SignatureHooks
from app.services.signature_validation import (
    decode_signature,
    generate_signature_certificate,
    normalize_signature_payload,
    validate_signature_data,
)
from app.services.signature_workflow_service import build_workflow_summary
from app.services.storage_service import BlobStore
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


def signature_blob_keys(workflow_id: str, signer_id: str, serial_number: str) -> Dict[str, str]:
    """Blob keys for one signing attempt, scoped by workflow, signer and certificate serial"""
    prefix = f"signatures/{workflow_id}/{signer_id}/{serial_number}"
    return {
        "signature": f"{prefix}/signature.png",
        "certificate": f"{prefix}/certificate.json",
    }


class SignatureProcessor:
    """
    Applies one signer's signature to their request and, when that makes
    every required record SIGNED, completes the workflow exactly once.

    Concurrency:
        - a record is only moved out of INVITED by a conditional update
          (`WHERE status = 'INVITED'`), so at most one sign call wins
        - completion is claimed by setting `workflow_completed_at` where it is
          still NULL; only the caller whose update touched rows records
          WORKFLOW_COMPLETED and finalizes
    """

    def __init__(
        self,
        db: Session,
        ledger: SignatureAuditLedger,
        identity: IdentityResolver,
        notifier: NotificationDispatcher,
        documents: DocumentAccess,
        blob_store: BlobStore,
        hooks: Optional[SignatureHooks] = None,
        config: Optional[Settings] = None
    ):
        self.db = db
        self.ledger = ledger
        self.identity = identity
        self.notifier = notifier
        self.documents = documents
        self.blob_store = blob_store
        self.hooks = hooks or SignatureHooks()
        self.config = config or default_settings

    def sign_document(self, request: SignDocumentRequest) -> SignatureResult:
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

        token = current_workflow_id.set(record.workflow_id)
        try:
            try:
                self._check_signable(record, request.signer_id)
            except StateConflictError as e:
                if e.reason == "AlreadySigned" and record.signer_id == request.signer_id:
                    self._resume_completion(record)
                raise

            normalized = normalize_signature_payload(request.signature_data)
            is_valid, error_message = validate_signature_data(normalized, self.hooks)
            if not is_valid:
                raise InvalidInputError(f"Invalid signature: {error_message}", reason="InvalidSignaturePayload")

            document = self.documents.get_document(record.document_id)
            certificate = generate_signature_certificate(
                request.signer_id,
                normalized,
                document.extracted_text if document else None,
                self.config
            )

            signature_url, certificate_url = self._store_artifacts(record, request.signer_id, normalized, certificate)
            self._apply_signature(record, request, normalized, certificate, signature_url, certificate_url)

            logger.info(f"Signature request {record.id} signed by {request.signer_id}")

            completed = self._complete_if_ready(record.workflow_id, record.document_id, request.signer_id)
            records = self._workflow_records(record.workflow_id)
        finally:
            current_workflow_id.reset(token)

        signed = next(r for r in records if r.id == record.id)
        return SignatureResult(
            signature=SignerSummary.model_validate(signed),
            certificate=certificate,
            workflow=build_workflow_summary(records),
            workflow_completed=completed
        )

    # =====================================================
    # CHECKS
    # =====================================================

    def _check_signable(self, record: SignatureRequest, signer_id: str) -> None:
        if record.status == SignatureStatus.SIGNED.value:
            raise StateConflictError("Document already signed", reason="AlreadySigned")

        if record.status == SignatureStatus.DECLINED.value:
            raise StateConflictError("Signature request was declined", reason="RequestDeclined")

        if record.signer_id:
            if record.signer_id != signer_id:
                raise PermissionDeniedError("You are not the designated signer for this request", reason="SignerMismatch")
        else:
            user = self.identity.find_user_by_id(signer_id)
            if not user:
                raise PermissionDeniedError("Signer account not found", reason="SignerNotFound")
            if user.email.strip().lower() != (record.signer_email or "").strip().lower():
                raise PermissionDeniedError("Signer email does not match the invitation", reason="EmailMismatch")

        if record.invitation_expires_at and utcnow() > record.invitation_expires_at:
            raise StateConflictError("Signature invitation has expired", reason="InvitationExpired")

    # =====================================================
    # PERSISTENCE
    # =====================================================

    def _store_artifacts(
        self,
        record: SignatureRequest,
        signer_id: str,
        normalized: NormalizedSignatureData,
        certificate: SignatureCertificate
    ):
        """Blob failures propagate and abort the attempt before the record is touched"""
        keys = signature_blob_keys(record.workflow_id, signer_id, certificate.serial_number)
        blob_metadata = {
            "workflow_id": record.workflow_id,
            "signature_request_id": record.id,
            "signer_id": signer_id,
        }

        signature_url = self.blob_store.put(
            keys["signature"],
            decode_signature(normalized.signature),
            "image/png",
            blob_metadata
        )
        certificate_url = self.blob_store.put(
            keys["certificate"],
            certificate.model_dump_json().encode("utf-8"),
            "application/json",
            blob_metadata
        )
        return signature_url, certificate_url

    def _apply_signature(
        self,
        record: SignatureRequest,
        request: SignDocumentRequest,
        normalized: NormalizedSignatureData,
        certificate: SignatureCertificate,
        signature_url: str,
        certificate_url: str
    ) -> None:
        """Conditional update plus SIGNED and SIGNATURE_VALIDATED in one commit"""
        fields = SignatureFields.from_stored(record.signature_fields).merge(SignatureFields(
            comments=request.comments,
            attachments=request.attachments or None
        ))
        now = utcnow()

        result = self.db.execute(
            update(SignatureRequest)
            .where(
                SignatureRequest.id == record.id,
                SignatureRequest.status == SignatureStatus.INVITED.value,
                or_(SignatureRequest.signer_id.is_(None), SignatureRequest.signer_id == request.signer_id)
            )
            .values(
                signer_id=request.signer_id,
                signature_image_url=signature_url,
                signature_certificate_url=certificate_url,
                signed_at=now,
                ip_address=normalized.ip_address,
                user_agent=normalized.user_agent,
                coordinates=normalized.coordinates.model_dump() if normalized.coordinates else None,
                location_info={"location": normalized.location} if normalized.location else None,
                signature_fields=fields.to_stored(),
                status=SignatureStatus.SIGNED.value,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self.db.rollback()
            logger.warning(f"Signature request {record.id} was changed concurrently, signing aborted")
            raise StateConflictError("Document already signed", reason="AlreadySigned")

        self.ledger.append(
            document_id=record.document_id,
            workflow_id=record.workflow_id,
            event_type=AuditEventType.SIGNED,
            signature_id=record.id,
            description=f"Document signed by {record.signer_email}",
            performed_by=request.signer_id,
            performed_by_email=record.signer_email,
            performed_by_name=record.signer_name,
            ip_address=normalized.ip_address,
            user_agent=normalized.user_agent,
            metadata={
                "signature_type": normalized.type,
                "signature_order": record.signature_order,
                "client_timestamp": normalized.timestamp,
                "coordinates": normalized.coordinates,
                "location": normalized.location,
                "signature_url": signature_url,
                "certificate_url": certificate_url,
                "certificate_serial": certificate.serial_number,
                "comments": request.comments,
                "attachment_count": len(request.attachments),
            },
            commit=False
        )
        self.ledger.append(
            document_id=record.document_id,
            workflow_id=record.workflow_id,
            event_type=AuditEventType.SIGNATURE_VALIDATED,
            signature_id=record.id,
            description="Signature payload and certificate verified at signing",
            performed_by=request.signer_id,
            performed_by_email=record.signer_email,
            performed_by_name=record.signer_name,
            ip_address=normalized.ip_address,
            user_agent=normalized.user_agent,
            metadata={
                "validation_source": "signing",
                "is_valid": True,
                "certificate_serial": certificate.serial_number,
                "document_hash": certificate.document_hash,
                "signature_hash": certificate.signature_hash,
            },
            commit=False
        )
        self.db.commit()
        self.db.expire_all()

    # =====================================================
    # COMPLETION
    # =====================================================

    def _workflow_records(self, workflow_id: str) -> List[SignatureRequest]:
        return (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.workflow_id == workflow_id)
            .order_by(SignatureRequest.signature_order)
            .all()
        )

    def _resume_completion(self, record: SignatureRequest) -> None:
        """
        Complete a workflow whose last signature committed but whose completion
        step failed. Runs when the bound signer retries an already signed request.
        """
        records = self._workflow_records(record.workflow_id)
        if any(r.workflow_completed_at for r in records):
            return
        if not all(r.status == SignatureStatus.SIGNED.value for r in records if r.is_required):
            return

        logger.warning(f"Workflow {record.workflow_id} fully signed but not completed, retrying completion")
        try:
            self._complete_if_ready(record.workflow_id, record.document_id, record.signer_id)
        except (SignatureWorkflowError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(f"Retried completion of workflow {record.workflow_id} failed: {str(e)}")

    def _complete_if_ready(self, workflow_id: str, document_id: str, actor_id: str) -> bool:
        """
        Returns True only for the one caller that completed the workflow.
        """
        records = self._workflow_records(workflow_id)
        required = [r for r in records if r.is_required]
        is_complete = all(r.status == SignatureStatus.SIGNED.value for r in required)
        now = utcnow()

        if not is_complete:
            self.db.execute(
                update(SignatureRequest)
                .where(
                    SignatureRequest.workflow_id == workflow_id,
                    SignatureRequest.workflow_status.not_in([
                        SignatureWorkflowStatus.COMPLETED.value,
                        SignatureWorkflowStatus.CANCELLED.value,
                    ])
                )
                .values(workflow_status=SignatureWorkflowStatus.IN_PROGRESS.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self.db.expire_all()
            return False

        claim = self.db.execute(
            update(SignatureRequest)
            .where(
                SignatureRequest.workflow_id == workflow_id,
                SignatureRequest.workflow_completed_at.is_(None)
            )
            .values(
                workflow_status=SignatureWorkflowStatus.COMPLETED.value,
                workflow_completed_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        if claim.rowcount == 0:
            # Another signer completed the workflow first
            self.db.commit()
            self.db.expire_all()
            return False

        signed_count = sum(1 for r in records if r.status == SignatureStatus.SIGNED.value)
        self.ledger.append(
            document_id=document_id,
            workflow_id=workflow_id,
            event_type=AuditEventType.WORKFLOW_COMPLETED,
            description="All required signatures collected",
            performed_by=actor_id,
            metadata={
                "completed_at": now,
                "signed_count": signed_count,
                "required_count": len(required),
                "signer_count": len(records),
            },
            commit=False
        )
        self.db.commit()
        self.db.expire_all()

        logger.info(f"Signature workflow {workflow_id} completed")
        self._finalize(workflow_id, document_id)
        return True

    def _finalize(self, workflow_id: str, document_id: str) -> None:
        """Best effort: document status, completion notifications, compliance certificate"""
        try:
            self.documents.mark_signed(document_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update document {document_id} after workflow completion: {e}")

        records = self._workflow_records(workflow_id)
        recipients = []
        for record in records:
            if record.signer_id and record.signer_id not in recipients:
                recipients.append(record.signer_id)
        if records and records[0].requested_by and records[0].requested_by not in recipients:
            recipients.append(records[0].requested_by)

        title = records[0].workflow_title if records else None
        for user_id in recipients:
            try:
                self.notifier.send(
                    user_id,
                    title="Signature workflow completed",
                    body=f"All required signatures have been collected for \"{title}\"",
                    data={
                        "type": "signature_completed",
                        "workflow_id": workflow_id,
                        "document_id": document_id,
                    }
                )
            except Exception as e:
                logger.error(f"Failed to send completion notification to user {user_id}: {e}")

        try:
            self.hooks.on_workflow_completed(workflow_id, document_id)
        except Exception as e:
            logger.error(f"Compliance certificate generation failed for workflow {workflow_id}: {e}")
