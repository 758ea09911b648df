# =====================================================
# FILE: app/services/digital_signature_service.py
# Public entry point for the signature workflow engine
# =====================================================

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, Callable, Any
import logging

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import SignatureWorkflowError, DependencyFailureError
from app.schemas.signature import (
    CancelSignatureRequest,
    CreateSignatureRequest,
    NotarizeDocumentRequest,
    OperationResult,
    SignDocumentRequest,
)
from app.services.audit_service import SignatureAuditLedger
from app.services.document_access import DocumentAccess
from app.services.identity_service import IdentityResolver, SqlIdentityResolver
from app.services.notarization_service import NotarizationService
from app.services.notification_service import NotificationDispatcher
from app.services.signature_hooks import SignatureHooks
from app.services.signature_processor import SignatureProcessor
from app.services.signature_validation import SignatureValidationService
from app.services.signature_workflow_service import SignatureWorkflowService
from app.services.storage_service import BlobStore

logger = logging.getLogger(__name__)


class DigitalSignatureService:
    """
    Facade over the workflow, processor, validation and notarization
    components. Every operation returns an OperationResult; errors never
    escape this boundary.
    """

    def __init__(
        self,
        db: Session,
        blob_store: BlobStore,
        notifier: NotificationDispatcher,
        identity: Optional[IdentityResolver] = None,
        hooks: Optional[SignatureHooks] = None,
        config: Optional[Settings] = None
    ):
        self.db = db
        self.config = config or default_settings
        self.identity = identity or SqlIdentityResolver(db)
        self.hooks = hooks or SignatureHooks()

        self.ledger = SignatureAuditLedger(db, self.identity)
        self.documents = DocumentAccess(db)

        self.workflows = SignatureWorkflowService(
            db, self.ledger, self.identity, notifier, self.documents, self.config
        )
        self.processor = SignatureProcessor(
            db, self.ledger, self.identity, notifier, self.documents, blob_store, self.hooks, self.config
        )
        self.validation = SignatureValidationService(db, blob_store, self.ledger, self.hooks)
        self.notarization = NotarizationService(db, self.ledger, blob_store, self.hooks)

    def _execute(self, action: str, operation: Callable[..., Any], *args) -> OperationResult:
        try:
            return OperationResult(success=True, data=operation(*args))

        except SignatureWorkflowError as e:
            self.db.rollback()
            logger.warning(f"{action} failed [{e.error_code}]: {e.message}")
            return OperationResult(success=False, error=e.message, error_code=e.error_code, reason=e.reason)

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error during {action}: {str(e)}", exc_info=True)
            return OperationResult(
                success=False,
                error="Signature store unavailable",
                error_code=DependencyFailureError.error_code,
                reason="StoreUnavailable"
            )

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error during {action}: {str(e)}", exc_info=True)
            return OperationResult(success=False, error=str(e), error_code=SignatureWorkflowError.error_code)

    # =====================================================
    # PUBLIC OPERATIONS
    # =====================================================

    def create_signature_request(self, request: CreateSignatureRequest) -> OperationResult:
        return self._execute("create signature request", self.workflows.create_signature_request, request)

    def sign_document(self, request: SignDocumentRequest) -> OperationResult:
        return self._execute("sign document", self.processor.sign_document, request)

    def validate_signature(self, signature_request_id: str, signer_id: str) -> OperationResult:
        return self._execute("validate signature", self.validation.validate_signature, signature_request_id, signer_id)

    def generate_audit_trail(self, signature_request_id: str) -> OperationResult:
        return self._execute("generate audit trail", self.validation.generate_audit_trail, signature_request_id)

    def cancel_signature_request(self, request: CancelSignatureRequest) -> OperationResult:
        return self._execute("cancel signature request", self.workflows.cancel_signature_request, request)

    def notarize_document(self, request: NotarizeDocumentRequest) -> OperationResult:
        return self._execute("notarize document", self.notarization.notarize_document, request)

    def get_workflow_summary(self, workflow_id: str) -> OperationResult:
        return self._execute("get workflow summary", self.workflows.get_workflow_summary, workflow_id)
