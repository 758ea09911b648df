# =====================================================
# FILE: app/services/document_access.py
# Read access to documents owned by the document subsystem
# =====================================================

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, PermissionDeniedError
from app.models.document import Document, DocumentShare
from app.utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)

# Share levels that allow opening a signature workflow
SIGNATURE_SHARE_LEVELS = ("EDIT", "READ")


class DocumentAccess:

    def __init__(self, db: Session):
        self.db = db

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.db.query(Document).filter(Document.id == document_id).first()

    def get_document_for_requester(self, document_id: str, requester_id: str) -> Document:
        """
        Load a document a requester may open a signature workflow on.

        Raises:
            NotFoundError: document does not exist
            PermissionDeniedError: document is still a draft, or requester is neither
                owner nor an EDIT/READ share holder
        """
        document = self.get_document(document_id)
        if not document:
            raise NotFoundError(f"Document {document_id} not found", reason="DocumentNotFound")

        if document.workflow_status == "DRAFT":
            raise PermissionDeniedError(
                "Document is in draft state and cannot be sent for signature",
                reason="DocumentInDraft"
            )

        if document.owner_id == requester_id:
            return document

        share = self.db.query(DocumentShare).filter(
            DocumentShare.document_id == document_id,
            DocumentShare.shared_with == requester_id,
            DocumentShare.access_level.in_(SIGNATURE_SHARE_LEVELS)
        ).first()

        if not share:
            raise PermissionDeniedError(
                "You do not have permission to request signatures on this document",
                reason="DocumentAccessDenied"
            )

        return document

    def mark_signed(self, document_id: str) -> None:
        """Flip the document's workflow status once every required signer has signed"""
        self.db.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(workflow_status="SIGNED", updated_at=utcnow())
        )
        self.db.commit()
        logger.info(f"Document {document_id} marked as SIGNED")
