# =====================================================
# FILE: app/services/signature_hooks.py
# Extension points for signature verification, notary
# credentials and compliance certificate generation
# =====================================================

import logging
import uuid
from datetime import date
from typing import Optional

from app.schemas.signature import NotaryCommission, SignatureCertificate
from app.utils.datetime_helpers import utcnow
from app.utils.hashing import compute_content_hash

logger = logging.getLogger(__name__)


class SignatureHooks:
    """
    Default implementations. Subclass and inject into the services to plug in
    a real PKI verifier, a notary registry or a compliance report generator.
    """

    def is_valid_digital_signature(self, signature: str) -> bool:
        """Format check for `digital` signatures"""
        return len(signature) > 0

    def check_integrity(
        self,
        document_text: Optional[str],
        signature_bytes: bytes,
        certificate: SignatureCertificate
    ) -> bool:
        """Re-hash the document text and stored signature and compare with the certificate"""
        if compute_content_hash(document_text or "") != certificate.document_hash:
            logger.warning(f"Document hash mismatch for certificate {certificate.serial_number}")
            return False

        if compute_content_hash(signature_bytes) != certificate.signature_hash:
            logger.warning(f"Signature hash mismatch for certificate {certificate.serial_number}")
            return False

        return True

    def validate_certificate(self, certificate: SignatureCertificate, signer_id: Optional[str]) -> bool:
        """Structural validation: required fields, window ordering, subject, serial format"""
        required = (
            certificate.issuer,
            certificate.subject,
            certificate.algorithm,
            certificate.document_hash,
            certificate.signature_hash,
        )
        if not all(required):
            return False

        if certificate.valid_from >= certificate.valid_to:
            return False

        if signer_id and certificate.subject != signer_id:
            return False

        try:
            uuid.UUID(certificate.serial_number)
        except ValueError:
            return False

        return True

    def verify_notary_credentials(self, notary_id: str, commission: NotaryCommission) -> bool:
        if not notary_id or not commission.commission_number.strip() or not commission.jurisdiction.strip():
            return False
        today: date = utcnow().date()
        return commission.expiration_date >= today

    def on_workflow_completed(self, workflow_id: str, document_id: str) -> None:
        """Compliance certificate generation for a completed workflow"""
        logger.info(f"Compliance certificate requested for workflow {workflow_id} (document {document_id})")
