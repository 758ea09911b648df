# =====================================================
# FILE: app/api/api_v1/signatures/router.py
# Signature Workflow API Routes
# =====================================================

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
import logging

from app.core.dependencies import get_current_user_id, get_signature_service
from app.models.signature import SignatureType
from app.schemas.signature import (
    AttachmentMetadata,
    CancelSignatureRequest,
    CreateSignatureRequest,
    NotarizeDocumentRequest,
    NotaryCommission,
    OperationResult,
    ReminderSettings,
    SignatureData,
    SignDocumentRequest,
    SignerInput,
    WitnessInformation,
)
from app.services.digital_signature_service import DigitalSignatureService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/signatures", tags=["signatures"])

ERROR_STATUS_CODES = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PERMISSION_DENIED": status.HTTP_403_FORBIDDEN,
    "INVALID_INPUT": status.HTTP_400_BAD_REQUEST,
    "STATE_CONFLICT": status.HTTP_409_CONFLICT,
    "DEPENDENCY_FAILURE": status.HTTP_502_BAD_GATEWAY,
    "INTERNAL_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# =====================================================
# Request Bodies
# =====================================================

class SignatureRequestCreate(BaseModel):
    signers: List[SignerInput] = Field(default_factory=list)
    title: str
    message: Optional[str] = None
    due_date: Optional[datetime] = None
    reminder_settings: Optional[ReminderSettings] = None
    signature_type: SignatureType = SignatureType.ELECTRONIC

class SignBody(BaseModel):
    signature_data: SignatureData
    comments: Optional[str] = None
    attachments: List[AttachmentMetadata] = Field(default_factory=list)

class NotarizeBody(BaseModel):
    notary_seal: str
    notary_commission: NotaryCommission
    witness_information: Optional[List[WitnessInformation]] = None

class CancelBody(BaseModel):
    reason: str


def _unwrap(result: OperationResult) -> dict:
    """Map a failed result onto an HTTP error, pass data through otherwise"""
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail={
                "error": result.error,
                "error_code": result.error_code,
                "reason": result.reason,
            }
        )
    return {"success": True, "data": result.data}

# =====================================================
# Workflow
# =====================================================

@router.post("/documents/{document_id}/requests", status_code=status.HTTP_201_CREATED)
def create_signature_request(
    document_id: str,
    body: SignatureRequestCreate,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    """
    Open a signature workflow on a document
    """
    logger.info(f"Signature request for document {document_id} by user {user_id}")
    result = service.create_signature_request(CreateSignatureRequest(
        document_id=document_id,
        requested_by=user_id,
        **body.model_dump(exclude_unset=True)
    ))
    return _unwrap(result)


@router.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    return _unwrap(service.get_workflow_summary(workflow_id))

# =====================================================
# Signing
# =====================================================

@router.post("/{request_id}/sign")
def sign_document(
    request_id: str,
    body: SignBody,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    """
    Sign as the current user. Client address and user agent come from the request.
    """
    signature_data = body.signature_data.model_copy(update={
        "ip_address": request.client.host if request.client else body.signature_data.ip_address,
        "user_agent": request.headers.get("user-agent") or body.signature_data.user_agent,
    })

    result = service.sign_document(SignDocumentRequest(
        signature_request_id=request_id,
        signer_id=user_id,
        signature_data=signature_data,
        comments=body.comments,
        attachments=body.attachments
    ))
    return _unwrap(result)


@router.get("/{request_id}/validate")
def validate_signature(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    return _unwrap(service.validate_signature(request_id, user_id))


@router.get("/{request_id}/audit-trail")
def get_audit_trail(
    request_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    return _unwrap(service.generate_audit_trail(request_id))

# =====================================================
# Notarization / Cancellation
# =====================================================

@router.post("/{request_id}/notarize")
def notarize_document(
    request_id: str,
    body: NotarizeBody,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    """
    Notarize as the current user (the notary)
    """
    result = service.notarize_document(NotarizeDocumentRequest(
        signature_request_id=request_id,
        notary_id=user_id,
        **body.model_dump()
    ))
    return _unwrap(result)


@router.post("/{request_id}/cancel")
def cancel_signature_request(
    request_id: str,
    body: CancelBody,
    user_id: str = Depends(get_current_user_id),
    service: DigitalSignatureService = Depends(get_signature_service)
):
    result = service.cancel_signature_request(CancelSignatureRequest(
        signature_request_id=request_id,
        cancelled_by=user_id,
        reason=body.reason
    ))
    return _unwrap(result)
