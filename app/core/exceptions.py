# =====================================================
# FILE: app/core/exceptions.py
# Error taxonomy for the signature workflow engine
# =====================================================

from typing import Optional


class SignatureWorkflowError(Exception):
    """Base class. `error_code` is what callers and the HTTP layer see."""

    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason


class NotFoundError(SignatureWorkflowError):
    """Missing document or signature request"""
    error_code = "NOT_FOUND"


class PermissionDeniedError(SignatureWorkflowError):
    """Ownership, share access, signer identity or notary credential failure"""
    error_code = "PERMISSION_DENIED"


class InvalidInputError(SignatureWorkflowError):
    """Malformed payload or timestamp, duplicate order, no signers"""
    error_code = "INVALID_INPUT"


class StateConflictError(SignatureWorkflowError):
    """Already signed or declined, cancel after sign"""
    error_code = "STATE_CONFLICT"


class DependencyFailureError(SignatureWorkflowError):
    """Blob store, notification or identity backend failure"""
    error_code = "DEPENDENCY_FAILURE"
