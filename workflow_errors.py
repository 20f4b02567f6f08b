"""
Error types for the order workflow

Every error carries a short machine code and a human-readable reason so the
HTTP layer can map it to a status code and a response body.
"""

from typing import Any, Dict, Optional


class OrderWorkflowError(Exception):
    """Base class for order workflow errors"""
    code = "workflow_error"
    http_status = 500

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.code, 'message': self.reason}


class OrderValidationError(OrderWorkflowError):
    """Input rejected before anything was persisted"""
    code = "validation_error"
    http_status = 400


class OrderNotFoundError(OrderWorkflowError):
    code = "not_found"
    http_status = 404


class OrderConflictError(OrderWorkflowError):
    """A compare-and-swap transition lost: the record is not in the expected state"""
    code = "conflict"
    http_status = 409


class TransientProviderError(OrderWorkflowError):
    """External provider failed in a way that may succeed on retry"""
    code = "provider_unavailable"
    http_status = 503
    retriable = True


class ProviderTimeoutError(TransientProviderError):
    """Provider call timed out; the side effect may or may not have happened"""
    code = "provider_timeout"


class PermanentProviderError(OrderWorkflowError):
    """Provider refused the request; retrying will not help"""
    code = "provider_rejected"
    http_status = 502
    retriable = False


class NotificationError(OrderWorkflowError):
    """Raised by email delivery; contained by the notification dispatcher"""
    code = "notification_failed"
