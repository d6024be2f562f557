"""
Reconciliation error taxonomy.

Every error carries the HTTP status the API layer answers with. Nothing in
the pipeline retries on these; retry belongs to the gateway (webhooks) or to
the user (quote actions).
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation failures"""

    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequestError(ReconciliationError):
    """Required request fields missing"""
    status_code = 400


class AuthenticationError(ReconciliationError):
    """Missing or mismatched webhook signature"""
    status_code = 400


class MalformedEventError(ReconciliationError):
    """Authentic event that lacks required correlation fields"""
    status_code = 400


class InvalidStatusError(ReconciliationError):
    """Requested status is outside the document kind's enum"""
    status_code = 400


class DocumentNotFoundError(ReconciliationError):
    status_code = 404


class TransitionConflictError(ReconciliationError):
    """Legal status value, but not reachable from the current status"""
    status_code = 409


class PersistenceError(ReconciliationError):
    """Store unavailable or the atomic write unit failed"""
    status_code = 500


class DuplicatePaymentError(PersistenceError):
    """A payment with the same gateway reference already exists"""
    status_code = 409
