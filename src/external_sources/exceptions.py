"""
Sync Errors
===========
Exception hierarchy shared by connectors, services and the HTTP layer.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base exception for external source synchronization errors."""
    status_code = 500
    error_code = "sync_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthenticationError(SyncError):
    """Raised when no valid trigger credential or session is presented."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(SyncError):
    """Raised when the caller lacks the required role or entitlement."""
    status_code = 403
    error_code = "forbidden"


class InvalidRequestError(SyncError):
    """Raised when a request is missing required parameters."""
    status_code = 400
    error_code = "bad_request"


class SourceValidationError(SyncError):
    """Raised when a source config does not match its provider's schema."""
    status_code = 422
    error_code = "validation_error"


class NotFoundError(SyncError):
    """Raised when a referenced source does not exist."""
    status_code = 404
    error_code = "not_found"


class ConfigurationError(SyncError):
    """Raised when provider config, credentials or server settings are missing."""
    status_code = 503
    error_code = "configuration_error"


class ConnectorError(SyncError):
    """Raised when a remote provider call fails."""
    status_code = 502
    error_code = "connector_error"


class LedgerConflictError(SyncError):
    """Raised when a remote object has already been recorded for a source."""
    status_code = 409
    error_code = "conflict"


class InfrastructureError(SyncError):
    """Raised when the store is unreachable or its schema is missing."""
    status_code = 503
    error_code = "infrastructure_error"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message, details={"hint": hint} if hint else None)
        self.hint = hint


class ReconsentRequiredError(SyncError):
    """Raised when the provider returned no refresh token."""
    status_code = 400
    error_code = "reconsent_required"


class OAuthStateError(SyncError):
    """Base error for OAuth state verification."""
    status_code = 400
    error_code = "invalid_state"


class OAuthStateInvalidError(OAuthStateError):
    """Raised when the state token is malformed or has a bad signature."""
    pass


class OAuthStateExpiredError(OAuthStateError):
    """Raised when the state token is older than its lifetime."""
    error_code = "state_expired"
