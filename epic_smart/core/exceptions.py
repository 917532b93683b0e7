"""
Error taxonomy for the SMART on FHIR client core.

Every error carries a stable ``kind`` so the calling layer can pick a user-facing
view, plus the upstream status and diagnostics where they exist. Messages never
contain tokens, authorization codes or PKCE verifiers.
"""

from typing import Any, Dict, List, Optional


class EpicSmartError(Exception):
    """Base error"""

    kind = "epic_smart_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        diagnostics: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.diagnostics = diagnostics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "status_code": self.status_code,
            "diagnostics": self.diagnostics,
        }


class ConfigurationError(EpicSmartError):
    """Missing or invalid client id, key or redirect URI"""

    kind = "configuration_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


# ==============================================================================
# Authentication
# ==============================================================================


class StateValidationError(EpicSmartError):
    """Authorization state missing, malformed, mismatched or expired"""

    kind = "state_validation_error"

    MISSING = "missing_state"
    INVALID = "invalid_state"
    MISMATCH = "state_mismatch"
    EXPIRED = "state_expired"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Authorization state rejected: {reason}")
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class AuthorizationDeniedError(EpicSmartError):
    """Identity provider redirected back with an OAuth error"""

    kind = "authorization_denied"

    def __init__(self, error: str, description: Optional[str] = None):
        super().__init__(f"Authorization failed: {error}", diagnostics=description)
        self.error = error


class TokenExchangeError(EpicSmartError):
    """Authorization code exchange rejected"""

    kind = "token_exchange_error"


class TokenRefreshError(EpicSmartError):
    """Refresh token rejected; re-authentication required"""

    kind = "token_refresh_error"


class DecryptionError(EpicSmartError):
    """Stored token could not be decrypted"""

    kind = "decryption_error"


class NotAuthenticatedError(EpicSmartError):
    """No usable token is available for the session"""

    kind = "not_authenticated"


# ==============================================================================
# FHIR requests
# ==============================================================================


class RateLimitExceededError(EpicSmartError):
    """HTTP 429 persisted beyond the retry budget"""

    kind = "rate_limit_exceeded"


class TransientRequestError(EpicSmartError):
    """Network-level failure persisted beyond the retry budget"""

    kind = "transient_request_error"


class FHIROperationError(EpicSmartError):
    """Upstream returned a non-2xx FHIR response"""

    kind = "fhir_operation_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        diagnostics: Optional[str] = None,
        issues: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, status_code, diagnostics)
        self.issues = issues or []


# ==============================================================================
# Bulk Data Export
# ==============================================================================


class MalformedKickoffResponseError(EpicSmartError):
    """Kick-off did not answer 202 with a Content-Location header"""

    kind = "malformed_kickoff_response"


class BulkExportFailedError(EpicSmartError):
    """Export job failed or an output file could not be fetched"""

    kind = "bulk_export_failed"


__all__ = [
    "EpicSmartError",
    "ConfigurationError",
    "StateValidationError",
    "AuthorizationDeniedError",
    "TokenExchangeError",
    "TokenRefreshError",
    "DecryptionError",
    "NotAuthenticatedError",
    "RateLimitExceededError",
    "TransientRequestError",
    "FHIROperationError",
    "MalformedKickoffResponseError",
    "BulkExportFailedError",
]
