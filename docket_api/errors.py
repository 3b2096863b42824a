"""
Error taxonomy shared by the core and the HTTP boundary.

Every error carries a stable ``code`` and the ``status_code`` the API layer
should answer with, so handlers never have to inspect message text.
"""


class DocketError(Exception):
    """Base class for all failures surfaced by the docket core."""

    code = "internal_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Authentication

class InvalidCredential(DocketError):
    """Token missing, malformed, or not signed by any configured key."""
    code = "invalid_credential"
    status_code = 401
    default_message = "Unauthorized - Invalid token"


class ExpiredCredential(DocketError):
    """Token past its expiry claim or older than the absolute age ceiling."""
    code = "expired_credential"
    status_code = 401
    default_message = "Authentication token has expired"


class RevokedCredential(DocketError):
    """Signature valid, but the stored credential no longer matches."""
    code = "revoked_credential"
    status_code = 403
    default_message = "Forbidden - Token has been revoked"


class Forbidden(DocketError):
    """Authenticated, but the caller's role does not allow the operation."""
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


# Entity lookup

class NotFound(DocketError):
    """Entity absent, or owned by another user (never distinguished)."""
    code = "not_found"
    status_code = 404
    default_message = "Not found"

    @classmethod
    def entity(cls, name: str) -> "NotFound":
        return cls(f"{name.capitalize()} not found or you do not have access to this {name}")


class AssemblyTimeout(DocketError):
    code = "timeout"
    status_code = 408
    default_message = "Request timeout - please try again"


class UpstreamUnavailable(DocketError):
    """The data store could not be reached or rejected the query."""
    code = "upstream_unavailable"
    status_code = 500
    default_message = "Data store unavailable"


class PartialResolutionFailure(DocketError):
    """
    A relationship batch failed after the parent rows were loaded.

    Only meaningful for endpoints that opt into degrade-over-fail; the
    assembler propagates failures as UpstreamUnavailable instead.
    """
    code = "partial_resolution_failure"
    status_code = 500
    default_message = "Related records could not be resolved"
