"""
Error taxonomy for CyberKey.

Interactive surfaces map these to status codes; background handlers
catch them per item and log.
"""


class CyberKeyError(Exception):
    """Base class for all CyberKey errors."""
    status_code = 500
    safe_message = "Internal server error"


class ValidationError(CyberKeyError):
    """Raised when required input is missing or malformed."""
    status_code = 400

    @property
    def safe_message(self) -> str:
        return str(self)


class NotFoundError(CyberKeyError):
    """Raised when a record is absent on read, update or delete."""
    status_code = 404

    @property
    def safe_message(self) -> str:
        return str(self)


class PermissionDeniedError(CyberKeyError):
    """Raised when a user touches a record owned by someone else."""
    status_code = 403

    @property
    def safe_message(self) -> str:
        return str(self)


class IntegrityError(CyberKeyError):
    """Raised when a stored ciphertext fails authentication."""


class TransientStoreError(CyberKeyError):
    """Raised when the document store cannot be reached."""
    status_code = 503
    safe_message = "Storage is temporarily unavailable"


class EmailDeliveryError(CyberKeyError):
    """Raised when an SMTP transport rejects or fails a message."""

    @property
    def safe_message(self) -> str:
        return str(self)


class PushGatewayError(CyberKeyError):
    """Raised when the push gateway cannot be reached or rejects a batch."""
    status_code = 502
    safe_message = "Push gateway unavailable"
