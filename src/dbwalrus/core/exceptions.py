"""
Exceptions for DBWalrus
Every error carries a stable ``kind`` so the network boundary can report it
without inspecting the class hierarchy.
"""

DECRYPTION_DETAIL = "Invalid encryption key or corrupted data"
INTERNAL_DETAIL = "Unexpected internal error"


class DBWalrusError(Exception):
    # general container for errors
    kind = "error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class ValidationError(DBWalrusError):
    # missing or malformed input, never retried
    kind = "validation_error"


class ConfigurationError(DBWalrusError):
    # raised when settings cannot be parsed at startup
    kind = "configuration_error"


class BlobStoreError(DBWalrusError):
    # raised if the blob store fails in some way
    kind = "store_error"


class TransientStoreError(BlobStoreError):
    # network or store failure that may succeed on a fresh attempt
    pass


class BlobNotFoundError(BlobStoreError):
    # unknown, expired or deleted blob / blob object
    kind = "blob_not_found"


class AccessDeniedError(BlobStoreError):
    # signer is not allowed to touch the blob object
    kind = "access_denied"


class RetryExhausted(DBWalrusError):
    kind = "retry_exhausted"

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class SaveFailed(RetryExhausted):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(attempts, last_error)
        self.detail = f"Failed to save blob after {attempts} attempts: {last_error}"
        self.args = (self.detail,)


class DecryptionError(DBWalrusError):
    # bad key or corrupted envelope; the detail never reaches the caller
    kind = "decryption_failed"


class MalformedEnvelopeError(DecryptionError):
    # structurally invalid envelope string
    pass


class DecryptFailed(DecryptionError):
    # decryption failure surfaced by the pipeline during retrieve
    pass


class DeleteFailed(DBWalrusError):
    kind = "delete_failed"

    def __init__(self, cause: BaseException):
        super().__init__(f"Failed to delete blob: {cause}")
        self.cause = cause


def to_error_dict(exc: BaseException) -> dict:
    """Map an exception to the structured ``{"error", "details"}`` result."""
    if isinstance(exc, DecryptionError):
        return {"error": exc.kind, "details": DECRYPTION_DETAIL}
    if isinstance(exc, DBWalrusError):
        return {"error": exc.kind, "details": exc.detail or exc.kind}
    return {"error": "internal_error", "details": INTERNAL_DETAIL}
