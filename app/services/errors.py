class TransferError(Exception):
    """Base exception for transfer operations."""


class ValidationError(TransferError):
    """Rejected create request (bad shape, size or range)."""


class TransferNotFound(TransferError):
    """Unknown transfer id, or an access token that does not match.

    Both cases raise this same error so callers cannot tell whether an id exists.
    """


class TransferUnauthorized(TransferError):
    """Password missing or wrong."""


class TransferExpired(TransferError):
    """Expiry date passed or download quota exhausted."""


class CorruptedPayload(TransferError):
    """Ciphertext failed authentication or is truncated."""


class StorageFailure(TransferError):
    """Backing store I/O error."""
