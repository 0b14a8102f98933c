"""
Custom exceptions for the Vault encryption framework.
"""

from typing import List, Optional


class EncryptionError(Exception):
    """Base exception for encryption-related errors."""
    pass


class EncryptionConfigurationError(EncryptionError):
    """Raised when encryption is misconfigured."""
    pass


class KeyUnavailable(EncryptionError):
    """Raised when Vault is unreachable or a key cannot be fetched or created."""
    pass


class KeyTypeMismatch(EncryptionError):
    """Raised when the key stored in Vault has a different algorithm than configured."""

    def __init__(self, name: str, expected: str, actual: str):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"The key type of '{name}' is '{actual}', expected '{expected}'"
        )


class TransitError(EncryptionError):
    """
    Raised when the transit engine answers with a non-2xx status or an
    ``errors`` array.
    """

    def __init__(self, status_code: Optional[int], message: str,
                 errors: Optional[List[str]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = list(errors or [])
        super().__init__(
            f"{status_code} - {message}" if status_code else message
        )

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TransitConnectionError(TransitError):
    """Raised when the transit engine cannot be reached at all."""

    def __init__(self, message: str):
        super().__init__(None, message)


class DecryptionFailure(TransitError):
    """Raised when decryption fails on a read path."""

    @classmethod
    def from_transit_error(cls, error: TransitError) -> 'DecryptionFailure':
        return cls(error.status_code, error.message, error.errors)


class UnsupportedLookup(EncryptionError):
    """Raised for searches a blind index cannot answer."""
    pass
