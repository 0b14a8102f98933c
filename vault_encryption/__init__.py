"""
Field-level encryption for Django backed by the Vault transit engine.

Model fields are encrypted transparently by Vault, keep a blind index for
equality search and can be bulk encrypted, decrypted and rewrapped after a
key rotation.
"""

from .fields import (
    EncryptedField,
    EncryptedCharField,
    EncryptedEmailField,
    EncryptedIntegerField,
    EncryptedDecimalField,
    EncryptedBooleanField,
    EncryptedDateField,
    EncryptedJSONField,
    field_errors,
    is_irretrievable,
)
from .client import TransitClient
from .codec import EncryptedFieldCodec, get_field_codec, get_transit_client, reset_field_codecs
from .conf import VaultConfig
from .keys import TransitKey, TransitKeyManager
from .search import BlindIndexFilter, EncryptedManager, EncryptedQuerySet
from .bulk import BulkOperationRunner, BulkOperationResult
from .status import VaultState, VaultStatus, check_vault_status
from .exceptions import (
    EncryptionError,
    EncryptionConfigurationError,
    KeyUnavailable,
    KeyTypeMismatch,
    TransitError,
    DecryptionFailure,
    UnsupportedLookup,
)

__all__ = [
    # Fields
    'EncryptedField',
    'EncryptedCharField',
    'EncryptedEmailField',
    'EncryptedIntegerField',
    'EncryptedDecimalField',
    'EncryptedBooleanField',
    'EncryptedDateField',
    'EncryptedJSONField',
    'field_errors',
    'is_irretrievable',

    # Vault
    'VaultConfig',
    'TransitClient',
    'TransitKey',
    'TransitKeyManager',
    'EncryptedFieldCodec',
    'get_field_codec',
    'get_transit_client',
    'reset_field_codecs',

    # Search
    'BlindIndexFilter',
    'EncryptedManager',
    'EncryptedQuerySet',

    # Bulk operations and status
    'BulkOperationRunner',
    'BulkOperationResult',
    'VaultState',
    'VaultStatus',
    'check_vault_status',

    # Exceptions
    'EncryptionError',
    'EncryptionConfigurationError',
    'KeyUnavailable',
    'KeyTypeMismatch',
    'TransitError',
    'DecryptionFailure',
    'UnsupportedLookup',
]

# Version info
__version__ = '1.0.0'
