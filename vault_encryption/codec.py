"""
Per-field value transform between application values and stored values.

Writes encrypt plaintext and compute its blind index; reads decrypt
ciphertext. A value that already is in the target state passes through
unchanged, so neither direction can be applied twice.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from django.db import models

from .client import TransitClient
from .conf import VaultConfig
from .exceptions import (
    DecryptionFailure,
    KeyTypeMismatch,
    KeyUnavailable,
    TransitConnectionError,
    TransitError,
)
from .keys import TransitKey, TransitKeyManager, key_cache
from .utils import prepare_value_for_encryption, shorten
from .values import NULL_SENTINEL, StoredValue, UnreadableValue, from_sentinel, to_sentinel

logger = logging.getLogger(__name__)


IRRETRIEVABLE_MESSAGE = 'Could not decrypt field. This field may be irretrievable.'
UNREACHABLE_MESSAGE = 'Vault transit engine is unreachable.'
INVALID_VALUE_MESSAGE = 'Decrypted value does not match the field type.'


@dataclass(frozen=True)
class WriteResult:
    """Outcome of preparing one value for storage."""

    stored: Optional[str]
    # None means "leave the stored blind index as it is"
    blind_index: Optional[str]
    encrypted: bool


@dataclass(frozen=True)
class ReadResult:
    """Outcome of reading one stored value."""

    value: Any
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def cast_value(value: Any, target: Any = None, empty_value: Any = None) -> Any:
    """
    Convert a decrypted string to its display type.

    Args:
        value: The decrypted value
        target: A Django field (class or instance) or a Python type
        empty_value: Returned for null, empty, sentinel and ciphertext values

    Returns:
        The typed value
    """
    if value is None or value == '' or value == NULL_SENTINEL:
        return empty_value
    if StoredValue.parse(value).is_encrypted:
        return empty_value
    if target is None or not isinstance(value, str):
        return value

    if isinstance(target, type) and issubclass(target, models.Field):
        target = target()

    if isinstance(target, models.JSONField):
        return json.loads(value)

    if isinstance(target, models.Field):
        return target.to_python(value)

    if target is str:
        return value
    elif target is bool:
        return value.lower() in ('true', '1', 'yes', 'on', 't')
    elif target is int:
        return int(value)
    elif target is float:
        return float(value)
    elif target is Decimal:
        return Decimal(value)
    elif target is datetime:
        return datetime.fromisoformat(value)
    elif target is date:
        return date.fromisoformat(value)
    elif target in (dict, list):
        return json.loads(value)

    return target(value)


class EncryptedFieldCodec:
    """
    Encrypts values on write and decrypts them on read for one transit key.
    """

    def __init__(self, client: Optional[TransitClient] = None,
                 key_manager: Optional[TransitKeyManager] = None,
                 key_name: Optional[str] = None,
                 config: Optional[VaultConfig] = None):
        if config is None:
            config = client.config if client is not None else VaultConfig.from_settings()
        self.config = config
        self.client = client or TransitClient(config)
        self.key_manager = key_manager or TransitKeyManager(self.client, config)
        self.key_name = key_name or config.key_name

    def get_key(self) -> TransitKey:
        return self.key_manager.ensure_key(self.key_name)

    # Write path

    def on_write(self, value: Any) -> WriteResult:
        """
        Prepare one value for storage.

        Raises:
            KeyUnavailable: If the key cannot be acquired and encryption is required
            TransitError: If Vault rejects the encryption
        """
        return self.on_write_many([value])[0]

    def on_write_many(self, values: Sequence[Any]) -> List[WriteResult]:
        """
        Prepare several values for storage with a single encrypt call.
        """
        results: List[Optional[WriteResult]] = [None] * len(values)
        pending = []

        for index, value in enumerate(values):
            if isinstance(value, UnreadableValue):
                results[index] = WriteResult(value.stored, None, True)
                continue
            stored = StoredValue.parse(value)
            if stored.is_encrypted:
                results[index] = WriteResult(stored.serialize(), None, True)
            else:
                pending.append((index, prepare_value_for_encryption(value)))

        if not pending:
            return results

        try:
            key = self.get_key()
        except KeyUnavailable as e:
            if self.config.require_encryption:
                raise
            logger.warning(f"Storing {len(pending)} value(s) unencrypted: {e}")
            for index, plaintext in pending:
                results[index] = WriteResult(plaintext, None, False)
            return results

        plaintexts = [to_sentinel(plaintext) for _, plaintext in pending]
        ciphertexts = self.client.encrypt(key, plaintexts)

        for (index, _), plaintext, ciphertext in zip(pending, plaintexts, ciphertexts):
            results[index] = WriteResult(
                ciphertext,
                self.client.hmac(key, plaintext),
                True,
            )
        return results

    # Read path

    def decrypt_strict(self, raws: Sequence[str]) -> List[str]:
        """
        Decrypt ciphertexts in one call without any fallback.

        Raises:
            KeyUnavailable: If the key cannot be acquired
            DecryptionFailure: If Vault rejects the batch
        """
        key = self.get_key()
        try:
            return self.client.decrypt(key, list(raws))
        except TransitConnectionError as e:
            raise KeyUnavailable(f"Vault became unreachable: {e}") from e
        except TransitError as e:
            raise DecryptionFailure.from_transit_error(e) from e

    def on_read(self, raw: Any, empty_value: Any = None) -> ReadResult:
        """
        Expose one stored value.

        Never raises for Vault failures: a value that cannot be decrypted is
        blanked and reported through ``ReadResult.error``. The blank is an
        ``UnreadableValue``, which ``on_write`` turns back into the original
        ciphertext.

        Null and empty plaintexts share the null sentinel, so both read back
        as ``empty_value``. Pass ``''`` to get empty strings back; the default
        of None reproduces null.
        """
        return self.on_read_many([raw], empty_value)[0]

    def on_read_many(self, raws: Sequence[Any], empty_value: Any = None) -> List[ReadResult]:
        results: List[Optional[ReadResult]] = [None] * len(raws)
        pending = []

        for index, raw in enumerate(raws):
            stored = StoredValue.parse(raw)
            if stored.is_encrypted:
                pending.append((index, stored.serialize()))
            else:
                results[index] = ReadResult(raw)

        if not pending:
            return results

        try:
            plaintexts = self.decrypt_strict([raw for _, raw in pending])
        except (KeyUnavailable, KeyTypeMismatch) as e:
            logger.warning(f"Passing {len(pending)} value(s) through undecrypted: {e}")
            for index, raw in pending:
                results[index] = ReadResult(raw, UNREACHABLE_MESSAGE)
            return results
        except DecryptionFailure as e:
            if len(pending) == 1:
                index, raw = pending[0]
                logger.warning(f"Could not decrypt {shorten(raw)}: {e}")
                results[index] = ReadResult(UnreadableValue(raw), IRRETRIEVABLE_MESSAGE)
                return results
            # Retry one by one so a single bad value only blanks itself
            for index, raw in pending:
                results[index] = self.on_read(raw, empty_value)
            return results

        for (index, _), plaintext in zip(pending, plaintexts):
            results[index] = ReadResult(from_sentinel(plaintext, empty_value))
        return results

    # Rotation

    def rewrap_many(self, raws: Sequence[str]) -> List[str]:
        """
        Move ciphertexts to the latest key version without exposing plaintext.

        Raises:
            KeyUnavailable: If the key cannot be acquired
            TransitError: If Vault rejects the batch
        """
        key = self.get_key()
        return self.client.rewrap(key, list(raws))

    # Blind index

    def blind_index(self, value: Any) -> str:
        """Blind index of a plaintext under the current key version."""
        key = self.get_key()
        return self.client.hmac(key, to_sentinel(prepare_value_for_encryption(value)))

    def blind_index_candidates(self, value: Any) -> List[str]:
        """
        Blind indexes of a plaintext under every known key version.

        Rows written before a rotation keep the index computed with the key
        version current at write time, so a lookup has to try all of them.
        """
        key = self.get_key()
        plaintext = to_sentinel(prepare_value_for_encryption(value))
        versions = [key.version] + [v for v in sorted(key.versions, reverse=True) if v != key.version]
        return [self.client.hmac(key, plaintext, version=v) for v in versions if v in key.versions]

    def cast(self, value: Any, target: Any = None, empty_value: Any = None) -> Any:
        return cast_value(value, target, empty_value)


_codecs: Dict[str, EncryptedFieldCodec] = {}
_codecs_lock = threading.RLock()
_shared_client: Optional[TransitClient] = None


def get_transit_client() -> TransitClient:
    """
    Get the process-wide client shared by model fields, bulk runs and status checks.
    """
    global _shared_client

    with _codecs_lock:
        if _shared_client is None:
            _shared_client = TransitClient(VaultConfig.from_settings())
        return _shared_client


def get_field_codec(key_name: Optional[str] = None) -> EncryptedFieldCodec:
    """
    Get the codec used by model fields for a key.

    Args:
        key_name: Transit key name, defaults to the configured key name

    Returns:
        A process-wide codec instance
    """
    with _codecs_lock:
        client = get_transit_client()
        name = key_name or client.config.key_name
        if name not in _codecs:
            _codecs[name] = EncryptedFieldCodec(client=client, key_name=name)
        return _codecs[name]


def reset_field_codecs(client: Optional[TransitClient] = None):
    """
    Drop all codecs and cached keys (useful for testing).

    Args:
        client: Client the next codecs are built with, a fresh one if omitted
    """
    global _shared_client

    with _codecs_lock:
        _codecs.clear()
        _shared_client = client
    key_cache.clear()
