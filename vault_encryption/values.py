"""
Stored value representation.

A text column holding an encrypted field contains either plaintext (legacy
rows, rows written while Vault was unavailable, or rows that were bulk
decrypted) or a Vault ciphertext such as ``vault:v3:AbCd...``. The prefix
convention is only applied here, at the serialization boundary.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


CIPHERTEXT_MARKER = 'vault:'

# Written in place of a null or empty plaintext before encryption
NULL_SENTINEL = 'null'

_VERSION_RE = re.compile(r'^vault:v(\d+):')


class ValueState(Enum):
    """Encryption state of a stored value."""
    PLAINTEXT = 'plaintext'
    CIPHERTEXT = 'ciphertext'


@dataclass(frozen=True)
class StoredValue:
    """A raw column value tagged with its encryption state."""

    state: ValueState
    text: Optional[str]

    @classmethod
    def parse(cls, raw: Any) -> 'StoredValue':
        if isinstance(raw, str) and raw.startswith(CIPHERTEXT_MARKER):
            return cls(ValueState.CIPHERTEXT, raw)
        return cls(ValueState.PLAINTEXT, raw)

    @classmethod
    def ciphertext(cls, text: str) -> 'StoredValue':
        if not is_ciphertext(text):
            raise ValueError("Ciphertext must carry the vault marker")
        return cls(ValueState.CIPHERTEXT, text)

    @classmethod
    def plaintext(cls, text: Optional[str]) -> 'StoredValue':
        return cls(ValueState.PLAINTEXT, text)

    @property
    def is_encrypted(self) -> bool:
        return self.state is ValueState.CIPHERTEXT

    @property
    def key_version(self) -> Optional[int]:
        """Key version embedded in the ciphertext, None for plaintext."""
        if not self.is_encrypted:
            return None
        match = _VERSION_RE.match(self.text)
        return int(match.group(1)) if match else None

    def serialize(self) -> Optional[str]:
        return self.text


def is_ciphertext(value: Any) -> bool:
    return StoredValue.parse(value).is_encrypted


def to_sentinel(value: Optional[str]) -> str:
    """Substitute the null sentinel for a null or empty plaintext."""
    if value is None or value == '':
        return NULL_SENTINEL
    return value


def from_sentinel(value: Optional[str], empty_value: Any = None) -> Any:
    """Map the null sentinel back to the empty value."""
    if value is None or value == NULL_SENTINEL:
        return empty_value
    return value


class UnreadableValue(str):
    """
    Blank value exposed for a ciphertext that could not be read.

    Compares equal to ``''`` but remembers the stored ciphertext, which is
    written back unchanged if the instance is saved without assigning a new
    value to the field.
    """

    def __new__(cls, stored: str):
        value = super().__new__(cls, '')
        value.stored = stored
        return value

    def __getnewargs__(self):
        return (self.stored,)

    def __repr__(self):
        return f"<UnreadableValue {self.stored[:16]}...>"
