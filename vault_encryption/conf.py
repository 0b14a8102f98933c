"""
Configuration for the Vault transit encryption layer.

Every option can be set in the ``VAULT_ENCRYPTION`` Django setting or as an
environment variable of the same name. The environment always wins over the
static setting; explicit keyword overrides win over both.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Tuple

from decouple import Csv, config
from django.conf import settings

from .exceptions import EncryptionConfigurationError


VALID_KEY_TYPES = (
    'aes256-gcm96',
    'ecdsa-p256',
    'ecdsa-p384',
    'ecdsa-p521',
    'rsa-2048',
    'rsa-3072',
    'rsa-4096',
    'hmac',
)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on', 't')


def _to_types(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(str(v).strip() for v in value if str(v).strip())
    return tuple(Csv()(value))


@dataclass(frozen=True)
class VaultConfig:
    """Immutable connection and key settings for Vault."""

    url: str = ''
    token: str = field(default='', repr=False)
    transit_path: str = '/v1/transit'
    seal_status_path: str = '/v1/sys/seal-status'
    key_name: str = 'default'
    key_type: str = 'aes256-gcm96'
    allowed_key_types: Tuple[str, ...] = VALID_KEY_TYPES
    timeout: float = 5.0
    max_retries: int = 3
    backoff_factor: float = 0.5
    require_encryption: bool = True
    bulk_chunk_size: int = 500

    # option name -> (attribute, cast)
    OPTIONS = {
        'VAULT_URL': ('url', str),
        'VAULT_TOKEN': ('token', str),
        'VAULT_TRANSIT_PATH': ('transit_path', str),
        'VAULT_SEAL_STATUS_PATH': ('seal_status_path', str),
        'VAULT_KEY_NAME': ('key_name', str),
        'VAULT_KEY_TYPE': ('key_type', str),
        'VAULT_ALLOWED_KEY_TYPES': ('allowed_key_types', _to_types),
        'VAULT_TIMEOUT': ('timeout', float),
        'VAULT_MAX_RETRIES': ('max_retries', int),
        'VAULT_BACKOFF_FACTOR': ('backoff_factor', float),
        'VAULT_REQUIRE_ENCRYPTION': ('require_encryption', _to_bool),
        'VAULT_BULK_CHUNK_SIZE': ('bulk_chunk_size', int),
    }

    def __post_init__(self):
        if self.key_type not in self.allowed_key_types:
            raise EncryptionConfigurationError(
                f"Invalid key type '{self.key_type}', "
                f"expected one of: {', '.join(self.allowed_key_types)}"
            )
        unknown = set(self.allowed_key_types) - set(VALID_KEY_TYPES)
        if unknown:
            raise EncryptionConfigurationError(
                f"Unknown key types in VAULT_ALLOWED_KEY_TYPES: {', '.join(sorted(unknown))}"
            )
        if self.timeout <= 0:
            raise EncryptionConfigurationError("VAULT_TIMEOUT must be positive")

    @classmethod
    def from_settings(cls, **overrides) -> 'VaultConfig':
        """
        Build the configuration from Django settings and the environment.

        Args:
            **overrides: Attribute values that take precedence over both sources

        Returns:
            A validated VaultConfig

        Raises:
            EncryptionConfigurationError: If a value is invalid
        """
        static: Dict[str, Any] = getattr(settings, 'VAULT_ENCRYPTION', None) or {}
        defaults = cls.__dataclass_fields__
        values: Dict[str, Any] = {}

        for option, (attribute, cast) in cls.OPTIONS.items():
            default = static.get(option, defaults[attribute].default)
            try:
                value = config(option, default=default)
                values[attribute] = cast(value) if value is not None else value
            except (TypeError, ValueError) as e:
                raise EncryptionConfigurationError(f"Invalid value for {option}: {e}")

        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **overrides) -> 'VaultConfig':
        return replace(self, **overrides)

    @property
    def base_url(self) -> str:
        return self.url.rstrip('/')

    @property
    def transit_base_url(self) -> str:
        return f"{self.base_url}/{self.transit_path.strip('/')}"

    @property
    def seal_status_url(self) -> str:
        return f"{self.base_url}/{self.seal_status_path.lstrip('/')}"

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.token)
