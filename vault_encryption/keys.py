"""
Transit key management with rotation support.

Key material never leaves Vault for encryption; it is only fetched to compute
blind indexes locally.
"""

import base64
import binascii
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .conf import VaultConfig
from .exceptions import KeyTypeMismatch, KeyUnavailable, TransitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitKey:
    """
    A transit key as seen by this process.

    A TransitKey is a snapshot: after a rotation the manager hands out a new
    instance and the old one must not be used for new blind indexes.
    """

    name: str
    algorithm: str
    version: int
    material: bytes = field(repr=False)
    versions: Dict[int, bytes] = field(default_factory=dict, repr=False, compare=False)

    def material_for(self, version: int) -> bytes:
        try:
            return self.versions[version]
        except KeyError:
            raise KeyUnavailable(f"Version {version} of key '{self.name}' is not known")

    @property
    def known_versions(self) -> List[int]:
        return sorted(self.versions) or [self.version]

    def __repr__(self):
        return f"<TransitKey {self.name} v{self.version} {self.algorithm}>"


def _material_bytes(value: Any) -> bytes:
    """Convert a key map entry to raw bytes."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return value.encode('utf-8')
    return str(value).encode('utf-8')


def parse_key_response(name: str, payload: Dict[str, Any]) -> TransitKey:
    """
    Build a TransitKey from a ``GET keys/:name`` response.

    The version is the explicit ``latest_version`` when Vault provides one,
    otherwise the highest numeric version in the key map.
    """
    data = payload.get('data') or {}
    key_type = payload.get('type') or data.get('type')
    keys = data.get('keys') or {}

    versions: Dict[int, bytes] = {}
    for version, material in keys.items():
        try:
            versions[int(version)] = _material_bytes(material)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed version '{version}' of key '{name}'")

    if not versions:
        raise KeyUnavailable(f"Key '{name}' has no usable versions")

    latest = payload.get('latest_version', data.get('latest_version'))
    try:
        latest = int(latest) if latest is not None else None
    except (TypeError, ValueError):
        latest = None
    if latest not in versions:
        latest = max(versions)

    return TransitKey(
        name=name,
        algorithm=key_type,
        version=latest,
        material=versions[latest],
        versions=versions,
    )


class KeyCache:
    """
    Process-wide cache of transit keys keyed by (name, algorithm).

    Each key name has its own lock so a rotation and a concurrent fetch of
    the same key are serialized.
    """

    def __init__(self):
        self._keys: Dict[Tuple[str, str], TransitKey] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, name: str) -> threading.RLock:
        with self._guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def get(self, name: str, algorithm: str) -> Optional[TransitKey]:
        return self._keys.get((name, algorithm))

    def set(self, key: TransitKey):
        self._keys[(key.name, key.algorithm)] = key

    def invalidate(self, name: str):
        with self._guard:
            for cache_key in [k for k in self._keys if k[0] == name]:
                del self._keys[cache_key]

    def clear(self):
        with self._guard:
            self._keys.clear()


key_cache = KeyCache()


class TransitKeyManager:
    """
    Fetches, creates and rotates transit keys.
    """

    def __init__(self, client, config: Optional[VaultConfig] = None,
                 cache: Optional[KeyCache] = None):
        """
        Initialize the key manager.

        Args:
            client: TransitClient used for the key endpoints
            config: Vault configuration, defaults to the client's
            cache: Key cache, defaults to the process-wide cache
        """
        self.client = client
        self.config = config or client.config
        self.cache = cache if cache is not None else key_cache

    @property
    def algorithm(self) -> str:
        return self.config.key_type

    def _fetch(self, name: str) -> Optional[TransitKey]:
        """
        Fetch a key, returning None when Vault does not know it.

        Raises:
            KeyUnavailable: On any failure other than "not found"
            KeyTypeMismatch: If the key has another algorithm than configured
        """
        try:
            payload = self.client.read_key(name)
        except TransitError as e:
            if e.is_not_found:
                return None
            raise KeyUnavailable(f"Failed to retrieve key '{name}': {e}") from e

        key = parse_key_response(name, payload)
        if key.algorithm and key.algorithm != self.algorithm:
            raise KeyTypeMismatch(name, self.algorithm, key.algorithm)
        if not key.algorithm:
            key = TransitKey(name, self.algorithm, key.version, key.material, key.versions)
        return key

    def fetch_or_create(self, name: Optional[str] = None) -> TransitKey:
        """
        Fetch a key, creating it once if it does not exist yet.

        Args:
            name: Key name, defaults to the configured key name

        Returns:
            The fetched key

        Raises:
            KeyUnavailable: If the key can neither be fetched nor created
            KeyTypeMismatch: If the key has another algorithm than configured
        """
        name = name or self.config.key_name

        key = self._fetch(name)
        if key is not None:
            return key

        logger.info(f"Transit key '{name}' not found, creating it")
        try:
            self.client.create_key(name, self.algorithm)
        except TransitError as e:
            raise KeyUnavailable(f"Failed to create key '{name}': {e}") from e

        key = self._fetch(name)
        if key is None:
            raise KeyUnavailable(f"Key '{name}' is still missing after creation")
        return key

    def ensure_key(self, name: Optional[str] = None) -> TransitKey:
        """
        Get a key from the cache, fetching or creating it on a miss.
        """
        name = name or self.config.key_name

        key = self.cache.get(name, self.algorithm)
        if key is not None:
            return key

        with self.cache.lock_for(name):
            key = self.cache.get(name, self.algorithm)
            if key is None:
                key = self.fetch_or_create(name)
                self.cache.set(key)
                logger.debug(f"Cached {key!r}")
        return key

    def rotate(self, name: Optional[str] = None) -> TransitKey:
        """
        Rotate a key and return the refreshed key.

        Any TransitKey obtained for this name before the rotation is stale
        afterwards and must be re-acquired through ``ensure_key``.

        Raises:
            KeyUnavailable: If the rotation or the refetch fails
        """
        name = name or self.config.key_name

        with self.cache.lock_for(name):
            previous = self.ensure_key(name)
            try:
                self.client.rotate_key(name)
            except TransitError as e:
                raise KeyUnavailable(f"Failed to rotate key '{name}': {e}") from e
            finally:
                self.cache.invalidate(name)

            key = self._fetch(name)
            if key is None:
                raise KeyUnavailable(f"Key '{name}' disappeared during rotation")
            self.cache.set(key)

        logger.info(f"Rotated transit key '{name}' from v{previous.version} to v{key.version}")
        return key

    def invalidate(self, name: Optional[str] = None):
        self.cache.invalidate(name or self.config.key_name)

    def list_versions(self, name: Optional[str] = None) -> List[int]:
        return self.ensure_key(name).known_versions
