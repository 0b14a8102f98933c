"""
Vault Status Reporting
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .client import TransitClient
from .codec import get_transit_client
from .conf import VaultConfig
from .exceptions import EncryptionError, TransitError
from .keys import TransitKeyManager

logger = logging.getLogger(__name__)


class VaultState(Enum):
    """Reachability levels, from worst to best"""
    NOT_CONFIGURED = 'not-configured'
    UNREACHABLE = 'unreachable'
    SEALED = 'sealed'
    TRANSIT_UNREACHABLE = 'transit-unreachable'
    REACHABLE = 'reachable'


SEVERITIES = {
    VaultState.NOT_CONFIGURED: 'danger',
    VaultState.UNREACHABLE: 'danger',
    VaultState.SEALED: 'danger',
    VaultState.TRANSIT_UNREACHABLE: 'warning',
    VaultState.REACHABLE: 'success',
}

# Friendly names for the seal status keys
KEY_DESCRIPTIONS = {
    'type': 'Type',
    'initialized': 'Initialized',
    'sealed': 'Sealed',
    'n': 'Key shares',
    't': 'Key threshold',
    'progress': 'Unseal Progress',
    'nonce': 'Unseal Nonce',
    'version': 'Version',
    'build_date': 'Build date',
    'cluster_name': 'Cluster name',
    'cluster_id': 'Cluster ID',
    'recovery_seal': 'Recovery seal',
    'storage_type': 'Storage type',
    'migration': 'Migration',
}

BOOLEAN_KEYS = ('initialized', 'sealed')


@dataclass
class VaultStatus:
    """Result of a Vault status check"""
    state: VaultState
    message: str
    details: str = ''
    server: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def severity(self) -> str:
        return SEVERITIES[self.state]

    @property
    def reachable(self) -> bool:
        return self.state == VaultState.REACHABLE


def describe_status(status_map: Dict[str, Any]) -> List[Tuple[str, str]]:
    """
    Turn a seal status response into (label, value) pairs for display.

    Unknown keys keep their raw name; boolean keys are shown as Yes/No.
    """
    lines = []
    for key, value in status_map.items():
        if key in BOOLEAN_KEYS:
            value = 'Yes' if value else 'No'
        lines.append((KEY_DESCRIPTIONS.get(key, key), str(value)))
    return lines


def _check(config: VaultConfig, client: TransitClient,
           key_manager: TransitKeyManager) -> VaultStatus:
    if not config.is_configured:
        missing, option = ('URL', 'VAULT_URL') if not config.url else ('authentication token', 'VAULT_TOKEN')
        return VaultStatus(
            VaultState.NOT_CONFIGURED,
            f"Vault {missing} is not set",
            f"The {missing} for the Vault server is not configured. "
            f"Set {option} in the environment or in the VAULT_ENCRYPTION setting.",
        )

    try:
        server = client.get_status()
    except TransitError as e:
        return VaultStatus(
            VaultState.UNREACHABLE,
            "Vault is unreachable",
            f"Unable to connect to the Vault server at {config.base_url}: {e}",
        )

    if server.get('sealed'):
        return VaultStatus(
            VaultState.SEALED,
            "Vault is sealed",
            f"The Vault server at {config.base_url} is sealed. Unseal it before continuing.",
            server,
        )

    try:
        key_manager.ensure_key()
    except EncryptionError as e:
        return VaultStatus(
            VaultState.TRANSIT_UNREACHABLE,
            "Vault transit engine is unreachable",
            f"Unable to use the transit engine at {config.transit_base_url}: {e}",
            server,
        )

    return VaultStatus(VaultState.REACHABLE, "Vault is reachable", server=server)


def check_vault_status(config: Optional[VaultConfig] = None,
                       client: Optional[TransitClient] = None,
                       key_manager: Optional[TransitKeyManager] = None) -> VaultStatus:
    """
    Check whether Vault can be used for field encryption.

    Args:
        config: Vault configuration, read from settings if omitted
        client: TransitClient to use, built from ``config`` if omitted
        key_manager: Key manager used to probe the transit engine

    Returns:
        VaultStatus describing the first problem found, or REACHABLE
    """
    if client is None:
        client = TransitClient(config) if config is not None else get_transit_client()
    config = config or client.config
    key_manager = key_manager or TransitKeyManager(client, config)

    start_time = time.time()
    status = _check(config, client, key_manager)
    status.duration_ms = (time.time() - start_time) * 1000

    if status.reachable:
        logger.info(f"{status.message} ({status.duration_ms:.1f}ms)")
    else:
        logger.warning(f"{status.message}: {status.details}")
    return status
