"""
HTTP client for the Vault transit secrets engine.

The client is stateless apart from its HTTP session. All crypto operations are
batched: single values are sent as a batch of one.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import requests
from cryptography.hazmat.primitives import hashes, hmac
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .conf import VaultConfig
from .exceptions import TransitConnectionError, TransitError

logger = logging.getLogger(__name__)


class TransitClient:
    """
    Protocol client for the transit engine.

    Keys are passed in explicitly (see ``TransitKeyManager``); the client only
    speaks HTTP and maps failures onto ``TransitError``.
    """

    def __init__(self, config: Optional[VaultConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or VaultConfig.from_settings()
        self.session = session or self._build_session()

    def _build_session(self) -> requests.Session:
        session = requests.Session()

        # POSTs are not replayed once they reached the server: a rotate
        # must never be applied twice.
        retry_strategy = Retry(
            total=self.config.max_retries,
            connect=self.config.max_retries,
            backoff_factor=self.config.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(['GET']),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self.config.token}",
            'Content-Type': 'application/json',
        }

    def _request(self, method: str, url: str,
                 payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a request to Vault and decode the JSON answer.

        Raises:
            TransitConnectionError: If Vault cannot be reached
            TransitError: On a non-2xx status or an ``errors`` array
        """
        try:
            response = self.session.request(
                method,
                url,
                headers=self.headers,
                json=payload,
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Vault request {method} {url} failed: {e}")
            raise TransitConnectionError(f"Unable to reach Vault at {url}: {e}")

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        errors = body.get('errors') or []
        if not 200 <= response.status_code < 300 or errors:
            message = '; '.join(str(e) for e in errors) or response.text or response.reason or 'error'
            logger.warning(f"Vault {method} {url} answered {response.status_code}: {message}")
            raise TransitError(response.status_code, message, errors)

        return body

    def _transit_url(self, path: str) -> str:
        return f"{self.config.transit_base_url}/{path}"

    def _batch(self, operation: str, key, items: List[Dict[str, str]],
               result_field: str) -> List[str]:
        if not items:
            return []

        payload: Dict[str, Any] = {'batch_input': items}
        if operation == 'encrypt':
            payload['type'] = key.algorithm

        body = self._request('POST', self._transit_url(f"{operation}/{key.name}"), payload)
        data = body.get('data') or {}

        if 'batch_results' in data:
            results = data['batch_results'] or []
        else:
            results = [data]

        if len(results) != len(items):
            raise TransitError(
                200, f"Vault returned {len(results)} results for {len(items)} {operation} inputs"
            )

        errors = [
            f"item {index}: {result['error']}"
            for index, result in enumerate(results)
            if result.get('error')
        ]
        if errors:
            raise TransitError(200, '; '.join(errors), errors)

        try:
            return [result[result_field] for result in results]
        except KeyError:
            raise TransitError(200, f"Vault {operation} response is missing '{result_field}'")

    def encrypt(self, key, plaintexts: List[str]) -> List[str]:
        """
        Encrypt a batch of plaintexts.

        Args:
            key: The TransitKey to encrypt with
            plaintexts: Strings to encrypt

        Returns:
            Ciphertexts in input order
        """
        items = [
            {'plaintext': base64.b64encode(p.encode('utf-8')).decode('ascii')}
            for p in plaintexts
        ]
        return self._batch('encrypt', key, items, 'ciphertext')

    def decrypt(self, key, ciphertexts: List[str]) -> List[str]:
        """
        Decrypt a batch of ciphertexts.

        Args:
            key: The TransitKey the values were encrypted with
            ciphertexts: ``vault:``-prefixed ciphertexts

        Returns:
            Plaintexts in input order
        """
        items = [{'ciphertext': c} for c in ciphertexts]
        encoded = self._batch('decrypt', key, items, 'plaintext')
        try:
            return [base64.b64decode(p).decode('utf-8') for p in encoded]
        except (ValueError, UnicodeDecodeError) as e:
            raise TransitError(200, f"Vault returned undecodable plaintext: {e}")

    def rewrap(self, key, ciphertexts: List[str]) -> List[str]:
        """Re-encrypt ciphertexts under the latest key version."""
        items = [{'ciphertext': c} for c in ciphertexts]
        return self._batch('rewrap', key, items, 'ciphertext')

    def hmac(self, key, value: str, version: Optional[int] = None) -> str:
        """
        Compute the blind index of a value locally.

        Uses HMAC-SHA-256 over the UTF-8 value with the key material of
        ``version`` (the key's current version by default). No request is made.
        """
        material = key.material_for(version) if version is not None else key.material
        h = hmac.HMAC(material, hashes.SHA256())
        h.update(value.encode('utf-8'))
        return h.finalize().hex()

    def get_status(self) -> Dict[str, Any]:
        """Return the seal status of the Vault server."""
        return self._request('GET', self.config.seal_status_url)

    # Key protocol, used by TransitKeyManager

    def read_key(self, name: str) -> Dict[str, Any]:
        return self._request('GET', self._transit_url(f"keys/{name}"))

    def create_key(self, name: str, key_type: str) -> Dict[str, Any]:
        logger.info(f"Creating transit key '{name}' ({key_type})")
        return self._request(
            'POST',
            self._transit_url(f"keys/{name}"),
            {'type': key_type, 'exportable': False},
        )

    def rotate_key(self, name: str) -> Dict[str, Any]:
        logger.info(f"Rotating transit key '{name}'")
        return self._request('POST', self._transit_url(f"keys/{name}/rotate"))

    def close(self):
        self.session.close()
