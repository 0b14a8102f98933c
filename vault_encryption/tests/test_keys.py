"""
Tests for transit key management and rotation.
"""

import base64

from django.test import TestCase

from vault_encryption.exceptions import KeyTypeMismatch, KeyUnavailable
from vault_encryption.keys import KeyCache, TransitKeyManager, parse_key_response

from .fakes import FakeVault


class ParseKeyResponseTests(TestCase):
    """Test building TransitKeys from Vault responses."""

    def test_latest_version(self):
        payload = {'data': {
            'type': 'aes256-gcm96',
            'latest_version': 2,
            'keys': {
                '1': base64.b64encode(b'one').decode('ascii'),
                '2': base64.b64encode(b'two').decode('ascii'),
                '3': base64.b64encode(b'three').decode('ascii'),
            },
        }}

        key = parse_key_response('default', payload)

        self.assertEqual(key.version, 2)
        self.assertEqual(key.material, b'two')
        self.assertEqual(key.known_versions, [1, 2, 3])

    def test_highest_version_without_pointer(self):
        """Test that the highest numeric version wins without latest_version."""
        payload = {'data': {'keys': {'2': 'bb', '10': 'cc', '9': 'dd'}}}

        key = parse_key_response('default', payload)

        self.assertEqual(key.version, 10)

    def test_material_that_is_not_base64(self):
        """Test that non-base64 material is used as UTF-8 bytes."""
        payload = {'data': {'keys': {'1': 'not base64!'}}}

        key = parse_key_response('default', payload)

        self.assertEqual(key.material, b'not base64!')

    def test_type_at_top_level(self):
        payload = {'type': 'rsa-2048', 'data': {'keys': {'1': 'YQ=='}}}

        self.assertEqual(parse_key_response('default', payload).algorithm, 'rsa-2048')

    def test_no_versions(self):
        with self.assertRaises(KeyUnavailable):
            parse_key_response('default', {'data': {'keys': {}}})

    def test_unknown_version(self):
        key = parse_key_response('default', {'data': {'keys': {'1': 'YQ=='}}})

        with self.assertRaises(KeyUnavailable):
            key.material_for(7)


class TransitKeyManagerTests(TestCase):
    """Test fetching, creating, caching and rotating keys."""

    def setUp(self):
        self.vault = FakeVault()
        self.client = self.vault.client()
        self.manager = TransitKeyManager(self.client, cache=KeyCache())

    def test_fetch_existing_key(self):
        """Test that an existing key is fetched without being created."""
        self.vault.add_key('default')

        key = self.manager.fetch_or_create()

        self.assertEqual(key.name, 'default')
        self.assertEqual(key.version, 1)
        self.assertEqual(key.algorithm, 'aes256-gcm96')
        self.assertEqual(
            [r['method'] for r in self.vault.calls('keys/default')],
            ['GET'],
        )

    def test_create_missing_key(self):
        """Test that a missing key is created once and fetched again."""
        key = self.manager.fetch_or_create('customers')

        self.assertEqual(key.name, 'customers')
        self.assertIn('customers', self.vault.keys)
        self.assertEqual(
            [r['method'] for r in self.vault.calls('keys/customers')],
            ['GET', 'POST', 'GET'],
        )

    def test_key_type_mismatch(self):
        """Test that a key of another algorithm is refused."""
        self.vault.add_key('default', key_type='rsa-2048')

        with self.assertRaises(KeyTypeMismatch) as ctx:
            self.manager.fetch_or_create()

        self.assertEqual(ctx.exception.actual, 'rsa-2048')
        self.assertEqual(ctx.exception.expected, 'aes256-gcm96')

    def test_server_error(self):
        """Test that failures other than not-found make the key unavailable."""
        self.vault.fail_keys = True

        with self.assertRaises(KeyUnavailable):
            self.manager.fetch_or_create()

        self.assertEqual(self.vault.calls('keys/default')[-1]['method'], 'GET')

    def test_unreachable(self):
        self.vault.unreachable = True

        with self.assertRaises(KeyUnavailable):
            self.manager.ensure_key()

    def test_ensure_key_is_cached(self):
        """Test that ensure_key only asks Vault once."""
        self.vault.add_key('default')

        first = self.manager.ensure_key()
        second = self.manager.ensure_key()

        self.assertIs(first, second)
        self.assertEqual(len(self.vault.calls('keys/default')), 1)

    def test_rotate(self):
        """Test that rotation bumps the version and refreshes the cache."""
        self.vault.add_key('default')
        before = self.manager.ensure_key()

        after = self.manager.rotate()

        self.assertEqual(before.version, 1)
        self.assertEqual(after.version, 2)
        self.assertIs(self.manager.ensure_key(), after)
        self.assertEqual(after.known_versions, [1, 2])
        self.assertEqual(after.material_for(1), before.material)

    def test_rotate_failure_invalidates_cache(self):
        self.vault.add_key('default')
        self.manager.ensure_key()
        self.vault.sealed = True

        with self.assertRaises(KeyUnavailable):
            self.manager.rotate()

        self.assertIsNone(self.manager.cache.get('default', 'aes256-gcm96'))

    def test_list_versions(self):
        self.vault.add_key('default')
        self.vault.keys['default'].rotate()

        self.assertEqual(self.manager.list_versions(), [1, 2])

    def test_invalidate(self):
        self.vault.add_key('default')
        self.manager.ensure_key()

        self.manager.invalidate()
        self.manager.ensure_key()

        self.assertEqual(len(self.vault.calls('keys/default')), 2)
