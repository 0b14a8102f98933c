"""
Tests for bulk encryption operations.

Tests encrypt-all, decrypt-all and key rotation over the whole database.
"""

from django.test import TestCase

from vault_encryption.bulk import BulkOperationRunner
from vault_encryption.codec import get_field_codec, reset_field_codecs
from vault_encryption.exceptions import KeyUnavailable

from .fakes import FakeVault, plaintext_of
from .models import Account, Customer


def raw(model, pk, column):
    return model.objects.filter(pk=pk).values_list(column, flat=True)[0]


def plaintext_customer(name, email, phone=None, notes=''):
    """Create a customer whose encrypted columns hold plaintext."""
    customer = Customer.objects.create(name=name, email=email, phone=phone, notes=notes)
    Customer.objects.filter(pk=customer.pk).update(
        email=email, phone=phone, notes=notes,
        email_bidx=None, phone_bidx=None, notes_bidx=None,
    )
    return customer


class BulkEncryptionTests(TestCase):
    """Test bulk encryption operations."""

    def setUp(self):
        """Set up test environment."""
        self.vault = FakeVault()
        self.client = self.vault.client()
        reset_field_codecs(self.client)

    def tearDown(self):
        """Clean up after tests."""
        reset_field_codecs()

    def runner(self, **kwargs):
        kwargs.setdefault('models', [Customer])
        return BulkOperationRunner(client=self.client, **kwargs)

    def test_encrypt_all(self):
        """Test that plaintext rows are encrypted and indexed."""
        alice = plaintext_customer('Alice', 'alice@example.com', phone='555-0100')
        bob = plaintext_customer('Bob', 'bob@example.com')
        self.assertEqual(raw(Customer, alice.pk, 'email'), 'alice@example.com')

        result = self.runner().encrypt_all()

        self.assertTrue(result.succeeded)
        self.assertEqual(result.models_touched, 1)
        self.assertEqual(result.rows_touched, 2)
        self.assertEqual(result.values_touched, 6)

        codec = get_field_codec()
        self.assertEqual(plaintext_of(raw(Customer, alice.pk, 'email')), 'alice@example.com')
        self.assertEqual(raw(Customer, alice.pk, 'email_bidx'), codec.blind_index('alice@example.com'))
        self.assertEqual(plaintext_of(raw(Customer, bob.pk, 'phone')), 'null')
        self.assertEqual(plaintext_of(raw(Customer, bob.pk, 'notes')), 'null')

        fetched = Customer.objects.get(pk=bob.pk)
        self.assertEqual(fetched.email, 'bob@example.com')
        self.assertIsNone(fetched.phone)
        self.assertEqual(fetched.notes, '')
        self.assertEqual(list(Customer.objects.filter_encrypted(email='bob@example.com')), [bob])

    def test_encrypt_all_one_batch_per_row(self):
        plaintext_customer('Alice', 'alice@example.com')
        plaintext_customer('Bob', 'bob@example.com')
        self.vault.requests.clear()

        self.runner().encrypt_all()

        self.assertEqual(len(self.vault.calls('encrypt')), 2)
        self.assertEqual(
            [len(r['json']['batch_input']) for r in self.vault.calls('encrypt')],
            [3, 3],
        )

    def test_encrypt_all_is_idempotent(self):
        """Test that a second run changes nothing."""
        alice = plaintext_customer('Alice', 'alice@example.com')
        self.runner().encrypt_all()
        stored = raw(Customer, alice.pk, 'email')
        self.vault.requests.clear()

        result = self.runner().encrypt_all()

        self.assertEqual(result.values_touched, 0)
        self.assertEqual(result.rows_touched, 0)
        self.assertEqual(self.vault.calls('encrypt'), [])
        self.assertEqual(raw(Customer, alice.pk, 'email'), stored)

    def test_encrypt_all_skips_encrypted_values(self):
        customer = Customer.objects.create(name='Alice', email='alice@example.com')
        stored = raw(Customer, customer.pk, 'email')
        Customer.objects.filter(pk=customer.pk).update(phone='555-0100', phone_bidx=None)

        result = self.runner().encrypt_all()

        self.assertEqual(result.values_touched, 1)
        self.assertEqual(raw(Customer, customer.pk, 'email'), stored)
        self.assertEqual(plaintext_of(raw(Customer, customer.pk, 'phone')), '555-0100')

    def test_encrypt_all_per_value_failure(self):
        """Test that a failing value is skipped while the rest of the row is processed."""
        bad = plaintext_customer('Mallory', 'bad@example.com', phone='555-0199')
        good = plaintext_customer('Alice', 'alice@example.com')
        self.vault.fail_encrypt = {'bad@example.com'}

        result = self.runner().encrypt_all()

        self.assertFalse(result.succeeded)
        self.assertEqual(result.values_failed, 1)
        self.assertEqual(result.rows_failed, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertIn('email', result.errors[0])
        self.assertNotIn('bad@example.com', result.errors[0])

        self.assertEqual(raw(Customer, bad.pk, 'email'), 'bad@example.com')
        self.assertIsNone(raw(Customer, bad.pk, 'email_bidx'))
        self.assertEqual(plaintext_of(raw(Customer, bad.pk, 'phone')), '555-0199')
        self.assertTrue(raw(Customer, good.pk, 'email').startswith('vault:'))

    def test_encrypt_all_hard_fails_without_key(self):
        """Test that an unavailable key aborts before any row is touched."""
        alice = plaintext_customer('Alice', 'alice@example.com')
        reset_field_codecs(self.client)
        self.vault.unreachable = True

        with self.assertRaises(KeyUnavailable):
            self.runner().encrypt_all()

        self.assertEqual(raw(Customer, alice.pk, 'email'), 'alice@example.com')

    def test_small_chunks(self):
        customers = [plaintext_customer(f"C{i}", f"c{i}@example.com") for i in range(5)]

        result = self.runner(chunk_size=2).encrypt_all()

        self.assertEqual(result.rows_touched, 5)
        for customer in customers:
            self.assertTrue(raw(Customer, customer.pk, 'email').startswith('vault:'))

    def test_all_encrypted_models(self):
        """Test that every installed model with encrypted fields is scanned."""
        customer = plaintext_customer('Alice', 'alice@example.com')
        account = Account.objects.create(number=7)
        Account.objects.filter(pk=account.pk).update(number='7', number_bidx=None)

        result = BulkOperationRunner(client=self.client).encrypt_all()

        self.assertEqual(result.models_touched, 2)
        self.assertTrue(raw(Customer, customer.pk, 'email').startswith('vault:'))
        self.assertTrue(raw(Account, account.pk, 'number').startswith('vault:'))
        self.assertEqual(Account.objects.get(pk=account.pk).number, 7)

    def test_decrypt_all(self):
        """Test that encrypted rows are decrypted and unindexed."""
        alice = Customer.objects.create(name='Alice', email='alice@example.com', phone='555-0100')
        bob = Customer.objects.create(name='Bob', email='bob@example.com')

        result = self.runner().decrypt_all()

        self.assertTrue(result.succeeded)
        self.assertEqual(result.values_touched, 6)
        self.assertEqual(raw(Customer, alice.pk, 'email'), 'alice@example.com')
        self.assertEqual(raw(Customer, alice.pk, 'phone'), '555-0100')
        self.assertIsNone(raw(Customer, alice.pk, 'email_bidx'))
        self.assertIsNone(raw(Customer, bob.pk, 'phone'))
        self.assertEqual(raw(Customer, bob.pk, 'notes'), '')

        fetched = Customer.objects.get(pk=alice.pk)
        self.assertEqual(fetched.email, 'alice@example.com')
        self.assertFalse(Customer.objects.filter_encrypted(email='alice@example.com').exists())

    def test_decrypt_all_per_value_failure(self):
        customer = Customer.objects.create(name='Alice', email='alice@example.com', phone='555-0100')
        stored = raw(Customer, customer.pk, 'email')
        self.vault.fail_decrypt = {stored}

        result = self.runner().decrypt_all()

        self.assertEqual(result.values_failed, 1)
        self.assertEqual(raw(Customer, customer.pk, 'email'), stored)
        self.assertEqual(raw(Customer, customer.pk, 'phone'), '555-0100')

    def test_encrypt_decrypt_round_trip(self):
        customer = plaintext_customer('Alice', 'alice@example.com', phone='555-0100', notes='VIP')

        self.runner().encrypt_all()
        self.runner().decrypt_all()

        self.assertEqual(raw(Customer, customer.pk, 'email'), 'alice@example.com')
        self.assertEqual(raw(Customer, customer.pk, 'phone'), '555-0100')
        self.assertEqual(raw(Customer, customer.pk, 'notes'), 'VIP')


class BulkKeyRotationTests(TestCase):
    """Test key rotation with rewrap."""

    def setUp(self):
        self.vault = FakeVault()
        self.client = self.vault.client()
        reset_field_codecs(self.client)

    def tearDown(self):
        reset_field_codecs()

    def test_rotate_key(self):
        """Test that values are rewrapped and blind indexes kept."""
        customer = Customer.objects.create(name='Alice', email='alice@example.com')
        bidx = raw(Customer, customer.pk, 'email_bidx')

        result = BulkOperationRunner(client=self.client, models=[Customer]).rotate_key()

        self.assertTrue(result.succeeded)
        self.assertEqual(result.key_version, 2)
        self.assertEqual(result.values_touched, 3)
        self.assertTrue(raw(Customer, customer.pk, 'email').startswith('vault:v2:'))
        self.assertEqual(raw(Customer, customer.pk, 'email_bidx'), bidx)
        self.assertEqual(self.vault.calls('decrypt'), [])

        self.assertEqual(Customer.objects.get(pk=customer.pk).email, 'alice@example.com')
        self.assertEqual(list(Customer.objects.filter_encrypted(email='alice@example.com')), [customer])

    def test_rotate_only_touches_its_key(self):
        account = Account.objects.create(number=1, secret='1234')
        secret = raw(Account, account.pk, 'secret')

        result = BulkOperationRunner(client=self.client, models=[Account]).rotate_key('default')

        self.assertEqual(result.values_touched, 5)
        self.assertEqual(raw(Account, account.pk, 'secret'), secret)
        self.assertEqual(len(self.vault.keys['secondary'].versions), 1)
        self.assertTrue(raw(Account, account.pk, 'number').startswith('vault:v2:'))

    def test_rotate_named_key(self):
        account = Account.objects.create(number=1, secret='1234')

        result = BulkOperationRunner(client=self.client, models=[Account]).rotate_key('secondary')

        self.assertEqual(result.values_touched, 1)
        self.assertTrue(raw(Account, account.pk, 'secret').startswith('vault:v2:'))
        self.assertTrue(raw(Account, account.pk, 'number').startswith('vault:v1:'))
        self.assertEqual(Account.objects.get(pk=account.pk).secret, '1234')

    def test_rotate_skips_plaintext(self):
        customer = plaintext_customer('Alice', 'alice@example.com')

        result = BulkOperationRunner(client=self.client, models=[Customer]).rotate_key()

        self.assertEqual(result.values_touched, 0)
        self.assertEqual(raw(Customer, customer.pk, 'email'), 'alice@example.com')

    def test_rotate_hard_fails(self):
        Customer.objects.create(name='Alice', email='alice@example.com')
        self.vault.sealed = True

        with self.assertRaises(KeyUnavailable):
            BulkOperationRunner(client=self.client, models=[Customer]).rotate_key()

    def test_summary(self):
        Customer.objects.create(name='Alice', email='alice@example.com')

        result = BulkOperationRunner(client=self.client, models=[Customer]).rotate_key()
        summary = result.summary()

        self.assertIn('Rotate key completed in', summary)
        self.assertIn('1 model(s), 1 row(s), 3 value(s)', summary)
        self.assertIn('key version 2', summary)
        self.assertEqual(result.as_dict()['operation'], 'Rotate key')
