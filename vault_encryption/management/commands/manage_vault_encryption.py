"""
Management command for Vault field encryption workflows and diagnostics.
"""

from django.core.management.base import BaseCommand, CommandError

from vault_encryption.bulk import BulkOperationRunner
from vault_encryption.codec import get_field_codec
from vault_encryption.exceptions import EncryptionError
from vault_encryption.status import check_vault_status, describe_status
from vault_encryption.utils import audit_encryption_usage, shorten


class Command(BaseCommand):
    help = 'Encrypt, decrypt and rewrap encrypted fields and check the Vault connection'

    def add_arguments(self, parser):
        subparsers = parser.add_subparsers(
            dest='subcommand',
            help='Vault encryption subcommands'
        )

        subparsers.add_parser('encrypt-all', help='Encrypt every plaintext value of every encrypted field')
        subparsers.add_parser('decrypt-all', help='Decrypt every encrypted value and clear blind indexes')

        rotate_parser = subparsers.add_parser('rotate-key', help='Rotate a transit key and rewrap its values')
        rotate_parser.add_argument(
            '--key',
            type=str,
            default=None,
            help='Transit key name (defaults to VAULT_KEY_NAME)'
        )

        subparsers.add_parser('status', help='Show the status of the Vault server')

        test_parser = subparsers.add_parser('test', help='Test encryption/decryption through Vault')
        test_parser.add_argument(
            '--value',
            type=str,
            default='Hello, World!',
            help='Value to encrypt and decrypt'
        )

        subparsers.add_parser('audit', help='Audit encryption usage in models')

    def handle(self, *args, **options):
        subcommand = options.get('subcommand')

        if not subcommand:
            self.print_help('manage.py', 'manage_vault_encryption')
            return

        if subcommand == 'encrypt-all':
            self.run_bulk(lambda runner: runner.encrypt_all())
        elif subcommand == 'decrypt-all':
            self.run_bulk(lambda runner: runner.decrypt_all())
        elif subcommand == 'rotate-key':
            self.run_bulk(lambda runner: runner.rotate_key(options['key']))
        elif subcommand == 'status':
            self.show_status()
        elif subcommand == 'test':
            self.test_encryption(options['value'])
        elif subcommand == 'audit':
            self.audit_usage()

    def run_bulk(self, operation):
        """Run one bulk workflow and print its summary."""
        try:
            result = operation(BulkOperationRunner())
        except EncryptionError as e:
            raise CommandError(f"Bulk operation failed: {e}")

        for error in result.errors:
            self.stdout.write(self.style.ERROR(f"  {error}"))

        if result.succeeded:
            self.stdout.write(self.style.SUCCESS(result.summary()))
        else:
            self.stdout.write(self.style.WARNING(result.summary()))

    def show_status(self):
        status = check_vault_status()

        if status.severity == 'success':
            style = self.style.SUCCESS
        elif status.severity == 'warning':
            style = self.style.WARNING
        else:
            style = self.style.ERROR

        self.stdout.write(style(f"{status.message}."))
        if status.details:
            self.stdout.write(status.details)

        if status.server:
            self.stdout.write("\nServer status:")
            for label, value in describe_status(status.server):
                self.stdout.write(f"  {label}: {value}")

        if not status.reachable:
            raise CommandError(status.message)

    def test_encryption(self, test_value):
        """Test encryption and decryption."""
        self.stdout.write(self.style.NOTICE("Testing encryption through Vault..."))

        try:
            codec = get_field_codec()

            written = codec.on_write(test_value)
            self.stdout.write(f"Encrypted: {shorten(written.stored, 50)}")

            read = codec.on_read(written.stored, empty_value='')
            if read.ok and read.value == test_value:
                self.stdout.write(self.style.SUCCESS("✓ Encryption/decryption successful!"))
            else:
                self.stdout.write(self.style.ERROR(
                    f"✗ Decrypted value doesn't match original! {read.error or ''}"
                ))

            self.stdout.write(f"Blind index: {written.blind_index}")
            if written.blind_index in codec.blind_index_candidates(test_value):
                self.stdout.write(self.style.SUCCESS("✓ Blind index lookup successful!"))
            else:
                self.stdout.write(self.style.ERROR("✗ Blind index lookup failed!"))

        except EncryptionError as e:
            raise CommandError(f"Encryption test failed: {e}")

    def audit_usage(self):
        """Audit encryption usage across models."""
        self.stdout.write(self.style.NOTICE("Auditing encryption usage..."))

        stats = audit_encryption_usage()

        self.stdout.write("\nEncryption Usage Summary:")
        self.stdout.write(f"  Total models: {stats['total_models']}")
        self.stdout.write(f"  Models with encryption: {stats['encrypted_models']}")
        self.stdout.write(f"  Encrypted fields: {stats['encrypted_fields']}")
        self.stdout.write(f"  Searchable fields: {stats['searchable_fields']}")

        if stats['models']:
            self.stdout.write("\nModels with encrypted fields:")
            for model_info in stats['models']:
                self.stdout.write(
                    f"\n  {model_info['app_label']}.{model_info['model_name']}:"
                )
                for field in model_info['encrypted_fields']:
                    searchable = "searchable" if field['searchable'] else "not searchable"
                    key = field['key_name'] or 'default key'
                    self.stdout.write(
                        f"    - {field['name']} ({field['cast']}, {searchable}, {key})"
                    )
