"""
Vault encryption app configuration.
"""

from django.apps import AppConfig


class VaultEncryptionConfig(AppConfig):
    """Configuration for the Vault field encryption application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'vault_encryption'
    verbose_name = 'Vault Field Encryption'
