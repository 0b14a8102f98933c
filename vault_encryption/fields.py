"""
Django model fields that encrypt transparently through Vault transit.

Each encrypted field ``F`` is stored in a text column ``F`` holding plaintext
or ``vault:``-prefixed ciphertext, plus an indexed ``F_bidx`` column holding
the blind index used for equality search.
"""

import json
import logging
from typing import Any, Dict, Optional

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models.query_utils import DeferredAttribute
from django.utils.text import capfirst

from .codec import (
    INVALID_VALUE_MESSAGE,
    IRRETRIEVABLE_MESSAGE,
    EncryptedFieldCodec,
    cast_value,
    get_field_codec,
)
from .utils import EncryptionJSONEncoder, FieldDescriptor, prepare_value_for_encryption
from .values import StoredValue, UnreadableValue, is_ciphertext

logger = logging.getLogger(__name__)


ERRORS_ATTR = '_encrypted_field_errors'


def field_errors(instance) -> Dict[str, str]:
    """Errors of the encrypted fields of an instance that could not be read."""
    return dict(instance.__dict__.get(ERRORS_ATTR) or {})


def is_irretrievable(instance, field_name: str) -> bool:
    return field_errors(instance).get(field_name) == IRRETRIEVABLE_MESSAGE


class EncryptedFieldDescriptor(DeferredAttribute):
    """
    Decrypts the stored value on first access and caches the plaintext.
    """

    def __get__(self, instance, cls=None):
        if instance is None:
            return self
        value = super().__get__(instance, cls)
        if StoredValue.parse(value).is_encrypted:
            value = self.field.read_value(instance, value)
            instance.__dict__[self.field.attname] = value
        return value

    def __set__(self, instance, value):
        instance.__dict__[self.field.attname] = value
        errors = instance.__dict__.get(ERRORS_ATTR)
        if errors:
            errors.pop(self.field.name, None)


class EncryptedField(models.TextField):
    """
    Text column encrypted with a Vault transit key.

    Args:
        cast: Django field (class or instance) describing the display type,
            used to type decrypted values, validate and build form fields
        key_name: Transit key name, defaults to the configured key
        blind_index: If True, maintains ``<name>_bidx`` for equality search
    """

    descriptor_class = EncryptedFieldDescriptor

    # Display type and the keyword arguments forwarded to it
    cast_class = None
    cast_kwargs = ()

    def __init__(self, *args, cast=None, key_name: Optional[str] = None,
                 blind_index: bool = True, **kwargs):
        self.cast_options = {
            name: kwargs.pop(name) for name in self.cast_kwargs if name in kwargs
        }
        self._explicit_cast = cast is not None

        if cast is None and self.cast_class is not None:
            cast = self.cast_class(**self.cast_options)
        elif isinstance(cast, type):
            cast = cast(**self.cast_options)
        self.cast_field = cast if cast is not None else models.TextField()

        self.key_name = key_name
        self.blind_index = blind_index

        super().__init__(*args, **kwargs)

    @property
    def bidx_name(self) -> str:
        return f"{self.name}_bidx"

    @property
    def empty_value(self) -> Any:
        return None if self.null else ''

    def contribute_to_class(self, cls, name, private_only=False):
        super().contribute_to_class(cls, name, private_only=private_only)

        cls._encrypted_fields = list(getattr(cls, '_encrypted_fields', [])) + [name]

        # Abstract parents add the column on each child; migration state
        # models declare the column explicitly.
        if not self.blind_index or cls._meta.abstract or cls.__module__ == '__fake__':
            return

        bidx_field = models.CharField(
            max_length=512,
            null=True,
            blank=True,
            db_index=True,
            editable=False,
        )
        bidx_field.contribute_to_class(cls, self.bidx_name)

    def get_codec(self) -> EncryptedFieldCodec:
        return get_field_codec(self.key_name)

    def descriptor(self) -> FieldDescriptor:
        return FieldDescriptor(
            model=self.model,
            field_name=self.attname,
            cast=self.cast_field,
            is_encrypted=True,
            blind_index=self.blind_index,
            key_name=self.key_name,
            null=self.null,
        )

    def cast_value(self, value: Any) -> Any:
        return cast_value(value, self.cast_field, self.empty_value)

    def prepare_plaintext(self, value: Any) -> Any:
        """Serialize a value the way it is encrypted and indexed."""
        if value is None or value == '' or is_ciphertext(value):
            return value
        if isinstance(self.cast_field, models.JSONField):
            return json.dumps(value, cls=EncryptionJSONEncoder)
        return value

    def _record_error(self, instance, error: str):
        logger.warning(f"{instance.__class__.__name__} #{instance.pk} {self.name}: {error}")
        instance.__dict__.setdefault(ERRORS_ATTR, {})[self.name] = error

    def read_value(self, instance, raw: str) -> Any:
        """
        Decrypt a stored ciphertext for an instance.

        Failures are recorded on the instance (see ``field_errors``) instead
        of being raised.
        """
        result = self.get_codec().on_read(raw, empty_value=self.empty_value)
        if not result.ok:
            self._record_error(instance, result.error)
            return result.value
        try:
            return self.cast_value(result.value)
        except (ValueError, ValidationError):
            self._record_error(instance, INVALID_VALUE_MESSAGE)
            return UnreadableValue(raw)

    def pre_save(self, model_instance, add):
        """
        Encrypt the value and set its blind index before the row is written.

        A value that could not be read is written back as the ciphertext it
        was loaded from.

        Raises:
            KeyUnavailable: If Vault cannot be used and encryption is required
            TransitError: If Vault rejects the encryption
        """
        raw = model_instance.__dict__.get(self.attname)
        result = self.get_codec().on_write(self.prepare_plaintext(raw))

        if self.blind_index:
            if result.encrypted and result.blind_index is not None:
                setattr(model_instance, self.bidx_name, result.blind_index)
            elif not result.encrypted:
                setattr(model_instance, self.bidx_name, None)

        return result.stored

    def from_db_value(self, value, expression, connection):
        # Ciphertext stays as is until the descriptor decrypts it
        if StoredValue.parse(value).is_encrypted:
            return value
        try:
            return self.cast_value(value)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Unencrypted {self.model.__name__}.{self.name} is not a valid value: {e}")
            return value

    def to_python(self, value):
        if value is None or StoredValue.parse(value).is_encrypted:
            return value
        return self.cast_field.to_python(value)

    def get_prep_value(self, value):
        # Skip TextField.get_prep_value, which would cast through to_python
        value = models.Field.get_prep_value(self, value)
        return prepare_value_for_encryption(value)

    def run_validators(self, value):
        super().run_validators(value)
        if value not in self.empty_values:
            self.cast_field.run_validators(value)

    def formfield(self, **kwargs):
        defaults = {
            'required': not self.blank,
            'label': capfirst(self.verbose_name),
            'help_text': self.help_text,
        }
        defaults.update(kwargs)
        return self.cast_field.formfield(**defaults)

    def deconstruct(self):
        name, path, args, kwargs = super().deconstruct()
        kwargs.update(self.cast_options)
        if self._explicit_cast:
            kwargs['cast'] = self.cast_field
        if self.key_name:
            kwargs['key_name'] = self.key_name
        if not self.blind_index:
            kwargs['blind_index'] = False
        return name, path, args, kwargs


class EncryptedCharField(EncryptedField):
    """Encrypted string with a maximum length."""
    cast_class = models.CharField
    cast_kwargs = ('max_length',)


class EncryptedEmailField(EncryptedField):
    cast_class = models.EmailField
    cast_kwargs = ('max_length',)


class EncryptedIntegerField(EncryptedField):
    cast_class = models.IntegerField


class EncryptedDecimalField(EncryptedField):
    """Encrypted decimal, precision is preserved through the string form."""
    cast_class = models.DecimalField
    cast_kwargs = ('max_digits', 'decimal_places')


class EncryptedBooleanField(EncryptedField):
    cast_class = models.BooleanField


class EncryptedDateField(EncryptedField):
    cast_class = models.DateField


class EncryptedJSONField(EncryptedField):
    cast_class = models.JSONField
