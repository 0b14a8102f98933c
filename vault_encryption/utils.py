"""
Utility functions for the encryption framework.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type

from django.apps import apps
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

logger = logging.getLogger(__name__)


class EncryptionJSONEncoder(DjangoJSONEncoder):
    """Extended JSON encoder for encryption that handles more types."""

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        elif isinstance(o, (datetime, date)):
            return o.isoformat()
        return super().default(o)


def prepare_value_for_encryption(value: Any) -> Optional[str]:
    """
    Prepare any value for encryption by converting to string.

    Args:
        value: The value to prepare

    Returns:
        String representation of the value, None for None
    """
    if value is None:
        return None

    if isinstance(value, str):
        return value

    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, cls=EncryptionJSONEncoder)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    return str(value)


def shorten(value: Optional[str], length: int = 10) -> str:
    """Shorten a stored value for log messages."""
    value = value or ''
    return value[:length] + ('...' if len(value) > length else '')


@dataclass(frozen=True)
class FieldDescriptor:
    """Declaration of one encrypted column of a model."""

    model: Type[models.Model]
    field_name: str
    cast: Any
    is_encrypted: bool = True
    blind_index: bool = True
    key_name: Optional[str] = None
    null: bool = False

    @property
    def bidx_name(self) -> Optional[str]:
        return f"{self.field_name}_bidx" if self.blind_index else None

    @property
    def empty_value(self) -> Any:
        return None if self.null else ''


def get_field_descriptors(model_class) -> List[FieldDescriptor]:
    """
    Get the encrypted field declarations of a model class.

    Args:
        model_class: The Django model class

    Returns:
        FieldDescriptors in field declaration order
    """
    from .fields import EncryptedField

    return [
        field.descriptor()
        for field in model_class._meta.concrete_fields
        if isinstance(field, EncryptedField)
    ]


def get_encrypted_models() -> List[Type[models.Model]]:
    """
    Get every installed, concrete model that declares at least one encrypted field.
    """
    return [
        model for model in apps.get_models()
        if not model._meta.proxy and get_field_descriptors(model)
    ]


def audit_encryption_usage() -> Dict[str, Any]:
    """
    Audit which models and fields are using encryption.

    Returns:
        Dict with encryption usage statistics
    """
    stats = {
        'total_models': 0,
        'encrypted_models': 0,
        'encrypted_fields': 0,
        'searchable_fields': 0,
        'models': []
    }

    for model in apps.get_models():
        stats['total_models'] += 1
        descriptors = get_field_descriptors(model)
        if not descriptors:
            continue

        stats['encrypted_models'] += 1
        stats['encrypted_fields'] += len(descriptors)
        stats['searchable_fields'] += sum(1 for d in descriptors if d.blind_index)
        stats['models'].append({
            'app_label': model._meta.app_label,
            'model_name': model.__name__,
            'encrypted_fields': [
                {
                    'name': d.field_name,
                    'cast': d.cast.__class__.__name__,
                    'searchable': d.blind_index,
                    'key_name': d.key_name,
                }
                for d in descriptors
            ]
        })

    return stats
