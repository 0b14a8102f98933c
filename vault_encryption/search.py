"""
Equality search over encrypted fields through their blind index.

Ciphertext is randomized, so ``filter(email='...')`` can never match the
encrypted column. Queries are rewritten to compare HMACs of the search term
against the ``<field>_bidx`` column instead; stored rows are never decrypted.
"""

from typing import Any, Dict, Optional, Tuple

from django.core.exceptions import FieldDoesNotExist
from django.db import models
from django.db.models import Q

from .codec import EncryptedFieldCodec
from .exceptions import UnsupportedLookup


class BlindIndexFilter:
    """
    Builds equality and inequality predicates for one encrypted field.
    """

    def __init__(self, model, field_name: str, codec: Optional[EncryptedFieldCodec] = None):
        from .fields import EncryptedField

        try:
            field = model._meta.get_field(field_name)
        except FieldDoesNotExist:
            raise UnsupportedLookup(f"{model.__name__} has no field '{field_name}'")

        if not isinstance(field, EncryptedField):
            raise UnsupportedLookup(f"{model.__name__}.{field_name} is not an encrypted field")
        if not field.blind_index:
            raise UnsupportedLookup(f"{model.__name__}.{field_name} has no blind index")

        self.model = model
        self.field = field
        self.codec = codec or field.get_codec()

    def _lookup(self, term: Any) -> Dict[str, Any]:
        term = self.field.prepare_plaintext(term)
        return {f"{self.field.bidx_name}__in": self.codec.blind_index_candidates(term)}

    def equals(self, term: Any) -> Q:
        """Predicate matching rows whose plaintext equaled ``term`` when written."""
        return Q(**self._lookup(term))

    def not_equals(self, term: Any) -> Q:
        """
        Predicate matching indexed rows whose plaintext differed from ``term``.

        Rows without a blind index (stored unencrypted) cannot be compared and
        are never matched.
        """
        return Q(**{f"{self.field.bidx_name}__isnull": False}) & ~Q(**self._lookup(term))

    def apply(self, queryset, term: Any, negate: bool = False):
        predicate = self.not_equals(term) if negate else self.equals(term)
        return queryset.filter(predicate)


def _split_lookup(key: str) -> Tuple[str, bool]:
    """Split ``field`` / ``field__exact`` / ``field__ne`` into (field, negate)."""
    field_name, _, lookup = key.partition('__')
    if lookup in ('', 'exact'):
        return field_name, False
    if lookup == 'ne':
        return field_name, True
    raise UnsupportedLookup(
        f"Lookup '{lookup}' is not supported on encrypted field '{field_name}', "
        f"only equality and inequality can use the blind index"
    )


class EncryptedQuerySet(models.QuerySet):
    """QuerySet with blind index search on encrypted fields."""

    def _blind_index_q(self, terms: Dict[str, Any]) -> Q:
        predicate = Q()
        for key, term in terms.items():
            field_name, negate = _split_lookup(key)
            index_filter = BlindIndexFilter(self.model, field_name)
            predicate &= index_filter.not_equals(term) if negate else index_filter.equals(term)
        return predicate

    def filter_encrypted(self, **terms):
        """
        Filter on plaintext values of encrypted fields.

        Example:
            Customer.objects.filter_encrypted(email='alice@example.com')
        """
        return self.filter(self._blind_index_q(terms))

    def exclude_encrypted(self, **terms):
        return self.exclude(self._blind_index_q(terms))


EncryptedManager = models.Manager.from_queryset(EncryptedQuerySet)
