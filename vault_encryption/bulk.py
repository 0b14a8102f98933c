"""
Bulk encryption workflows over every model with encrypted fields.

Each workflow scans all rows of all models declaring encrypted fields, sends
the values of one row as a single batch to Vault and writes every changed
column of the row in one UPDATE statement.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from itertools import groupby
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from django.db import DatabaseError, transaction

from .client import TransitClient
from .codec import EncryptedFieldCodec, get_transit_client
from .conf import VaultConfig
from .exceptions import EncryptionError, KeyTypeMismatch, KeyUnavailable
from .keys import TransitKeyManager
from .utils import FieldDescriptor, get_encrypted_models, get_field_descriptors
from .values import from_sentinel, is_ciphertext

logger = logging.getLogger(__name__)


Item = Tuple[FieldDescriptor, Any]


@dataclass
class BulkOperationResult:
    """Accounting of one bulk workflow run."""

    operation: str
    models_touched: int = 0
    rows_touched: int = 0
    values_touched: int = 0
    rows_failed: int = 0
    values_failed: int = 0
    elapsed: float = 0.0
    key_version: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.values_failed == 0 and self.rows_failed == 0

    def record_error(self, message: str):
        logger.error(message)
        self.errors.append(message)

    def summary(self) -> str:
        summary = (
            f"{self.operation} completed in {self.elapsed:.5f}s: "
            f"{self.models_touched} model(s), {self.rows_touched} row(s), "
            f"{self.values_touched} value(s)"
        )
        if self.key_version is not None:
            summary += f", key version {self.key_version}"
        if not self.succeeded:
            summary += f", {self.values_failed} value(s) failed in {self.rows_failed} row(s)"
        return summary

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BulkOperationRunner:
    """
    Drives the field codec across the whole database.

    Unlike field reads, the bulk workflows never degrade: if the key cannot be
    acquired the run fails before touching any row.
    """

    ENCRYPT_ALL = 'Encrypt all'
    DECRYPT_ALL = 'Decrypt all'
    ROTATE_KEY = 'Rotate key'

    def __init__(self, client: Optional[TransitClient] = None,
                 key_manager: Optional[TransitKeyManager] = None,
                 models: Optional[Sequence] = None,
                 chunk_size: Optional[int] = None,
                 config: Optional[VaultConfig] = None):
        if client is None:
            client = TransitClient(config) if config is not None else get_transit_client()
        self.client = client
        self.config = config or client.config
        self.key_manager = key_manager or TransitKeyManager(client, self.config)
        self.models = list(models) if models is not None else None
        self.chunk_size = chunk_size or self.config.bulk_chunk_size
        self._codecs: Dict[str, EncryptedFieldCodec] = {}

    def codec_for(self, key_name: Optional[str]) -> EncryptedFieldCodec:
        name = key_name or self.config.key_name
        if name not in self._codecs:
            self._codecs[name] = EncryptedFieldCodec(
                client=self.client,
                key_manager=self.key_manager,
                key_name=name,
                config=self.config,
            )
        return self._codecs[name]

    def key_name_of(self, descriptor: FieldDescriptor) -> str:
        return descriptor.key_name or self.config.key_name

    def get_models(self) -> List:
        return self.models if self.models is not None else get_encrypted_models()

    def _descriptors(self, model, key_name: Optional[str]) -> List[FieldDescriptor]:
        return [
            d for d in get_field_descriptors(model)
            if key_name is None or self.key_name_of(d) == key_name
        ]

    def _acquire_keys(self, key_name: Optional[str] = None):
        """
        Make sure every key the run needs is reachable.

        Raises:
            KeyUnavailable: If Vault cannot provide one of the keys
            KeyTypeMismatch: If a key has an unexpected algorithm
        """
        names = {
            self.key_name_of(d)
            for model in self.get_models()
            for d in self._descriptors(model, key_name)
        }
        for name in sorted(names):
            self.key_manager.ensure_key(name)

    # Scanning

    def _iter_rows(self, model, columns: List[str]):
        """Yield rows in primary key order, one chunk per query."""
        manager = model._base_manager
        last_pk = None
        while True:
            queryset = manager.order_by('pk')
            if last_pk is not None:
                queryset = queryset.filter(pk__gt=last_pk)
            rows = list(queryset.values_list('pk', *columns)[:self.chunk_size])
            if not rows:
                return
            yield from rows
            last_pk = rows[-1][0]

    def _scan(self, result: BulkOperationResult, key_name: Optional[str],
              process_row: Callable[[Any, Any, List[Item], BulkOperationResult], Dict[str, Any]]):
        started = time.monotonic()

        for model in self.get_models():
            descriptors = self._descriptors(model, key_name)
            if not descriptors:
                continue

            result.models_touched += 1
            columns = [d.field_name for d in descriptors]
            logger.info(f"{result.operation}: processing {model.__name__} ({len(columns)} field(s))")

            for pk, *values in self._iter_rows(model, columns):
                failures_before = result.values_failed
                updates = process_row(model, pk, list(zip(descriptors, values)), result)

                if updates and self._persist(model, pk, updates, result):
                    result.rows_touched += 1
                if result.values_failed > failures_before:
                    result.rows_failed += 1

        result.elapsed = time.monotonic() - started
        logger.info(result.summary())
        return result

    def _persist(self, model, pk, updates: Dict[str, Any], result: BulkOperationResult) -> bool:
        try:
            with transaction.atomic():
                model._base_manager.filter(pk=pk).update(**updates)
        except DatabaseError as e:
            result.values_failed += len(updates)
            result.record_error(f"Could not update {model.__name__} #{pk}: {e}")
            return False
        logger.debug(f"Updated {model.__name__} #{pk}: {', '.join(updates)}")
        return True

    def _run_batch(self, model, pk, items: List[Item],
                   operation: Callable[[List[Any]], List[Any]],
                   result: BulkOperationResult) -> List[Any]:
        """
        Run one batch for a row, falling back to one call per value if the
        batch fails so that the other fields of the row are still processed.

        Returns:
            Outputs in item order, None for values that failed
        """
        try:
            return operation([value for _, value in items])
        except (KeyUnavailable, KeyTypeMismatch):
            raise
        except EncryptionError as e:
            if len(items) > 1:
                logger.warning(f"Batch for {model.__name__} #{pk} failed ({e}), retrying per field")

        outputs = []
        for descriptor, value in items:
            try:
                outputs.append(operation([value])[0])
            except (KeyUnavailable, KeyTypeMismatch):
                raise
            except EncryptionError as e:
                result.values_failed += 1
                result.record_error(
                    f"{result.operation}: {model.__name__} #{pk} {descriptor.field_name} failed: {e}"
                )
                outputs.append(None)
        return outputs

    def _grouped(self, items: List[Item]):
        keyfunc = lambda item: self.key_name_of(item[0])
        for name, group in groupby(sorted(items, key=keyfunc), key=keyfunc):
            yield self.codec_for(name), list(group)

    # Workflows

    def encrypt_all(self) -> BulkOperationResult:
        """
        Encrypt every plaintext value of every encrypted field.

        Already encrypted values are skipped, so a second run changes nothing.

        Raises:
            KeyUnavailable: If Vault cannot provide a key
        """
        self._acquire_keys()
        return self._scan(BulkOperationResult(self.ENCRYPT_ALL), None, self._encrypt_row)

    def _encrypt_row(self, model, pk, items: List[Item], result: BulkOperationResult) -> Dict[str, Any]:
        pending = [(d, v) for d, v in items if not is_ciphertext(v)]
        if not pending:
            return {}

        updates: Dict[str, Any] = {}
        for codec, group in self._grouped(pending):
            outputs = self._run_batch(model, pk, group, codec.on_write_many, result)
            for (descriptor, _), output in zip(group, outputs):
                if output is None:
                    continue
                updates[descriptor.field_name] = output.stored
                if descriptor.blind_index:
                    updates[descriptor.bidx_name] = output.blind_index
                result.values_touched += 1
        return updates

    def decrypt_all(self) -> BulkOperationResult:
        """
        Decrypt every encrypted value and clear its blind index.

        Raises:
            KeyUnavailable: If Vault cannot provide a key
        """
        self._acquire_keys()
        return self._scan(BulkOperationResult(self.DECRYPT_ALL), None, self._decrypt_row)

    def _decrypt_row(self, model, pk, items: List[Item], result: BulkOperationResult) -> Dict[str, Any]:
        pending = [(d, v) for d, v in items if is_ciphertext(v)]
        if not pending:
            return {}

        updates: Dict[str, Any] = {}
        for codec, group in self._grouped(pending):
            outputs = self._run_batch(model, pk, group, codec.decrypt_strict, result)
            for (descriptor, _), output in zip(group, outputs):
                if output is None:
                    continue
                updates[descriptor.field_name] = from_sentinel(output, descriptor.empty_value)
                if descriptor.blind_index:
                    updates[descriptor.bidx_name] = None
                result.values_touched += 1
        return updates

    def rotate_key(self, key_name: Optional[str] = None) -> BulkOperationResult:
        """
        Rotate a key and rewrap every value encrypted with it.

        Plaintext is never materialized and blind indexes are left untouched.

        Raises:
            KeyUnavailable: If the rotation fails
        """
        name = key_name or self.config.key_name
        key = self.key_manager.rotate(name)

        result = BulkOperationResult(self.ROTATE_KEY, key_version=key.version)
        return self._scan(result, name, self._rewrap_row)

    def _rewrap_row(self, model, pk, items: List[Item], result: BulkOperationResult) -> Dict[str, Any]:
        pending = [(d, v) for d, v in items if is_ciphertext(v)]
        if not pending:
            return {}

        updates: Dict[str, Any] = {}
        for codec, group in self._grouped(pending):
            outputs = self._run_batch(model, pk, group, codec.rewrap_many, result)
            for (descriptor, _), output in zip(group, outputs):
                if output is None:
                    continue
                updates[descriptor.field_name] = output
                result.values_touched += 1
        return updates
