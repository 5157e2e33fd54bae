"""Key-document store used by the invoice ledger.

Every store exposes two primitives, `read(ref)` and `commit(reads, writes)`.
A commit first checks that each snapshot in `reads` still carries the version
it was read at, then applies all `writes` together; a stale snapshot raises
`TransactionConflict` and nothing is written. A commit without reads is a
plain batched write.
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable, Sequence, TypeVar

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils.module_loading import import_string

from ledger.exceptions import DocumentNotFound, TransactionConflict

SET = "set"
UPDATE = "update"
DELETE = "delete"

T = TypeVar("T")


@dataclass(frozen=True)
class DocumentRef:
    collection: str
    doc_id: str

    def __str__(self) -> str:
        return f"{self.collection}/{self.doc_id}"


@dataclass(frozen=True)
class Snapshot:
    ref: DocumentRef
    data: dict[str, Any] | None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class Write:
    ref: DocumentRef
    op: str
    data: dict[str, Any] | None = None


def apply_write(current: dict[str, Any] | None, write: Write) -> dict[str, Any] | None:
    """Return the document body that results from applying `write` to `current`."""
    if write.op == SET:
        return dict(write.data or {})
    if write.op == UPDATE:
        if current is None:
            raise DocumentNotFound(f"Document {write.ref} was not found.")
        return {**current, **(write.data or {})}
    if write.op == DELETE:
        return None
    raise ValueError(f"Unknown write operation {write.op!r}")


class DocumentStore:
    """Base class; subclasses implement `read`, `commit` and `list_documents`."""

    def read(self, ref: DocumentRef) -> Snapshot:
        raise NotImplementedError

    def commit(self, reads: Iterable[Snapshot], writes: Sequence[Write]) -> None:
        raise NotImplementedError

    def list_documents(self, collection: str) -> list[Snapshot]:
        raise NotImplementedError

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def get(self, ref: DocumentRef) -> dict[str, Any] | None:
        return self.read(ref).data

    def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self.commit((), [Write(ref, SET, dict(data))])

    def update(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self.commit((), [Write(ref, UPDATE, dict(data))])

    def delete(self, ref: DocumentRef) -> None:
        self.commit((), [Write(ref, DELETE)])

    def batch(self, writes: Iterable[Write]) -> None:
        self.commit((), list(writes))


class InMemoryDocumentStore(DocumentStore):
    """Process-local store guarded by a single mutex."""

    def __init__(self) -> None:
        self._documents: dict[DocumentRef, dict[str, Any]] = {}
        # Versions outlive deletes so a re-created document never reuses one.
        self._versions: dict[DocumentRef, int] = {}
        self._lock = threading.Lock()

    def read(self, ref: DocumentRef) -> Snapshot:
        with self._lock:
            data = self._documents.get(ref)
            return Snapshot(ref, copy.deepcopy(data), self._versions.get(ref, 0))

    def list_documents(self, collection: str) -> list[Snapshot]:
        with self._lock:
            refs = sorted((ref for ref in self._documents if ref.collection == collection), key=lambda ref: ref.doc_id)
            return [Snapshot(ref, copy.deepcopy(self._documents[ref]), self._versions[ref]) for ref in refs]

    def commit(self, reads: Iterable[Snapshot], writes: Sequence[Write]) -> None:
        with self._lock:
            for snapshot in reads:
                if self._versions.get(snapshot.ref, 0) != snapshot.version:
                    raise TransactionConflict(f"Document {snapshot.ref} changed after it was read.")

            pending: dict[DocumentRef, dict[str, Any] | None] = {}
            for write in writes:
                current = pending[write.ref] if write.ref in pending else self._documents.get(write.ref)
                pending[write.ref] = apply_write(current, write)

            for ref, data in pending.items():
                self._versions[ref] = self._versions.get(ref, 0) + 1
                if data is None:
                    self._documents.pop(ref, None)
                else:
                    self._documents[ref] = copy.deepcopy(data)


class DjangoDocumentStore(DocumentStore):
    """Store backed by `ledger.Document` rows in the default database."""

    def __init__(self, using: str | None = None) -> None:
        self.using = using

    def _documents(self):
        from ledger.models import Document

        return Document.objects.using(self.using) if self.using else Document.objects

    def read(self, ref: DocumentRef) -> Snapshot:
        row = self._documents().filter(collection=ref.collection, doc_id=ref.doc_id).first()
        if row is None:
            return Snapshot(ref, None, 0)
        return Snapshot(ref, row.data, row.version)

    def list_documents(self, collection: str) -> list[Snapshot]:
        rows = self._documents().filter(collection=collection).order_by("id")
        return [Snapshot(DocumentRef(collection, row.doc_id), row.data, row.version) for row in rows]

    def commit(self, reads: Iterable[Snapshot], writes: Sequence[Write]) -> None:
        reads = list(reads)
        writes = list(writes)
        refs = {snapshot.ref for snapshot in reads} | {write.ref for write in writes}
        if not refs:
            return

        with transaction.atomic(using=self.using):
            rows = self._lock_rows(refs)

            for snapshot in reads:
                row = rows.get(snapshot.ref)
                current_version = row.version if row is not None else 0
                if current_version != snapshot.version:
                    raise TransactionConflict(f"Document {snapshot.ref} changed after it was read.")

            for write in writes:
                row = rows.get(write.ref)
                data = apply_write(row.data if row is not None else None, write)
                rows[write.ref] = self._save(write.ref, row, data)

    def _lock_rows(self, refs):
        doc_ids_by_collection = defaultdict(list)
        for ref in refs:
            doc_ids_by_collection[ref.collection].append(ref.doc_id)

        query = Q()
        for collection, doc_ids in doc_ids_by_collection.items():
            query |= Q(collection=collection, doc_id__in=doc_ids)

        rows = self._documents().select_for_update().filter(query)
        return {DocumentRef(row.collection, row.doc_id): row for row in rows}

    def _save(self, ref, row, data):
        if data is None:
            if row is not None:
                row.delete()
            return None

        if row is None:
            try:
                with transaction.atomic(using=self.using):
                    return self._documents().create(
                        collection=ref.collection,
                        doc_id=ref.doc_id,
                        data=data,
                        version=1,
                    )
            except IntegrityError as exc:
                raise TransactionConflict(f"Document {ref} was created concurrently.") from exc

        row.data = data
        row.version += 1
        row.save(update_fields=["data", "version", "updated_at"])
        return row


class Transaction:
    """Unit of work over a store: reads are recorded, writes are buffered.

    All reads must happen before the first write, as in the hosted stores this
    mirrors. `commit()` hands the read-set and the writes to the store in one
    call.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._reads: dict[DocumentRef, Snapshot] = {}
        self._writes: list[Write] = []

    def get(self, ref: DocumentRef) -> Snapshot:
        if self._writes:
            raise RuntimeError("Transactions require all reads to be executed before all writes.")
        snapshot = self._reads.get(ref)
        if snapshot is None:
            snapshot = self.store.read(ref)
            self._reads[ref] = snapshot
        return snapshot

    def set(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self._writes.append(Write(ref, SET, dict(data)))

    def update(self, ref: DocumentRef, data: dict[str, Any]) -> None:
        self._writes.append(Write(ref, UPDATE, dict(data)))

    def delete(self, ref: DocumentRef) -> None:
        self._writes.append(Write(ref, DELETE))

    def commit(self) -> None:
        self.store.commit(list(self._reads.values()), self._writes)


def run_transaction(store: DocumentStore, fn: Callable[[Transaction], T]) -> T:
    """Run `fn` in a transaction and commit it. Conflicts are not retried."""
    txn = Transaction(store)
    result = fn(txn)
    txn.commit()
    return result


@lru_cache()
def get_document_store() -> DocumentStore:
    """Store configured by LEDGER_DOCUMENT_STORE (cached singleton)."""
    store_class = import_string(getattr(settings, "LEDGER_DOCUMENT_STORE", "ledger.store.DjangoDocumentStore"))
    return store_class()
