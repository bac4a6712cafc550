"""
Record Store — document access with compare-and-swap on revision.

Every governance entity lives in a named collection as a JSON document.
Each document carries a monotonically increasing ``revision``; writers pass
the revision they read as ``expected_revision`` so that a concurrent
modification makes the write fail with RevisionConflictError instead of
silently overwriting it.

``expected_revision`` semantics for ``put`` and ``delete``:
    None  — unconditional
    0     — create only (the document must not exist yet)
    n > 0 — the stored revision must equal n
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from caixinha_governance.errors import RevisionConflictError

logger = logging.getLogger(__name__)

Predicate = Callable[[dict[str, Any]], bool]


@dataclass
class Record:
    """A stored document with its revision."""

    collection: str
    id: str
    revision: int
    data: dict[str, Any] = field(default_factory=dict)


class RecordStore(ABC):
    """Abstract document store used by every governance service."""

    @abstractmethod
    def get(self, collection: str, record_id: str, consistent: bool = False) -> Record | None:
        """
        Fetch one document.

        Args:
            collection: Collection name.
            record_id: Document id.
            consistent: Request a strongly consistent read (bypasses any
                replica or read cache the backend may have).

        Returns:
            The record, or None when absent.
        """

    @abstractmethod
    def put(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        expected_revision: int | None = None,
    ) -> Record:
        """
        Write a document, optionally conditioned on its current revision.

        Returns:
            The stored record with its new revision.

        Raises:
            RevisionConflictError: If ``expected_revision`` does not match.
            ServiceError: If the backend is unavailable.
        """

    @abstractmethod
    def delete(self, collection: str, record_id: str, expected_revision: int | None = None) -> bool:
        """Delete a document. Returns False when it did not exist."""

    @abstractmethod
    def query(self, collection: str, predicate: Predicate | None = None) -> list[Record]:
        """Return every document of a collection matching ``predicate``."""

    def ping(self) -> bool:
        return True


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-process store.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state without going through ``put``.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Record]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, record_id: str, consistent: bool = False) -> Record | None:
        with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def put(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        expected_revision: int | None = None,
    ) -> Record:
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            current = docs.get(record_id)
            actual = current.revision if current is not None else 0
            if expected_revision is not None and expected_revision != actual:
                raise RevisionConflictError(collection, record_id, expected_revision, actual)

            record = Record(
                collection=collection,
                id=record_id,
                revision=actual + 1,
                data=copy.deepcopy(data),
            )
            docs[record_id] = record
            return copy.deepcopy(record)

    def delete(self, collection: str, record_id: str, expected_revision: int | None = None) -> bool:
        with self._lock:
            docs = self._collections.get(collection, {})
            current = docs.get(record_id)
            if current is None:
                if expected_revision:
                    raise RevisionConflictError(collection, record_id, expected_revision, None)
                return False
            if expected_revision is not None and expected_revision != current.revision:
                raise RevisionConflictError(collection, record_id, expected_revision, current.revision)
            del docs[record_id]
            return True

    def query(self, collection: str, predicate: Predicate | None = None) -> list[Record]:
        with self._lock:
            records = list(self._collections.get(collection, {}).values())
            return [
                copy.deepcopy(r)
                for r in records
                if predicate is None or predicate(r.data)
            ]
