"""
Optimistic Transactions — read-with-revision, conditional write, bounded retry.

Every state-changing write path of the governance core (vote casting,
quorum resolution, loan approval and rejection, payment allocation,
cancellations, user-role validation, bank code consumption) goes through
``OptimisticWriter.apply`` so they share one retry policy:

1. read the document with a strongly consistent read
2. hand a private copy of its body to the mutation callback
3. write it back only if the revision is still the one that was read
4. on a revision conflict, start over from step 1

Domain errors raised by the callback (ConflictError, ValidationError, ...)
abort immediately; they are decisions about the current state, not races.
When the document is left unchanged nothing is written and the outcome is
returned as-is, which keeps idempotent re-runs free of side effects.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from caixinha_governance.errors import ConcurrencyConflictError, NotFoundError, RevisionConflictError
from caixinha_governance.store.base import Record, RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutation = Callable[[dict[str, Any]], T]


@dataclass
class WriteResult(Generic[T]):
    """Outcome of an optimistic write."""

    record: Record
    outcome: T
    written: bool
    attempts: int


class OptimisticWriter:
    """
    Shared retry policy for conditional writes.

    Usage:
        writer = OptimisticWriter(store, max_attempts=5)

        def add_vote(data):
            if any(v["userId"] == user_id for v in data["votes"]):
                raise ConflictError("already voted")
            data["votes"].append(vote)

        result = writer.apply("disputes", dispute_id, add_vote)
    """

    def __init__(
        self,
        store: RecordStore,
        max_attempts: int = 5,
        backoff_seconds: float = 0.01,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def apply(self, collection: str, record_id: str, mutate: Mutation[T]) -> WriteResult[T]:
        """
        Run ``mutate`` against the latest revision and write the result back.

        Args:
            collection: Collection holding the document.
            record_id: Document id.
            mutate: Callback receiving a mutable copy of the document body.
                It edits the copy in place and may return any outcome value.

        Returns:
            WriteResult with the stored record, the callback's outcome and
            whether a write actually happened.

        Raises:
            NotFoundError: If the document does not exist.
            ConcurrencyConflictError: If every attempt lost the race.
        """
        for attempt in range(1, self.max_attempts + 1):
            current = self.store.get(collection, record_id, consistent=True)
            if current is None:
                raise NotFoundError(f"{collection}/{record_id} not found", collection=collection, id=record_id)

            draft = copy.deepcopy(current.data)
            outcome = mutate(draft)

            if draft == current.data:
                return WriteResult(record=current, outcome=outcome, written=False, attempts=attempt)

            try:
                stored = self.store.put(collection, record_id, draft, expected_revision=current.revision)
            except RevisionConflictError as exc:
                logger.debug(
                    "Optimistic write conflict on %s/%s (attempt %d/%d): %s",
                    collection, record_id, attempt, self.max_attempts, exc,
                )
                if attempt < self.max_attempts and self.backoff_seconds > 0:
                    time.sleep(self.backoff_seconds * attempt)
                continue

            return WriteResult(record=stored, outcome=outcome, written=True, attempts=attempt)

        logger.warning(
            "Optimistic write gave up on %s/%s after %d attempts",
            collection, record_id, self.max_attempts,
        )
        raise ConcurrencyConflictError(
            f"Concurrent modification of {collection}/{record_id}; retry the request",
            collection=collection,
            id=record_id,
            attempts=self.max_attempts,
        )
