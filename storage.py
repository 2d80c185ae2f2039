"""
storage.py — ItineraryStore: validated, owner-scoped itinerary persistence.

Every write goes through validate_itinerary(); a rejected write raises
ItineraryValidationError with the complete violation list and touches nothing.
Accepted writes replace the whole document inside a single transaction, so a
failure mid-write rolls back to the previous version instead of leaving a
half-written record. Writes to the same id are serialised with a per-record
lock; different ids proceed independently.

Reads never drop a record without a trace. A row whose JSON does not parse is
*corrupt*; a row that parses but fails validation is *invalid*. Both are
excluded from listings, logged with the record id, and returned to the caller
in ListingResult.excluded. StoreMetrics counts distinct damaged records, not
reads: a record seen by every listing counts once, and stops counting once a
valid write replaces it or it is deleted.
"""

import json
import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy import func, select

from errors import FieldViolation, ItineraryValidationError, RecordNotFound, StorageCorruption
from models import ItineraryRecord
from schemas import Itinerary, normalise_identity
from validation import validate_itinerary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordDiagnostic:
    record_id:  str
    kind:       Literal['corrupt', 'invalid']
    detail:     str
    violations: tuple[FieldViolation, ...] = ()

    def to_dict(self) -> dict:
        return {
            'id':         self.record_id,
            'kind':       self.kind,
            'detail':     self.detail,
            'violations': [v.to_dict() for v in self.violations],
        }


@dataclass
class ListingResult:
    itineraries: list[Itinerary]        = field(default_factory=list)
    excluded:    list[RecordDiagnostic] = field(default_factory=list)


@dataclass(frozen=True)
class StoreMetrics:
    corrupt_records: int
    invalid_records: int


class _RecordLock:
    """threading.Lock is not weak-referenceable; this wrapper is."""
    __slots__ = ('_lock', '__weakref__')

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc):
        self._lock.release()


class ItineraryStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._guard        = threading.Lock()
        self._record_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._corrupt_ids: set[str] = set()
        self._invalid_ids: set[str] = set()

    # ── Counters ──────────────────────────────────────────────────────────────

    @property
    def metrics(self) -> StoreMetrics:
        with self._guard:
            return StoreMetrics(corrupt_records=len(self._corrupt_ids),
                                invalid_records=len(self._invalid_ids))

    def _lock_for(self, record_id: str) -> _RecordLock:
        with self._guard:
            lock = self._record_locks.get(record_id)
            if lock is None:
                lock = _RecordLock()
                self._record_locks[record_id] = lock
            return lock

    def _mark(self, record_id: str, kind: str | None) -> None:
        with self._guard:
            self._corrupt_ids.discard(record_id)
            self._invalid_ids.discard(record_id)
            if kind == 'corrupt':
                self._corrupt_ids.add(record_id)
            elif kind == 'invalid':
                self._invalid_ids.add(record_id)

    # ── Decoding ──────────────────────────────────────────────────────────────

    def _decode(self, row: ItineraryRecord) -> tuple[Itinerary | None, RecordDiagnostic | None]:
        try:
            raw = json.loads(row.document)
        except (TypeError, ValueError) as exc:
            raw, reason = None, f'unparseable JSON: {exc}'
        else:
            reason = None if isinstance(raw, dict) else 'document is not a JSON object'

        if reason is not None:
            self._mark(row.id, 'corrupt')
            logger.error("Corrupt itinerary record excluded: id=%s owner=%s (%s)",
                         row.id, row.created_by, reason)
            return None, RecordDiagnostic(row.id, 'corrupt', reason)

        outcome = validate_itinerary(raw)
        if not outcome.ok:
            self._mark(row.id, 'invalid')
            logger.warning("Invalid itinerary record excluded: id=%s owner=%s fields=%s",
                           row.id, row.created_by, [v.field for v in outcome.violations])
            return None, RecordDiagnostic(
                row.id, 'invalid', 'document failed validation', tuple(outcome.violations),
            )
        self._mark(row.id, None)
        return outcome.itinerary, None

    # ── Writes ────────────────────────────────────────────────────────────────

    def _check_owner(self, row, record_id: str, expected_owner: str | None) -> None:
        if expected_owner is None:
            return
        if row is None or row.created_by != normalise_identity(expected_owner):
            raise RecordNotFound(record_id)

    def put(self, itinerary, expected_owner: str | None = None) -> Itinerary:
        """
        Validate and fully replace (or create) one record.

        With expected_owner, the record must already exist and belong to that
        identity; the check runs under the record lock, in the same transaction
        as the write, so a concurrent delete cannot be undone by a replace.
        """
        outcome = validate_itinerary(itinerary)
        if not outcome.ok:
            logger.info("Itinerary write rejected: fields=%s", [v.field for v in outcome.violations])
            raise ItineraryValidationError(outcome.violations)

        it = outcome.itinerary
        if not it.created_by:
            raise ItineraryValidationError(
                [FieldViolation('createdBy', 'An owner identity is required to store an itinerary')]
            )

        document = json.dumps(it.to_document(), sort_keys=True)

        with self._lock_for(it.id):
            with self._session_factory() as session:
                with session.begin():
                    row = session.get(ItineraryRecord, it.id)
                    self._check_owner(row, it.id, expected_owner)
                    if row is None:
                        session.add(ItineraryRecord(
                            id         = it.id,
                            created_by = it.created_by,
                            title      = it.title,
                            document   = document,
                        ))
                        created = True
                    else:
                        row.created_by = it.created_by
                        row.title      = it.title
                        row.document   = document
                        row.updated_at = datetime.now(timezone.utc)
                        created = False
        self._mark(it.id, None)

        logger.info("Itinerary %s: id=%s owner=%s segments=%d",
                    'created' if created else 'replaced', it.id, it.created_by, len(it.segments))
        return it

    def delete(self, itinerary_id: str, expected_owner: str | None = None) -> None:
        with self._lock_for(itinerary_id):
            with self._session_factory() as session:
                with session.begin():
                    row = session.get(ItineraryRecord, itinerary_id)
                    if row is None:
                        raise RecordNotFound(itinerary_id)
                    self._check_owner(row, itinerary_id, expected_owner)
                    session.delete(row)
        self._mark(itinerary_id, None)
        logger.info("Itinerary deleted: id=%s", itinerary_id)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, itinerary_id: str) -> Itinerary:
        with self._session_factory() as session:
            row = session.get(ItineraryRecord, itinerary_id)
        if row is None:
            raise RecordNotFound(itinerary_id)

        itinerary, diagnostic = self._decode(row)
        if diagnostic is not None:
            if diagnostic.kind == 'corrupt':
                raise StorageCorruption(itinerary_id, diagnostic.detail)
            raise RecordNotFound(itinerary_id)
        return itinerary

    def owner_of(self, itinerary_id: str) -> str:
        """Owner identity from the indexed column; works even for undecodable rows."""
        with self._session_factory() as session:
            row = session.get(ItineraryRecord, itinerary_id)
        if row is None:
            raise RecordNotFound(itinerary_id)
        return row.created_by

    def _list(self, owner: str | None) -> ListingResult:
        stmt = select(ItineraryRecord).order_by(ItineraryRecord.id)
        if owner is not None:
            stmt = stmt.where(func.lower(ItineraryRecord.created_by) == owner)

        with self._session_factory() as session:
            rows = session.scalars(stmt).all()

        result = ListingResult()
        for row in rows:
            itinerary, diagnostic = self._decode(row)
            if diagnostic is not None:
                result.excluded.append(diagnostic)
            else:
                result.itineraries.append(itinerary)
        return result

    def list_by_owner(self, identity: str) -> ListingResult:
        owner = normalise_identity(identity)
        if owner is None:
            return ListingResult()
        result = self._list(owner)
        if result.excluded:
            logger.warning("Listing for %s excluded %d record(s): %s", owner, len(result.excluded),
                           [(d.record_id, d.kind) for d in result.excluded])
        return result

    def list_all(self) -> ListingResult:
        return self._list(None)

    def scan(self) -> ListingResult:
        """Bulk-validate every stored record; used at startup and by manage.py."""
        result = self.list_all()
        corrupt = sum(1 for d in result.excluded if d.kind == 'corrupt')
        invalid = len(result.excluded) - corrupt
        if result.excluded:
            logger.warning("Itinerary scan: %d valid, %d invalid, %d corrupt",
                           len(result.itineraries), invalid, corrupt)
        else:
            logger.info("Itinerary scan: %d valid record(s)", len(result.itineraries))
        return result
