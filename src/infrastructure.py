"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts.  It is suitable for local development, demos, and integration testing
without needing a real document store.

Care plans live under their client (keyed by (client_id, plan_id)); every
other record is keyed by its own id.  Writes made through a unit of work are
staged privately and only published to the shared stores on commit(), so a
batch is applied all-or-nothing and readers never observe half of it.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: FirestoreUnitOfWork(client)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional, Set

from application import (
    AbstractCarePlanHistoryRepository,
    AbstractCarePlanRepository,
    AbstractMonitoringRecordRepository,
    AbstractServiceMeetingRecordRepository,
    AbstractSupportRecordRepository,
    AbstractUnitOfWork,
    ConcurrentModificationError,
)
from model import (
    CarePlan,
    CarePlanHistoryEntry,
    MonitoringRecord,
    ServiceMeetingRecord,
    SupportRecord,
)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

def _by_id(obj) -> Hashable:
    return obj.id


def _by_client_and_id(obj) -> Hashable:
    return (obj.client_id, obj.id)


class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def __init__(self, key: Callable[[Any], Hashable] = _by_id):
        super().__init__()
        self.key_of = key

    def fetch(self, key: Hashable):
        return self.get(key)

    def put(self, obj) -> None:
        self[self.key_of(obj)] = obj

    def remove(self, key: Hashable) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


class _StagedStore:
    """
    Transaction-local view over a live _Store.

    Reads see the live data overlaid with this view's pending puts and
    removals.  Every object handed out or taken in is a deep copy, so
    callers can never mutate committed state in place.
    """

    def __init__(self, live: _Store, lock: threading.RLock):
        self._live = live
        self._lock = lock
        self._puts: Dict[Hashable, Any] = {}
        self._removed: Set[Hashable] = set()

    def fetch(self, key: Hashable):
        if key in self._removed:
            return None
        if key in self._puts:
            return copy.deepcopy(self._puts[key])
        with self._lock:
            return copy.deepcopy(self._live.fetch(key))

    def put(self, obj) -> None:
        key = self._live.key_of(obj)
        self._removed.discard(key)
        self._puts[key] = copy.deepcopy(obj)

    def remove(self, key: Hashable) -> None:
        self._puts.pop(key, None)
        self._removed.add(key)

    def all(self) -> list:
        with self._lock:
            merged = dict(self._live)
        for key in self._removed:
            merged.pop(key, None)
        merged.update(self._puts)
        return [copy.deepcopy(obj) for obj in merged.values()]

    @property
    def dirty(self) -> bool:
        return bool(self._puts or self._removed)

    def stale_removals(self) -> List[Hashable]:
        """Pending removals whose record is no longer live.  Caller holds the database lock."""
        return [key for key in self._removed if key not in self._live]

    def flush(self) -> None:
        """Publish pending writes.  Caller holds the database lock."""
        for key in self._removed:
            self._live.remove(key)
        self._live.update(self._puts)
        self.discard()

    def discard(self) -> None:
        self._puts = {}
        self._removed = set()


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.care_plans:         _Store = _Store(key=_by_client_and_id)
        self.plan_history:       _Store = _Store()
        self.monitoring_records: _Store = _Store()
        self.support_records:    _Store = _Store()
        self.meeting_records:    _Store = _Store()


_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

def _for_plan(records: list, client_id: str, care_plan_id: str) -> list:
    return [
        r for r in records
        if r.client_id == client_id and r.care_plan_id == care_plan_id
    ]


class InMemoryCarePlanRepository(AbstractCarePlanRepository):
    def __init__(self, store): self._s = store
    def get(self, client_id, plan_id):     return self._s.fetch((client_id, plan_id))
    def list_for_client(self, client_id):
        return [p for p in self._s.all() if p.client_id == client_id]
    def save(self, plan: CarePlan):        self._s.put(plan)
    def delete(self, client_id, plan_id):  self._s.remove((client_id, plan_id))


class InMemoryCarePlanHistoryRepository(AbstractCarePlanHistoryRepository):
    def __init__(self, store): self._s = store
    def list_for_plan(self, client_id, plan_id) -> List[CarePlanHistoryEntry]:
        return [
            e for e in self._s.all()
            if e.client_id == client_id and e.plan_id == plan_id
        ]
    def save(self, entry: CarePlanHistoryEntry): self._s.put(entry)


class InMemoryMonitoringRecordRepository(AbstractMonitoringRecordRepository):
    def __init__(self, store): self._s = store

    def list_for_client(self, client_id, limit: Optional[int] = None) -> List[MonitoringRecord]:
        """Newest visit first; records without a visit date sort last."""
        records = [r for r in self._s.all() if r.client_id == client_id]
        dated = sorted(
            (r for r in records if r.visit_date is not None),
            key=lambda r: r.visit_date,
            reverse=True,
        )
        ordered = dated + [r for r in records if r.visit_date is None]
        return ordered if limit is None else ordered[:limit]

    def list_for_care_plan(self, client_id, care_plan_id):
        return _for_plan(self._s.all(), client_id, care_plan_id)

    def save(self, record: MonitoringRecord): self._s.put(record)


class InMemorySupportRecordRepository(AbstractSupportRecordRepository):
    def __init__(self, store): self._s = store
    def list_for_care_plan(self, client_id, care_plan_id):
        return _for_plan(self._s.all(), client_id, care_plan_id)
    def save(self, record: SupportRecord): self._s.put(record)


class InMemoryServiceMeetingRecordRepository(AbstractServiceMeetingRecordRepository):
    def __init__(self, store): self._s = store
    def list_for_care_plan(self, client_id, care_plan_id):
        return _for_plan(self._s.all(), client_id, care_plan_id)
    def save(self, record: ServiceMeetingRecord): self._s.put(record)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories over staged views of the database.

    commit() publishes every pending write under the database lock in one
    step; rollback() throws them away.  A batch that removes a record some
    other writer already removed is discarded with ConcurrentModificationError.
    Entering the context starts from a clean slate, so one instance can be
    reused for consecutive batches.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._staged = {
            name: _StagedStore(getattr(db, name), db.lock)
            for name in (
                "care_plans",
                "plan_history",
                "monitoring_records",
                "support_records",
                "meeting_records",
            )
        }
        self.care_plans         = InMemoryCarePlanRepository(self._staged["care_plans"])
        self.plan_history       = InMemoryCarePlanHistoryRepository(self._staged["plan_history"])
        self.monitoring_records = InMemoryMonitoringRecordRepository(self._staged["monitoring_records"])
        self.support_records    = InMemorySupportRecordRepository(self._staged["support_records"])
        self.meeting_records    = InMemoryServiceMeetingRecordRepository(self._staged["meeting_records"])

    def __enter__(self) -> "InMemoryUnitOfWork":
        self.rollback()
        return self

    def commit(self) -> None:
        if not any(s.dirty for s in self._staged.values()):
            return
        with self._db.lock:
            stale = [
                key for store in self._staged.values() for key in store.stale_removals()
            ]
            if stale:
                self.rollback()
                raise ConcurrentModificationError(
                    f"Records already removed by another writer: {stale}"
                )
            for store in self._staged.values():
                store.flush()

    def rollback(self) -> None:
        for store in self._staged.values():
            store.discard()
