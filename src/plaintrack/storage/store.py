"""
Store - the concurrent in-memory mirror of the source repository.

The markdown files are the source of truth. The Store is derived from them
and can be rebuilt at any time:

    store = Store(root)
    report = store.load()

Collaborators that write a file call upsert_record()/remove_record() right
after the write so reads never wait on the watcher. Long-lived processes also
run a StoreWatcher that calls reconcile_path() for external edits.

Locking is per key: a write to one ID never blocks reads or writes of another.
"""

import os
import threading
import weakref
from pathlib import Path
from typing import Callable, Generic, Iterator, TypeVar

from plaintrack.core.config import get_logger
from plaintrack.core.errors import AmbiguousIdError, NotFoundError, RecordParseError
from plaintrack.core.types import (
    LoadDiagnostic,
    LoadReport,
    Plan,
    ReconcileOutcome,
    Record,
    RecordStatus,
    RecordType,
)
from plaintrack.storage.markdown import MarkdownStore

logger = get_logger("storage.store")

V = TypeVar("V")


class ConcurrentMap(Generic[V]):
    """
    A dict with one lock per key.
    
    Values are immutable models, so readers take no lock: a read sees either
    the old or the new value, never a partial one. Writers serialize on the
    key's own lock. The registry lock is held only long enough to find or
    create a key lock. Key locks are held weakly, so a lock lives only while
    some writer still references it.
    """
    
    def __init__(self):
        self._data: dict[str, V] = {}
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._registry = threading.Lock()
    
    def lock_for(self, key: str) -> threading.RLock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock
    
    def get(self, key: str) -> V | None:
        return self._data.get(key)
    
    def set(self, key: str, value: V) -> V | None:
        with self.lock_for(key):
            previous = self._data.get(key)
            self._data[key] = value
            return previous
    
    def pop(self, key: str) -> V | None:
        with self.lock_for(key):
            return self._data.pop(key, None)
    
    def compute(self, key: str, fn: Callable[[V | None], V | None]) -> V | None:
        """Replace the value for key with fn(current) under the key's lock. None removes it."""
        with self.lock_for(key):
            value = fn(self._data.get(key))
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            return value
    
    def snapshot(self) -> dict[str, V]:
        return self._data.copy()
    
    def keys(self) -> list[str]:
        return list(self._data.copy())
    
    def clear(self) -> None:
        with self._registry:
            self._data = {}
    
    def __contains__(self, key: object) -> bool:
        return key in self._data
    
    def __len__(self) -> int:
        return len(self._data)
    
    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


def _resolve(partial_id: str, entries: ConcurrentMap[V], kind: str) -> V:
    partial_id = partial_id.strip()
    if not partial_id:
        raise NotFoundError(partial_id, kind)
    
    exact = entries.get(partial_id)
    if exact is not None:
        return exact
    
    candidates = sorted(k for k in entries.keys() if k.startswith(partial_id))
    if len(candidates) > 1:
        raise AmbiguousIdError(partial_id, candidates, kind)
    if candidates:
        match = entries.get(candidates[0])
        if match is not None:
            return match
    raise NotFoundError(partial_id, kind)


class Store:
    """
    Queryable mirror of the records and plans under one root directory.
    
    There is no global instance: construct one per process (or per test) and
    pass it to the engines that need it.
    """
    
    def __init__(self, root: Path | None = None, files: MarkdownStore | None = None):
        self.files = files or MarkdownStore(root)
        self._records: ConcurrentMap[Record] = ConcurrentMap()
        self._plans: ConcurrentMap[Plan] = ConcurrentMap()
        self._diagnostics: ConcurrentMap[LoadDiagnostic] = ConcurrentMap()
    
    @property
    def root(self) -> Path:
        return self.files.root_dir
    
    # ==========================================
    # Loading
    # ==========================================
    
    def load(self) -> LoadReport:
        """
        Read and parse every record and plan file under the root.
        
        A file that fails to parse is recorded as a diagnostic and left out;
        the rest of the load carries on.
        """
        report = LoadReport()
        
        for path in self.files.list_record_paths():
            if self._load_record(path):
                report.records_loaded += 1
        for path in self.files.list_plan_paths():
            if self._load_plan(path):
                report.plans_loaded += 1
        
        report.diagnostics = self.diagnostics()
        logger.info(
            f"Loaded {report.records_loaded} records and {report.plans_loaded} plans "
            f"from {self.root} ({len(report.diagnostics)} diagnostics)"
        )
        return report
    
    def rescan(self) -> LoadReport:
        """
        Reload every file in place, then drop entries whose file is gone.

        Unlike rebuild() the maps are never empty in between, so concurrent
        readers keep seeing data.
        """
        report = self.load()
        on_disk = {p.stem for p in self.files.list_record_paths()}
        for record_id in self._records.keys():
            if record_id not in on_disk:
                self.remove_record(record_id)
        plans_on_disk = {p.stem for p in self.files.list_plan_paths()}
        for plan_id in self._plans.keys():
            if plan_id not in plans_on_disk:
                self.remove_plan(plan_id)
        for key, diagnostic in self._diagnostics.snapshot().items():
            if diagnostic.path is not None and not diagnostic.path.exists():
                self._diagnostics.pop(key)
        return report

    def rebuild(self) -> LoadReport:
        """Drop everything and load again from the files."""
        self._records.clear()
        self._plans.clear()
        self._diagnostics.clear()
        return self.load()
    
    def _note(self, path: Path, message: str, kind: str) -> None:
        key = self.files.relative_path(path)
        self._diagnostics.set(key, LoadDiagnostic(path=path, message=message, kind=kind))
    
    def _clear_note(self, path: Path) -> None:
        self._diagnostics.pop(self.files.relative_path(path))
    
    def _load_record(self, path: Path) -> bool:
        try:
            record, warnings = self.files.read_record(path)
        except RecordParseError as e:
            logger.warning(f"Skipping record {path}: {e.message}")
            self._note(path, e.message, "record")
            return False
        except OSError as e:
            logger.warning(f"Could not read record {path}: {e}")
            self._note(path, f"read error: {e}", "record")
            return False
        
        if warnings:
            for warning in warnings:
                logger.warning(f"{path}: {warning}")
            self._note(path, "; ".join(warnings), "record")
        else:
            self._clear_note(path)
        self._records.set(record.id, record)
        return True
    
    def _load_plan(self, path: Path) -> bool:
        try:
            plan = self.files.read_plan(path)
        except RecordParseError as e:
            logger.warning(f"Skipping plan {path}: {e.message}")
            self._note(path, e.message, "plan")
            return False
        except OSError as e:
            logger.warning(f"Could not read plan {path}: {e}")
            self._note(path, f"read error: {e}", "plan")
            return False
        
        self._clear_note(path)
        self._plans.set(plan.id, plan)
        return True
    
    # ==========================================
    # Queries
    # ==========================================
    
    def get(self, record_id: str) -> Record | None:
        """Exact lookup."""
        return self._records.get(record_id)
    
    def resolve(self, partial_id: str) -> Record:
        """
        Resolve a full or partial record ID.
        
        An exact match wins. Otherwise every ID starting with partial_id is a
        candidate: none raises NotFoundError, several raise AmbiguousIdError
        carrying the sorted candidates.
        """
        return _resolve(partial_id, self._records, "record")
    
    def get_plan(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)
    
    def resolve_plan(self, partial_id: str) -> Plan:
        return _resolve(partial_id, self._plans, "plan")
    
    def list_records(
        self,
        status: RecordStatus | None = None,
        record_type: RecordType | None = None,
    ) -> list[Record]:
        """All records sorted by ID, optionally filtered."""
        records = sorted(self._records.snapshot().values(), key=lambda r: r.id)
        if status is not None:
            records = [r for r in records if r.status == status]
        if record_type is not None:
            records = [r for r in records if r.record_type == record_type]
        return records
    
    def list_plans(self) -> list[Plan]:
        return sorted(self._plans.snapshot().values(), key=lambda p: p.id)
    
    def snapshot(self) -> dict[str, Record]:
        """A point-in-time copy of the record map for the engines to read."""
        return self._records.snapshot()
    
    def plans_snapshot(self) -> dict[str, Plan]:
        return self._plans.snapshot()
    
    def diagnostics(self, kind: str | None = None) -> list[LoadDiagnostic]:
        found = sorted(self._diagnostics.snapshot().items())
        return [d for _, d in found if kind is None or d.kind == kind]
    
    def record_keys(self) -> set[tuple[str, int]]:
        """Current (relative path, mtime_ns) pairs, used to find stale embeddings."""
        keys = set()
        for record in self._records.snapshot().values():
            if record.file_path is not None and record.mtime_ns is not None:
                keys.add((self.files.relative_path(record.file_path), record.mtime_ns))
        return keys
    
    def __len__(self) -> int:
        return len(self._records)
    
    # ==========================================
    # Mutations
    # ==========================================
    
    def upsert_record(self, record: Record) -> None:
        self._records.set(record.id, record)
    
    def remove_record(self, record_id: str) -> Record | None:
        return self._records.pop(record_id)
    
    def upsert_plan(self, plan: Plan) -> None:
        self._plans.set(plan.id, plan)
    
    def remove_plan(self, plan_id: str) -> Plan | None:
        return self._plans.pop(plan_id)
    
    def save_record(self, record: Record) -> Record:
        """
        Write a record file atomically and mirror it immediately.
        
        Returns the record as re-read from disk, carrying its new mtime.
        """
        path = self.files.write_record(record)
        saved, _ = self.files.read_record(path)
        self.upsert_record(saved)
        return saved
    
    def save_plan(self, plan: Plan) -> Plan:
        path = self.files.write_plan(plan)
        saved = self.files.read_plan(path)
        self.upsert_plan(saved)
        return saved
    
    def reconcile_path(self, path: Path) -> ReconcileOutcome:
        """
        Bring the entry for one file in line with the disk.
        
        The file exists: re-read and upsert. It is gone: remove. A parse
        failure leaves any previous entry in place and is recorded as a
        diagnostic. Other I/O errors are logged and the path is skipped.
        """
        path = Path(path)
        if self.files.is_record_path(path):
            kind = "record"
        elif self.files.is_plan_path(path):
            kind = "plan"
        else:
            return ReconcileOutcome.IGNORED
        
        remove = self.remove_record if kind == "record" else self.remove_plan
        
        if not os.path.exists(path):
            remove(path.stem)
            self._clear_note(path)
            logger.debug(f"Removed {kind} {path.stem}")
            return ReconcileOutcome.REMOVED
        
        try:
            if kind == "record":
                record, warnings = self.files.read_record(path)
            else:
                plan = self.files.read_plan(path)
        except FileNotFoundError:
            remove(path.stem)
            self._clear_note(path)
            return ReconcileOutcome.REMOVED
        except RecordParseError as e:
            self._note(path, e.message, kind)
            return ReconcileOutcome.PARSE_FAILED
        except OSError as e:
            logger.warning(f"Could not read {path}, will retry on next change: {e}")
            return ReconcileOutcome.SKIPPED
        
        if kind == "record":
            if warnings:
                self._note(path, "; ".join(warnings), kind)
            else:
                self._clear_note(path)
            self.upsert_record(record)
        else:
            self._clear_note(path)
            self.upsert_plan(plan)
        
        logger.debug(f"Reconciled {kind} {path.stem}")
        return ReconcileOutcome.UPDATED
