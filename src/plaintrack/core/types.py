"""
Core type definitions for plaintrack.

These types represent the tracking model:
- Record (a ticket), Plan, Phase
- Derived reports: CycleReport, WorkItem, PlanStatus, TreeNode

Records and plans are read-derived mirrors of files on disk. They are frozen
so a store snapshot can be shared between threads without copying.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ============================================
# Enums
# ============================================

class StatusCategory(str, Enum):
    """Coarse lifecycle buckets that graph and status logic reason about."""
    UNSTARTED = "unstarted"
    ACTIVE = "active"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_CANCEL = "terminal_cancel"


class RecordStatus(str, Enum):
    """Status of a record."""
    NEW = "new"
    NEXT = "next"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    
    @property
    def category(self) -> StatusCategory:
        return _STATUS_CATEGORIES[self]
    
    @property
    def is_terminal(self) -> bool:
        return self.category in (StatusCategory.TERMINAL_SUCCESS, StatusCategory.TERMINAL_CANCEL)
    
    @property
    def is_unstarted(self) -> bool:
        return self.category is StatusCategory.UNSTARTED


_STATUS_CATEGORIES = {
    RecordStatus.NEW: StatusCategory.UNSTARTED,
    RecordStatus.NEXT: StatusCategory.UNSTARTED,
    RecordStatus.IN_PROGRESS: StatusCategory.ACTIVE,
    RecordStatus.COMPLETE: StatusCategory.TERMINAL_SUCCESS,
    RecordStatus.CANCELLED: StatusCategory.TERMINAL_CANCEL,
}


class RecordType(str, Enum):
    """Kinds of records."""
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


class PlanState(str, Enum):
    """Computed status of a plan or phase. Never persisted."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class InclusionReason(str, Enum):
    """Why a record appears in next-work output."""
    BLOCKING = "blocking"  # Ready, and an unmet dependency of a blocked record
    READY = "ready"
    BLOCKED = "blocked"    # Shown for context with its unmet dependencies


class StoreEvent(str, Enum):
    """Notification sent by the watcher after it reconciles a batch."""
    RECORDS_CHANGED = "records_changed"
    PLANS_CHANGED = "plans_changed"


class ReconcileOutcome(str, Enum):
    """Result of reconciling one path against the store."""
    UPDATED = "updated"
    REMOVED = "removed"
    PARSE_FAILED = "parse_failed"
    SKIPPED = "skipped"      # Transient I/O error, retried on the next event
    IGNORED = "ignored"      # Not a record or plan file


DEFAULT_PRIORITY = 2

KNOWN_RECORD_FIELDS = (
    "id",
    "uuid",
    "status",
    "type",
    "priority",
    "deps",
    "links",
    "parent",
    "created",
)

KNOWN_PLAN_FIELDS = ("id", "uuid", "created")


# ============================================
# Records and Plans
# ============================================

class Record(BaseModel):
    """A trackable unit of work."""
    
    model_config = ConfigDict(frozen=True)
    
    id: str
    """Globally unique, immutable ID. Matches the file name stem."""
    
    uuid: str | None = None
    
    status: RecordStatus = RecordStatus.NEW
    
    record_type: RecordType = RecordType.TASK
    """Stored as `type` in frontmatter."""
    
    priority: int = Field(default=DEFAULT_PRIORITY, ge=0, le=4)
    """0 is most urgent."""
    
    deps: tuple[str, ...] = ()
    """IDs this record depends on, in file order."""
    
    links: tuple[str, ...] = ()
    """Symmetric links to related records."""
    
    parent: str | None = None
    created: str | None = None
    
    title: str | None = None
    """First `# ` heading of the body."""
    
    body: str = ""
    
    file_path: Path | None = None
    mtime_ns: int | None = None
    """Modification time observed when the file was parsed."""
    
    extra_fields: dict[str, Any] = Field(default_factory=dict)
    """Frontmatter keys outside the known set, preserved for round-trips."""
    
    @property
    def category(self) -> StatusCategory:
        return self.status.category
    
    def embedding_text(self) -> str:
        """Text handed to the embedding model."""
        title = self.title or self.id
        body = self.body.strip()
        return f"{title}\n\n{body}" if body else title


class Phase(BaseModel):
    """An ordered group of record IDs inside a plan."""
    
    model_config = ConfigDict(frozen=True)
    
    number: str
    name: str
    description: str | None = None
    items: tuple[str, ...] = ()


class Plan(BaseModel):
    """A named collection of records, optionally split into phases."""
    
    model_config = ConfigDict(frozen=True)
    
    id: str
    uuid: str | None = None
    title: str | None = None
    created: str | None = None
    description: str | None = None
    
    items: tuple[str, ...] = ()
    """Record IDs of an unphased plan."""
    
    phases: tuple[Phase, ...] = ()
    
    sections: dict[str, str] = Field(default_factory=dict)
    """Free-form H2 sections keyed by heading."""
    
    file_path: Path | None = None
    mtime_ns: int | None = None
    extra_fields: dict[str, Any] = Field(default_factory=dict)
    
    @property
    def is_phased(self) -> bool:
        return bool(self.phases)
    
    def all_items(self) -> list[str]:
        """Every record ID in plan order, phases first-to-last."""
        if self.phases:
            return [item for phase in self.phases for item in phase.items]
        return list(self.items)
    
    def find_phase(self, identifier: str) -> Phase | None:
        """Find a phase by number, falling back to a case-insensitive name match."""
        wanted = identifier.lower()
        for phase in self.phases:
            if phase.number.lower() == wanted:
                return phase
        for phase in self.phases:
            if phase.name.lower() == wanted:
                return phase
        return None


# ============================================
# Load diagnostics
# ============================================

class LoadDiagnostic(BaseModel):
    """A file that was skipped or corrected while loading."""
    
    path: Path | None = None
    message: str
    kind: str = "record"
    """`record` or `plan`."""


class LoadReport(BaseModel):
    """Summary of a full load."""
    
    records_loaded: int = 0
    plans_loaded: int = 0
    diagnostics: list[LoadDiagnostic] = Field(default_factory=list)


# ============================================
# Graph reports
# ============================================

class CycleReport(BaseModel):
    """A dependency cycle, closed: the first ID is repeated at the end."""
    
    path: list[str]
    
    @property
    def members(self) -> list[str]:
        return self.path[:-1]
    
    def __str__(self) -> str:
        return " -> ".join(self.path)


class BlockedRecord(BaseModel):
    """An unstarted record whose dependencies are not all satisfied."""
    
    record: Record
    unmet_deps: list[str]


class WorkItem(BaseModel):
    """One entry of next-work output."""
    
    record: Record
    reason: InclusionReason
    
    unblocks: list[str] = Field(default_factory=list)
    """For BLOCKING entries: the blocked records this one unblocks."""
    
    unmet_deps: list[str] = Field(default_factory=list)
    """For BLOCKED entries: dependencies still outstanding."""
    
    @property
    def id(self) -> str:
        return self.record.id


class TreeNode(BaseModel):
    """A node of a rendered dependency tree."""
    
    id: str
    record: Record | None = None
    """None when the ID is referenced but missing from the store."""
    
    children: list["TreeNode"] = Field(default_factory=list)
    
    on_path: bool = False
    """True when this ID already appears above it on the current path."""
    
    truncated: bool = False
    """True when the node cap stopped expansion here."""
    
    def _entry(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.record.title if self.record else None,
            "status": self.record.status.value if self.record else None,
            "deps": [],
        }
    
    def to_dict(self) -> dict[str, Any]:
        root = self._entry()
        stack = [(self, root)]
        while stack:
            node, out = stack.pop()
            for child in node.children:
                child_out = child._entry()
                out["deps"].append(child_out)
                stack.append((child, child_out))
        return root


# ============================================
# Plan status
# ============================================

class PlanStatus(BaseModel):
    """Computed plan (or phase) status with counts."""
    
    status: PlanState
    completed_count: int = 0
    total_count: int = 0


class PhaseStatus(PlanStatus):
    phase_number: str
    phase_name: str


class PhaseNextItems(BaseModel):
    """Next actionable records, grouped by phase for phased plans."""
    
    phase_number: str | None = None
    phase_name: str | None = None
    records: list[Record] = Field(default_factory=list)


# ============================================
# Semantic search
# ============================================

class SearchResult(BaseModel):
    """A record ranked by cosine similarity to a query."""
    
    record: Record
    similarity: float


class EmbeddingCacheStatus(BaseModel):
    """Diagnostic snapshot of the embedding cache."""
    
    enabled: bool
    model_name: str
    dimensions: int
    cache_dir: Path
    entries_on_disk: int = 0
    orphaned_entries: int = 0
    records_with_embeddings: int = 0
    total_records: int = 0
    
    @property
    def coverage_percent(self) -> float:
        if self.total_records == 0:
            return 0.0
        return 100.0 * self.records_with_embeddings / self.total_records
