"""
plaintrack

A plain-text issue tracker core: markdown records on disk, a concurrent
in-memory mirror, dependency-graph reasoning and semantic search.
"""

__version__ = "0.1.0"
__author__ = "plaintrack Team"

from plaintrack.core.config import settings
from plaintrack.core.types import (
    Phase,
    Plan,
    PlanState,
    Record,
    RecordStatus,
    RecordType,
    StatusCategory,
)

__all__ = [
    "settings",
    "Phase",
    "Plan",
    "PlanState",
    "Record",
    "RecordStatus",
    "RecordType",
    "StatusCategory",
]
