"""
Core module - Configuration, types, errors, and the embedding model.
"""

from plaintrack.core.config import settings
from plaintrack.core.embedding import EmbeddingModel, cosine_similarity, load_embedding_model
from plaintrack.core.errors import (
    AmbiguousIdError,
    CircularDependencyError,
    FeatureUnavailableError,
    NotFoundError,
    PlaintrackError,
    RecordParseError,
    WatcherError,
)
from plaintrack.core.types import (
    CycleReport,
    InclusionReason,
    Phase,
    Plan,
    PlanState,
    Record,
    RecordStatus,
    RecordType,
    StatusCategory,
    StoreEvent,
    WorkItem,
)

__all__ = [
    "settings",
    "EmbeddingModel",
    "cosine_similarity",
    "load_embedding_model",
    "AmbiguousIdError",
    "CircularDependencyError",
    "FeatureUnavailableError",
    "NotFoundError",
    "PlaintrackError",
    "RecordParseError",
    "WatcherError",
    "CycleReport",
    "InclusionReason",
    "Phase",
    "Plan",
    "PlanState",
    "Record",
    "RecordStatus",
    "RecordType",
    "StatusCategory",
    "StoreEvent",
    "WorkItem",
]
