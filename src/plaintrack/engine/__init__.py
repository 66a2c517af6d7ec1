"""
Engine module - graph and status computations over a store snapshot.
"""

from plaintrack.engine.graph import GraphEngine, format_tree
from plaintrack.engine.status import StatusEngine, compute_aggregate_status

__all__ = [
    "GraphEngine",
    "format_tree",
    "StatusEngine",
    "compute_aggregate_status",
]
