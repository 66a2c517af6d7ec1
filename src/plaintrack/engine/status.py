"""
StatusEngine - computed status of plans and phases.

A plan's status is never stored. It is recomputed from the current statuses
of the records it references on every call, so it cannot drift from them.
Records a plan references but the store does not know are skipped with a
warning and do not count towards status or totals.
"""

from typing import Iterable, Mapping

from plaintrack.core.config import get_logger
from plaintrack.core.types import (
    Phase,
    PhaseNextItems,
    PhaseStatus,
    Plan,
    PlanState,
    PlanStatus,
    Record,
    RecordStatus,
    StatusCategory,
)
from plaintrack.engine.graph import GraphEngine

logger = get_logger("engine.status")


def compute_aggregate_status(statuses: Iterable[RecordStatus]) -> PlanState:
    """
    Fold record statuses into one plan state.
    
    - nothing: new
    - all terminal: complete, or cancelled if every one was cancelled
    - all unstarted: new
    - anything else: in_progress
    """
    categories = [status.category for status in statuses]
    if not categories:
        return PlanState.NEW
    
    if all(c is StatusCategory.TERMINAL_CANCEL for c in categories):
        return PlanState.CANCELLED
    if all(c in (StatusCategory.TERMINAL_SUCCESS, StatusCategory.TERMINAL_CANCEL) for c in categories):
        return PlanState.COMPLETE
    if all(c is StatusCategory.UNSTARTED for c in categories):
        return PlanState.NEW
    return PlanState.IN_PROGRESS


class StatusEngine:
    """Read-only projection of plan progress over a record snapshot."""
    
    def __init__(self, records: Mapping[str, Record]):
        self.records = dict(records)
    
    @classmethod
    def from_store(cls, store) -> "StatusEngine":
        return cls(store.snapshot())
    
    def _resolve(self, ids: Iterable[str], context: str) -> list[Record]:
        found = []
        for record_id in ids:
            record = self.records.get(record_id)
            if record is None:
                logger.warning(f"Record '{record_id}' referenced {context} not found")
                continue
            found.append(record)
        return found
    
    def _status_of(self, records: list[Record]) -> PlanStatus:
        return PlanStatus(
            status=compute_aggregate_status(r.status for r in records),
            completed_count=sum(1 for r in records if r.category is StatusCategory.TERMINAL_SUCCESS),
            total_count=len(records),
        )
    
    def plan_status(self, plan: Plan) -> PlanStatus:
        return self._status_of(self._resolve(plan.all_items(), f"in plan '{plan.id}'"))
    
    def phase_status(self, plan: Plan, phase: Phase) -> PhaseStatus:
        records = self._resolve(phase.items, f"in phase {phase.number} of plan '{plan.id}'")
        status = self._status_of(records)
        return PhaseStatus(
            phase_number=phase.number,
            phase_name=phase.name,
            **status.model_dump(),
        )
    
    def phase_statuses(self, plan: Plan) -> list[PhaseStatus]:
        return [self.phase_status(plan, phase) for phase in plan.phases]
    
    def next_actionable(
        self,
        plan: Plan,
        count: int = 1,
        first_phase_only: bool = False,
    ) -> list[PhaseNextItems]:
        """
        The next records to work on in a plan.
        
        Phased plans: for each phase that is not finished, in phase order, the
        next `count` records that are not terminal. With first_phase_only,
        stop after the first phase that yields anything.
        
        Unphased plans: the first `count` items, in list order, that are ready
        according to the dependency graph.
        """
        if count <= 0:
            return []
        
        if not plan.is_phased:
            graph = GraphEngine(self.records)
            records = self._resolve(plan.items, f"in plan '{plan.id}'")
            ready = [r for r in records if graph.is_ready(r)][:count]
            return [PhaseNextItems(records=ready)] if ready else []
        
        results: list[PhaseNextItems] = []
        for phase in plan.phases:
            members = self._resolve(phase.items, f"in phase {phase.number} of plan '{plan.id}'")
            if self._status_of(members).status in (PlanState.COMPLETE, PlanState.CANCELLED):
                continue

            records = [r for r in members if not r.status.is_terminal][:count]
            if not records:
                continue
            
            results.append(PhaseNextItems(phase_number=phase.number, phase_name=phase.name, records=records))
            if first_phase_only:
                break
        
        return results
