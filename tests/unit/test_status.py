"""Tests for computed plan status."""

import pytest

from plaintrack.core.types import Phase, Plan, PlanState, RecordStatus
from plaintrack.engine.status import StatusEngine, compute_aggregate_status


def engine_of(*records) -> StatusEngine:
    return StatusEngine({r.id: r for r in records})


def phased_plan(*phases: tuple[str, list[str]]) -> Plan:
    return Plan(
        id="plan-1",
        phases=tuple(
            Phase(number=str(i), name=name, items=tuple(items))
            for i, (name, items) in enumerate(phases, 1)
        ),
    )


S = RecordStatus


class TestAggregateStatus:
    """Tests for folding record statuses into a plan state."""
    
    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([], PlanState.NEW),
            ([S.COMPLETE, S.COMPLETE], PlanState.COMPLETE),
            ([S.CANCELLED, S.CANCELLED], PlanState.CANCELLED),
            ([S.COMPLETE, S.COMPLETE, S.CANCELLED], PlanState.COMPLETE),
            ([S.NEW, S.NEXT], PlanState.NEW),
            ([S.NEW, S.IN_PROGRESS], PlanState.IN_PROGRESS),
            ([S.NEW, S.COMPLETE], PlanState.IN_PROGRESS),
            ([S.IN_PROGRESS], PlanState.IN_PROGRESS),
            ([S.CANCELLED, S.NEW], PlanState.IN_PROGRESS),
        ],
    )
    def test_rules(self, statuses, expected):
        """Test each aggregation rule."""
        assert compute_aggregate_status(statuses) is expected
    
    def test_order_independent(self):
        """Test the result does not depend on item order."""
        statuses = [S.COMPLETE, S.NEW, S.CANCELLED, S.IN_PROGRESS]
        assert compute_aggregate_status(statuses) is compute_aggregate_status(reversed(statuses))


class TestPlanStatus:
    """Tests for plan and phase status."""
    
    def test_finished_mix_is_complete(self, rec):
        """Test two successes and a cancellation make a complete plan."""
        engine = engine_of(
            rec("a", status="complete"),
            rec("b", status="complete"),
            rec("c", status="cancelled"),
        )
        status = engine.plan_status(Plan(id="plan-1", items=("a", "b", "c")))
        
        assert status.status is PlanState.COMPLETE
        assert status.completed_count == 2
        assert status.total_count == 3
    
    def test_missing_items_skipped(self, rec):
        """Test unknown record IDs do not count."""
        engine = engine_of(rec("a", status="complete"))
        status = engine.plan_status(Plan(id="plan-1", items=("a", "ghost")))
        
        assert status.status is PlanState.COMPLETE
        assert status.total_count == 1
    
    def test_recomputed_on_every_call(self, rec):
        """Test status follows the snapshot it is given."""
        plan = Plan(id="plan-1", items=("a",))
        
        before = engine_of(rec("a")).plan_status(plan)
        after = engine_of(rec("a", status="complete")).plan_status(plan)
        
        assert before.status is PlanState.NEW
        assert after.status is PlanState.COMPLETE
    
    def test_phase_statuses(self, rec):
        """Test per-phase status and counts."""
        engine = engine_of(
            rec("a", status="complete"),
            rec("b", status="complete"),
            rec("c", status="in_progress"),
            rec("d"),
        )
        plan = phased_plan(("Build", ["a", "b"]), ("Ship", ["c", "d"]))
        
        phases = engine.phase_statuses(plan)
        assert [(p.phase_name, p.status) for p in phases] == [
            ("Build", PlanState.COMPLETE),
            ("Ship", PlanState.IN_PROGRESS),
        ]
        assert phases[1].completed_count == 0
        assert phases[1].total_count == 2
        assert engine.plan_status(plan).status is PlanState.IN_PROGRESS


class TestNextActionable:
    """Tests for next actionable plan items."""
    
    def test_phased_per_phase(self, rec):
        """Test each unfinished phase yields its next unresolved items."""
        engine = engine_of(
            rec("a", status="complete"),
            rec("b"),
            rec("c"),
            rec("d", status="in_progress"),
            rec("e"),
        )
        plan = phased_plan(("One", ["a", "b", "c"]), ("Two", ["d", "e"]))
        
        groups = engine.next_actionable(plan, count=1)
        
        assert [(g.phase_number, [r.id for r in g.records]) for g in groups] == [
            ("1", ["b"]),
            ("2", ["d"]),
        ]
    
    def test_phased_skips_finished_phases(self, rec):
        """Test complete and cancelled phases are skipped."""
        engine = engine_of(
            rec("a", status="complete"),
            rec("b", status="cancelled"),
            rec("c"),
            rec("d"),
        )
        plan = phased_plan(("Done", ["a"]), ("Dropped", ["b"]), ("Next", ["c", "d"]))
        
        groups = engine.next_actionable(plan, count=5)
        
        assert len(groups) == 1
        assert groups[0].phase_name == "Next"
        assert [r.id for r in groups[0].records] == ["c", "d"]
    
    def test_first_phase_only(self, rec):
        """Test stopping after the first phase with work."""
        engine = engine_of(rec("a"), rec("b"))
        plan = phased_plan(("One", ["a"]), ("Two", ["b"]))
        
        groups = engine.next_actionable(plan, count=3, first_phase_only=True)
        assert [g.phase_name for g in groups] == ["One"]
    
    def test_unphased_uses_readiness(self, rec):
        """Test unphased plans return ready items in list order."""
        engine = engine_of(
            rec("a", status="complete"),
            rec("b", deps=["c"]),
            rec("c"),
            rec("d", deps=["a"]),
            rec("e"),
        )
        plan = Plan(id="plan-1", items=("a", "b", "c", "d", "e"))
        
        groups = engine.next_actionable(plan, count=2)
        
        assert len(groups) == 1
        assert groups[0].phase_number is None
        assert [r.id for r in groups[0].records] == ["c", "d"]
    
    def test_nothing_left(self, rec):
        """Test a finished plan and a zero count yield nothing."""
        engine = engine_of(rec("a", status="complete"))
        
        assert engine.next_actionable(Plan(id="plan-1", items=("a",))) == []
        assert engine.next_actionable(Plan(id="plan-1", items=("a",)), count=0) == []
