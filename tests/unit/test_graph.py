"""Tests for the dependency graph engine."""

import itertools

import pytest

from plaintrack.core.errors import CircularDependencyError, NotFoundError
from plaintrack.core.types import InclusionReason, RecordStatus, TreeNode
from plaintrack.engine.graph import GraphEngine, format_tree, tree_truncated


def graph_of(*records, **kwargs) -> GraphEngine:
    return GraphEngine({r.id: r for r in records}, **kwargs)


def child_ids(node: TreeNode) -> list[str]:
    return [child.id for child in node.children]


def count_nodes(node: TreeNode) -> int:
    count, stack = 0, [node]
    while stack:
        count += 1
        stack.extend(stack.pop().children)
    return count


class TestReadiness:
    """Tests for ready/blocked classification."""
    
    @pytest.mark.parametrize(
        "own_status,dep_status",
        list(itertools.product(list(RecordStatus), list(RecordStatus))),
    )
    def test_ready_iff_unstarted_with_successful_deps(self, rec, own_status, dep_status):
        """Test readiness against every status combination."""
        graph = graph_of(rec("dep", status=dep_status), rec("r", status=own_status, deps=["dep"]))
        
        expected = own_status.is_unstarted and dep_status == RecordStatus.COMPLETE
        assert graph.is_ready("r") == expected
    
    def test_no_deps_ready(self, rec):
        """Test an unstarted record with no dependencies is ready."""
        assert graph_of(rec("r", status="next")).is_ready("r")
    
    def test_missing_dep_blocks(self, rec):
        """Test a dependency missing from the store is never satisfied."""
        graph = graph_of(rec("r", deps=["ghost"]))
        
        assert not graph.is_ready("r")
        assert graph.unmet_deps("r") == ["ghost"]
    
    def test_cancelled_dep_blocks(self, rec):
        """Test only terminal-success satisfies a dependency."""
        graph = graph_of(rec("dep", status="cancelled"), rec("r", deps=["dep"]))
        assert graph.blocked_records()[0].unmet_deps == ["dep"]
    
    def test_classify_sorted(self, rec):
        """Test ready and blocked lists are sorted by priority then ID."""
        graph = graph_of(
            rec("b", priority=1),
            rec("a", priority=1),
            rec("c", priority=0),
            rec("d", status="in_progress"),
        )
        ready, blocked = graph.classify()
        
        assert [r.id for r in ready] == ["c", "a", "b"]
        assert blocked == []
    
    def test_unknown_id(self, rec):
        """Test readiness of an unknown ID raises NotFoundError."""
        with pytest.raises(NotFoundError):
            graph_of(rec("a")).is_ready("zzz")


class TestCycles:
    """Tests for cycle detection."""
    
    def test_mutual_dependency(self, rec):
        """Test X -> Y -> X is reported and both are blocked."""
        graph = graph_of(rec("x", deps=["y"]), rec("y", deps=["x"]))
        
        cycles = graph.find_cycles()
        assert [c.path for c in cycles] == [["x", "y", "x"]]
        assert not graph.is_ready("x")
        assert not graph.is_ready("y")
    
    def test_self_dependency(self, rec):
        """Test a record depending on itself."""
        cycles = graph_of(rec("x", deps=["x"])).find_cycles()
        assert [c.path for c in cycles] == [["x", "x"]]
    
    def test_cycle_reported_once(self, rec):
        """Test a cycle entered from several nodes is reported once."""
        graph = graph_of(
            rec("a", deps=["b"]),
            rec("b", deps=["c"]),
            rec("c", deps=["a"]),
            rec("d", deps=["b"]),
        )
        cycles = graph.find_cycles()
        
        assert len(cycles) == 1
        assert set(cycles[0].members) == {"a", "b", "c"}
        assert cycles[0].path[0] == cycles[0].path[-1]
    
    def test_no_cycles(self, rec):
        """Test a diamond is not a cycle."""
        graph = graph_of(
            rec("r", deps=["a", "b"]),
            rec("a", deps=["c"]),
            rec("b", deps=["c"]),
            rec("c"),
        )
        assert graph.find_cycles() == []
    
    def test_check_new_dependency(self, rec):
        """Test adding an edge that closes a cycle is refused."""
        graph = graph_of(rec("a", deps=["b"]), rec("b", deps=["c"]), rec("c"))
        
        with pytest.raises(CircularDependencyError) as exc_info:
            graph.check_new_dependency("c", "a")
        assert exc_info.value.path == ["c", "a", "b", "c"]
        
        with pytest.raises(CircularDependencyError):
            graph.check_new_dependency("a", "a")
        
        graph.check_new_dependency("a", "c")


class TestNextWork:
    """Tests for next-work ordering."""
    
    def test_blocking_hoisted(self, rec):
        """Test a ready record that unblocks another comes first, tagged blocking."""
        graph = graph_of(
            rec("x", priority=1),
            rec("y", priority=0, deps=["x"]),
        )
        items = graph.next_work(10)
        
        assert [i.id for i in items] == ["x", "y"]
        assert items[0].reason is InclusionReason.BLOCKING
        assert items[0].unblocks == ["y"]
        assert items[1].reason is InclusionReason.BLOCKED
        assert items[1].unmet_deps == ["x"]
    
    def test_blocking_ahead_of_equal_priority(self, rec):
        """Test blocking records beat plain ready ones of equal priority only."""
        graph = graph_of(
            rec("a-plain", priority=2),
            rec("b-blocker", priority=2),
            rec("c-urgent", priority=1),
            rec("d-waiting", priority=3, deps=["b-blocker"]),
        )
        items = graph.next_work(10)
        
        assert [i.id for i in items] == ["c-urgent", "b-blocker", "a-plain", "d-waiting"]
        assert [i.reason for i in items] == [
            InclusionReason.READY,
            InclusionReason.BLOCKING,
            InclusionReason.READY,
            InclusionReason.BLOCKED,
        ]
    
    def test_blocked_shorter_chains_first(self, rec):
        """Test blocked records closer to being unblocked come first."""
        graph = graph_of(
            rec("a"),
            rec("b", deps=["a"], priority=4),
            rec("c", deps=["b"], priority=0),
        )
        items = graph.next_work(10)
        
        assert [i.id for i in items] == ["a", "b", "c"]
    
    def test_limit(self, rec):
        """Test output is truncated after assembly."""
        graph = graph_of(rec("a"), rec("b"), rec("c", deps=["a"]))
        
        assert [i.id for i in graph.next_work(2)] == ["a", "b"]
        assert graph.next_work(0) == []
    
    def test_nothing_to_do(self, rec):
        """Test finished work yields nothing."""
        graph = graph_of(rec("a", status="complete"), rec("b", status="cancelled"))
        assert graph.next_work(5) == []
    
    def test_blocker_deduplicated(self, rec):
        """Test a record unblocking several others appears once."""
        graph = graph_of(
            rec("shared"),
            rec("x", deps=["shared"]),
            rec("y", deps=["shared"]),
        )
        items = graph.next_work(10)
        
        assert [i.id for i in items].count("shared") == 1
        assert items[0].unblocks == ["x", "y"]


class TestDependencyTree:
    """Tests for dependency tree rendering."""
    
    @pytest.fixture
    def diamond(self, rec):
        return graph_of(
            rec("r", deps=["a", "b"]),
            rec("a", deps=["c"]),
            rec("b", deps=["c"]),
            rec("c"),
        )
    
    def test_dedup_prints_shared_node_once(self, diamond):
        """Test a shared dependency appears once, under the first deepest parent."""
        tree = diamond.dependency_tree("r")
        
        assert child_ids(tree) == ["a", "b"]
        assert child_ids(tree.children[0]) == ["c"]
        assert child_ids(tree.children[1]) == []
    
    def test_full_repeats_shared_node(self, diamond):
        """Test full mode prints the shared dependency under each parent."""
        tree = diamond.dependency_tree("r", full=True)
        
        assert child_ids(tree.children[0]) == ["c"]
        assert child_ids(tree.children[1]) == ["c"]
    
    def test_dedup_places_node_at_max_depth(self, rec):
        """Test a node reachable at depths 1 and 2 is shown at depth 2."""
        graph = graph_of(
            rec("r", deps=["a", "b"]),
            rec("b", deps=["a"]),
            rec("a"),
        )
        tree = graph.dependency_tree("r")
        
        assert child_ids(tree) == ["b"]
        assert child_ids(tree.children[0]) == ["a"]
    
    def test_terminates_on_cycle(self, rec):
        """Test both modes terminate on a cyclic graph."""
        graph = graph_of(rec("x", deps=["y"]), rec("y", deps=["x"]))
        
        dedup = graph.dependency_tree("x")
        assert child_ids(dedup) == ["y"]
        assert child_ids(dedup.children[0]) == []
        
        full = graph.dependency_tree("x", full=True)
        revisit = full.children[0].children[0]
        assert revisit.id == "x"
        assert revisit.on_path
        assert revisit.children == []
    
    def test_missing_dependency_shown(self, rec):
        """Test a dependency absent from the store still appears."""
        tree = graph_of(rec("r", deps=["ghost"])).dependency_tree("r")
        
        assert child_ids(tree) == ["ghost"]
        assert tree.children[0].record is None
    
    def test_full_mode_node_cap(self, rec):
        """Test full mode stops expanding at the node cap."""
        records = []
        for level in range(12):
            deps = [f"a{level + 1}", f"b{level + 1}"] if level < 11 else []
            records.append(rec(f"a{level}", deps=deps))
            records.append(rec(f"b{level}", deps=deps))
        graph = graph_of(*records, max_tree_nodes=50)
        
        tree = graph.dependency_tree("a0", full=True)
        
        assert count_nodes(tree) <= 50
        assert tree_truncated(tree)
        assert not tree_truncated(graph.dependency_tree("a0"))
    
    def test_unknown_root(self, diamond):
        """Test an unknown root raises NotFoundError."""
        with pytest.raises(NotFoundError):
            diamond.dependency_tree("nope")
    
    def test_format_tree(self, rec):
        """Test text rendering with box-drawing connectors."""
        graph = graph_of(
            rec("r", deps=["a", "b"], title="Root"),
            rec("a", deps=["c"]),
            rec("b", status="complete"),
            rec("c"),
        )
        
        assert format_tree(graph.dependency_tree("r")) == "\n".join([
            "r [new] Root",
            "├── a [new]",
            "│   └── c [new]",
            "└── b [complete]",
        ])
    
    def test_dependency_depth(self, diamond):
        """Test the longest chain below a node."""
        assert diamond.dependency_depth("r") == 2
        assert diamond.dependency_depth("c") == 0


class TestLongChains:
    """Tests for dependency chains deeper than the interpreter's recursion limit."""
    
    CHAIN_LENGTH = 1500
    
    @pytest.fixture
    def chain(self, rec):
        ids = [f"r{i:05d}" for i in range(self.CHAIN_LENGTH)]
        records = [rec(record_id, deps=ids[i + 1:i + 2]) for i, record_id in enumerate(ids)]
        return graph_of(*records)
    
    def test_next_work(self, chain):
        """Test ordering blocked records by depth over a long chain."""
        items = chain.next_work(3)
        
        assert [w.id for w in items] == ["r01499", "r01498", "r01497"]
        assert items[0].reason is InclusionReason.BLOCKING
        assert chain.dependency_depth("r00000") == self.CHAIN_LENGTH - 1
    
    @pytest.mark.parametrize("full", [False, True])
    def test_dependency_tree(self, chain, full):
        """Test both tree modes over a long chain."""
        tree = chain.dependency_tree("r00000", full=full)
        
        assert count_nodes(tree) == self.CHAIN_LENGTH
        assert not tree_truncated(tree)
        
        node = tree
        while node.children:
            node = node.children[0]
        assert node.id == "r01499"
    
    def test_render(self, chain):
        """Test text and dict rendering of a long chain."""
        tree = chain.dependency_tree("r00000")
        
        lines = format_tree(tree).splitlines()
        assert len(lines) == self.CHAIN_LENGTH
        assert lines[-1].endswith("└── r01499 [new]")
        
        out = tree.to_dict()
        depth = 0
        while out["deps"]:
            out = out["deps"][0]
            depth += 1
        assert depth == self.CHAIN_LENGTH - 1
