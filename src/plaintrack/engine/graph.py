"""
GraphEngine - dependency graph reasoning over a store snapshot.

Built from a point-in-time copy of the records, so every query sees one
consistent view even while a watcher updates the Store:

    graph = GraphEngine.from_store(store)
    graph.next_work(limit=5)
    graph.find_cycles()
    print(format_tree(graph.dependency_tree("pt-a1b2")))

Dependencies pointing at IDs that are not in the snapshot are kept in the
adjacency map; they are never satisfied.
"""

from collections import defaultdict
from typing import Mapping

from plaintrack.core.config import settings, get_logger
from plaintrack.core.errors import CircularDependencyError, NotFoundError
from plaintrack.core.types import (
    BlockedRecord,
    CycleReport,
    InclusionReason,
    Record,
    StatusCategory,
    TreeNode,
    WorkItem,
)

logger = get_logger("engine.graph")

_IN_PROGRESS = 1
_DONE = 2


class GraphEngine:
    """Cycle detection, readiness, next-work ordering and dependency trees."""
    
    def __init__(self, records: Mapping[str, Record], max_tree_nodes: int | None = None):
        self.records = dict(records)
        self.max_tree_nodes = max_tree_nodes or settings.tree_max_nodes
        
        self.adjacency: dict[str, tuple[str, ...]] = {
            record_id: record.deps for record_id, record in self.records.items()
        }
        self.dependents: dict[str, list[str]] = defaultdict(list)
        for record_id in sorted(self.adjacency):
            for dep in self.adjacency[record_id]:
                self.dependents[dep].append(record_id)
        
        self._heights: dict[str, int] = {}
    
    @classmethod
    def from_store(cls, store, max_tree_nodes: int | None = None) -> "GraphEngine":
        return cls(store.snapshot(), max_tree_nodes=max_tree_nodes)
    
    def _get(self, record_id: str) -> Record:
        record = self.records.get(record_id)
        if record is None:
            raise NotFoundError(record_id)
        return record
    
    # ==========================================
    # Cycles
    # ==========================================
    
    def find_cycles(self) -> list[CycleReport]:
        """
        Every distinct dependency cycle reachable in the graph.
        
        Depth-first with a three-state mark per node. Meeting a node that is
        still in progress closes a cycle; the reported path runs from that
        node back to itself. The same cycle found from different entry points
        is reported once.
        """
        state: dict[str, int] = {}
        seen: set[tuple[str, ...]] = set()
        cycles: list[CycleReport] = []
        
        for start in sorted(self.adjacency):
            if start in state:
                continue
            
            state[start] = _IN_PROGRESS
            path = [start]
            stack = [(start, iter(self.adjacency[start]))]
            
            while stack:
                node, deps = stack[-1]
                for dep in deps:
                    if dep not in self.adjacency:
                        continue
                    mark = state.get(dep)
                    if mark is None:
                        state[dep] = _IN_PROGRESS
                        path.append(dep)
                        stack.append((dep, iter(self.adjacency[dep])))
                        break
                    if mark == _IN_PROGRESS:
                        members = path[path.index(dep):]
                        pivot = members.index(min(members))
                        canonical = tuple(members[pivot:] + members[:pivot])
                        if canonical not in seen:
                            seen.add(canonical)
                            cycles.append(CycleReport(path=members + [dep]))
                else:
                    state[node] = _DONE
                    path.pop()
                    stack.pop()
        
        if cycles:
            logger.warning(f"Found {len(cycles)} dependency cycle(s)")
        return cycles
    
    def cycle_members(self) -> set[str]:
        return {member for cycle in self.find_cycles() for member in cycle.members}
    
    def _find_path(self, start: str, goal: str) -> list[str] | None:
        """A dependency path from start to goal, if one exists."""
        parents: dict[str, str | None] = {start: None}
        stack = [start]
        while stack:
            node = stack.pop()
            if node == goal:
                path = [node]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            for dep in self.adjacency.get(node, ()):
                if dep not in parents:
                    parents[dep] = node
                    stack.append(dep)
        return None
    
    def check_new_dependency(self, from_id: str, to_id: str) -> None:
        """
        Raise CircularDependencyError if making from_id depend on to_id would
        close a cycle.
        """
        if from_id == to_id:
            raise CircularDependencyError([from_id, from_id])
        
        path = self._find_path(to_id, from_id)
        if path is not None:
            raise CircularDependencyError([from_id] + path)
    
    # ==========================================
    # Readiness
    # ==========================================
    
    def is_satisfied(self, dep_id: str) -> bool:
        """A dependency is satisfied only if it exists and completed successfully."""
        dep = self.records.get(dep_id)
        return dep is not None and dep.category is StatusCategory.TERMINAL_SUCCESS
    
    def unmet_deps(self, record: Record | str) -> list[str]:
        if isinstance(record, str):
            record = self._get(record)
        return [dep for dep in record.deps if not self.is_satisfied(dep)]
    
    def is_ready(self, record: Record | str) -> bool:
        """Unstarted, with every dependency terminal-success."""
        if isinstance(record, str):
            record = self._get(record)
        return record.status.is_unstarted and not self.unmet_deps(record)
    
    def classify(self) -> tuple[list[Record], list[BlockedRecord]]:
        """Split unstarted records into ready and blocked, each sorted by (priority, id)."""
        ready: list[Record] = []
        blocked: list[BlockedRecord] = []
        
        for record in sorted(self.records.values(), key=lambda r: (r.priority, r.id)):
            if not record.status.is_unstarted:
                continue
            unmet = self.unmet_deps(record)
            if unmet:
                blocked.append(BlockedRecord(record=record, unmet_deps=unmet))
            else:
                ready.append(record)
        
        return ready, blocked
    
    def ready_records(self) -> list[Record]:
        return self.classify()[0]
    
    def blocked_records(self) -> list[BlockedRecord]:
        return self.classify()[1]
    
    def dependency_depth(self, record_id: str) -> int:
        """Length of the longest dependency chain below record_id."""
        cached = self._heights.get(record_id)
        if cached is not None:
            return cached
        
        # Edges back into the current path are cut, so heights inside a cycle
        # depend on where the cycle was entered.
        visiting = {record_id}
        stack = [[record_id, iter(self.adjacency.get(record_id, ())), 0]]
        
        while stack:
            frame = stack[-1]
            node, deps, _ = frame
            for dep in deps:
                if dep in visiting:
                    continue
                cached = self._heights.get(dep)
                if cached is not None:
                    frame[2] = max(frame[2], cached + 1)
                    continue
                visiting.add(dep)
                stack.append([dep, iter(self.adjacency.get(dep, ())), 0])
                break
            else:
                stack.pop()
                visiting.discard(node)
                self._heights[node] = frame[2]
                if stack:
                    stack[-1][2] = max(stack[-1][2], frame[2] + 1)
        
        return self._heights[record_id]
    
    # ==========================================
    # Next work
    # ==========================================
    
    def next_work(self, limit: int) -> list[WorkItem]:
        """
        The next records to work on.
        
        Ready records come first, sorted by priority. At equal priority a ready
        record that unblocks a blocked one ("blocking") goes ahead of plain
        ready ones. Blocked records follow for context, shorter dependency
        chains first, each with its unmet dependencies. Truncated to limit.
        """
        if limit <= 0:
            return []
        
        ready, blocked = self.classify()
        ready_ids = {r.id for r in ready}
        
        unblocks: dict[str, list[str]] = defaultdict(list)
        for entry in blocked:
            for dep in entry.unmet_deps:
                if dep in ready_ids and entry.record.id not in unblocks[dep]:
                    unblocks[dep].append(entry.record.id)
        
        items = [
            WorkItem(
                record=record,
                reason=InclusionReason.BLOCKING if record.id in unblocks else InclusionReason.READY,
                unblocks=sorted(unblocks.get(record.id, [])),
            )
            for record in ready
        ]
        items.sort(key=lambda w: (w.record.priority, 0 if w.unblocks else 1, w.record.id))
        
        blocked.sort(key=lambda b: (self.dependency_depth(b.record.id), b.record.priority, b.record.id))
        items.extend(
            WorkItem(record=entry.record, reason=InclusionReason.BLOCKED, unmet_deps=entry.unmet_deps)
            for entry in blocked
        )
        
        return items[:limit]
    
    # ==========================================
    # Dependency trees
    # ==========================================
    
    def _max_depths(self, root: str) -> dict[str, int]:
        """
        Deepest position of every node reachable from root.
        
        A node is only re-explored when reached deeper than before, and never
        through a node already on the current path.
        """
        depths: dict[str, int] = {root: 0}
        on_path = {root}
        stack = [(root, 0, iter(self.adjacency.get(root, ())))]
        
        while stack:
            node, depth, deps = stack[-1]
            for dep in deps:
                if dep in on_path or depth + 1 <= depths.get(dep, -1):
                    continue
                depths[dep] = depth + 1
                on_path.add(dep)
                stack.append((dep, depth + 1, iter(self.adjacency.get(dep, ()))))
                break
            else:
                stack.pop()
                on_path.discard(node)
        
        return depths
    
    def _child_order(self, node: str) -> list[str]:
        deps = list(dict.fromkeys(self.adjacency.get(node, ())))
        return sorted(deps, key=lambda d: (-self.dependency_depth(d), d))
    
    def dependency_tree(self, root_id: str, full: bool = False) -> TreeNode:
        """
        Render the dependencies below root_id as a tree.
        
        Deduplicated (default): each reachable node appears exactly once, under
        the parent that puts it at its maximum depth from the root.
        
        Full: every path is expanded, so shared dependencies repeat. A node
        already on the current path is shown but not expanded, and expansion
        stops once max_tree_nodes nodes have been emitted.
        """
        if root_id not in self.records:
            raise NotFoundError(root_id)
        if full:
            return self._full_tree(root_id)
        return self._dedup_tree(root_id)
    
    def _node(self, node_id: str, on_path: bool = False) -> TreeNode:
        return TreeNode(id=node_id, record=self.records.get(node_id), on_path=on_path)
    
    def _dedup_tree(self, root_id: str) -> TreeNode:
        depths = self._max_depths(root_id)
        placed = {root_id}
        tree = self._node(root_id)
        stack = [(tree, 0, iter(self._child_order(root_id)))]
        
        while stack:
            node, depth, children = stack[-1]
            for child in children:
                if child in placed or depths.get(child) != depth + 1:
                    continue
                placed.add(child)
                child_node = self._node(child)
                node.children.append(child_node)
                stack.append((child_node, depth + 1, iter(self._child_order(child))))
                break
            else:
                stack.pop()
        
        return tree
    
    def _full_tree(self, root_id: str) -> TreeNode:
        emitted = 1
        tree = self._node(root_id)
        on_path = {root_id}
        stack = [(tree, iter(self._child_order(root_id)))]
        
        while stack:
            node, children = stack[-1]
            descend = None
            for child in children:
                if emitted >= self.max_tree_nodes:
                    node.truncated = True
                    break
                emitted += 1
                child_node = self._node(child, on_path=child in on_path)
                node.children.append(child_node)
                if not child_node.on_path:
                    descend = child_node
                    break
            
            if descend is None:
                stack.pop()
                on_path.discard(node.id)
            else:
                on_path.add(descend.id)
                stack.append((descend, iter(self._child_order(descend.id))))
        
        if tree_truncated(tree):
            logger.warning(f"Dependency tree for {root_id} truncated at {self.max_tree_nodes} nodes")
        return tree


def tree_truncated(node: TreeNode) -> bool:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.truncated:
            return True
        stack.extend(current.children)
    return False


def _label(node: TreeNode) -> str:
    if node.record is None:
        label = f"{node.id} [missing]"
    else:
        label = f"{node.id} [{node.record.status.value}]"
        if node.record.title:
            label += f" {node.record.title}"
    if node.on_path:
        label += " (cycle)"
    return label


def _entries(node: TreeNode, prefix: str) -> list[tuple[TreeNode | None, str, bool]]:
    entries: list[TreeNode | None] = list(node.children)
    if node.truncated:
        entries.append(None)
    return [(child, prefix, i == len(entries) - 1) for i, child in enumerate(entries)]


def format_tree(root: TreeNode) -> str:
    """Render a tree with box-drawing connectors."""
    lines = [_label(root)]
    stack = list(reversed(_entries(root, "")))
    
    while stack:
        child, prefix, last = stack.pop()
        connector = "└── " if last else "├── "
        if child is None:
            lines.append(f"{prefix}{connector}... (truncated)")
            continue
        lines.append(f"{prefix}{connector}{_label(child)}")
        stack.extend(reversed(_entries(child, prefix + ("    " if last else "│   "))))
    
    return "\n".join(lines)
