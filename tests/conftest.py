"""
Pytest configuration and fixtures for plaintrack tests.
"""

import hashlib
import os
import re
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Sequence

import pytest

# Set test environment before importing app modules
os.environ["PLAINTRACK_ROOT_DIR"] = tempfile.mkdtemp()
os.environ["PLAINTRACK_SEMANTIC_SEARCH_ENABLED"] = "false"
os.environ["PLAINTRACK_OPENAI_API_KEY"] = ""

from plaintrack.core.types import Record, RecordStatus  # noqa: E402


@pytest.fixture
def temp_root() -> Generator[Path, None, None]:
    """Create a temporary repository root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir) / ".plaintrack"
        
        for subdir in ["items", "plans"]:
            (root / subdir).mkdir(parents=True, exist_ok=True)
        
        yield root


def render_record(
    record_id: str,
    status: str = "new",
    deps: Sequence[str] = (),
    priority: int = 2,
    title: str | None = None,
    body: str = "",
    record_type: str = "task",
    frontmatter_id: str | None = None,
) -> str:
    lines = [
        "---",
        f"id: {frontmatter_id or record_id}",
        f"status: {status}",
        f"type: {record_type}",
        f"priority: {priority}",
        f"deps: [{', '.join(deps)}]",
        "links: []",
        "created: '2024-01-15T10:00:00Z'",
        "---",
        "",
        f"# {title or 'Record ' + record_id}",
        "",
        body,
        "",
    ]
    return "\n".join(lines)


@pytest.fixture
def make_record_file(temp_root):
    """Factory writing a record file into items/."""
    def _make(record_id: str, **kwargs) -> Path:
        path = temp_root / "items" / f"{record_id}.md"
        path.write_text(render_record(record_id, **kwargs), encoding="utf-8")
        return path
    return _make


@pytest.fixture
def make_plan_file(temp_root):
    """Factory writing a plan file into plans/. Pass items or phases."""
    def _make(
        plan_id: str,
        items: Sequence[str] | None = None,
        phases: Sequence[tuple[str, Sequence[str]]] | None = None,
        title: str = "Test Plan",
    ) -> Path:
        parts = [
            "---",
            f"id: {plan_id}",
            "created: '2024-01-15T10:00:00Z'",
            "---",
            "",
            f"# {title}",
            "",
            "What this plan is about.",
            "",
        ]
        if phases:
            for number, (name, phase_items) in enumerate(phases, 1):
                parts += [f"## Phase {number}: {name}", "", "### Tickets", ""]
                parts += [f"{i}. {item}" for i, item in enumerate(phase_items, 1)]
                parts.append("")
        else:
            parts += ["## Tickets", ""]
            parts += [f"{i}. {item}" for i, item in enumerate(items or [], 1)]
            parts.append("")
        
        path = temp_root / "plans" / f"{plan_id}.md"
        path.write_text("\n".join(parts), encoding="utf-8")
        return path
    return _make


def make_record(
    record_id: str,
    status: RecordStatus | str = RecordStatus.NEW,
    deps: Sequence[str] = (),
    priority: int = 2,
    title: str | None = None,
) -> Record:
    """Build an in-memory record for engine tests."""
    return Record(
        id=record_id,
        status=RecordStatus(status),
        deps=tuple(deps),
        priority=priority,
        title=title,
    )


class FakeEmbeddingModel:
    """
    Deterministic bag-of-words embedding model.
    
    Each lowercase word adds 1.0 to a bucket chosen by its hash, so texts
    sharing words are similar and identical texts embed identically.
    """
    
    def __init__(self, dimensions: int = 16):
        self.name = "fake-embedding"
        self.dimensions = dimensions
        self.calls = 0
        self.texts: list[str] = []
    
    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        return vector
    
    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        self.texts.append(text)
        return self._vector(text)
    
    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        self.texts.extend(texts)
        return [self._vector(t) for t in texts]


@pytest.fixture
def fake_model() -> FakeEmbeddingModel:
    return FakeEmbeddingModel()


@pytest.fixture
def rec():
    """Factory for in-memory records: rec("pt-1", status="complete", deps=["pt-0"])."""
    return make_record
