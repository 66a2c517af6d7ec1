"""
Markdown Store - the file format of the source repository.

Records and plans are markdown files with YAML frontmatter. The files are
the source of truth; everything else in plaintrack is derived from them and
can be rebuilt.

Record file:
---
id: pt-a1b2
uuid: 550e8400-e29b-41d4-a716-446655440000
status: new | next | in_progress | complete | cancelled
type: bug | feature | task | epic | chore
priority: 0-4
deps: [record ids]
links: [record ids]
parent: record id
created: ISO timestamp
---

# Title

Body text.

Plan file:
---
id: plan-x1y2
uuid: ...
created: ...
---

# Title

Description.

## Phase 1: Name            (or a single "## Tickets" section)

### Tickets

1. pt-a1b2
2. pt-c3d4
"""

import os
import re
import tempfile
from datetime import date, datetime
from pathlib import Path
from typing import Any

import frontmatter
import yaml
from pydantic import ValidationError

from plaintrack.core.config import settings, get_logger
from plaintrack.core.errors import RecordParseError
from plaintrack.core.types import (
    KNOWN_PLAN_FIELDS,
    KNOWN_RECORD_FIELDS,
    Phase,
    Plan,
    Record,
    RecordStatus,
    RecordType,
)

logger = get_logger("storage.markdown")

TITLE_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
H2_RE = re.compile(r"^##\s+(.+?)\s*$")
H3_RE = re.compile(r"^###\s+(.+?)\s*$")
PHASE_RE = re.compile(r"^phase\s+([\w.]+)\s*(?:[:\-–—]\s*(.*))?$", re.IGNORECASE)
LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+(?:\[[ xX]\]\s+)?(\S+)")
FENCE_RE = re.compile(r"^\s*(```|~~~)")


# ============================================
# Parsing
# ============================================

def _load_post(text: str, path: Path | None) -> frontmatter.Post:
    try:
        post = frontmatter.loads(text)
    except yaml.YAMLError as e:
        raise RecordParseError(path, f"invalid YAML frontmatter: {e}") from e
    
    if not post.metadata:
        raise RecordParseError(path, "missing YAML frontmatter")
    
    return post


def _as_text(value: Any) -> str | None:
    """Normalize a scalar frontmatter value (YAML may hand us datetimes)."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_id_list(value: Any, field: str, path: Path | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value] if value.strip() else []
    if not isinstance(value, list):
        raise RecordParseError(path, f"field '{field}' must be a list of IDs")
    
    ids: list[str] = []
    for item in value:
        item_id = str(item).strip()
        if item_id and item_id not in ids:
            ids.append(item_id)
    return tuple(ids)


def _split_title(content: str) -> tuple[str | None, str]:
    """Return (title, body without the title line)."""
    match = TITLE_RE.search(content)
    if not match:
        return None, content.strip()
    body = content[:match.start()] + content[match.end():]
    return match.group(1), body.strip()


def parse_record(text: str, path: Path | None = None, mtime_ns: int | None = None) -> tuple[Record, list[str]]:
    """
    Parse record file content.
    
    When a path is given its stem is the authoritative ID: a frontmatter ID
    that disagrees is replaced and reported in the returned warnings.
    
    Raises RecordParseError on malformed content.
    """
    post = _load_post(text, path)
    meta = dict(post.metadata)
    warnings: list[str] = []
    
    frontmatter_id = _as_text(meta.get("id"))
    record_id = frontmatter_id
    if path is not None:
        stem = path.stem
        if frontmatter_id and frontmatter_id != stem:
            warnings.append(
                f"ID mismatch: frontmatter ID '{frontmatter_id}' doesn't match filename "
                f"'{stem}'. Using filename as authoritative ID."
            )
        record_id = stem
    if not record_id:
        raise RecordParseError(path, "record is missing required field 'id'")
    
    raw_status = _as_text(meta.get("status")) or RecordStatus.NEW.value
    try:
        status = RecordStatus(raw_status.lower())
    except ValueError:
        raise RecordParseError(path, f"invalid status '{raw_status}'")
    
    raw_type = _as_text(meta.get("type")) or RecordType.TASK.value
    try:
        record_type = RecordType(raw_type.lower())
    except ValueError:
        raise RecordParseError(path, f"invalid type '{raw_type}'")
    
    title, body = _split_title(post.content)
    extra = {k: v for k, v in meta.items() if k not in KNOWN_RECORD_FIELDS}
    
    fields: dict[str, Any] = {
        "id": record_id,
        "uuid": _as_text(meta.get("uuid")),
        "status": status,
        "record_type": record_type,
        "deps": _as_id_list(meta.get("deps"), "deps", path),
        "links": _as_id_list(meta.get("links"), "links", path),
        "parent": _as_text(meta.get("parent")),
        "created": _as_text(meta.get("created")),
        "title": title,
        "body": body,
        "file_path": path,
        "mtime_ns": mtime_ns,
        "extra_fields": extra,
    }
    if meta.get("priority") is not None:
        fields["priority"] = meta["priority"]
    
    try:
        record = Record(**fields)
    except ValidationError as e:
        raise RecordParseError(path, f"invalid record fields: {e.errors()[0]['msg']}") from e
    
    return record, warnings


def _list_items(lines: list[str]) -> tuple[str, ...]:
    items: list[str] = []
    in_fence = False
    for line in lines:
        if FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = LIST_ITEM_RE.match(line)
        if match:
            items.append(match.group(1))
    return tuple(items)


def _parse_phase(heading: str, lines: list[str]) -> Phase | None:
    match = PHASE_RE.match(heading)
    if not match:
        return None
    
    description: list[str] = []
    tickets: list[str] = []
    current = description
    for line in lines:
        h3 = H3_RE.match(line)
        if h3:
            current = tickets if h3.group(1).lower() == "tickets" else []
            continue
        current.append(line)
    
    return Phase(
        number=match.group(1),
        name=(match.group(2) or "").strip(),
        description="\n".join(description).strip() or None,
        items=_list_items(tickets),
    )


def parse_plan(text: str, path: Path | None = None, mtime_ns: int | None = None) -> Plan:
    """
    Parse plan file content.
    
    Raises RecordParseError on malformed content.
    """
    post = _load_post(text, path)
    meta = dict(post.metadata)
    
    plan_id = path.stem if path is not None else _as_text(meta.get("id"))
    if not plan_id:
        raise RecordParseError(path, "plan is missing required field 'id'")
    
    title: str | None = None
    preamble: list[str] = []
    h2_sections: list[tuple[str, list[str]]] = []
    in_fence = False
    
    for line in post.content.splitlines():
        if FENCE_RE.match(line):
            in_fence = not in_fence
        if not in_fence:
            if title is None and not h2_sections and line.startswith("# "):
                title = line[2:].strip()
                continue
            h2 = H2_RE.match(line)
            if h2:
                h2_sections.append((h2.group(1), []))
                continue
        if h2_sections:
            h2_sections[-1][1].append(line)
        else:
            preamble.append(line)
    
    items: tuple[str, ...] = ()
    phases: list[Phase] = []
    sections: dict[str, str] = {}
    
    for heading, lines in h2_sections:
        if heading.lower() == "tickets":
            items = _list_items(lines)
            continue
        phase = _parse_phase(heading, lines)
        if phase is not None:
            phases.append(phase)
        else:
            sections[heading] = "\n".join(lines).strip()
    
    try:
        return Plan(
            id=plan_id,
            uuid=_as_text(meta.get("uuid")),
            title=title,
            created=_as_text(meta.get("created")),
            description="\n".join(preamble).strip() or None,
            items=items,
            phases=tuple(phases),
            sections=sections,
            file_path=path,
            mtime_ns=mtime_ns,
            extra_fields={k: v for k, v in meta.items() if k not in KNOWN_PLAN_FIELDS},
        )
    except ValidationError as e:
        raise RecordParseError(path, f"invalid plan fields: {e.errors()[0]['msg']}") from e


# ============================================
# Serialization
# ============================================

def serialize_record(record: Record) -> str:
    """Render a record back to its file format."""
    fm: dict[str, Any] = {
        "id": record.id,
        "uuid": record.uuid,
        "status": record.status.value,
        "type": record.record_type.value,
        "priority": record.priority,
        "deps": list(record.deps),
        "links": list(record.links),
        "parent": record.parent,
        "created": record.created,
    }
    fm = {k: v for k, v in fm.items() if v is not None}
    fm.update(record.extra_fields)
    
    content = f"# {record.title or record.id}\n"
    if record.body:
        content += f"\n{record.body}\n"
    
    post = frontmatter.Post(content, **fm)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def serialize_plan(plan: Plan) -> str:
    """Render a plan back to its file format."""
    fm: dict[str, Any] = {"id": plan.id, "uuid": plan.uuid, "created": plan.created}
    fm = {k: v for k, v in fm.items() if v is not None}
    fm.update(plan.extra_fields)
    
    parts = [f"# {plan.title or plan.id}"]
    if plan.description:
        parts.append(plan.description)
    
    if plan.phases:
        for phase in plan.phases:
            heading = f"## Phase {phase.number}: {phase.name}" if phase.name else f"## Phase {phase.number}"
            parts.append(heading)
            if phase.description:
                parts.append(phase.description)
            parts.append("### Tickets")
            parts.append("\n".join(f"{i}. {item}" for i, item in enumerate(phase.items, 1)))
    elif plan.items:
        parts.append("## Tickets")
        parts.append("\n".join(f"{i}. {item}" for i, item in enumerate(plan.items, 1)))
    
    for heading, text in plan.sections.items():
        parts.append(f"## {heading}")
        if text:
            parts.append(text)
    
    post = frontmatter.Post("\n\n".join(parts) + "\n", **fm)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def write_atomic(path: Path, text: str) -> None:
    """Write via a temporary file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# ============================================
# Store
# ============================================

class MarkdownStore:
    """
    Markdown file store - the canonical source of truth.
    
    Files are organized by kind:
    - items/   one record per file, named <id>.md
    - plans/   one plan per file, named <id>.md
    """
    
    def __init__(self, root_dir: Path | None = None):
        """Initialize the markdown store. Directories are created on first write."""
        self.root_dir = Path(root_dir or settings.root_dir)
    
    @property
    def items_dir(self) -> Path:
        return self.root_dir / "items"
    
    @property
    def plans_dir(self) -> Path:
        return self.root_dir / "plans"
    
    def ensure_directories(self) -> None:
        for directory in [self.items_dir, self.plans_dir]:
            directory.mkdir(parents=True, exist_ok=True)
    
    def record_path(self, record_id: str) -> Path:
        return self.items_dir / f"{record_id}.md"
    
    def plan_path(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.md"
    
    def _is_markdown_in(self, path: Path, directory: Path) -> bool:
        if path.suffix != ".md" or path.name.startswith("."):
            return False
        return Path(os.path.abspath(path.parent)) == Path(os.path.abspath(directory))
    
    def is_record_path(self, path: Path) -> bool:
        return self._is_markdown_in(path, self.items_dir)
    
    def is_plan_path(self, path: Path) -> bool:
        return self._is_markdown_in(path, self.plans_dir)
    
    def relative_path(self, path: Path) -> str:
        """Path relative to the root, with forward slashes, for stable cache keys."""
        absolute = Path(os.path.abspath(path))
        root = Path(os.path.abspath(self.root_dir))
        try:
            return absolute.relative_to(root).as_posix()
        except ValueError:
            return absolute.as_posix()
    
    def _list(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        return sorted(p for p in directory.glob("*.md") if not p.name.startswith("."))
    
    def list_record_paths(self) -> list[Path]:
        return self._list(self.items_dir)
    
    def list_plan_paths(self) -> list[Path]:
        return self._list(self.plans_dir)
    
    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise RecordParseError(path, "file is not valid UTF-8") from e
    
    def read_record(self, path: Path) -> tuple[Record, list[str]]:
        """
        Read and parse a record file.
        
        Raises OSError if the file cannot be read and RecordParseError if it
        cannot be parsed.
        """
        mtime_ns = path.stat().st_mtime_ns
        text = self._read_text(path)
        return parse_record(text, path=path, mtime_ns=mtime_ns)
    
    def read_plan(self, path: Path) -> Plan:
        mtime_ns = path.stat().st_mtime_ns
        text = self._read_text(path)
        return parse_plan(text, path=path, mtime_ns=mtime_ns)
    
    def write_record(self, record: Record) -> Path:
        """
        Atomically write a record to items/<id>.md.
        
        Returns the path to the written file.
        """
        path = self.record_path(record.id)
        write_atomic(path, serialize_record(record))
        logger.debug(f"Wrote record {record.id} to {path}")
        return path
    
    def write_plan(self, plan: Plan) -> Path:
        path = self.plan_path(plan.id)
        write_atomic(path, serialize_plan(plan))
        logger.debug(f"Wrote plan {plan.id} to {path}")
        return path
    
    def delete(self, path: Path) -> bool:
        """Delete a record or plan file. Returns False if it did not exist."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Deleted {path}")
        return True
