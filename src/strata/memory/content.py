"""Pure builders for RECENT, MEMORY shard, MEMORY index, NOW and log content.

Every function takes current file content (or ``None`` when the file does
not exist) and returns the new content, so consolidation can compute all of
its writes up front and hand them to the committer in one batch. Anchors are
tracked explicitly on every entry and drive all de-duplication.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from strata.config import SESSIONS_SECTION
from strata.memory.frontmatter import MEMORY_KEYS, parse_document, render_document
from strata.memory.summarize import NO_SUMMARY, SessionSummary
from strata.memory.util import count_lines, format_duration, iso_timestamp, merge_unique, unique

CONSOLIDATED_BY = "strata-v0.1"
LOG_ROTATION_LINES = 1000
INDEX_TITLE = "# Long-term Memory Index"
SHARD_TITLE = "# Consolidated Memory"
RECENT_SEPARATOR = "\n\n---\n\n"
FOCUS_LIMIT = 80

_ANCHOR_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")
_LINK_ANCHOR = re.compile(r"#([A-Za-z0-9_-]+)")
_NAMED_ANCHOR = re.compile(r'<a name="([^"]+)"></a>')


@dataclass
class SessionStamp:
    """Date/time labels derived from a session's UTC start."""

    session_id: str
    start: datetime

    @property
    def date(self) -> str:
        return self.start.astimezone(timezone.utc).strftime("%Y-%m-%d")

    @property
    def time(self) -> str:
        return self.start.astimezone(timezone.utc).strftime("%H:%M")

    @property
    def anchor(self) -> str:
        return session_anchor(self.session_id, self.start)

    @property
    def shard_name(self) -> str:
        return f"MEMORY-{self.date}.md"


def session_anchor(session_id: str, start: datetime) -> str:
    utc = start.astimezone(timezone.utc)
    raw = f"session-{utc:%Y-%m-%d}-{utc:%H-%M}-{session_id}"
    return _ANCHOR_UNSAFE.sub("", raw)


def link_anchor(text: str) -> str | None:
    match = _LINK_ANCHOR.search(text)
    return match.group(1) if match else None


# ── Summary rendering ─────────────────────────────────────

_LIST_HEADINGS = (
    ("**Decisions**:", "decisions"),
    ("**Discoveries**:", "discoveries"),
    ("**Patterns**:", "patterns"),
    ("**What worked**:", "what_worked"),
    ("**What didn't work**:", "what_failed"),
    ("**Open questions**:", "open_questions"),
    ("**Next steps**:", "next_steps"),
)
_TASKS_PREFIX = "**Tasks**: "
_FILES_PREFIX = "**Files**: "


def summary_lines(summary: SessionSummary, include_files: bool) -> list[str]:
    lines = [summary.narrative]
    for heading, attr in _LIST_HEADINGS:
        items = getattr(summary, attr)
        if items:
            lines.extend(["", heading, *(f"- {item}" for item in items)])
    if summary.tasks:
        lines.extend(["", _TASKS_PREFIX + ", ".join(summary.tasks)])
    if include_files and summary.files:
        lines.extend(["", _FILES_PREFIX + ", ".join(f"`{f}`" for f in summary.files)])
    return lines


def parse_summary_lines(lines: list[str]) -> SessionSummary:
    """Read back what ``summary_lines`` rendered."""
    headings = dict(_LIST_HEADINGS)
    summary = SessionSummary()
    narrative: list[str] = []
    current: str | None = None
    for line in lines:
        stripped = line.strip()
        if stripped in headings:
            current = headings[stripped]
        elif stripped.startswith(_TASKS_PREFIX):
            summary.tasks = [t.strip() for t in stripped[len(_TASKS_PREFIX):].split(",") if t.strip()]
            current = None
        elif stripped.startswith(_FILES_PREFIX):
            files = stripped[len(_FILES_PREFIX):].split(",")
            summary.files = [f.strip().strip("`") for f in files if f.strip().strip("`")]
            current = None
        elif current is not None and stripped.startswith("- "):
            getattr(summary, current).append(stripped[2:].strip())
        elif current is None and stripped:
            narrative.append(stripped)
    summary.narrative = " ".join(narrative)
    return summary


def combine_summaries(earlier: SessionSummary, later: SessionSummary) -> SessionSummary:
    """Fold a later summary of the same session into an earlier one."""
    if later.narrative in ("", NO_SUMMARY) or earlier.narrative.endswith(later.narrative):
        narrative = earlier.narrative
    elif earlier.narrative in ("", NO_SUMMARY):
        narrative = later.narrative
    else:
        narrative = f"{earlier.narrative} {later.narrative}"
    combined = SessionSummary(narrative=narrative)
    for name in ("tasks", "files", *(attr for _, attr in _LIST_HEADINGS)):
        setattr(combined, name, unique([*getattr(earlier, name), *getattr(later, name)]))
    return combined


# ── RECENT ────────────────────────────────────────────────

@dataclass
class RecentEntry:
    anchor: str | None
    text: str


def build_recent_entry(
    stamp: SessionStamp, duration_minutes: float | None, summary: SessionSummary
) -> RecentEntry:
    lines = [f"## Session {stamp.date} {stamp.time} ({format_duration(duration_minutes)})", ""]
    lines.extend(summary_lines(summary, include_files=False))
    lines.append(f"**Link**: [Full details]({stamp.shard_name}#{stamp.anchor})")
    return RecentEntry(anchor=stamp.anchor, text="\n".join(lines))


def parse_recent(content: str) -> list[RecentEntry]:
    """Split a RECENT file into entries, newest first as stored."""
    entries: list[RecentEntry] = []
    current: list[str] = []

    def flush() -> None:
        if current:
            text = "\n".join(current).strip()
            entries.append(RecentEntry(anchor=link_anchor(text), text=text))

    for line in content.strip().split("\n"):
        if line.startswith("## Session "):
            flush()
            current = [line]
        elif line.startswith("# "):
            continue
        elif current and line.strip() == "---":
            continue
        elif current:
            current.append(line)
    flush()
    return entries


def render_recent(entries: list[RecentEntry], max_sessions: int) -> str:
    header = f"# RECENT - Last {max(1, max_sessions)} Sessions"
    return f"{header}\n\n{RECENT_SEPARATOR.join(e.text for e in entries)}\n"


def upsert_recent(
    content: str | None, entry: RecentEntry, max_sessions: int, max_lines: int
) -> str:
    """Prepend ``entry`` and enforce uniqueness plus both size bounds.

    Oldest entries are dropped while the file exceeds ``max_lines``, but the
    newest entry is always kept.
    """
    max_sessions = max(1, max_sessions)
    existing = parse_recent(content) if content else []
    seen: set[str] = set()
    entries: list[RecentEntry] = []
    for item in [entry, *existing]:
        key = item.anchor or item.text
        if key in seen:
            continue
        seen.add(key)
        entries.append(item)
    entries = entries[:max_sessions]

    rendered = render_recent(entries, max_sessions)
    while max_lines > 0 and count_lines(rendered) > max_lines and len(entries) > 1:
        entries = entries[:-1]
        rendered = render_recent(entries, max_sessions)
    return rendered


# ── MEMORY shard ──────────────────────────────────────────

@dataclass
class ShardSection:
    anchor: str | None
    text: str


def build_shard_section(stamp: SessionStamp, summary: SessionSummary) -> ShardSection:
    lines = [
        f"## Session {stamp.date} {stamp.time} UTC ({stamp.session_id})",
        f'<a name="{stamp.anchor}"></a>',
        "",
        *summary_lines(summary, include_files=True),
    ]
    return ShardSection(anchor=stamp.anchor, text="\n".join(lines))


def split_shard_body(body: str) -> tuple[str, list[ShardSection]]:
    """Separate the shard preamble from its ``## `` sections."""
    preamble: list[str] = []
    sections: list[ShardSection] = []
    current: list[str] | None = None

    def flush() -> None:
        if current is not None:
            text = "\n".join(current).strip()
            match = _NAMED_ANCHOR.search(text)
            sections.append(ShardSection(anchor=match.group(1) if match else None, text=text))

    for line in body.split("\n"):
        if line.startswith("## "):
            flush()
            current = [line]
        elif current is not None:
            current.append(line)
        else:
            preamble.append(line)
    flush()
    return "\n".join(preamble).strip(), sections


def shard_anchors(content: str | None) -> set[str]:
    if not content:
        return set()
    return set(_NAMED_ANCHOR.findall(content))


def upsert_shard(
    content: str | None,
    session_id: str,
    tags: list[str],
    section: ShardSection,
    now: datetime | None = None,
) -> str:
    """Create the shard or add ``section`` to it, merging frontmatter.

    Duplicate anchors already in the file are collapsed to their first
    occurrence. A section whose anchor is present is replaced in place,
    otherwise it is appended.
    """
    consolidated_at = iso_timestamp(now)
    if content is None:
        metadata = {
            "consolidation_date": consolidated_at,
            "source_sessions": [session_id],
            "total_sessions_consolidated": 1,
            "tags": merge_unique([], tags),
            "consolidated_by": CONSOLIDATED_BY,
        }
        return render_document(metadata, f"{SHARD_TITLE}\n\n{section.text}\n", MEMORY_KEYS)

    doc = parse_document(content)
    sessions = merge_unique(doc.metadata.get("source_sessions") or [], [session_id])
    metadata = {
        **doc.metadata,
        "consolidation_date": consolidated_at,
        "source_sessions": sessions,
        "total_sessions_consolidated": len(sessions),
        "tags": merge_unique(doc.metadata.get("tags") or [], tags),
    }
    metadata.setdefault("consolidated_by", CONSOLIDATED_BY)
    order = tuple(doc.metadata) or MEMORY_KEYS

    preamble, sections = split_shard_body(doc.body)
    seen: set[str] = set()
    kept: list[ShardSection] = []
    for existing in sections:
        if existing.anchor is not None:
            if existing.anchor in seen:
                continue
            seen.add(existing.anchor)
            if existing.anchor == section.anchor:
                kept.append(section)
                continue
        kept.append(existing)
    if section.anchor not in seen:
        kept.append(section)

    parts = [preamble or SHARD_TITLE, *(s.text for s in kept)]
    return render_document(metadata, "\n\n".join(parts) + "\n", order)


def find_shard_section(content: str | None, anchor: str) -> ShardSection | None:
    if not content:
        return None
    _, sections = split_shard_body(parse_document(content).body)
    for section in sections:
        if section.anchor == anchor:
            return section
    return None


def section_summary(section: ShardSection) -> SessionSummary:
    """The summary a shard section records below its heading and anchor."""
    lines = section.text.split("\n")[1:]
    return parse_summary_lines([line for line in lines if not _NAMED_ANCHOR.search(line)])


# ── MEMORY index ──────────────────────────────────────────

@dataclass
class IndexEntry:
    anchor: str | None
    text: str

    @property
    def key(self) -> str:
        return self.anchor or self.text


@dataclass
class IndexSection:
    name: str
    entries: list[IndexEntry] = field(default_factory=list)
    # Hand-written lines that are not entries; kept after the entries.
    notes: list[str] = field(default_factory=list)


@dataclass
class MemoryIndex:
    title: str
    sections: list[IndexSection] = field(default_factory=list)

    def section(self, name: str) -> IndexSection:
        for section in self.sections:
            if section.name == name:
                return section
        section = IndexSection(name)
        self.sections.append(section)
        return section


def build_index_entry(stamp: SessionStamp, summary: SessionSummary) -> IndexEntry:
    focus = " ".join(summary.narrative.split())
    if len(focus) > FOCUS_LIMIT:
        focus = focus[:FOCUS_LIMIT - 3] + "..."
    text = (
        f"- **[Session {stamp.date} {stamp.time}]({stamp.shard_name}#{stamp.anchor})**"
        f" - {focus}"
    )
    return IndexEntry(anchor=stamp.anchor, text=text)


def index_section_for(summary: SessionSummary, sections: list[str]) -> str:
    """Decisions, then discoveries, then patterns; otherwise the catch-all."""
    named = [s for s in sections if s != SESSIONS_SECTION]
    for items, position in (
        (summary.decisions, 0),
        (summary.discoveries, 1),
        (summary.patterns, 2),
    ):
        if items and position < len(named):
            return named[position]
    return SESSIONS_SECTION


def empty_index(sections: list[str]) -> MemoryIndex:
    return MemoryIndex(INDEX_TITLE, [IndexSection(name) for name in sections])


def parse_index(content: str) -> MemoryIndex:
    title: list[str] = []
    index = MemoryIndex(INDEX_TITLE)
    for line in content.split("\n"):
        if line.startswith("## "):
            index.sections.append(IndexSection(line[3:].strip()))
        elif not index.sections:
            title.append(line)
        elif line.startswith("- "):
            index.sections[-1].entries.append(IndexEntry(anchor=link_anchor(line), text=line))
        elif line.strip():
            index.sections[-1].notes.append(line)
    index.title = "\n".join(title).strip() or INDEX_TITLE
    return index


def render_index(index: MemoryIndex) -> str:
    parts = [index.title]
    for section in index.sections:
        lines = [f"## {section.name}"]
        if section.entries:
            lines.extend(["", *(e.text for e in section.entries)])
        if section.notes:
            lines.extend(["", *section.notes])
        parts.append("\n".join(lines))
    return "\n\n".join(parts) + "\n"


def default_index(sections: list[str]) -> str:
    return render_index(empty_index(sections))


def upsert_index(
    content: str | None, entry: IndexEntry, section: str, sections: list[str]
) -> str:
    """File ``entry`` as the newest line of ``section``.

    Any earlier entry with the same anchor is replaced, wherever it was
    filed, and other repeated entries collapse to their first occurrence.
    """
    index = parse_index(content) if content is not None else empty_index(sections)
    seen = {entry.key}
    for existing in index.sections:
        kept = []
        for item in existing.entries:
            if item.key in seen:
                continue
            seen.add(item.key)
            kept.append(item)
        existing.entries = kept
    index.section(section).entries.insert(0, entry)
    return render_index(index)


# ── NOW & log ─────────────────────────────────────────────

def session_header(body: str) -> str:
    lines = body.split("\n")
    for prefix in ("# Session: ", "# "):
        for line in lines:
            if line.startswith(prefix):
                return line
    return "# Session: unknown"


def is_cleared(body: str) -> bool:
    """True when the body holds nothing but its session heading."""
    return body.strip() == session_header(body).strip()


def cleared_now(metadata: dict, order: tuple[str, ...], body: str) -> str:
    return render_document(metadata, f"{session_header(body)}\n\n", order)


def build_log_entry(
    files: list[str], summary: SessionSummary, strategy: str, now: datetime | None = None
) -> str:
    stamp = iso_timestamp(now).replace("T", " ").replace("Z", " UTC")
    lines = [f"[{stamp}] ACTION: Consolidate NOW→RECENT→MEMORY ({strategy})", "  Files:"]
    lines.extend(f"    - {f}" for f in files)
    lines.append(
        f"  Extracted: {len(summary.decisions)} decisions, "
        f"{len(summary.discoveries)} discoveries, {len(summary.patterns)} patterns"
    )
    lines.append("")
    return "\n".join(lines)


def updated_log(existing: str | None, entry: str) -> tuple[str, bool]:
    """New log content, and whether the existing log must be rotated first."""
    if existing is not None and count_lines(existing) > LOG_ROTATION_LINES:
        return entry + "\n", True
    return (existing or "") + entry + "\n", False
