"""Import externally produced session summaries into long-term memory.

Summary files (``OPENCODE-SUMMARY-*.md``) carry session metadata in
frontmatter and ``## Focus`` / ``## Decisions`` / ... bullet sections. Each
one is rendered as a synthetic NOW transcript with decision, discovery and
pattern markers, then consolidated like any live session.
"""

from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from strata.errors import UserInputError
from strata.memory.consolidate import ConsolidationEngine
from strata.memory.frontmatter import NOW_KEYS, parse_document, render_document
from strata.memory.summarize import TASK_PATTERN
from strata.memory.util import iso_timestamp, parse_timestamp, unique, utc_now

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "OPENCODE-SUMMARY-"
IMPORT_TAGS = ["opencode", "recall"]

_TITLE = re.compile(r"^#\s+Session Summary:\s*(.+)$", re.MULTILINE)
_SECTION = re.compile(r"^##\s+(.+)")


@dataclass
class ImportedSummary:
    session_id: str
    project_id: str | None
    created_at: str
    updated_at: str
    directory: str | None
    title: str | None
    focus: str
    decisions: list[str] = field(default_factory=list)
    discoveries: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    tasks: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


@dataclass
class SkippedSummary:
    path: Path
    reason: str
    session_id: str | None = None


@dataclass
class ImportResult:
    summary_dir: Path
    dry_run: bool
    total: int = 0
    imported: int = 0
    skipped_existing: int = 0
    skipped_invalid: int = 0
    skipped_filtered: int = 0
    imported_sessions: list[str] = field(default_factory=list)
    skipped: list[SkippedSummary] = field(default_factory=list)


def _text(value) -> str | None:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _sections(body: str) -> dict[str, list[str]]:
    sections: dict[str, list[str]] = {}
    current = None
    for line in body.split("\n"):
        match = _SECTION.match(line)
        if match:
            current = match.group(1).strip()
            sections.setdefault(current, [])
        elif current is not None:
            sections[current].append(line)
    return sections


def _items(lines: list[str] | None) -> list[str]:
    items = []
    for line in lines or []:
        item = " ".join(re.sub(r"^\s*[-*]\s*", "", line).split())
        if item and item.lower() != "none":
            items.append(item)
    return unique(items)


def parse_summary_file(text: str) -> ImportedSummary | None:
    """Parse one summary file; None when it lacks frontmatter or a session id."""
    doc = parse_document(text)
    session_id = _text(doc.metadata.get("session_id"))
    if not doc.has_frontmatter or not session_id:
        return None

    created = parse_timestamp(doc.metadata.get("created_at")) or parse_timestamp(
        doc.metadata.get("updated_at")
    ) or utc_now()
    updated = parse_timestamp(doc.metadata.get("updated_at")) or created
    updated = max(updated, created)

    title_match = _TITLE.search(doc.body)
    title = _text(doc.metadata.get("title")) or (_text(title_match.group(1)) if title_match else None)
    sections = _sections(doc.body)
    focus_items = _items(sections.get("Focus"))
    return ImportedSummary(
        session_id=session_id,
        project_id=_text(doc.metadata.get("project_id")),
        created_at=iso_timestamp(created),
        updated_at=iso_timestamp(updated),
        directory=_text(doc.metadata.get("directory")),
        title=title,
        focus=(focus_items[0] if focus_items else None) or title or f"Recall import {session_id}",
        decisions=_items(sections.get("Decisions")),
        discoveries=_items(sections.get("Discoveries")),
        patterns=_items(sections.get("Patterns")),
        tasks=_items(sections.get("Tasks")),
        files=_items(sections.get("Files")),
    )


def build_now_document(summary: ImportedSummary) -> str:
    """Render an imported summary as a NOW transcript with markers."""
    start = parse_timestamp(summary.created_at)
    end = parse_timestamp(summary.updated_at)
    duration = max(1, round((end - start).total_seconds() / 60))
    metadata = {
        "session_id": summary.session_id,
        "timestamp_start": summary.created_at,
        "timestamp_end": summary.updated_at,
        "duration_minutes": duration,
        "project_path": summary.directory or str(Path.cwd()),
        "tags": IMPORT_TAGS,
        "parent_session": None,
        "related_tasks": unique(m.group(0) for t in summary.tasks for m in TASK_PATTERN.finditer(t)),
        "memory_type": "NOW",
    }
    lines = [f"# Session: {summary.session_id} - {start:%Y-%m-%d %H:%M} UTC", "", f"## User: {summary.focus}"]
    for marker, items in (
        ("@decision", summary.decisions),
        ("@discovery", summary.discoveries),
        ("@pattern", summary.patterns),
    ):
        if items:
            lines.append("")
            lines.extend(f"{marker}: {item}" for item in items)
    for heading, items in (("## Tasks", summary.tasks), ("## Files", summary.files)):
        if items:
            lines.extend(["", heading, *(f"- {item}" for item in items)])
    lines.append("")
    return render_document(metadata, "\n".join(lines), NOW_KEYS)


class SummaryImporter:
    def __init__(self, engine: ConsolidationEngine) -> None:
        self.engine = engine
        self.store = engine.store

    async def import_dir(
        self,
        summary_dir: Path,
        *,
        project_id: str | None = None,
        session_id: str | None = None,
        dry_run: bool = False,
    ) -> ImportResult:
        summary_dir = Path(summary_dir)
        if not summary_dir.is_dir():
            raise UserInputError(f"Summary directory not found: {summary_dir}")
        if dry_run:
            if not self.store.is_initialized():
                raise UserInputError("Memory directory not initialized. Run: strata init")
        else:
            self.store.ensure_initialized()

        files = sorted(p for p in summary_dir.glob(f"{SUMMARY_PREFIX}*.md") if p.is_file())
        result = ImportResult(summary_dir=summary_dir, dry_run=dry_run, total=len(files))
        existing = self.store.imported_sessions()
        project_id = (project_id or "").strip() or None
        session_id = (session_id or "").strip() or None

        with tempfile.TemporaryDirectory(prefix="strata-import-") as tmp:
            for number, path in enumerate(files, start=1):
                try:
                    parsed = parse_summary_file(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as e:
                    logger.warning("Skipping %s: %s", path.name, e)
                    parsed = None
                if parsed is None:
                    result.skipped_invalid += 1
                    result.skipped.append(SkippedSummary(path, "Missing or invalid summary format"))
                    continue
                if session_id and parsed.session_id != session_id:
                    result.skipped_filtered += 1
                    result.skipped.append(
                        SkippedSummary(path, f"Filtered by session id ({session_id})", parsed.session_id)
                    )
                    continue
                if project_id and parsed.project_id != project_id:
                    result.skipped_filtered += 1
                    result.skipped.append(
                        SkippedSummary(path, f"Filtered by project id ({project_id})", parsed.session_id)
                    )
                    continue
                if parsed.session_id in existing:
                    result.skipped_existing += 1
                    result.skipped.append(
                        SkippedSummary(path, "Session already imported", parsed.session_id)
                    )
                    continue

                now_path = Path(tmp) / f"NOW-import-{number}.md"
                now_path.write_text(build_now_document(parsed), encoding="utf-8")
                await self.engine.consolidate(now_path, dry_run=dry_run, skip_cleanup=True)
                if not dry_run:
                    existing.add(parsed.session_id)
                    result.imported_sessions.append(parsed.session_id)
                    result.imported += 1

        logger.info(
            "Imported %d of %d summaries (%d existing, %d invalid, %d filtered)",
            result.imported, result.total, result.skipped_existing,
            result.skipped_invalid, result.skipped_filtered,
        )
        return result
