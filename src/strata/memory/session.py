"""NOW session lifecycle: start, append, rollover and end."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from strata.config import MemoryConfig
from strata.errors import UserInputError
from strata.memory.consolidate import ConsolidationEngine, ConsolidationResult
from strata.memory.frontmatter import NOW_KEYS, Document, parse_document, render_document
from strata.memory.lock import NOW_LOCK_RETRIES, MemoryLock
from strata.memory.store import MemoryStore, age_hours
from strata.memory.util import (
    count_lines,
    iso_timestamp,
    merge_unique,
    normalize_tags,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

EntryKind = Literal["user", "agent", "tool"]


@dataclass
class SessionInfo:
    path: Path
    session_id: str


def format_entry(kind: EntryKind, text: str, summary: str | None = None) -> str:
    text = text.strip()
    if kind == "user":
        return f"## User: {text}"
    if kind == "agent":
        return f"## Agent: {text}"
    if kind == "tool":
        details = f" - {summary.strip()}" if summary and summary.strip() else ""
        return f"[Tool: {text}{details}]"
    raise UserInputError(f"Unknown entry kind: {kind!r} (expected user, agent or tool)")


class SessionCapture:
    """Writes the current NOW transcript of one memory root."""

    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig,
        engine: ConsolidationEngine | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self._engine = engine

    @property
    def engine(self) -> ConsolidationEngine:
        if self._engine is None:
            self._engine = ConsolidationEngine(self.store, self.config)
        return self._engine

    # ── Lifecycle ─────────────────────────────────────────

    def start(
        self,
        project_path: str | None = None,
        tags: list[str] | None = None,
        parent_session: str | None = None,
        related_tasks: list[str] | None = None,
    ) -> SessionInfo:
        """Create a fresh NOW file and point ``.current`` at it."""
        self.store.ensure_initialized()
        started = utc_now()
        session_id = f"sess_{uuid.uuid4().hex}"
        metadata = {
            "session_id": session_id,
            "timestamp_start": iso_timestamp(started),
            "timestamp_end": None,
            "duration_minutes": None,
            "project_path": project_path or os.getcwd(),
            "tags": normalize_tags(tags),
            "parent_session": parent_session,
            "related_tasks": normalize_tags(related_tasks),
            "memory_type": "NOW",
        }
        header = f"# Session: {session_id} - {started:%Y-%m-%d %H:%M} UTC"
        path = self.store.new_now_path(started)
        path.write_text(render_document(metadata, f"{header}\n\n", NOW_KEYS), encoding="utf-8")
        self.store.set_current(path)
        logger.info("Started session %s (%s)", session_id, path.name)
        return SessionInfo(path=path, session_id=session_id)

    def end(self) -> Path:
        """Stamp end time and duration on the current session and clear the pointer."""
        path = self.store.resolve_current_session_path(allow_fallback=True)
        if path is None:
            raise UserInputError("No active NOW session found.")
        doc = parse_document(path.read_text(encoding="utf-8"))
        ended = utc_now()
        start = parse_timestamp(doc.metadata.get("timestamp_start")) or ended
        metadata = {
            **doc.metadata,
            "timestamp_end": iso_timestamp(ended),
            "duration_minutes": round((ended - start).total_seconds() / 60),
        }
        path.write_text(
            render_document(metadata, doc.body + "\n", tuple(doc.metadata) or NOW_KEYS),
            encoding="utf-8",
        )
        self.store.clear_current()
        logger.info("Ended session %s", metadata.get("session_id"))
        return path

    async def end_and_consolidate(self) -> ConsolidationResult:
        path = self.end()
        return await self.engine.consolidate(path)

    # ── Appending ─────────────────────────────────────────

    def should_rollover(self, text: str, doc: Document, path: Path, now: datetime | None = None) -> bool:
        if count_lines(text) >= self.config.now_max_lines:
            return True
        start = parse_timestamp(doc.metadata.get("timestamp_start"))
        if start is None:
            start = datetime.fromtimestamp(path.stat().st_mtime).astimezone()
        return age_hours(start, now) >= self.config.now_max_hours

    async def append(
        self,
        kind: EntryKind,
        text: str,
        tags: list[str] | None = None,
        summary: str | None = None,
    ) -> Path:
        """Append one entry to the current NOW, rolling over first if it is full or old."""
        entry = format_entry(kind, text, summary)
        async with MemoryLock(self.store.now_lock_file, retries=NOW_LOCK_RETRIES).hold_async():
            path = self.store.resolve_current_session_path(allow_fallback=True)
            if path is None:
                raise UserInputError("No active NOW session found. Run: strata session start")
            raw = path.read_text(encoding="utf-8")
            doc = parse_document(raw)

            if self.should_rollover(raw, doc, path):
                path = await self._rollover(path, raw, doc)
                doc = parse_document(path.read_text(encoding="utf-8"))

            metadata = {**doc.metadata, "tags": merge_unique(doc.metadata.get("tags"), tags)}
            body = f"{doc.body}\n\n{entry}\n"
            path.write_text(
                render_document(metadata, body, tuple(doc.metadata) or NOW_KEYS), encoding="utf-8"
            )
        return path

    async def _rollover(self, path: Path, raw: str, doc: Document) -> Path:
        """End and consolidate the full session at ``path``, then start its successor.

        If consolidation fails the old NOW is put back as it was, still open
        and still current, so no captured entry is stranded.
        """
        parent = doc.metadata.get("session_id")
        logger.info("Session %s is full, rolling over", parent)
        was_current = self.store.current_session_path() == path
        ended = self.end()
        try:
            await self.engine.consolidate(ended)
        except BaseException:
            logger.warning("Rollover of session %s failed, reopening it", parent)
            ended.write_text(raw, encoding="utf-8")
            if was_current:
                self.store.set_current(ended)
            raise
        return self.start(
            project_path=doc.metadata.get("project_path"),
            tags=doc.metadata.get("tags"),
            parent_session=str(parent) if parent else None,
            related_tasks=doc.metadata.get("related_tasks"),
        ).path

    async def append_user(self, message: str, tags: list[str] | None = None) -> Path:
        return await self.append("user", message, tags)

    async def append_agent(self, message: str, tags: list[str] | None = None) -> Path:
        return await self.append("agent", message, tags)

    async def append_tool(self, tool_name: str, summary: str | None = None) -> Path:
        return await self.append("tool", tool_name, summary=summary)
