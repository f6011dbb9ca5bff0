"""File layout of a memory root and read-only queries over it.

A memory root holds the NOW transcripts, the RECENT digest, the MEMORY
index and per-date shards, the consolidation log, and the small pointer and
lock files that coordinate writers. The store never writes memory content
itself; it only knows where things live.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from strata.memory.frontmatter import parse_document
from strata.memory.util import count_lines

logger = logging.getLogger(__name__)

NOW_GLOB = "NOW-*.md"
SHARD_GLOB = "MEMORY-*.md"
NOW_RETENTION_DAYS = 3

GITIGNORE = "*.tmp*\n*.bak*\n.*.lock\nconsolidation.log.old\n"

_LOG_TIMESTAMP = re.compile(r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}(?:\.\d+)? UTC)\]")
_KIND_ORDER = {"NOW": 0, "RECENT": 1, "MEMORY": 2}


@dataclass
class FileEntry:
    kind: str
    path: Path
    size: int
    modified: float
    lines: int
    current: bool = False


@dataclass
class MemoryStatus:
    root: Path
    initialized: bool
    now_path: Path | None = None
    now_lines: int = 0
    now_age_minutes: float | None = None
    now_bytes: int = 0
    recent_lines: int = 0
    last_consolidation: str | None = None
    total_bytes: int = 0


@dataclass
class LogTail:
    lines: list[str]
    total_lines: int
    truncated: bool


class MemoryStore:
    """Paths and queries for one memory root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    # ── Layout ────────────────────────────────────────────

    @property
    def recent_file(self) -> Path:
        return self.root / "RECENT.md"

    @property
    def index_file(self) -> Path:
        return self.root / "MEMORY.md"

    @property
    def log_file(self) -> Path:
        return self.root / "consolidation.log"

    @property
    def rotated_log_file(self) -> Path:
        return self.root / "consolidation.log.old"

    @property
    def current_pointer(self) -> Path:
        return self.root / ".current"

    @property
    def memory_lock_file(self) -> Path:
        return self.root / ".memory.lock"

    @property
    def now_lock_file(self) -> Path:
        return self.root / ".now.lock"

    def shard_file(self, day: str) -> Path:
        return self.root / f"MEMORY-{day}.md"

    def new_now_path(self, moment: datetime) -> Path:
        """Pick a fresh NOW filename; collisions get a -2, -3, ... suffix."""
        stamp = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        path = self.root / f"NOW-{stamp}.md"
        counter = 2
        while path.exists():
            path = self.root / f"NOW-{stamp}-{counter}.md"
            counter += 1
        return path

    def is_initialized(self) -> bool:
        return self.root.is_dir()

    def ensure_initialized(self) -> None:
        """Create the root, its .gitignore and an empty log. Idempotent."""
        self.root.mkdir(parents=True, exist_ok=True)
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(GITIGNORE, encoding="utf-8")
        if not self.log_file.exists():
            self.log_file.write_text("", encoding="utf-8")

    # ── NOW files & pointer ───────────────────────────────

    def now_files(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob(NOW_GLOB))

    def shard_files(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(self.root.glob(SHARD_GLOB))

    def current_session_path(self) -> Path | None:
        """The NOW file named by the pointer, if it still exists."""
        try:
            name = self.current_pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not name:
            return None
        path = self.root / Path(name).name
        return path if path.exists() else None

    def resolve_current_session_path(self, allow_fallback: bool = True) -> Path | None:
        """Pointer target, else the most recently modified NOW file."""
        path = self.current_session_path()
        if path is not None or not allow_fallback:
            return path
        candidates = self.now_files()
        if not candidates:
            return None
        return max(candidates, key=lambda p: (p.stat().st_mtime, p.name))

    def set_current(self, path: Path) -> None:
        self.current_pointer.write_text(path.name + "\n", encoding="utf-8")

    def clear_current(self) -> None:
        self.current_pointer.unlink(missing_ok=True)

    def cleanup_old_now_files(
        self,
        keep: set[Path] | None = None,
        retention_days: int = NOW_RETENTION_DAYS,
    ) -> list[Path]:
        """Delete NOW files untouched for longer than the retention window."""
        keep = {p.resolve() for p in (keep or set())}
        current = self.current_session_path()
        if current is not None:
            keep.add(current.resolve())
        cutoff = time.time() - retention_days * 86400
        removed: list[Path] = []
        for path in self.now_files():
            if path.resolve() in keep:
                continue
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed.append(path)
        if removed:
            logger.info("Pruned %d NOW file(s) older than %d days", len(removed), retention_days)
        return removed

    # ── Queries ───────────────────────────────────────────

    def imported_sessions(self) -> set[str]:
        """Every session id already listed in a shard's source_sessions."""
        sessions: set[str] = set()
        for shard in self.shard_files():
            doc = parse_document(shard.read_text(encoding="utf-8"))
            source = doc.metadata.get("source_sessions") or []
            if isinstance(source, list):
                sessions.update(str(s) for s in source)
        return sessions

    def list_entries(self) -> list[FileEntry]:
        """NOW, RECENT and MEMORY files ordered by kind, then newest first."""
        if not self.root.is_dir():
            return []
        current = self.current_session_path()
        paths: list[tuple[str, Path]] = [("NOW", p) for p in self.now_files()]
        if self.recent_file.exists():
            paths.append(("RECENT", self.recent_file))
        if self.index_file.exists():
            paths.append(("MEMORY", self.index_file))
        paths.extend(("MEMORY", p) for p in self.shard_files())

        entries = []
        for kind, path in paths:
            stat = path.stat()
            entries.append(
                FileEntry(
                    kind=kind,
                    path=path,
                    size=stat.st_size,
                    modified=stat.st_mtime,
                    lines=count_lines(path.read_text(encoding="utf-8")),
                    current=current is not None and path == current,
                )
            )
        entries.sort(key=lambda e: (_KIND_ORDER[e.kind], -e.modified, e.path.name))
        return entries

    def last_consolidation(self) -> str | None:
        if not self.log_file.exists():
            return None
        last = None
        for line in self.log_file.read_text(encoding="utf-8").split("\n"):
            match = _LOG_TIMESTAMP.match(line)
            if match:
                last = match.group(1)
        return last

    def status(self) -> MemoryStatus:
        status = MemoryStatus(root=self.root, initialized=self.is_initialized())
        if not status.initialized:
            return status
        now_path = self.resolve_current_session_path()
        if now_path is not None:
            stat = now_path.stat()
            status.now_path = now_path
            status.now_lines = count_lines(now_path.read_text(encoding="utf-8"))
            status.now_bytes = stat.st_size
            status.now_age_minutes = (time.time() - stat.st_mtime) / 60
        if self.recent_file.exists():
            status.recent_lines = count_lines(self.recent_file.read_text(encoding="utf-8"))
        status.last_consolidation = self.last_consolidation()
        status.total_bytes = sum(p.stat().st_size for p in self.root.iterdir() if p.is_file())
        return status

    def read_log(self, tail: int | None = None) -> LogTail:
        if not self.log_file.exists():
            return LogTail(lines=[], total_lines=0, truncated=False)
        lines = self.log_file.read_text(encoding="utf-8").rstrip("\n").split("\n")
        if lines == [""]:
            lines = []
        total = len(lines)
        if tail is not None and tail >= 0 and total > tail:
            return LogTail(lines=lines[total - tail:] if tail else [], total_lines=total, truncated=True)
        return LogTail(lines=lines, total_lines=total, truncated=False)


def age_hours(start: datetime, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    return (now - start) / timedelta(hours=1)
