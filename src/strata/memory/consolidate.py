"""NOW → RECENT → MEMORY consolidation.

One run reads a NOW transcript, summarizes it, and rewrites five files in a
single atomic commit: the RECENT digest, the date shard, the MEMORY index,
the cleared NOW file and the consolidation log. A NOW with nothing after
its header is skipped. Entries appended after an earlier run are folded
into the summary that run recorded, and every write is an anchor-keyed
replace, so re-running on a partially applied session converges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from strata.config import MemoryConfig
from strata.errors import UserInputError
from strata.memory import content
from strata.memory.commit import AtomicCommitter, WriteTarget
from strata.memory.frontmatter import NOW_KEYS, parse_document
from strata.memory.lock import MemoryLock
from strata.memory.store import MemoryStore
from strata.memory.summarize import SessionSummary, Summarizer, build_summarizer
from strata.memory.util import count_lines, normalize_tags, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ConsolidationPreview:
    recent_lines: int = 0
    memory_lines: int = 0
    index_lines: int = 0
    log_lines: int = 0
    now_lines: int = 0


@dataclass
class ConsolidationResult:
    now_path: Path
    recent_path: Path
    memory_path: Path
    index_path: Path
    log_path: Path
    anchor: str
    dry_run: bool = False
    skipped: bool = False
    preview: ConsolidationPreview = field(default_factory=ConsolidationPreview)
    summary: SessionSummary | None = None
    pruned: list[Path] = field(default_factory=list)


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _duration_minutes(metadata: dict, now) -> int | float:
    value = metadata.get("duration_minutes")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return value
    start = parse_timestamp(metadata.get("timestamp_start")) or now
    end = parse_timestamp(metadata.get("timestamp_end")) or now
    return max(1, round((end - start).total_seconds() / 60))


class ConsolidationEngine:
    """Move one NOW session into RECENT, its MEMORY shard and the index."""

    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig,
        summarizer: Summarizer | None = None,
        committer: AtomicCommitter | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.summarizer = summarizer or build_summarizer(config)
        self.committer = committer or AtomicCommitter()

    async def consolidate(
        self,
        now_path: Path | None = None,
        *,
        dry_run: bool = False,
        skip_cleanup: bool = False,
    ) -> ConsolidationResult:
        """Consolidate ``now_path`` (default: the current session).

        A dry run computes the same content without locking or writing and
        reports projected line counts; it requires an initialized root.
        """
        if dry_run:
            if not self.store.is_initialized():
                raise UserInputError("Memory directory not initialized. Run: strata init")
            return await self._run(now_path, dry_run=True, skip_cleanup=True)

        self.store.ensure_initialized()
        async with MemoryLock(self.store.memory_lock_file).hold_async():
            return await self._run(now_path, dry_run=False, skip_cleanup=skip_cleanup)

    async def _run(
        self, now_path: Path | None, *, dry_run: bool, skip_cleanup: bool
    ) -> ConsolidationResult:
        store = self.store
        path = Path(now_path) if now_path else store.resolve_current_session_path()
        if path is None or not path.exists():
            raise UserInputError("No active NOW session found.")

        doc = parse_document(path.read_text(encoding="utf-8"))
        metadata = doc.metadata
        now = utc_now()
        stamp = content.SessionStamp(
            session_id=str(metadata.get("session_id") or "unknown"),
            start=parse_timestamp(metadata.get("timestamp_start")) or now,
        )
        shard_path = store.shard_file(stamp.date)
        shard_text = _read(shard_path)

        result = ConsolidationResult(
            now_path=path,
            recent_path=store.recent_file,
            memory_path=shard_path,
            index_path=store.index_file,
            log_path=store.log_file,
            anchor=stamp.anchor,
            dry_run=dry_run,
        )

        if content.is_cleared(doc.body):
            logger.info("Session %s has nothing new to consolidate", stamp.session_id)
            result.skipped = True
            return result

        summary = await self.summarizer.summarize(doc.body)
        previous = content.find_shard_section(shard_text, stamp.anchor)
        if previous is not None:
            # Consolidated before; keep what the earlier run recorded.
            summary = content.combine_summaries(content.section_summary(previous), summary)
        duration = _duration_minutes(metadata, now)

        recent = content.upsert_recent(
            _read(store.recent_file),
            content.build_recent_entry(stamp, duration, summary),
            self.config.recent_session_count,
            self.config.recent_max_lines,
        )
        shard = content.upsert_shard(
            shard_text,
            stamp.session_id,
            normalize_tags(metadata.get("tags")),
            content.build_shard_section(stamp, summary),
            now,
        )
        index = content.upsert_index(
            _read(store.index_file),
            content.build_index_entry(stamp, summary),
            content.index_section_for(summary, self.config.memory_sections),
            self.config.memory_sections,
        )
        cleared = content.cleared_now(
            {**metadata, "duration_minutes": duration},
            tuple(metadata) or NOW_KEYS,
            doc.body,
        )
        log_entry = content.build_log_entry(
            [str(path), str(store.recent_file), str(shard_path)],
            summary,
            self.summarizer.name,
            now,
        )
        log_text, rotate = content.updated_log(_read(store.log_file), log_entry)

        result.summary = summary
        result.preview = ConsolidationPreview(
            recent_lines=count_lines(recent),
            memory_lines=count_lines(shard),
            index_lines=count_lines(index),
            log_lines=count_lines(log_entry),
            now_lines=count_lines(cleared),
        )
        if dry_run:
            return result

        self.committer.commit_all(
            [
                WriteTarget(store.recent_file, recent),
                WriteTarget(shard_path, shard),
                WriteTarget(store.index_file, index),
                WriteTarget(path, cleared),
                WriteTarget(
                    store.log_file,
                    log_text,
                    rotate_to=store.rotated_log_file if rotate else None,
                ),
            ]
        )
        logger.info(
            "Consolidated %s into %s (%d decisions, %d discoveries)",
            stamp.session_id, shard_path.name, len(summary.decisions), len(summary.discoveries),
        )
        if not skip_cleanup:
            result.pruned = store.cleanup_old_now_files(keep={path})
        return result
