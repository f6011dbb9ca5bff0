"""Map-reduce helpers for summarizing transcripts too large for one call.

A transcript is split into blank-line separated blocks and packed into
chunks. Each chunk is summarized on its own, then the partial summaries are
merged pass by pass under an estimated token budget until one remains.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "\n\n"
_SEPARATOR_LINES = 1
_BLANK_LINES = re.compile(r"\n[ \t]*\n+")


def _line_count(text: str) -> int:
    return len(text.split("\n")) if text else 0


def _require_positive(value, label: str) -> int:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{label} must be a positive number.")
    return int(value)


# ── Chunking ──────────────────────────────────────────────

@dataclass
class TranscriptChunk:
    index: int  # 1-based
    total: int
    content: str
    char_count: int
    line_count: int
    block_count: int


def split_blocks(text: str) -> list[str]:
    """Split at blank lines, dropping empty blocks."""
    return [block.strip("\n") for block in _BLANK_LINES.split(text.strip()) if block.strip()]


def plan_chunks(blocks: list[str], max_chars: int, max_lines: int) -> list[TranscriptChunk]:
    """Pack blocks into ordered chunks bounded by chars and lines.

    A chunk is closed before a block that would push it over either bound.
    Blocks are never split, so a single oversized block is its own chunk.
    """
    max_chars = _require_positive(max_chars, "max_chars")
    max_lines = _require_positive(max_lines, "max_lines")

    drafts: list[list[str]] = []
    current: list[str] = []
    chars = lines = 0
    for block in blocks:
        block = block or ""
        sep_chars = len(CHUNK_SEPARATOR) if current else 0
        sep_lines = _SEPARATOR_LINES if current else 0
        if current and (
            chars + len(block) + sep_chars > max_chars
            or lines + _line_count(block) + sep_lines > max_lines
        ):
            drafts.append(current)
            current, chars, lines = [], 0, 0
            sep_chars = sep_lines = 0
        current.append(block)
        chars += len(block) + sep_chars
        lines += _line_count(block) + sep_lines
    if current:
        drafts.append(current)

    chunks = []
    for i, draft in enumerate(drafts, start=1):
        content = CHUNK_SEPARATOR.join(draft)
        chunks.append(
            TranscriptChunk(
                index=i,
                total=len(drafts),
                content=content,
                char_count=len(content),
                line_count=_line_count(content),
                block_count=len(draft),
            )
        )
    return chunks


# ── Token estimates ───────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """Rough token count: four UTF-16 code units per token, rounded up."""
    return math.ceil(len(text.encode("utf-16-le", "surrogatepass")) // 2 / 4)


def estimate_summary_tokens(summary: Any) -> int:
    payload = summary.to_dict() if hasattr(summary, "to_dict") else summary
    return estimate_tokens(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


# ── Merging ───────────────────────────────────────────────

@dataclass
class SummaryItem:
    summary: Any
    est_tokens: int

    @classmethod
    def of(cls, summary: Any) -> SummaryItem:
        return cls(summary=summary, est_tokens=estimate_summary_tokens(summary))


@dataclass
class MergeContext:
    pass_number: int
    group_index: int  # 1-based
    group_count: int
    mode: str  # "budgeted" | "pair-fallback"


@dataclass
class MergePass:
    pass_number: int
    mode: str
    group_est_tokens: list[int]
    group_sizes: list[int]
    max_tokens_used: list[int | None]


@dataclass
class MergeResult:
    summary: Any
    passes: list[MergePass] = field(default_factory=list)


MergeHandler = Callable[[list[Any], MergeContext], Awaitable[tuple[Any, "int | None"]]]


def group_by_token_budget(items: list[SummaryItem], max_tokens: int) -> list[list[SummaryItem]]:
    """Group consecutive items; a group closes when the next item reaches the budget."""
    groups: list[list[SummaryItem]] = []
    current: list[SummaryItem] = []
    current_tokens = 0
    for item in items:
        if current and current_tokens + item.est_tokens >= max_tokens:
            groups.append(current)
            current, current_tokens = [], 0
        current.append(item)
        current_tokens += item.est_tokens
    if current:
        groups.append(current)
    return groups


def pair_groups(items: list[SummaryItem]) -> list[list[SummaryItem]]:
    return [items[i:i + 2] for i in range(0, len(items), 2)]


async def merge_summaries(
    items: list[SummaryItem], max_tokens: int, merge: MergeHandler
) -> MergeResult:
    """Reduce ``items`` to a single summary by repeated merge passes.

    Groups of one pass through unchanged; larger groups in the same pass are
    merged concurrently. If budgeting would leave every item alone the pass
    pairs neighbours instead, so each pass always makes progress.
    """
    if not items:
        raise ValueError("No summary items provided for merge.")
    max_tokens = _require_positive(max_tokens, "max_tokens")

    passes: list[MergePass] = []
    current = list(items)
    pass_number = 1
    while len(current) > 1:
        groups = group_by_token_budget(current, max_tokens)
        mode = "budgeted"
        if all(len(g) == 1 for g in groups):
            groups = pair_groups(current)
            mode = "pair-fallback"

        async def run(index: int, group: list[SummaryItem]) -> tuple[SummaryItem, int | None]:
            if len(group) == 1:
                return group[0], None
            context = MergeContext(pass_number, index, len(groups), mode)
            summary, used = await merge([item.summary for item in group], context)
            return SummaryItem.of(summary), used

        merged = await asyncio.gather(*(run(i, g) for i, g in enumerate(groups, start=1)))
        passes.append(
            MergePass(
                pass_number=pass_number,
                mode=mode,
                group_est_tokens=[sum(i.est_tokens for i in g) for g in groups],
                group_sizes=[len(g) for g in groups],
                max_tokens_used=[used for _, used in merged],
            )
        )
        logger.debug("Merge pass %d (%s): %d -> %d", pass_number, mode, len(current), len(merged))
        current = [item for item, _ in merged]
        pass_number += 1

    return MergeResult(summary=current[0].summary, passes=passes)
