"""Session summarization: mechanical extraction or LLM synthesis.

Both strategies produce a ``SessionSummary``. The LLM shape is canonical;
the mechanical one fills the subset that can be recovered from explicit
markers (``@decision:``, ``@discovery:``, ``@pattern:``) and leaves the
reflective fields empty.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from strata.config import LLMConfig, MemoryConfig
from strata.engines.base import LLMClient, LLMMessage
from strata.errors import SummaryFormatError
from strata.memory.reduce import (
    MergeContext,
    SummaryItem,
    merge_summaries,
    plan_chunks,
    split_blocks,
)
from strata.memory.util import unique

logger = logging.getLogger(__name__)


class SummaryPayload(BaseModel):
    """Wire shape of an LLM summary: exactly these keys, strict types."""

    model_config = ConfigDict(extra="forbid", strict=True, str_strip_whitespace=True)

    narrative: str
    decisions: list[str]
    discoveries: list[str]
    what_worked: list[str] = Field(alias="whatWorked")
    what_failed: list[str] = Field(alias="whatFailed")
    open_questions: list[str] = Field(alias="openQuestions")
    next_steps: list[str] = Field(alias="nextSteps")
    tasks: list[str]
    files: list[str]


@dataclass
class SessionSummary:
    narrative: str = ""
    decisions: list[str] = field(default_factory=list)
    discoveries: list[str] = field(default_factory=list)
    what_worked: list[str] = field(default_factory=list)
    what_failed: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    tasks: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    # Only filled by mechanical extraction; not part of the LLM contract.
    patterns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """The summary under its wire keys, in prompt order."""
        return {
            info.alias or name: getattr(self, name)
            for name, info in SummaryPayload.model_fields.items()
        }


@runtime_checkable
class Summarizer(Protocol):
    """Anything that turns a NOW body into a SessionSummary."""

    @property
    def name(self) -> str: ...

    async def summarize(self, body: str) -> SessionSummary: ...


# ── JSON contract ─────────────────────────────────────────

_FENCE = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n?```")


def extract_json_object(content: str) -> str:
    """Locate the JSON object in an LLM reply that may carry fences or prose."""
    trimmed = content.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed
    fence = _FENCE.search(trimmed)
    if fence:
        inner = fence.group(1).strip()
        if inner.startswith("{") and inner.endswith("}"):
            return inner
    start, end = trimmed.find("{"), trimmed.rfind("}")
    if start == -1 or end <= start:
        raise SummaryFormatError("LLM response does not contain a JSON object.", content)
    return trimmed[start:end + 1]


def _error_path(loc: tuple) -> str:
    path = ""
    for part in loc:
        path += f"[{part}]" if isinstance(part, int) else (f".{part}" if path else str(part))
    return path or "summary"


def format_validation_error(e: ValidationError) -> str:
    problems = [f'"{_error_path(err["loc"])}": {err["msg"]}' for err in e.errors()]
    return "Summary does not match the expected shape: " + "; ".join(problems)


def parse_summary_json(content: str) -> SessionSummary:
    """Parse and strictly validate an LLM summary reply."""
    try:
        raw = json.loads(extract_json_object(content))
    except json.JSONDecodeError as e:
        raise SummaryFormatError(f"Failed to parse LLM JSON response: {e}", content) from e
    if not isinstance(raw, dict):
        raise SummaryFormatError("Summary response is not an object.", content)
    try:
        payload = SummaryPayload.model_validate(raw)
    except ValidationError as e:
        raise SummaryFormatError(format_validation_error(e), content) from e
    return SessionSummary(**payload.model_dump())


# ── Mechanical strategy ───────────────────────────────────

FILE_PATTERN = re.compile(
    r"\b[\w./-]+\.(?:ts|tsx|js|jsx|json|md|yaml|yml|sql|sh|go|py|rs)\b", re.IGNORECASE
)
TASK_PATTERN = re.compile(r"\btkt[-_][a-zA-Z0-9_-]+\b")
_GOAL_LINE = re.compile(r"^\s*[-*]?\s*Goal alignment\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_USER_LINE = re.compile(r"^## User:\s*(.+)$", re.MULTILINE)
_CHANGES_LINE = re.compile(r"^\s*[-*]?\s*Changes:\s*(.+)$", re.IGNORECASE)


def _marker(name: str) -> re.Pattern:
    return re.compile(rf"@{name}\b[:\s-]*(.+)", re.IGNORECASE)


_DECISION = _marker("decision")
_DISCOVERY = _marker("discovery")
_PATTERN = _marker("pattern")
NO_SUMMARY = "No summary available."


def _extract_markers(body: str, pattern: re.Pattern) -> list[str]:
    found = []
    for line in body.split("\n"):
        match = pattern.search(line)
        if match and match.group(1).strip():
            found.append(match.group(1).strip())
    return unique(found)


def _extract_narrative(body: str) -> str:
    for pattern in (_GOAL_LINE, _USER_LINE):
        match = pattern.search(body)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return NO_SUMMARY


def _extract_files(body: str) -> list[str]:
    changes: list[str] = []
    for line in body.split("\n"):
        match = _CHANGES_LINE.match(line)
        if not match:
            continue
        value = match.group(1).strip()
        if value.lower() in ("none", "n/a"):
            continue
        changes.extend(m.group(0) for m in FILE_PATTERN.finditer(value))
    if changes:
        return unique(changes)
    return unique(m.group(0) for m in FILE_PATTERN.finditer(body))


def mechanical_summary(body: str) -> SessionSummary:
    return SessionSummary(
        narrative=_extract_narrative(body),
        decisions=_extract_markers(body, _DECISION),
        discoveries=_extract_markers(body, _DISCOVERY),
        tasks=unique(m.group(0) for m in TASK_PATTERN.finditer(body)),
        files=_extract_files(body),
        patterns=_extract_markers(body, _PATTERN),
    )


class MechanicalSummarizer:
    @property
    def name(self) -> str:
        return "mechanical"

    async def summarize(self, body: str) -> SessionSummary:
        return mechanical_summary(body)


# ── LLM strategy ──────────────────────────────────────────

SYSTEM_PROMPT = """You summarize the work recorded in a NOW file.

A NOW file is an append log written by an AI coding agent during a session.
Entries are user turns (## User:), agent turns (## Agent:), tool calls
([Tool: ...]) and structured task-loop records with fields like:
  Goal alignment: ...
  Task: ...
  Changes: ...
  Outcome: ...

Return JSON only. No markdown, no backticks, no fences.

Required keys (in this order):
  narrative       - 2-4 sentence paragraph synthesising what was done and why.
                    Write prose, not bullet points.
  decisions       - array of strings. Each is a decision made during the session
                    with a brief "because..." clause. Empty array if none.
  discoveries     - array of strings. Things that were surprising, non-obvious,
                    or newly understood. Empty array if none.
  whatWorked      - array of strings. Approaches that succeeded and are worth
                    repeating. Empty array if nothing notable.
  whatFailed      - array of strings. Approaches tried and abandoned, with why.
                    Empty array if nothing failed.
  openQuestions   - array of strings. Unresolved questions or risks to watch.
                    Empty array if none.
  nextSteps       - array of strings. Concrete follow-on work stated or implied.
                    Empty array if none.
  tasks           - array of task IDs (tkt-* or tkt_*) mentioned. Empty array if none.
  files           - array of source file paths explicitly mentioned in Changes fields.
                    Only real paths, no guesses. Empty array if none.

Rules:
- Use only facts present in the NOW content. Do not invent.
- Each array item is a complete sentence or phrase, not a fragment.
- If the session content is sparse or unclear, write a short honest narrative
  and return empty arrays for most fields."""

MERGE_PROMPT = """You merge several partial summaries of one coding session into one.

Each input is a JSON object with the keys narrative, decisions, discoveries,
whatWorked, whatFailed, openQuestions, nextSteps, tasks, files, covering
consecutive parts of the same session in order.

Return JSON only, with exactly the same keys. Write one narrative covering
the whole session. Combine the arrays, dropping duplicates and items that a
later part shows were resolved. Do not invent facts."""


class LLMSummarizer:
    """Summarize through an LLM, chunking and merging oversized transcripts."""

    def __init__(self, client: LLMClient, llm_config: LLMConfig | None = None) -> None:
        self.client = client
        self.config = llm_config or LLMConfig()

    @property
    def name(self) -> str:
        return f"llm:{self.client.name}"

    async def _ask(self, system: str, user: str) -> tuple[SessionSummary, int | None]:
        response = await self.client.call_with_retry(
            [LLMMessage("system", system), LLMMessage("user", user)],
            max_tokens=self.config.max_tokens,
            token_step=self.config.token_step,
            max_tokens_cap=self.config.max_tokens_cap,
        )
        return parse_summary_json(response.content), response.max_tokens

    async def summarize(self, body: str) -> SessionSummary:
        chunks = plan_chunks(
            split_blocks(body) or [body],
            self.config.chunk_max_chars,
            self.config.chunk_max_lines,
        )
        if len(chunks) <= 1:
            summary, _ = await self._ask(SYSTEM_PROMPT, f"NOW file content:\n\n{body}")
            return summary

        logger.info("Transcript split into %d chunks for summarization", len(chunks))
        items = []
        for chunk in chunks:
            summary, _ = await self._ask(
                SYSTEM_PROMPT,
                f"NOW file content (part {chunk.index} of {chunk.total}):\n\n{chunk.content}",
            )
            items.append(SummaryItem.of(summary))

        async def merge(summaries: list[SessionSummary], context: MergeContext):
            payload = json.dumps([s.to_dict() for s in summaries], ensure_ascii=False, indent=2)
            return await self._ask(
                MERGE_PROMPT,
                f"Partial summaries (merge pass {context.pass_number}, "
                f"group {context.group_index} of {context.group_count}):\n\n{payload}",
            )

        result = await merge_summaries(items, self.config.merge_max_tokens, merge)
        for p in result.passes:
            logger.debug(
                "Merge pass %d: mode=%s sizes=%s est_tokens=%s",
                p.pass_number, p.mode, p.group_sizes, p.group_est_tokens,
            )
        return result.summary


def build_summarizer(config: MemoryConfig, client: LLMClient | None = None) -> Summarizer:
    """Pick the configured strategy; the LLM one builds a default client if needed."""
    if config.summarizer != "llm":
        return MechanicalSummarizer()
    if client is None:
        from strata.engines.anthropic_api import build_client

        client = build_client(config.llm)
    return LLMSummarizer(client, config.llm)
