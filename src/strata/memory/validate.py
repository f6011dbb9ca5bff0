"""Structural checks over a memory root: frontmatter schemas and index links.

Validation only reports; it never repairs files.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from strata.errors import IntegrityError
from strata.memory.frontmatter import parse_document
from strata.memory.store import MemoryStore
from strata.memory.util import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldRule:
    kind: str  # "string" | "number" | "string-array" | "timestamp"
    nullable: bool = False
    allowed: tuple[str, ...] = ()


NOW_SCHEMA: dict[str, FieldRule] = {
    "session_id": FieldRule("string"),
    "timestamp_start": FieldRule("timestamp"),
    "timestamp_end": FieldRule("timestamp", nullable=True),
    "duration_minutes": FieldRule("number", nullable=True),
    "project_path": FieldRule("string"),
    "tags": FieldRule("string-array"),
    "parent_session": FieldRule("string", nullable=True),
    "related_tasks": FieldRule("string-array"),
    "memory_type": FieldRule("string", allowed=("NOW",)),
}

MEMORY_SCHEMA: dict[str, FieldRule] = {
    "consolidation_date": FieldRule("timestamp"),
    "source_sessions": FieldRule("string-array"),
    "total_sessions_consolidated": FieldRule("number"),
    "tags": FieldRule("string-array"),
    "consolidated_by": FieldRule("string"),
}

_INDEX_LINK = re.compile(r"\[[^\]]+\]\((MEMORY-[^#)]+\.md)#([^)]+)\)")
_HEADING = re.compile(r"^(#{1,6})\s+(.+)")


@dataclass
class IntegrityIssue:
    path: Path
    line: int
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.message}"


@dataclass
class ValidationReport:
    issues: list[IntegrityIssue] = field(default_factory=list)
    files_checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.issues

    def raise_for_issues(self) -> None:
        if self.issues:
            raise IntegrityError(self.issues)


# ── Frontmatter ───────────────────────────────────────────

def _expected(rule: FieldRule, value) -> str | None:
    """Describe what was expected, or None when ``value`` satisfies ``rule``."""
    suffix = " or null" if rule.nullable else ""
    if rule.kind == "string":
        if not isinstance(value, str):
            return "string" + suffix
        if rule.allowed and value not in rule.allowed:
            return "one of: " + ", ".join(rule.allowed)
    elif rule.kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
            return "number" + suffix
    elif rule.kind == "string-array":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            return "array of strings"
    elif rule.kind == "timestamp":
        if not isinstance(value, str) or parse_timestamp(value) is None:
            return "timestamp" + suffix
    return None


def validate_frontmatter(path: Path, schema: dict[str, FieldRule]) -> list[IntegrityIssue]:
    try:
        doc = parse_document(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        return [IntegrityIssue(path, 1, f"Malformed YAML frontmatter: {e}")]
    if not doc.has_frontmatter:
        return [IntegrityIssue(path, 1, "Missing YAML frontmatter block.")]

    fallback_line = 2
    issues = []
    for key, rule in schema.items():
        line = doc.key_lines.get(key, fallback_line)
        if key not in doc.metadata:
            issues.append(IntegrityIssue(path, line, f"Missing frontmatter key: {key}"))
            continue
        value = doc.metadata[key]
        if value is None and rule.nullable:
            continue
        expected = _expected(rule, value)
        if expected:
            issues.append(
                IntegrityIssue(path, line, f"Invalid frontmatter value for {key}. Expected {expected}.")
            )
    return issues


# ── Index links ───────────────────────────────────────────

def slugify_heading(text: str) -> str:
    slug = re.sub(r"<[^>]*>", "", text.lower())
    slug = re.sub(r"[^\w\s-]", "", slug).strip()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def heading_slugs(lines: list[str]) -> set[str]:
    """GitHub-style heading anchors; repeats get -1, -2, ... suffixes."""
    slugs: set[str] = set()
    counts: dict[str, int] = {}
    for line in lines:
        match = _HEADING.match(line)
        if not match:
            continue
        base = slugify_heading(match.group(2).strip())
        if not base:
            continue
        seen = counts.get(base, 0)
        slugs.add(base if seen == 0 else f"{base}-{seen}")
        counts[base] = seen + 1
    return slugs


def _anchor_exists(path: Path, anchor: str) -> bool:
    lines = path.read_text(encoding="utf-8").split("\n")
    named = re.compile(rf"""name=["']{re.escape(anchor)}["']""")
    if any(named.search(line) for line in lines):
        return True
    return anchor in heading_slugs(lines)


def validate_index_links(index_path: Path, root: Path) -> list[IntegrityIssue]:
    issues = []
    for number, line in enumerate(index_path.read_text(encoding="utf-8").split("\n"), start=1):
        for match in _INDEX_LINK.finditer(line):
            name, anchor = match.group(1), match.group(2)
            target = root / name
            if not target.exists():
                issues.append(IntegrityIssue(index_path, number, f"Missing target file for link: {name}"))
            elif not _anchor_exists(target, anchor):
                issues.append(IntegrityIssue(index_path, number, f"Missing anchor in {name}: #{anchor}"))
    return issues


def validate_memory(store: MemoryStore) -> ValidationReport:
    """Check every NOW file, every shard, and the index links."""
    report = ValidationReport()
    for path in store.now_files():
        report.issues.extend(validate_frontmatter(path, NOW_SCHEMA))
        report.files_checked += 1
    for path in store.shard_files():
        report.issues.extend(validate_frontmatter(path, MEMORY_SCHEMA))
        report.files_checked += 1
    if store.index_file.exists():
        report.issues.extend(validate_index_links(store.index_file, store.root))
        report.files_checked += 1
    if report.issues:
        logger.warning("Validation found %d issue(s) in %d file(s)", len(report.issues), report.files_checked)
    return report
