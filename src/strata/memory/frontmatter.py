"""Frontmatter parsing and rendering for memory documents.

Parsing goes through python-frontmatter with a YAML loader that leaves
timestamps as strings, so values round-trip exactly as written. Rendering is
done by hand in a fixed key order per document kind.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

import frontmatter
import yaml

NOW_KEYS = (
    "session_id",
    "timestamp_start",
    "timestamp_end",
    "duration_minutes",
    "project_path",
    "tags",
    "parent_session",
    "related_tasks",
    "memory_type",
)

MEMORY_KEYS = (
    "consolidation_date",
    "source_sessions",
    "total_sessions_consolidated",
    "tags",
    "consolidated_by",
)

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"
_KEY_LINE = re.compile(r"^([A-Za-z_][\w-]*)\s*:")
_PLAIN_SCALAR = re.compile(r"^[A-Za-z0-9_./@][A-Za-z0-9 _./@:+-]*$")
_PLAIN_ITEM = re.compile(r"^[A-Za-z0-9_./@][A-Za-z0-9_./@+-]*$")


class _PlainLoader(yaml.SafeLoader):
    """SafeLoader that keeps ISO timestamps as plain strings."""


_PlainLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class MemoryYAMLHandler(frontmatter.YAMLHandler):
    def load(self, fm: str, **kwargs: object):
        kwargs.setdefault("Loader", _PlainLoader)
        return yaml.load(fm, **kwargs)  # noqa: S506 - safe loader subclass


_HANDLER = MemoryYAMLHandler()


@dataclass
class Document:
    """A parsed memory file: frontmatter metadata plus stripped body."""

    metadata: dict = field(default_factory=dict)
    body: str = ""
    has_frontmatter: bool = False
    key_lines: dict[str, int] = field(default_factory=dict)
    end_line: int = 0


def parse_document(text: str) -> Document:
    """Split a markdown file into metadata and body.

    Files without a frontmatter block yield empty metadata and the whole
    text as body. Malformed YAML raises ``yaml.YAMLError``.
    """
    if not _HANDLER.detect(text):
        return Document(body=text.strip())
    post = frontmatter.loads(text, handler=_HANDLER)
    key_lines, end_line = _scan_frontmatter_lines(text)
    return Document(
        metadata=dict(post.metadata),
        body=post.content,
        has_frontmatter=True,
        key_lines=key_lines,
        end_line=end_line,
    )


def _scan_frontmatter_lines(text: str) -> tuple[dict[str, int], int]:
    """Map top-level frontmatter keys to 1-based line numbers."""
    key_lines: dict[str, int] = {}
    lines = text.split("\n")
    for number, line in enumerate(lines[1:], start=2):
        if line.strip() == "---":
            return key_lines, number
        match = _KEY_LINE.match(line)
        if match:
            key_lines.setdefault(match.group(1), number)
    return key_lines, len(lines)


# ── Rendering ─────────────────────────────────────────────

def _round_trips(candidate: str, expected) -> bool:
    try:
        return yaml.load(f"v: {candidate}", Loader=_PlainLoader) == {"v": expected}
    except yaml.YAMLError:
        return False


def _render_string(value: str, pattern: re.Pattern) -> str:
    if pattern.match(value) and not value.endswith(" ") and _round_trips(value, value):
        return value
    return json.dumps(value, ensure_ascii=False)


def render_value(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        items = [_render_string(str(v), _PLAIN_ITEM) for v in value]
        return "[" + ", ".join(items) + "]"
    return _render_string(str(value), _PLAIN_SCALAR)


def render_frontmatter(metadata: dict, order: tuple[str, ...] = ()) -> str:
    """Render ``metadata`` as a ``---`` block; ``order`` keys come first."""
    keys = [k for k in order if k in metadata]
    keys.extend(k for k in metadata if k not in keys)
    lines = ["---"]
    lines.extend(f"{key}: {render_value(metadata[key])}" for key in keys)
    lines.append("---")
    return "\n".join(lines) + "\n"


def render_document(metadata: dict, body: str, order: tuple[str, ...] = ()) -> str:
    return render_frontmatter(metadata, order) + "\n" + body
