"""Configuration loading from environment variables and config.toml."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

logger = logging.getLogger(__name__)

_CONFIG_FILENAME = "config.toml"

DEFAULT_SECTIONS = ["Architecture Decisions", "Technical Discoveries", "Development Patterns"]
SESSIONS_SECTION = "Sessions"
SUMMARIZERS = ("mechanical", "llm")


def default_memory_dir() -> Path:
    return Path.cwd() / ".strata" / "memory"


@dataclass
class LLMConfig:
    """LLM summarizer configuration."""

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4000
    timeout: float = 120
    token_step: int = 2000
    max_tokens_cap: int = 12000
    chunk_max_chars: int = 24000
    chunk_max_lines: int = 600
    merge_max_tokens: int = 6000


@dataclass
class MemoryConfig:
    """Top-level strata configuration."""

    now_max_lines: int = 200
    now_max_hours: float = 6
    recent_session_count: int = 3
    recent_max_lines: int = 500
    memory_sections: list[str] = field(
        default_factory=lambda: [*DEFAULT_SECTIONS, SESSIONS_SECTION]
    )
    summarizer: str = "mechanical"
    llm: LLMConfig = field(default_factory=LLMConfig)
    memory_dir: Path = field(default_factory=default_memory_dir)
    log_level: str = "INFO"


def _positive(name: str, raw, default, cast=int):
    """Coerce ``raw`` to a positive number, falling back to ``default``."""
    if raw is None:
        return default
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    if isinstance(raw, bool) or value <= 0:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    return value


def normalize_sections(raw) -> list[str]:
    """At least three named sections, then the catch-all ``Sessions``."""
    sections: list[str] = []
    if isinstance(raw, (list, tuple)):
        for item in raw:
            name = str(item).strip() if item is not None else ""
            if name and name != SESSIONS_SECTION and name not in sections:
                sections.append(name)
    elif raw is not None:
        logger.warning("Invalid memory_sections=%r, using defaults", raw)
    for default in DEFAULT_SECTIONS:
        if len(sections) >= len(DEFAULT_SECTIONS):
            break
        if default not in sections:
            sections.append(default)
    sections.append(SESSIONS_SECTION)
    return sections


def _read_file(path: Path) -> dict:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        logger.warning("Ignoring malformed %s: %s", path, e)
        return {}


def load_config(memory_dir: Path | None = None, config_path: Path | None = None) -> MemoryConfig:
    """Load configuration from environment variables and optional config.toml.

    Priority: environment variables > config.toml > defaults. The file is read
    from ``config_path`` when given, otherwise from the memory root.
    """
    root = Path(memory_dir or os.getenv("STRATA_MEMORY_DIR") or default_memory_dir())
    candidate = config_path or root / _CONFIG_FILENAME
    file_data: dict = _read_file(candidate) if candidate.exists() else {}
    llm_data = file_data.get("llm", {})
    if not isinstance(llm_data, dict):
        logger.warning("Ignoring non-table [llm] section")
        llm_data = {}

    summarizer = os.getenv("STRATA_SUMMARIZER", file_data.get("summarizer", "mechanical"))
    if summarizer not in SUMMARIZERS:
        logger.warning("Unknown summarizer %r, using mechanical", summarizer)
        summarizer = "mechanical"

    defaults = LLMConfig()
    llm = LLMConfig(
        model=str(os.getenv("STRATA_LLM_MODEL", llm_data.get("model", defaults.model))),
        max_tokens=_positive("llm.max_tokens", llm_data.get("max_tokens"), defaults.max_tokens),
        timeout=_positive(
            "llm.timeout", os.getenv("STRATA_LLM_TIMEOUT", llm_data.get("timeout")),
            defaults.timeout, float,
        ),
        token_step=_positive("llm.token_step", llm_data.get("token_step"), defaults.token_step),
        max_tokens_cap=_positive(
            "llm.max_tokens_cap", llm_data.get("max_tokens_cap"), defaults.max_tokens_cap
        ),
        chunk_max_chars=_positive(
            "llm.chunk_max_chars", llm_data.get("chunk_max_chars"), defaults.chunk_max_chars
        ),
        chunk_max_lines=_positive(
            "llm.chunk_max_lines", llm_data.get("chunk_max_lines"), defaults.chunk_max_lines
        ),
        merge_max_tokens=_positive(
            "llm.merge_max_tokens", llm_data.get("merge_max_tokens"), defaults.merge_max_tokens
        ),
    )

    base = MemoryConfig()
    return MemoryConfig(
        now_max_lines=_positive(
            "now_max_lines",
            os.getenv("STRATA_NOW_MAX_LINES", file_data.get("now_max_lines")),
            base.now_max_lines,
        ),
        now_max_hours=_positive(
            "now_max_hours",
            os.getenv("STRATA_NOW_MAX_HOURS", file_data.get("now_max_hours")),
            base.now_max_hours,
            float,
        ),
        recent_session_count=_positive(
            "recent_session_count",
            os.getenv("STRATA_RECENT_SESSION_COUNT", file_data.get("recent_session_count")),
            base.recent_session_count,
        ),
        recent_max_lines=_positive(
            "recent_max_lines",
            os.getenv("STRATA_RECENT_MAX_LINES", file_data.get("recent_max_lines")),
            base.recent_max_lines,
        ),
        memory_sections=normalize_sections(file_data.get("memory_sections")),
        summarizer=summarizer,
        llm=llm,
        memory_dir=root,
        log_level=os.getenv("STRATA_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
