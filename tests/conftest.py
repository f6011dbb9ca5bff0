"""Shared fixtures for memory tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from strata.config import MemoryConfig
from strata.engines.base import LLMClient, LLMMessage, LLMResponse
from strata.memory.store import MemoryStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("STRATA_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    s = MemoryStore(tmp_path / "memory")
    s.ensure_initialized()
    return s


@pytest.fixture
def config(store: MemoryStore) -> MemoryConfig:
    return MemoryConfig(memory_dir=store.root)


NOW_TEMPLATE = """---
session_id: {session_id}
timestamp_start: {start}
timestamp_end: {end}
duration_minutes: {duration}
project_path: /work/project
tags: [{tags}]
parent_session: null
related_tasks: []
memory_type: NOW
---

# Session: {session_id} - {header}

{body}
"""


@pytest.fixture
def write_now(store: MemoryStore):
    """Write a NOW file; returns its path."""

    def _write(
        body: str,
        session_id: str = "sess_abc",
        start: str = "2025-03-14T09:30:00.000Z",
        end: str = "null",
        duration: str = "null",
        tags: str = "",
        name: str | None = None,
        current: bool = False,
    ) -> Path:
        path = store.root / (name or f"NOW-{session_id}.md")
        path.write_text(
            NOW_TEMPLATE.format(
                session_id=session_id,
                start=start,
                end=end,
                duration=duration,
                tags=tags,
                header=start[:16].replace("T", " ") + " UTC",
                body=body,
            ),
            encoding="utf-8",
        )
        if current:
            store.set_current(path)
        return path

    return _write


class FakeLLMClient(LLMClient):
    """Replays scripted responses and records every request."""

    def __init__(self, responses: list, timeout: float = 5) -> None:
        super().__init__(max_tokens=4000, timeout=timeout)
        self.responses = list(responses)
        self.requests: list[tuple[list[LLMMessage], int]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def _complete(self, messages: list[LLMMessage], max_tokens: int) -> LLMResponse:
        self.requests.append((messages, max_tokens))
        item = self.responses.pop(0)
        if isinstance(item, LLMResponse):
            return LLMResponse(item.content, item.finish_reason)
        return LLMResponse(item)


@pytest.fixture
def fake_llm():
    return FakeLLMClient
