"""Tests for the consolidation engine."""

import json
import os
from pathlib import Path

import pytest

from strata.config import MemoryConfig
from strata.errors import LockedError, SummaryFormatError, UserInputError
from strata.memory.consolidate import ConsolidationEngine
from strata.memory.frontmatter import parse_document
from strata.memory.store import MemoryStore
from strata.memory.summarize import LLMSummarizer

BODY = """## User: add rate limiting to the API

@decision: token bucket per client because bursts are legitimate
@discovery: nginx already strips X-Forwarded-For

Changes: src/limiter.py
tkt-42 is the tracking ticket"""

ANCHOR = "session-2025-03-14-09-30-sess_abc"


def _snapshot(root: Path) -> dict[str, str]:
    return {
        p.name: p.read_text(encoding="utf-8")
        for p in sorted(root.iterdir())
        if p.is_file()
    }


@pytest.fixture
def engine(store: MemoryStore, config: MemoryConfig) -> ConsolidationEngine:
    return ConsolidationEngine(store, config)


class TestConsolidate:
    @pytest.mark.asyncio
    async def test_decision_and_discovery_session(self, store, engine, write_now):
        now = write_now(BODY, tags="api", current=True)
        result = await engine.consolidate()

        assert result.now_path == now
        assert not result.skipped
        recent = store.recent_file.read_text()
        assert recent.startswith("# RECENT - Last 3 Sessions")
        assert "token bucket per client" in recent
        assert f"(MEMORY-2025-03-14.md#{ANCHOR})" in recent

        shard = parse_document(store.shard_file("2025-03-14").read_text())
        assert shard.metadata["source_sessions"] == ["sess_abc"]
        assert shard.metadata["tags"] == ["api"]
        assert f'<a name="{ANCHOR}"></a>' in shard.body
        assert "**Files**: `src/limiter.py`" in shard.body
        assert "**Tasks**: tkt-42" in shard.body

        index = store.index_file.read_text()
        decisions = index.split("## Architecture Decisions")[1].split("## ")[0]
        assert f"#{ANCHOR}" in decisions
        assert index.count(f"#{ANCHOR}") == 1

        cleared = parse_document(now.read_text())
        assert cleared.body == "# Session: sess_abc - 2025-03-14 09:30 UTC"
        assert cleared.metadata["session_id"] == "sess_abc"
        assert cleared.metadata["duration_minutes"] >= 1
        assert list(cleared.metadata)[0] == "session_id"

        log = store.log_file.read_text()
        assert "ACTION: Consolidate NOW→RECENT→MEMORY (mechanical)" in log
        assert "Extracted: 1 decisions, 1 discoveries, 0 patterns" in log
        assert not store.memory_lock_file.exists()

    @pytest.mark.asyncio
    async def test_idempotent_rerun(self, store, engine, write_now):
        write_now(BODY, current=True)
        await engine.consolidate()
        before = _snapshot(store.root)

        result = await engine.consolidate()

        assert result.skipped
        assert _snapshot(store.root) == before

    @pytest.mark.asyncio
    async def test_rerun_of_uncleared_file_converges(self, store, engine, write_now):
        # A crash after the shard write but before NOW was cleared.
        now = write_now(BODY, current=True)
        original = now.read_text()
        await engine.consolidate()
        now.write_text(original)

        await engine.consolidate()

        assert store.shard_file("2025-03-14").read_text().count(f'name="{ANCHOR}"') == 1
        assert store.index_file.read_text().count(f"#{ANCHOR}") == 1
        assert store.recent_file.read_text().count(f"#{ANCHOR}") == 1

    @pytest.mark.asyncio
    async def test_later_entries_fold_into_earlier_summary(self, store, engine, write_now):
        now = write_now(BODY, current=True)
        await engine.consolidate()
        now.write_text(
            now.read_text().rstrip("\n")
            + "\n\n## User: move sessions off sqlite\n@decision: store sessions in postgres\n"
        )

        result = await engine.consolidate()

        assert not result.skipped
        assert result.summary.decisions == [
            "token bucket per client because bursts are legitimate",
            "store sessions in postgres",
        ]
        shard = store.shard_file("2025-03-14").read_text()
        assert shard.count(f'name="{ANCHOR}"') == 1
        assert "- token bucket per client" in shard
        assert "- store sessions in postgres" in shard
        assert "**Tasks**: tkt-42" in shard
        recent = store.recent_file.read_text()
        assert recent.count(f"#{ANCHOR}") == 1
        assert "store sessions in postgres" in recent
        index = store.index_file.read_text()
        assert index.count(f"#{ANCHOR}") == 1
        assert "add rate limiting to the API move sessions off sqlite" in index

    @pytest.mark.asyncio
    async def test_cleared_session_without_start_is_skipped(self, store, engine, write_now):
        write_now("", start="null", current=True)
        before = _snapshot(store.root)

        result = await engine.consolidate()

        assert result.skipped
        assert _snapshot(store.root) == before
        assert not store.recent_file.exists()

    @pytest.mark.asyncio
    async def test_two_sessions_same_date_share_a_shard(self, store, engine, write_now):
        first = write_now("## User: first", session_id="sess_one", start="2025-03-14T08:00:00.000Z")
        second = write_now("## User: second", session_id="sess_two", start="2025-03-14T15:45:00.000Z")
        await engine.consolidate(first)
        await engine.consolidate(second)

        shard = parse_document(store.shard_file("2025-03-14").read_text())
        assert shard.metadata["source_sessions"] == ["sess_one", "sess_two"]
        assert shard.metadata["total_sessions_consolidated"] == 2
        assert shard.body.count("<a name=") == 2
        assert list(store.root.glob("MEMORY-*.md")) == [store.shard_file("2025-03-14")]

    @pytest.mark.asyncio
    async def test_recent_bounded_by_session_count(self, store, write_now):
        config = MemoryConfig(memory_dir=store.root, recent_session_count=2)
        engine = ConsolidationEngine(store, config)
        for i in range(4):
            path = write_now(f"## User: task {i}", session_id=f"sess_{i}", start=f"2025-03-1{i}T10:00:00.000Z")
            await engine.consolidate(path)

        recent = store.recent_file.read_text()
        assert recent.count("## Session ") == 2
        assert "task 3" in recent and "task 2" in recent
        assert "task 1" not in recent

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing_and_matches_real_run(self, store, engine, write_now):
        write_now(BODY, duration="12", current=True)
        before = _snapshot(store.root)

        preview = await engine.consolidate(dry_run=True)

        assert preview.dry_run
        assert _snapshot(store.root) == before
        assert not store.memory_lock_file.exists()

        real = await engine.consolidate()
        assert real.preview.recent_lines == preview.preview.recent_lines
        assert real.preview.memory_lines == preview.preview.memory_lines
        assert real.preview.index_lines == preview.preview.index_lines
        assert real.preview.now_lines == preview.preview.now_lines
        assert len(store.recent_file.read_text().split("\n")) == preview.preview.recent_lines

    @pytest.mark.asyncio
    async def test_dry_run_requires_initialized_root(self, tmp_path):
        store = MemoryStore(tmp_path / "missing")
        engine = ConsolidationEngine(store, MemoryConfig(memory_dir=store.root))
        with pytest.raises(UserInputError, match="not initialized"):
            await engine.consolidate(dry_run=True)
        assert not store.root.exists()

    @pytest.mark.asyncio
    async def test_no_session(self, engine):
        with pytest.raises(UserInputError, match="No active NOW session"):
            await engine.consolidate()

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_files_untouched(self, store, engine, write_now, monkeypatch):
        write_now(BODY, current=True)
        await engine.consolidate()
        second = write_now("## User: follow-up\n@decision: keep it", session_id="sess_two",
                           start="2025-03-14T11:00:00.000Z")
        before = _snapshot(store.root)
        real_replace = os.replace

        def flaky_replace(src, dst):
            if Path(dst) == second:
                raise OSError("simulated crash")
            real_replace(src, dst)

        monkeypatch.setattr("strata.memory.commit.os.replace", flaky_replace)
        with pytest.raises(OSError, match="simulated crash"):
            await engine.consolidate(second)

        after = {k: v for k, v in _snapshot(store.root).items() if not k.endswith((".bak", ".old"))}
        expected = {k: v for k, v in before.items() if not k.endswith((".bak", ".old"))}
        assert after == expected
        assert not store.memory_lock_file.exists()

    @pytest.mark.asyncio
    async def test_malformed_llm_output_aborts_before_writes(self, store, config, write_now, fake_llm):
        write_now(BODY, current=True)
        engine = ConsolidationEngine(store, config, summarizer=LLMSummarizer(fake_llm(["not json"])))
        before = _snapshot(store.root)

        with pytest.raises(SummaryFormatError):
            await engine.consolidate()

        assert _snapshot(store.root) == before

    @pytest.mark.asyncio
    async def test_llm_summary_sections(self, store, config, write_now, fake_llm):
        write_now(BODY, current=True)
        reply = json.dumps({
            "narrative": "Added a token bucket limiter.",
            "decisions": [],
            "discoveries": [],
            "whatWorked": ["load test with k6"],
            "whatFailed": ["global limit starved batch jobs"],
            "openQuestions": [],
            "nextSteps": ["tune bucket size"],
            "tasks": ["tkt-42"],
            "files": ["src/limiter.py"],
        })
        engine = ConsolidationEngine(store, config, summarizer=LLMSummarizer(fake_llm([reply])))
        await engine.consolidate()

        shard = store.shard_file("2025-03-14").read_text()
        assert "**What worked**:\n- load test with k6" in shard
        assert "**What didn't work**:\n- global limit starved batch jobs" in shard
        assert "**Next steps**:\n- tune bucket size" in shard
        index = store.index_file.read_text()
        assert "## Sessions\n\n- **[Session 2025-03-14 09:30]" in index
        assert "(llm:fake)" in store.log_file.read_text()

    @pytest.mark.asyncio
    async def test_locked_root(self, store, engine, write_now):
        write_now(BODY, current=True)
        store.memory_lock_file.write_text("{}")
        with pytest.raises(LockedError):
            await engine.consolidate()
        assert not store.recent_file.exists()

    @pytest.mark.asyncio
    async def test_cleanup_prunes_old_now_files(self, store, engine, write_now):
        old = write_now("## User: ancient", session_id="sess_old", name="NOW-old.md")
        past = os.path.getmtime(old) - 4 * 86400
        os.utime(old, (past, past))
        write_now(BODY, current=True)

        result = await engine.consolidate()

        assert result.pruned == [old]
        assert not old.exists()

    @pytest.mark.asyncio
    async def test_skip_cleanup(self, store, engine, write_now):
        old = write_now("## User: ancient", session_id="sess_old", name="NOW-old.md")
        past = os.path.getmtime(old) - 4 * 86400
        os.utime(old, (past, past))
        now = write_now(BODY)

        await engine.consolidate(now, skip_cleanup=True)
        assert old.exists()

    @pytest.mark.asyncio
    async def test_log_rotation(self, store, engine, write_now):
        store.log_file.write_text("old entry\n" * 1001)
        write_now(BODY, current=True)
        await engine.consolidate()
        assert store.rotated_log_file.read_text().startswith("old entry")
        assert store.log_file.read_text().startswith("[")
