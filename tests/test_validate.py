"""Tests for frontmatter and index link validation."""

import pytest

from strata.errors import IntegrityError
from strata.memory.consolidate import ConsolidationEngine
from strata.memory.validate import (
    MEMORY_SCHEMA,
    NOW_SCHEMA,
    heading_slugs,
    slugify_heading,
    validate_frontmatter,
    validate_index_links,
    validate_memory,
)


class TestFrontmatter:
    def test_valid_now(self, write_now):
        assert validate_frontmatter(write_now("## User: hi"), NOW_SCHEMA) == []

    def test_missing_block(self, store):
        path = store.root / "NOW-bare.md"
        path.write_text("# Session: bare\n")
        issues = validate_frontmatter(path, NOW_SCHEMA)
        assert [i.message for i in issues] == ["Missing YAML frontmatter block."]
        assert issues[0].line == 1

    def test_invalid_value_reports_key_line(self, store):
        path = store.root / "NOW-bad.md"
        path.write_text(
            "---\n"
            "session_id: s1\n"
            "timestamp_start: yesterday\n"
            "timestamp_end: null\n"
            "duration_minutes: null\n"
            "project_path: /p\n"
            "tags: [a, 3]\n"
            "parent_session: null\n"
            "related_tasks: []\n"
            "memory_type: LATER\n"
            "---\n\n# Session: s1\n"
        )
        issues = validate_frontmatter(path, NOW_SCHEMA)
        found = {(i.line, i.message) for i in issues}
        assert found == {
            (3, "Invalid frontmatter value for timestamp_start. Expected timestamp."),
            (7, "Invalid frontmatter value for tags. Expected array of strings."),
            (10, "Invalid frontmatter value for memory_type. Expected one of: NOW."),
        }

    def test_missing_keys(self, store):
        path = store.root / "MEMORY-2025-01-01.md"
        path.write_text("---\ntags: []\nconsolidated_by: me\n---\n\nbody\n")
        messages = [i.message for i in validate_frontmatter(path, MEMORY_SCHEMA)]
        assert messages == [
            "Missing frontmatter key: consolidation_date",
            "Missing frontmatter key: source_sessions",
            "Missing frontmatter key: total_sessions_consolidated",
        ]

    def test_nullable_number_rejects_bool(self, store, write_now):
        path = write_now("x", duration="true")
        messages = [i.message for i in validate_frontmatter(path, NOW_SCHEMA)]
        assert messages == ["Invalid frontmatter value for duration_minutes. Expected number or null."]

    def test_malformed_yaml(self, store):
        path = store.root / "NOW-broken.md"
        path.write_text("---\ntags: [unclosed\n---\n\nbody\n")
        issues = validate_frontmatter(path, NOW_SCHEMA)
        assert len(issues) == 1
        assert issues[0].message.startswith("Malformed YAML frontmatter")

    def test_issue_str(self, store):
        path = store.root / "NOW-bare.md"
        path.write_text("no frontmatter")
        issue = validate_frontmatter(path, NOW_SCHEMA)[0]
        assert str(issue) == f"{path}:1: Missing YAML frontmatter block."


class TestLinks:
    def test_slugify(self):
        assert slugify_heading("Session 2025-03-14 09:30 (sess_abc)") == "session-2025-03-14-0930-sess_abc"
        assert slugify_heading("<b>Hello</b>,  World!") == "hello-world"

    def test_repeated_headings_get_suffixes(self):
        assert heading_slugs(["# Notes", "## Notes", "text", "### Notes"]) == {"notes", "notes-1", "notes-2"}

    def test_broken_links(self, store):
        store.shard_file("2025-03-14").write_text('<a name="session-ok"></a>\n## Heading Anchor\n')
        store.index_file.write_text(
            "# Memory Index\n\n"
            "- [ok](MEMORY-2025-03-14.md#session-ok)\n"
            "- [heading](MEMORY-2025-03-14.md#heading-anchor)\n"
            "- [gone](MEMORY-2025-03-14.md#session-gone)\n"
            "- [missing](MEMORY-2024-01-01.md#session-x)\n"
        )
        issues = validate_index_links(store.index_file, store.root)
        assert [(i.line, i.message) for i in issues] == [
            (5, "Missing anchor in MEMORY-2025-03-14.md: #session-gone"),
            (6, "Missing target file for link: MEMORY-2024-01-01.md"),
        ]


class TestValidateMemory:
    @pytest.mark.asyncio
    async def test_consolidated_root_is_valid(self, store, config, write_now):
        write_now("## User: build it\n@decision: use TOML for config", current=True)
        await ConsolidationEngine(store, config).consolidate()

        report = validate_memory(store)

        assert report.ok, [str(i) for i in report.issues]
        assert report.files_checked == 3
        report.raise_for_issues()

    def test_raise_for_issues(self, store):
        (store.root / "NOW-bare.md").write_text("nothing")
        report = validate_memory(store)
        assert not report.ok
        with pytest.raises(IntegrityError) as excinfo:
            report.raise_for_issues()
        assert excinfo.value.issues == report.issues
