"""Entry point: python -m strata <command>

- init                         Create the memory root
- session start|end            Begin or finish a NOW session
- append user|agent|tool TEXT  Add an entry to the current session
- consolidate                  Move the current session into long-term memory
- recover                      Find (and consolidate) abandoned sessions
- status | list | log          Inspect the memory root
- validate                     Check frontmatter and index links
- import DIR                   Import session summary files
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from strata.config import MemoryConfig, load_config
from strata.errors import StrataError
from strata.memory.consolidate import ConsolidationEngine, ConsolidationResult
from strata.memory.importer import SummaryImporter
from strata.memory.recover import RecoveryScanner
from strata.memory.session import SessionCapture
from strata.memory.store import MemoryStore
from strata.memory.validate import validate_memory

logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _print_result(result: ConsolidationResult) -> None:
    if result.skipped:
        print(f"Already consolidated: {result.now_path.name}")
        return
    verb = "Would update" if result.dry_run else "Updated"
    p = result.preview
    print(f"{verb} {result.recent_path.name} ({p.recent_lines} lines)")
    print(f"{verb} {result.memory_path.name} ({p.memory_lines} lines)")
    print(f"{verb} {result.index_path.name} ({p.index_lines} lines)")
    print(f"{verb} {result.now_path.name} ({p.now_lines} lines)")
    print(f"{verb} {result.log_path.name} (+{p.log_lines} lines)")


# ── Commands ──────────────────────────────────────────────

def _cmd_init(args, config: MemoryConfig, store: MemoryStore) -> int:
    store.ensure_initialized()
    print(f"Initialized memory at {store.root}")
    return 0


def _cmd_session(args, config: MemoryConfig, store: MemoryStore) -> int:
    capture = SessionCapture(store, config)
    if args.action == "start":
        info = capture.start(tags=args.tag or None)
        print(f"Started {info.session_id}: {info.path}")
        return 0
    if args.consolidate:
        _print_result(asyncio.run(capture.end_and_consolidate()))
    else:
        print(f"Ended session: {capture.end()}")
    return 0


def _cmd_append(args, config: MemoryConfig, store: MemoryStore) -> int:
    capture = SessionCapture(store, config)
    text = " ".join(args.text)
    path = asyncio.run(capture.append(args.kind, text, tags=args.tag or None, summary=args.summary))
    print(f"Appended to {path.name}")
    return 0


def _cmd_consolidate(args, config: MemoryConfig, store: MemoryStore) -> int:
    engine = ConsolidationEngine(store, config)
    now_path = Path(args.now_file) if args.now_file else None
    _print_result(asyncio.run(engine.consolidate(now_path, dry_run=args.dry_run)))
    return 0


def _cmd_recover(args, config: MemoryConfig, store: MemoryStore) -> int:
    scanner = RecoveryScanner(store, config)
    scan = asyncio.run(scanner.recover(args.hours, consolidate=args.consolidate))
    print(
        f"{len(scan.stale)} of {scan.total_now_files} NOW file(s) older than "
        f"{scan.threshold_hours:g}h"
    )
    for item in scan.stale:
        print(f"  {item.path.name}  {item.age_hours:.1f}h")
    if scan.recovered:
        print(f"Consolidated {len(scan.recovered)} file(s)")
    return 0


def _cmd_status(args, config: MemoryConfig, store: MemoryStore) -> int:
    status = store.status()
    if not status.initialized:
        print(f"Memory not initialized at {store.root}. Run: strata init")
        return 1
    print(f"Memory root: {status.root}")
    if status.now_path:
        print(
            f"NOW: {status.now_path.name} ({status.now_lines}/{config.now_max_lines} lines, "
            f"{status.now_age_minutes:.0f} min since last write, {status.now_bytes} bytes)"
        )
    else:
        print("NOW: no active session")
    print(f"RECENT: {status.recent_lines} lines")
    print(f"Last consolidation: {status.last_consolidation or 'never'}")
    print(f"Total size: {status.total_bytes} bytes")
    return 0


def _cmd_list(args, config: MemoryConfig, store: MemoryStore) -> int:
    for entry in store.list_entries():
        marker = "*" if entry.current else " "
        modified = datetime.fromtimestamp(entry.modified).strftime("%Y-%m-%d %H:%M")
        print(f"{marker} {entry.kind:<6} {entry.path.name:<40} {entry.lines:>5} lines  {modified}")
    return 0


def _cmd_log(args, config: MemoryConfig, store: MemoryStore) -> int:
    tail = store.read_log(args.tail)
    if tail.truncated:
        print(f"... ({tail.total_lines - len(tail.lines)} earlier lines)")
    for line in tail.lines:
        print(line)
    return 0


def _cmd_validate(args, config: MemoryConfig, store: MemoryStore) -> int:
    report = validate_memory(store)
    print(f"Checked {report.files_checked} file(s), {len(report.issues)} issue(s)")
    report.raise_for_issues()
    return 0


def _cmd_import(args, config: MemoryConfig, store: MemoryStore) -> int:
    importer = SummaryImporter(ConsolidationEngine(store, config))
    result = asyncio.run(
        importer.import_dir(
            Path(args.summary_dir),
            project_id=args.project,
            session_id=args.session,
            dry_run=args.dry_run,
        )
    )
    print(
        f"{result.imported} imported, {result.skipped_existing} already present, "
        f"{result.skipped_invalid} invalid, {result.skipped_filtered} filtered "
        f"(of {result.total})"
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strata", description="Tiered working memory")
    parser.add_argument("--memory-dir", default=None, help="Memory root (default ./.strata/memory)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the memory root").set_defaults(func=_cmd_init)

    p = sub.add_parser("session", help="Start or end a NOW session")
    p.add_argument("action", choices=["start", "end"])
    p.add_argument("--tag", action="append", help="Tag the session (repeatable)")
    p.add_argument("--consolidate", action="store_true", help="Consolidate after ending")
    p.set_defaults(func=_cmd_session)

    p = sub.add_parser("append", help="Append an entry to the current session")
    p.add_argument("kind", choices=["user", "agent", "tool"])
    p.add_argument("text", nargs="+")
    p.add_argument("--summary", default=None, help="Tool call summary")
    p.add_argument("--tag", action="append", help="Add a tag (repeatable)")
    p.set_defaults(func=_cmd_append)

    p = sub.add_parser("consolidate", help="Consolidate a NOW session")
    p.add_argument("--now-file", default=None)
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=_cmd_consolidate)

    p = sub.add_parser("recover", help="Find abandoned NOW sessions")
    p.add_argument("--hours", type=float, default=None)
    p.add_argument("--consolidate", action="store_true")
    p.set_defaults(func=_cmd_recover)

    sub.add_parser("status", help="Show memory status").set_defaults(func=_cmd_status)
    sub.add_parser("list", help="List memory files").set_defaults(func=_cmd_list)

    p = sub.add_parser("log", help="Show the consolidation log")
    p.add_argument("--tail", type=int, default=None)
    p.set_defaults(func=_cmd_log)

    sub.add_parser("validate", help="Check memory files").set_defaults(func=_cmd_validate)

    p = sub.add_parser("import", help="Import session summary files")
    p.add_argument("summary_dir")
    p.add_argument("--project", default=None)
    p.add_argument("--session", default=None)
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=_cmd_import)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(Path(args.memory_dir) if args.memory_dir else None)
    _setup_logging(config.log_level)
    store = MemoryStore(config.memory_dir)
    try:
        return args.func(args, config, store)
    except StrataError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        if e.retryable:
            print("Another writer is busy; this command can be retried.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
