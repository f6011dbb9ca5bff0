"""Find NOW files abandoned by crashed sessions and consolidate them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from strata.config import MemoryConfig
from strata.memory.consolidate import ConsolidationEngine
from strata.memory.frontmatter import parse_document
from strata.memory.store import MemoryStore, age_hours
from strata.memory.util import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class StaleNowFile:
    path: Path
    age_hours: float
    timestamp_start: str | None


@dataclass
class StaleScan:
    threshold_hours: float
    total_now_files: int
    stale: list[StaleNowFile] = field(default_factory=list)
    recovered: list[Path] = field(default_factory=list)


class RecoveryScanner:
    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig,
        engine: ConsolidationEngine | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.engine = engine or ConsolidationEngine(store, config)

    def _start_of(self, path: Path) -> tuple[datetime, str | None]:
        """Frontmatter ``timestamp_start`` if parseable, else the file mtime."""
        raw = parse_document(path.read_text(encoding="utf-8")).metadata.get("timestamp_start")
        start = parse_timestamp(raw)
        if start is not None:
            return start, str(raw)
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc), None

    def scan_stale(self, max_hours: float | None = None, now: datetime | None = None) -> StaleScan:
        """List non-current NOW files at least ``max_hours`` old, oldest first."""
        threshold = self.config.now_max_hours if max_hours is None else max_hours
        now = now or utc_now()
        files = self.store.now_files()
        current = self.store.current_session_path()

        stale = []
        for path in files:
            if current is not None and path.resolve() == current.resolve():
                continue
            start, raw = self._start_of(path)
            age = age_hours(start, now)
            if age >= threshold:
                stale.append(StaleNowFile(path=path, age_hours=age, timestamp_start=raw))
        stale.sort(key=lambda s: s.age_hours, reverse=True)
        return StaleScan(threshold_hours=threshold, total_now_files=len(files), stale=stale)

    async def recover(self, max_hours: float | None = None, consolidate: bool = True) -> StaleScan:
        """Scan, then consolidate each stale file in turn when ``consolidate`` is set."""
        scan = self.scan_stale(max_hours)
        if not consolidate:
            return scan
        for item in scan.stale:
            result = await self.engine.consolidate(item.path, skip_cleanup=True)
            if result.skipped:
                logger.debug("Stale file %s was already consolidated", item.path.name)
            scan.recovered.append(item.path)
        if scan.recovered:
            logger.info("Recovered %d stale NOW file(s)", len(scan.recovered))
        return scan
