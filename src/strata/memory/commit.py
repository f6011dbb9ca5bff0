"""All-or-nothing replacement of a set of files.

Every new content is staged in a sibling temp file, backups are taken, and
only then are the temp files renamed into place. Each completed step records
a compensating action; on failure the compensations run newest-first and the
original exception propagates. Durability across an OS crash between the
temp write and the rename is not guaranteed.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class WriteTarget:
    path: Path
    content: str
    rotate_to: Path | None = None


class AtomicCommitter:
    """Commit a batch of file writes as one unit."""

    def commit_all(self, targets: list[WriteTarget]) -> None:
        suffix = uuid.uuid4().hex[:8]
        compensations: list[tuple[str, Callable[[], None]]] = []
        staged: list[tuple[WriteTarget, Path, bool]] = []

        try:
            # 1. stage
            for target in targets:
                tmp = target.path.with_name(f"{target.path.name}.tmp-{suffix}")
                tmp.write_text(target.content, encoding="utf-8")
                compensations.append((f"remove {tmp.name}", _unlinker(tmp)))
                staged.append((target, tmp, target.path.exists()))

            # 2. rotate
            for target, _, existed in staged:
                if target.rotate_to is None or not existed:
                    continue
                os.replace(target.path, target.rotate_to)
                compensations.append(
                    (f"restore rotated {target.path.name}", _mover(target.rotate_to, target.path))
                )

            # 3. back up
            for target, _, _ in staged:
                if not target.path.exists():
                    continue
                bak = target.path.with_name(target.path.name + ".bak")
                if bak.exists():
                    os.replace(bak, bak.with_name(bak.name + ".old"))
                bak.write_text(target.path.read_text(encoding="utf-8"), encoding="utf-8")
                compensations.append(
                    (f"restore {target.path.name} from backup", _restorer(bak, target.path))
                )

            # 4. promote
            for target, tmp, _ in staged:
                created = not target.path.exists()
                os.replace(tmp, target.path)
                if created:
                    compensations.append((f"remove new {target.path.name}", _unlinker(target.path)))
        except BaseException:
            logger.warning("Commit of %d file(s) failed, rolling back", len(targets))
            _compensate(compensations)
            raise

        logger.debug("Committed %d file(s)", len(targets))


def _compensate(compensations: list[tuple[str, Callable[[], None]]]) -> None:
    for label, action in reversed(compensations):
        try:
            action()
        except OSError as e:
            logger.error("Rollback step failed (%s): %s", label, e)


def _unlinker(path: Path) -> Callable[[], None]:
    return lambda: path.unlink(missing_ok=True)


def _mover(src: Path, dst: Path) -> Callable[[], None]:
    def move() -> None:
        if src.exists():
            os.replace(src, dst)

    return move


def _restorer(bak: Path, path: Path) -> Callable[[], None]:
    content = bak.read_text(encoding="utf-8")
    return lambda: path.write_text(content, encoding="utf-8")
