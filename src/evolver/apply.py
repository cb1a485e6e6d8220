"""Evolver plan application -- file writes plus CHANGELOG / ROADMAP maintenance."""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path

from evolver.models import Plan, PlanApplyError

logger = logging.getLogger(__name__)

CHANGELOG_FILE = "CHANGELOG.md"
ROADMAP_FILE = "ROADMAP.md"


def safe_relative_path(raw_path: str) -> str:
    value = str(raw_path).strip()
    if not value:
        raise PlanApplyError("empty path")
    if "\x00" in value:
        raise PlanApplyError(f"refusing to write unsafe path {raw_path!r}: nul byte")
    if value.startswith(("/", "\\")) or (len(value) > 1 and value[1] == ":"):
        raise PlanApplyError(f"refusing to write unsafe path {raw_path!r}: absolute path")
    clean = posixpath.normpath(value.replace("\\", "/"))
    if clean == ".":
        raise PlanApplyError(f"refusing to write unsafe path {raw_path!r}: invalid path")
    if clean == ".." or clean.startswith("../"):
        raise PlanApplyError(f"refusing to write unsafe path {raw_path!r}: path escapes repository root")
    return clean


class FileApplier:
    """Write ``mode == "write"`` plan entries below ``root``; other modes are skipped."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def apply(self, plan: Plan) -> int:
        writes = 0
        for item in plan.files:
            if item.mode != "write":
                logger.debug("skipping plan entry", extra={"path": item.path, "mode": item.mode})
                continue
            target = self.root / safe_relative_path(item.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(item.content, encoding="utf-8")
            writes += 1
            logger.debug("applied file write", extra={"path": str(target), "bytes": len(item.content)})
        logger.info("plan applied", extra={"files_written": writes})
        return writes


def append_changelog(root: Path, entry: str) -> None:
    if not entry:
        return
    with (Path(root) / CHANGELOG_FILE).open("a", encoding="utf-8") as handle:
        handle.write("\n" + entry + "\n")


def update_roadmap(root: Path, content: str) -> None:
    if not content:
        return
    (Path(root) / ROADMAP_FILE).write_text(content, encoding="utf-8")
