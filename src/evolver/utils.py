"""Evolver utility functions -- time, JSON persistence, text shaping, redaction."""

from __future__ import annotations

import io
import json
import os
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

from evolver.constants import TRUNCATION_MARKER


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def _ensure_parent_dir(path: Path) -> None:
    parent = path.parent
    if str(parent) in {"", "."}:
        return
    parent.mkdir(parents=True, exist_ok=True)


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write pretty JSON to a sibling temp file, then rename it over ``path``."""
    _ensure_parent_dir(path)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _append_line(path: Path, line: str) -> None:
    _ensure_parent_dir(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")


def _read_text_if_exists(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Text shaping
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def trim_head_tail(text: str, limit: int) -> str:
    """Trim ``text`` to ``limit`` chars keeping two thirds head, one third tail."""
    stripped = text.strip()
    if limit <= 0 or len(stripped) <= limit:
        return stripped
    keep_head = limit * 2 // 3
    keep_tail = limit - keep_head
    return stripped[:keep_head] + TRUNCATION_MARKER + stripped[len(stripped) - keep_tail :]


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bASIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{35}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


# ---------------------------------------------------------------------------
# Dual-sink output capture
# ---------------------------------------------------------------------------


class TeeWriter:
    """Fan text out to a live sink and an in-memory buffer at the same time."""

    def __init__(self, sink: TextIO | None) -> None:
        self._sink = sink
        self._buffer = io.StringIO()
        self._lock = threading.Lock()

    def write(self, text: str) -> int:
        with self._lock:
            self._buffer.write(text)
            if self._sink is not None:
                self._sink.write(text)
                self._sink.flush()
        return len(text)

    def flush(self) -> None:
        if self._sink is not None:
            self._sink.flush()

    def getvalue(self) -> str:
        with self._lock:
            return self._buffer.getvalue()


def _pump_stream(stream: Any, writer: TeeWriter) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            writer.write(line)
    finally:
        try:
            stream.close()
        except OSError:
            pass
