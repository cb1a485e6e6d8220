"""Evolver run state -- durable cross-run health record and the exclusive run lock.

Callers must hold the run lock before touching the recorder; the state file
itself is not locked independently.
"""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterator

from evolver.constants import OUTCOME_CHANGED, OUTCOME_ERROR, OUTCOME_NOOP, OUTCOME_RUNNING
from evolver.models import LockHeldError, StateError
from evolver.utils import _append_line, _ensure_parent_dir, _utc_now, _write_json_atomic


@dataclass
class RunState:
    last_started_at: str = ""
    last_finished_at: str = ""
    last_success_at: str = ""
    last_error_at: str = ""
    last_outcome: str = ""
    last_error: str = ""
    last_change_summary: str = ""
    total_runs: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_changed_runs: int = 0
    consecutive_failures: int = 0
    consecutive_noop: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "RunState":
        state = cls()
        for item in fields(cls):
            if item.name not in payload:
                continue
            raw = payload[item.name]
            if item.type in (int, "int"):
                try:
                    setattr(state, item.name, int(raw))  # type: ignore[arg-type]
                except (TypeError, ValueError) as exc:
                    raise StateError(f"state.{item.name} must be an integer") from exc
            else:
                setattr(state, item.name, "" if raw is None else str(raw))
        return state


def load_run_state(path: Path) -> RunState:
    if not path.exists():
        return RunState()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"run state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"run state file must contain an object: {path}")
    return RunState.from_dict(payload)


class RunRecorder:
    """Persist run counters to ``state_path`` and append events to ``log_path``."""

    def __init__(self, state_path: Path, log_path: Path) -> None:
        self.state_path = Path(state_path)
        self.log_path = Path(log_path)
        _ensure_parent_dir(self.state_path)
        _ensure_parent_dir(self.log_path)
        self.state = load_run_state(self.state_path)

    def start(self) -> None:
        self.state.total_runs += 1
        self.state.last_started_at = _utc_now()
        self.state.last_outcome = OUTCOME_RUNNING
        self._save()
        self._append_event("start")

    def finish(self, changed: bool, summary: str, error: BaseException | None) -> None:
        now = _utc_now()
        self.state.last_finished_at = now

        if error is not None:
            message = str(error) or type(error).__name__
            self.state.total_failures += 1
            self.state.consecutive_failures += 1
            self.state.last_error_at = now
            self.state.last_outcome = OUTCOME_ERROR
            self.state.last_error = message
            self._save()
            self._append_event(OUTCOME_ERROR, message)
            return

        self.state.total_successes += 1
        self.state.consecutive_failures = 0
        self.state.last_success_at = now
        self.state.last_error = ""
        self.state.last_change_summary = summary
        if changed:
            self.state.total_changed_runs += 1
            self.state.consecutive_noop = 0
            self.state.last_outcome = OUTCOME_CHANGED
        else:
            self.state.consecutive_noop += 1
            self.state.last_outcome = OUTCOME_NOOP
        self._save()
        self._append_event(self.state.last_outcome, summary)

    def _save(self) -> None:
        _write_json_atomic(self.state_path, asdict(self.state))

    def _append_event(self, event: str, message: str = "") -> None:
        line = f"{_utc_now()} event={event}"
        if message:
            line += f" message={json.dumps(message, ensure_ascii=False)}"
        _append_line(self.log_path, line)


# ---------------------------------------------------------------------------
# Lock
# ---------------------------------------------------------------------------


def _stale_seconds(stale_after: timedelta | float | int) -> float:
    if isinstance(stale_after, timedelta):
        return stale_after.total_seconds()
    return float(stale_after)


def _create_lock(path: Path) -> bool:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"pid={os.getpid()} started={_utc_now()}\n")
    return True


def acquire_lock(path: Path, stale_after: timedelta | float | int) -> Callable[[], None]:
    """Create ``path`` exclusively and return a function that releases it.

    An existing lock older than ``stale_after`` (seconds or timedelta; ``<= 0``
    disables reclamation) is removed and creation is retried once.  Raises
    ``LockHeldError`` otherwise.  Never blocks.
    """
    lock_path = Path(path)
    _ensure_parent_dir(lock_path)

    def _release() -> None:
        lock_path.unlink(missing_ok=True)

    if _create_lock(lock_path):
        return _release

    stale_seconds = _stale_seconds(stale_after)
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        age = None
    if age is None or (stale_seconds > 0 and age > stale_seconds):
        lock_path.unlink(missing_ok=True)
        if _create_lock(lock_path):
            return _release
    raise LockHeldError(f"lock already held: {lock_path}")


@contextmanager
def run_lock(path: Path, stale_after: timedelta | float | int) -> Iterator[Path]:
    release = acquire_lock(path, stale_after)
    try:
        yield Path(path)
    finally:
        release()


def read_lock_payload(path: Path) -> str:
    lock_path = Path(path)
    if not lock_path.exists():
        return ""
    return lock_path.read_text(encoding="utf-8", errors="replace").strip()
