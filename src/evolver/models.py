"""Evolver data models -- exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from evolver.constants import (
    DEFAULT_CAPABILITY_MAX_RUNS_PER_ATTEMPT,
    DEFAULT_CAPABILITY_TIMEOUT_SECONDS,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class EvolverError(RuntimeError):
    """Base class for every error raised by evolver."""


class ConfigError(EvolverError):
    """Raised when configuration cannot be loaded or validated."""


class StateError(EvolverError):
    """Raised when the persisted run state cannot be loaded."""


class LockHeldError(EvolverError):
    """Raised when the run lock is held by another, non-stale run."""


class CommandFailureError(EvolverError):
    """Raised by the verification runner when a command exits non-zero."""

    def __init__(self, result: "CommandResult", report: "Report") -> None:
        self.result = result
        self.report = report
        super().__init__(
            f"command failed: {result.command} (exit={result.exit_code}, kind={result.kind})"
        )


class VerificationFailedError(EvolverError):
    """Verification ended in a failure the repair loop will not (or can no longer) fix."""

    reason = "verification failed"

    def __init__(self, failure: "CommandFailureError", *, attempts_used: int, max_attempts: int) -> None:
        self.failure = failure
        self.result = failure.result
        self.report = failure.report
        self.attempts_used = attempts_used
        self.max_attempts = max_attempts
        super().__init__(
            f"{self.reason} after {attempts_used}/{max_attempts} repair attempt(s): "
            f"command {self.result.command!r} (index {self.result.index}/{self.result.total}) "
            f"exited {self.result.exit_code}, kind={self.result.kind}"
        )


class TerminalFailureError(VerificationFailedError):
    reason = "verification failed with terminal kind; repair not attempted"


class RepairExhaustedError(VerificationFailedError):
    reason = "verification still failing; repair attempts exhausted"


class CapabilityError(EvolverError):
    """Base class for repair capability execution failures."""


class UnsafeCapabilityCwdError(CapabilityError):
    pass


class CapabilityTimeoutError(CapabilityError):
    pass


class CapabilityExecutionError(CapabilityError):
    def __init__(self, capability_id: str, exit_code: int, kind: str) -> None:
        self.capability_id = capability_id
        self.exit_code = exit_code
        self.kind = kind
        super().__init__(
            f"repair capability {capability_id!r} exited {exit_code} (kind={kind})"
        )


class SecurityIntegrityError(CapabilityError):
    """Fail-closed signal: an integrity failure was detected during repair."""


class RepairBoundsError(EvolverError):
    """Raised when a repair plan requests actions outside the allowed bounds."""


class RepairActionError(EvolverError):
    def __init__(self, capability_id: str, cause: Exception) -> None:
        self.capability_id = capability_id
        self.cause = cause
        super().__init__(f"repair action {capability_id!r} failed: {cause}")

    @property
    def is_security_integrity(self) -> bool:
        return isinstance(self.cause, SecurityIntegrityError)


class PlanGenerationError(EvolverError):
    pass


class PlanValidationError(EvolverError):
    pass


class PlanApplyError(EvolverError):
    pass


class GitError(EvolverError):
    """Raised when a git subcommand exits non-zero."""


class BudgetExceededError(EvolverError):
    def __init__(self, stats: "DiffStats", budget: "BudgetConfig") -> None:
        self.stats = stats
        self.budget = budget
        super().__init__(
            f"budget exceeded: {stats.files_changed} files, {stats.lines_changed} lines, "
            f"{stats.new_files} new files (max {budget.max_files_changed} files, "
            f"{budget.max_lines_changed} lines, {budget.max_new_files} new files)"
        )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    index: int
    total: int
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    passed: bool = False
    kind: str = ""  # empty when passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "total": self.total,
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "passed": self.passed,
            "kind": self.kind,
        }


@dataclass
class Report:
    """Ordered results of one verification pass. A failed entry is always last."""

    commands: list[CommandResult] = field(default_factory=list)

    def append(self, result: CommandResult) -> None:
        if self.commands and not self.commands[-1].passed:
            raise ValueError("cannot append to a report that already ended in failure")
        self.commands.append(result)

    def first_failure(self) -> CommandResult | None:
        for result in self.commands:
            if not result.passed:
                return result
        return None

    @property
    def passed(self) -> bool:
        return self.first_failure() is None

    def passed_commands(self) -> list[str]:
        return [result.command for result in self.commands if result.passed]


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RepairCapability:
    id: str
    argv: tuple[str, ...]
    description: str = ""
    timeout_seconds: int = DEFAULT_CAPABILITY_TIMEOUT_SECONDS
    max_runs_per_attempt: int = DEFAULT_CAPABILITY_MAX_RUNS_PER_ATTEMPT
    allowed_failure_kinds: tuple[str, ...] = ()
    cwd: str = ""

    def allows(self, kind: str) -> bool:
        if not self.allowed_failure_kinds:
            return True
        normalized = kind.strip().lower()
        return any(candidate.strip().lower() == normalized for candidate in self.allowed_failure_kinds)

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "command": " ".join(self.argv),
            "max_runs_per_attempt": self.max_runs_per_attempt,
            "allowed_failure_kinds": list(self.allowed_failure_kinds),
        }


@dataclass
class RepairAttempt:
    number: int
    failure: CommandResult
    allowed: tuple[RepairCapability, ...]
    run_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RepairOutcome:
    status: str  # "success"
    attempts_used: int
    report: Report
    summary: str
    transitions: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Plans and collaborators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanFile:
    path: str
    content: str
    mode: str = "write"


@dataclass(frozen=True)
class Plan:
    summary: str = ""
    files: tuple[PlanFile, ...] = ()
    changelog_entry: str = ""
    roadmap_update: str = ""
    repair_actions: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.files and not self.changelog_entry and not self.roadmap_update


@dataclass(frozen=True)
class DiffStats:
    files_changed: int = 0
    lines_changed: int = 0
    new_files: int = 0

    @property
    def is_empty(self) -> bool:
        return self.files_changed == 0 and self.lines_changed == 0 and self.new_files == 0


@dataclass
class RepoContext:
    files: list[str] = field(default_factory=list)
    excerpts: dict[str, str] = field(default_factory=dict)
    policy: str = ""
    roadmap: str = ""
    changelog: str = ""


@dataclass(frozen=True)
class RunOutcome:
    exit_code: int
    changed: bool
    summary: str
    message: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BudgetConfig:
    max_files_changed: int
    max_lines_changed: int
    max_new_files: int

    def exceeded_by(self, stats: DiffStats) -> bool:
        return (
            stats.files_changed > self.max_files_changed
            or stats.lines_changed > self.max_lines_changed
            or stats.new_files > self.max_new_files
        )


@dataclass(frozen=True)
class SecurityConfig:
    allow_workflow_edits: bool
    secret_scan: bool


@dataclass(frozen=True)
class ReliabilityConfig:
    state_file: Path
    run_log_file: Path
    lock_file: Path
    lock_stale_minutes: int


@dataclass(frozen=True)
class RepairConfig:
    max_attempts: int
    max_actions_per_attempt: int
    capabilities: tuple[RepairCapability, ...]


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    format: str
    file: str


@dataclass(frozen=True)
class GeneratorConfig:
    command: str
    timeout_seconds: float


@dataclass(frozen=True)
class EvolverConfig:
    mode: str
    workdir: Path
    repo_goal: str
    commands: tuple[str, ...]
    allow_paths: tuple[str, ...]
    deny_paths: tuple[str, ...]
    budgets: BudgetConfig
    security: SecurityConfig
    reliability: ReliabilityConfig
    repair: RepairConfig
    logging: LoggingConfig
    generator: GeneratorConfig
