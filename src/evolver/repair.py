"""Evolver repair orchestrator -- bounded verify / triage / repair state machine."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Sequence

from evolver.capabilities import execute_capability
from evolver.classifier import is_terminal
from evolver.collaborators import Collaborators, check_budget
from evolver.constants import (
    DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT,
    FAILURE_CONTEXT_STDERR_CHARS,
    FAILURE_CONTEXT_STDOUT_CHARS,
)
from evolver.models import (
    BudgetConfig,
    CapabilityError,
    CommandFailureError,
    CommandResult,
    ConfigError,
    EvolverError,
    Plan,
    PlanApplyError,
    PlanGenerationError,
    PlanValidationError,
    RepairActionError,
    RepairAttempt,
    RepairBoundsError,
    RepairCapability,
    RepairExhaustedError,
    RepairOutcome,
    Report,
    RepoContext,
    TerminalFailureError,
)
from evolver.utils import trim_head_tail
from evolver.verification import run_verification

logger = logging.getLogger(__name__)

VERIFYING = "verifying"
GENERATING_PLAN = "generating_plan"
APPLYING = "applying"
EXECUTING_CAPABILITIES = "executing_capabilities"
REVALIDATING_BUDGET = "revalidating_budget"
DONE_SUCCESS = "done_success"
DONE_TERMINAL = "done_terminal_failure"
DONE_EXHAUSTED = "done_exhausted"

TransitionHook = Callable[[str, int], None]


def filter_capabilities(
    capabilities: Sequence[RepairCapability], failure_kind: str
) -> tuple[RepairCapability, ...]:
    return tuple(
        capability
        for capability in capabilities
        if capability.id.strip() and capability.argv and capability.allows(failure_kind)
    )


def index_capabilities(capabilities: Sequence[RepairCapability]) -> dict[str, RepairCapability]:
    by_id: dict[str, RepairCapability] = {}
    for capability in capabilities:
        if capability.id in by_id:
            raise ConfigError(f"duplicate repair capability id in config: {capability.id}")
        by_id[capability.id] = capability
    return by_id


def format_failure_context(report: Report | None, failure: CommandResult) -> str:
    lines = [
        f"Failed command ({failure.index}/{failure.total}): {failure.command}",
        f"Exit code: {failure.exit_code}",
        f"Kind: {failure.kind}",
    ]
    if failure.stdout.strip():
        lines += ["", "STDOUT:", trim_head_tail(failure.stdout, FAILURE_CONTEXT_STDOUT_CHARS)]
    if failure.stderr.strip():
        lines += ["", "STDERR:", trim_head_tail(failure.stderr, FAILURE_CONTEXT_STDERR_CHARS)]
    if report is not None and report.commands:
        lines += ["", "Verification results so far:"]
        for result in report.commands:
            status = "PASS" if result.passed else "FAIL"
            lines.append(f"- [{status}] {result.command} (exit={result.exit_code} kind={result.kind})")
    return "\n".join(lines) + "\n"


def force_repair_mode(plan: Plan, fallback_summary: str) -> Plan:
    """Drop audit metadata from a repair plan and keep a non-empty summary."""
    summary = plan.summary.strip() or fallback_summary
    return replace(plan, summary=summary, changelog_entry="", roadmap_update="")


class RepairOrchestrator:
    """Drive verification until it passes, fails terminally, or repair attempts run out.

    ``max_attempts`` bounds the number of repair cycles; the loop raises
    ``TerminalFailureError`` for terminal kinds (without ever calling the plan
    generator) and ``RepairExhaustedError`` once the bound is reached.  Every
    infrastructure failure inside a repair cycle is fatal and propagates.
    """

    def __init__(
        self,
        *,
        collaborators: Collaborators,
        capabilities: Sequence[RepairCapability],
        budget: BudgetConfig,
        max_attempts: int,
        repo_root: Path,
        max_actions_per_attempt: int = DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT,
        secret_scan: bool = True,
        verify: Callable[..., Report] = run_verification,
        execute: Callable[..., None] = execute_capability,
        on_transition: TransitionHook | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 0:
            raise ConfigError("repair.max_attempts must be >= 0")
        if max_actions_per_attempt <= 0:
            raise ConfigError("repair.max_actions_per_attempt must be > 0")
        index_capabilities(capabilities)
        self.collaborators = collaborators
        self.capabilities = tuple(capabilities)
        self.budget = budget
        self.max_attempts = max_attempts
        self.max_actions_per_attempt = max_actions_per_attempt
        self.repo_root = repo_root
        self.secret_scan = secret_scan
        self._verify = verify
        self._execute = execute
        self._on_transition = on_transition
        self.log = log or logger
        self.transitions: list[str] = []

    def _transition(self, state: str, attempt: int) -> None:
        self.transitions.append(state)
        self.log.debug("repair state transition", extra={"state": state, "attempt": attempt})
        if self._on_transition is not None:
            self._on_transition(state, attempt)

    def run(
        self,
        commands: Sequence[str],
        *,
        repo_context: RepoContext,
        original_summary: str,
    ) -> RepairOutcome:
        attempts_used = 0
        summary = original_summary
        while True:
            self._transition(VERIFYING, attempts_used)
            try:
                report = self._verify(commands, cwd=self.repo_root, log=self.log)
            except CommandFailureError as exc:
                failure = exc
                result = failure.result
            else:
                self._transition(DONE_SUCCESS, attempts_used)
                return RepairOutcome(
                    status="success",
                    attempts_used=attempts_used,
                    report=report,
                    summary=summary,
                    transitions=tuple(self.transitions),
                )

            if is_terminal(result.kind):
                self._transition(DONE_TERMINAL, attempts_used)
                self.log.error(
                    "verification failed with terminal kind; not attempting repair",
                    extra={"command": result.command, "exit_code": result.exit_code, "kind": result.kind},
                )
                raise TerminalFailureError(
                    failure, attempts_used=attempts_used, max_attempts=self.max_attempts
                ) from failure
            if attempts_used >= self.max_attempts:
                self._transition(DONE_EXHAUSTED, attempts_used)
                self.log.error(
                    "verification failed and repair budget exhausted",
                    extra={
                        "attempt": attempts_used,
                        "max_attempts": self.max_attempts,
                        "command": result.command,
                        "kind": result.kind,
                    },
                )
                raise RepairExhaustedError(
                    failure, attempts_used=attempts_used, max_attempts=self.max_attempts
                ) from failure

            attempts_used += 1
            self.log.warning(
                "verification failed; starting repair attempt",
                extra={
                    "attempt": attempts_used,
                    "max_attempts": self.max_attempts,
                    "command": result.command,
                    "exit_code": result.exit_code,
                    "kind": result.kind,
                },
            )
            attempt = RepairAttempt(
                number=attempts_used,
                failure=result,
                allowed=filter_capabilities(self.capabilities, result.kind),
            )
            summary = self._repair(attempt, failure.report, repo_context, summary)

    def _attempt_label(self, attempt: RepairAttempt) -> str:
        return f"attempt {attempt.number}/{self.max_attempts}"

    def _refresh_context(self, fallback: RepoContext) -> RepoContext:
        try:
            return self.collaborators.context.gather()
        except (EvolverError, OSError) as exc:
            self.log.warning("repair context refresh failed; using initial context", extra={"error": str(exc)})
            return fallback

    def _repair(
        self,
        attempt: RepairAttempt,
        report: Report,
        repo_context: RepoContext,
        summary: str,
    ) -> str:
        label = self._attempt_label(attempt)

        self._transition(GENERATING_PLAN, attempt.number)
        failure_context = format_failure_context(report, attempt.failure)
        context = self._refresh_context(repo_context)
        try:
            raw_plan = self.collaborators.generator.generate_repair_plan(
                context, summary, failure_context, attempt.allowed
            )
        except Exception as exc:
            raise PlanGenerationError(f"repair generation failed ({label}): {exc}") from exc
        plan = force_repair_mode(raw_plan, summary)
        self.log.info(
            "repair plan generated",
            extra={"attempt": attempt.number, "files": len(plan.files), "repair_actions": len(plan.repair_actions)},
        )

        self._transition(APPLYING, attempt.number)
        try:
            if self.secret_scan:
                self.collaborators.validator.scan_for_secrets(plan)
            self.collaborators.validator.validate_paths(plan)
        except PlanValidationError as exc:
            raise PlanValidationError(f"repair plan validation failed ({label}): {exc}") from exc
        try:
            self.collaborators.applier.apply(plan)
        except (PlanApplyError, OSError) as exc:
            raise PlanApplyError(f"repair apply failed ({label}): {exc}") from exc

        self._transition(EXECUTING_CAPABILITIES, attempt.number)
        self.execute_actions(attempt, plan.repair_actions)

        self._transition(REVALIDATING_BUDGET, attempt.number)
        check_budget(self.collaborators.budget, self.budget, log=self.log)
        return plan.summary

    def execute_actions(self, attempt: RepairAttempt, action_ids: Sequence[str]) -> None:
        if not action_ids:
            return
        if len(action_ids) > self.max_actions_per_attempt:
            raise RepairBoundsError(
                f"too many repair actions requested: {len(action_ids)} > {self.max_actions_per_attempt}"
            )
        allowed = index_capabilities(attempt.allowed)
        for position, raw_id in enumerate(action_ids):
            action_id = str(raw_id).strip()
            if not action_id:
                raise RepairBoundsError(f"repair action {position} has empty id")
            capability = allowed.get(action_id)
            if capability is None:
                raise RepairBoundsError(
                    f"repair action {action_id!r} is not allowed for failure kind {attempt.failure.kind!r}"
                )
            attempt.run_counts[action_id] = attempt.run_counts.get(action_id, 0) + 1
            if attempt.run_counts[action_id] > capability.max_runs_per_attempt:
                raise RepairBoundsError(
                    f"repair action {action_id!r} exceeded max_runs_per_attempt ({capability.max_runs_per_attempt})"
                )
            try:
                self._execute(capability, repo_root=self.repo_root, log=self.log)
            except CapabilityError as exc:
                raise RepairActionError(action_id, exc) from exc
