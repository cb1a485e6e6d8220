"""Interfaces the repair loop and driver consume from outside the core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from evolver.models import (
    BudgetConfig,
    BudgetExceededError,
    DiffStats,
    Plan,
    RepairCapability,
    RepoContext,
)

logger = logging.getLogger(__name__)


class PlanGenerator(Protocol):
    def generate_plan(self, repo_context: RepoContext) -> Plan: ...

    def generate_repair_plan(
        self,
        repo_context: RepoContext,
        original_summary: str,
        failure_context: str,
        allowed_capabilities: Sequence[RepairCapability],
    ) -> Plan: ...


class PlanValidator(Protocol):
    def validate_paths(self, plan: Plan) -> None: ...

    def scan_for_secrets(self, plan: Plan) -> None: ...


class PlanApplier(Protocol):
    def apply(self, plan: Plan) -> int: ...


class BudgetChecker(Protocol):
    def compute_diff_stats(self) -> DiffStats: ...

    def discard_changes(self) -> None: ...


class ContextGatherer(Protocol):
    def gather(self) -> RepoContext: ...


class VersionControl(Protocol):
    def checkout_new(self, branch: str) -> None: ...

    def commit(self, message: str) -> None: ...


@dataclass
class Collaborators:
    generator: PlanGenerator
    validator: PlanValidator
    applier: PlanApplier
    budget: BudgetChecker
    context: ContextGatherer
    vcs: VersionControl | None = None


def check_budget(checker: BudgetChecker, budget: BudgetConfig, *, log: logging.Logger | None = None) -> DiffStats:
    """Compute diff stats and raise ``BudgetExceededError`` when any maximum is exceeded."""
    log = log or logger
    stats = checker.compute_diff_stats()
    log.info(
        "diff stats computed",
        extra={
            "files_changed": stats.files_changed,
            "lines_changed": stats.lines_changed,
            "new_files": stats.new_files,
        },
    )
    if budget.exceeded_by(stats):
        log.error(
            "budget exceeded",
            extra={
                "files_changed": stats.files_changed,
                "lines_changed": stats.lines_changed,
                "new_files": stats.new_files,
                "max_files": budget.max_files_changed,
                "max_lines": budget.max_lines_changed,
                "max_new_files": budget.max_new_files,
            },
        )
        raise BudgetExceededError(stats, budget)
    return stats
