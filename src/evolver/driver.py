"""Evolver driver -- one complete, locked, recorded evolution run."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Mapping

import yaml

from evolver.apply import FileApplier, append_changelog, update_roadmap
from evolver.capabilities import execute_capability
from evolver.collaborators import Collaborators, check_budget
from evolver.config import config_file_path, default_config_payload
from evolver.constants import (
    CHANGELOG_TEMPLATE,
    DEFAULT_REPO_GOAL,
    POLICY_TEMPLATE,
    ROADMAP_TEMPLATE,
)
from evolver.generator import CommandPlanGenerator, RepoContextGatherer
from evolver.gitops import GitBudgetChecker
from evolver.logsetup import log_step
from evolver.models import EvolverConfig, EvolverError, Plan, Report, RunOutcome
from evolver.plan import PathPolicyValidator
from evolver.repair import RepairOrchestrator
from evolver.runstate import RunRecorder, acquire_lock
from evolver.verification import run_verification

logger = logging.getLogger(__name__)

EMPTY_PLAN_SUMMARY = "Bootstrap evolver scaffolding"
NO_CHANGES_PROPOSED = "No changes proposed"
NO_CHANGES_PRODUCED = "No changes produced"
FALLBACK_COMMIT_SUMMARY = "evolver changes"


def bootstrap(config: EvolverConfig) -> list[Path]:
    """Create the config file and policy documents that do not exist yet."""
    root = config.workdir
    created: list[Path] = []
    config_path = config_file_path(root)
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        payload = default_config_payload()
        payload["mode"] = config.mode
        payload["repo_goal"] = config.repo_goal
        payload["commands"] = list(config.commands)
        config_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        created.append(config_path)

    templates = {
        "POLICY.md": POLICY_TEMPLATE,
        "ROADMAP.md": ROADMAP_TEMPLATE.format(goal=config.repo_goal.strip() or DEFAULT_REPO_GOAL),
        "CHANGELOG.md": CHANGELOG_TEMPLATE,
    }
    for name, content in templates.items():
        path = root / name
        if not path.exists():
            path.write_text(content, encoding="utf-8")
            created.append(path)
    return created


def set_output(key: str, value: str, *, env: Mapping[str, str] | None = None) -> None:
    """Append ``key`` to the ``GITHUB_OUTPUT`` file as a heredoc block, when configured."""
    environ = os.environ if env is None else env
    output_path = environ.get("GITHUB_OUTPUT", "").strip()
    if not output_path:
        return
    delimiter = f"EVOLVER_{time.time_ns()}"
    while delimiter in value:
        delimiter = f"EVOLVER_{time.time_ns()}"
    try:
        with Path(output_path).open("a", encoding="utf-8") as handle:
            handle.write(f"{key}<<{delimiter}\n{value}\n{delimiter}\n")
    except OSError as exc:
        logger.warning("failed to write workflow output", extra={"key": key, "error": str(exc)})


def _relative_to_root(root: Path, path: Path) -> str:
    try:
        return path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return ""


def build_collaborators(config: EvolverConfig) -> Collaborators:
    root = config.workdir
    reliability = config.reliability
    excluded = [
        _relative_to_root(root, path)
        for path in (reliability.state_file, reliability.run_log_file, reliability.lock_file)
    ]
    if config.logging.file:
        excluded.append(_relative_to_root(root, Path(config.logging.file)))
    git = GitBudgetChecker(root, excluded_paths=[path for path in excluded if path])
    return Collaborators(
        generator=CommandPlanGenerator(
            config.generator.command,
            cwd=root,
            repo_goal=config.repo_goal,
            budget=config.budgets,
            allow_workflow_edits=config.security.allow_workflow_edits,
            timeout_seconds=config.generator.timeout_seconds,
        ),
        validator=PathPolicyValidator(
            config.deny_paths,
            allow_paths=config.allow_paths,
            allow_workflow_edits=config.security.allow_workflow_edits,
        ),
        applier=FileApplier(root),
        budget=git,
        context=RepoContextGatherer(root, config.deny_paths),
        vcs=git,
    )


class EvolutionRun:
    """State for a single run; ``execute`` returns the outcome or raises."""

    def __init__(
        self,
        config: EvolverConfig,
        collaborators: Collaborators,
        *,
        verify: Callable[..., Report] = run_verification,
        execute: Callable[..., None] = execute_capability,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.collaborators = collaborators
        self._verify = verify
        self._execute = execute
        self._env = env
        self.applied = False
        self.changed = False
        self.summary = ""
        self.branch = ""

    def _output(self, key: str, value: str) -> None:
        set_output(key, value, env=self._env)

    def _noop(self, summary: str) -> RunOutcome:
        self.summary = summary
        logger.info("run ended with no changes", extra={"summary": summary})
        self._output("changed", "false")
        self._output("summary", summary)
        return RunOutcome(exit_code=0, changed=False, summary=summary)

    def execute(self) -> RunOutcome:
        config = self.config
        collaborators = self.collaborators

        with log_step("gather_repo_context"):
            context = collaborators.context.gather()
        logger.info("repository context ready", extra={"files": len(context.files), "excerpts": len(context.excerpts)})

        with log_step("generate_plan"):
            plan: Plan = collaborators.generator.generate_plan(context)
        logger.info(
            "plan generated",
            extra={
                "files": len(plan.files),
                "has_changelog": bool(plan.changelog_entry),
                "has_roadmap_update": bool(plan.roadmap_update),
            },
        )
        empty_plan = plan.is_empty
        summary = plan.summary.strip()
        if empty_plan:
            logger.info("plan proposed no direct file changes")
            summary = summary or EMPTY_PLAN_SUMMARY

        if config.security.secret_scan:
            with log_step("security_scan_plan"):
                collaborators.validator.scan_for_secrets(plan)
        with log_step("validate_paths"):
            collaborators.validator.validate_paths(plan)

        if config.mode == "pr" and collaborators.vcs is not None:
            branch = f"evolve/{datetime.now(timezone.utc).strftime('%Y-%m-%d-%H%M%S')}"
            with log_step("git_checkout_branch"):
                collaborators.vcs.checkout_new(branch)
            self.branch = branch

        self.applied = True
        with log_step("apply_plan"):
            collaborators.applier.apply(plan)
        if plan.changelog_entry:
            with log_step("append_changelog"):
                append_changelog(config.workdir, plan.changelog_entry)
        if plan.roadmap_update:
            with log_step("update_roadmap"):
                update_roadmap(config.workdir, plan.roadmap_update)

        with log_step("check_budget"):
            stats = check_budget(collaborators.budget, config.budgets)
        if stats.is_empty:
            return self._noop(NO_CHANGES_PROPOSED if empty_plan else NO_CHANGES_PRODUCED)

        orchestrator = RepairOrchestrator(
            collaborators=collaborators,
            capabilities=config.repair.capabilities,
            budget=config.budgets,
            max_attempts=config.repair.max_attempts,
            max_actions_per_attempt=config.repair.max_actions_per_attempt,
            repo_root=config.workdir,
            secret_scan=config.security.secret_scan,
            verify=self._verify,
            execute=self._execute,
        )
        with log_step("verify_with_repair"):
            outcome = orchestrator.run(config.commands, repo_context=context, original_summary=summary)

        # Repair edits and capabilities may have grown the diff.
        with log_step("final_check_budget"):
            check_budget(collaborators.budget, config.budgets)

        summary = outcome.summary.strip() or summary or FALLBACK_COMMIT_SUMMARY
        if collaborators.vcs is not None:
            with log_step("git_commit"):
                collaborators.vcs.commit(summary)

        self.changed = True
        self.summary = summary
        self._output("changed", "true")
        self._output("summary", summary)
        if self.branch:
            self._output("branch", self.branch)
        return RunOutcome(exit_code=0, changed=True, summary=summary)

    def rollback(self) -> None:
        if not self.applied:
            return
        try:
            self.collaborators.budget.discard_changes()
        except (EvolverError, OSError) as exc:
            logger.error("failed to discard working tree changes", extra={"error": str(exc)})


def run_once(
    config: EvolverConfig,
    *,
    collaborators: Collaborators | None = None,
    verify: Callable[..., Report] = run_verification,
    execute: Callable[..., None] = execute_capability,
    env: Mapping[str, str] | None = None,
) -> RunOutcome:
    """Run one evolution cycle under the run lock.

    Every run is recorded in the run state, including runs that fail.  Any
    failure after the plan was applied discards the working tree changes
    before the error propagates.
    """
    started = time.monotonic()
    logger.info("evolver run started", extra={"mode": config.mode, "workdir": str(config.workdir)})

    reliability = config.reliability
    with log_step("acquire_lock"):
        release = acquire_lock(reliability.lock_file, timedelta(minutes=reliability.lock_stale_minutes))
    run: EvolutionRun | None = None
    try:
        with log_step("init_runstate_recorder"):
            recorder = RunRecorder(reliability.state_file, reliability.run_log_file)
        with log_step("record_run_start"):
            recorder.start()
        try:
            with log_step("policy_bootstrap"):
                bootstrap(config)
            run = EvolutionRun(
                config,
                collaborators if collaborators is not None else build_collaborators(config),
                verify=verify,
                execute=execute,
                env=env,
            )
            outcome = run.execute()
        except Exception as exc:
            if run is not None:
                run.rollback()
            recorder.finish(False, run.summary if run is not None else "", exc)
            logger.error(
                "evolver run failed",
                extra={"duration_ms": int((time.monotonic() - started) * 1000), "error": str(exc)},
            )
            raise
        recorder.finish(outcome.changed, outcome.summary, None)
    finally:
        release()

    logger.info(
        "evolver run finished",
        extra={
            "changed": outcome.changed,
            "summary": outcome.summary,
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return outcome
