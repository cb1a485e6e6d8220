"""Default plan generator and repository context gatherer.

The generator is any external program: it receives one JSON request on stdin
and must print one JSON plan on stdout.  Requests look like::

    {"kind": "plan" | "repair", "repo_goal": "...", "budgets": {...},
     "allow_workflow_edits": false, "context": {...},
     "original_summary": "...", "failure_context": "...",
     "allowed_capabilities": [{"id": "...", ...}]}

``original_summary``, ``failure_context`` and ``allowed_capabilities`` are only
sent for repair requests.  When the output is not a valid plan the program is
asked once more, with ``previous_output`` and ``previous_error`` added.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Any, Sequence

from evolver.constants import (
    CONTEXT_CHANGELOG_TAIL_CHARS,
    CONTEXT_EXCERPT_MAX_BYTES,
    DEFAULT_GENERATOR_TIMEOUT_SECONDS,
)
from evolver.models import (
    BudgetConfig,
    Plan,
    PlanGenerationError,
    PlanValidationError,
    RepairCapability,
    RepoContext,
)
from evolver.plan import parse_plan_text
from evolver.utils import _compact_log_text, _read_text_if_exists, _redact_sensitive_text

logger = logging.getLogger(__name__)

GENERATOR_PARSE_ATTEMPTS = 2


def context_to_dict(context: RepoContext) -> dict[str, Any]:
    return {
        "files": list(context.files),
        "excerpts": dict(context.excerpts),
        "policy": context.policy,
        "roadmap": context.roadmap,
        "changelog": context.changelog,
    }


class CommandPlanGenerator:
    def __init__(
        self,
        command: str,
        *,
        cwd: Path,
        repo_goal: str = "",
        budget: BudgetConfig | None = None,
        allow_workflow_edits: bool = False,
        timeout_seconds: float = DEFAULT_GENERATOR_TIMEOUT_SECONDS,
    ) -> None:
        if not str(command).strip():
            raise PlanGenerationError("generator.command is not configured")
        try:
            self.argv = shlex.split(command)
        except ValueError as exc:
            raise PlanGenerationError(f"generator.command could not be parsed: {exc}") from exc
        self.cwd = Path(cwd)
        self.repo_goal = repo_goal
        self.budget = budget
        self.allow_workflow_edits = allow_workflow_edits
        self.timeout_seconds = timeout_seconds

    def _base_request(self, kind: str, repo_context: RepoContext) -> dict[str, Any]:
        budgets: dict[str, int] = {}
        if self.budget is not None:
            budgets = {
                "max_files_changed": self.budget.max_files_changed,
                "max_lines_changed": self.budget.max_lines_changed,
                "max_new_files": self.budget.max_new_files,
            }
        return {
            "kind": kind,
            "repo_goal": self.repo_goal,
            "budgets": budgets,
            "allow_workflow_edits": self.allow_workflow_edits,
            "context": context_to_dict(repo_context),
        }

    def generate_plan(self, repo_context: RepoContext) -> Plan:
        return self._request_plan(self._base_request("plan", repo_context))

    def generate_repair_plan(
        self,
        repo_context: RepoContext,
        original_summary: str,
        failure_context: str,
        allowed_capabilities: Sequence[RepairCapability],
    ) -> Plan:
        request = self._base_request("repair", repo_context)
        request["original_summary"] = original_summary.strip()
        request["failure_context"] = failure_context.strip()
        request["allowed_capabilities"] = [capability.to_prompt_dict() for capability in allowed_capabilities]
        return self._request_plan(request)

    def _request_plan(self, request: dict[str, Any]) -> Plan:
        last_error: PlanValidationError | None = None
        for attempt in range(1, GENERATOR_PARSE_ATTEMPTS + 1):
            output = self._invoke(request)
            try:
                return parse_plan_text(output)
            except PlanValidationError as exc:
                last_error = exc
                logger.warning(
                    "generator output was not a valid plan",
                    extra={"attempt": attempt, "error": str(exc), "output": _compact_log_text(output)},
                )
                request = {**request, "previous_output": output, "previous_error": str(exc)}
        raise PlanGenerationError(f"generator did not return a valid plan: {last_error}")

    def _invoke(self, request: dict[str, Any]) -> str:
        try:
            completed = subprocess.run(
                self.argv,
                cwd=self.cwd,
                input=json.dumps(request),
                text=True,
                capture_output=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise PlanGenerationError(f"generator timed out after {self.timeout_seconds:g}s") from exc
        except OSError as exc:
            raise PlanGenerationError(f"generator could not be started: {exc}") from exc
        if completed.returncode != 0:
            detail = _redact_sensitive_text(_compact_log_text(completed.stderr or completed.stdout))
            raise PlanGenerationError(f"generator exited {completed.returncode}: {detail}")
        return completed.stdout


def _is_denied(relative: str, deny_paths: Sequence[str]) -> bool:
    for deny in deny_paths:
        prefix = deny.strip().rstrip("/")
        if prefix and (relative == prefix or relative.startswith(prefix + "/")):
            return True
    return False


class RepoContextGatherer:
    """Collect the file list, small file excerpts, and the policy documents."""

    def __init__(
        self,
        root: Path,
        deny_paths: Sequence[str],
        *,
        excerpt_max_bytes: int = CONTEXT_EXCERPT_MAX_BYTES,
        changelog_tail_chars: int = CONTEXT_CHANGELOG_TAIL_CHARS,
    ) -> None:
        self.root = Path(root)
        self.deny_paths = tuple(deny_paths)
        self.excerpt_max_bytes = excerpt_max_bytes
        self.changelog_tail_chars = changelog_tail_chars

    def gather(self) -> RepoContext:
        context = RepoContext()
        for current, dirnames, filenames in os.walk(self.root):
            current_path = Path(current)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not _is_denied((current_path / name).relative_to(self.root).as_posix(), self.deny_paths)
            )
            for name in sorted(filenames):
                path = current_path / name
                relative = path.relative_to(self.root).as_posix()
                if _is_denied(relative, self.deny_paths):
                    continue
                context.files.append(relative)
                try:
                    if path.stat().st_size < self.excerpt_max_bytes:
                        context.excerpts[relative] = path.read_text(encoding="utf-8", errors="replace")
                except OSError as exc:
                    logger.debug("skipping unreadable file", extra={"path": relative, "error": str(exc)})

        context.policy = _read_text_if_exists(self.root / "POLICY.md")
        context.roadmap = _read_text_if_exists(self.root / "ROADMAP.md")
        changelog = _read_text_if_exists(self.root / "CHANGELOG.md")
        context.changelog = changelog[-self.changelog_tail_chars :] if self.changelog_tail_chars > 0 else changelog
        return context
