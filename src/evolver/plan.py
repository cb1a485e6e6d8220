"""Evolver plans -- parsing generator output and enforcing path and secret policy."""

from __future__ import annotations

import json
import posixpath
import re
from typing import Any, Sequence

from evolver.constants import WORKFLOW_DENY_PATH
from evolver.models import Plan, PlanFile, PlanValidationError

PLAN_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)-----BEGIN ((RSA|OPENSSH|EC|DSA) )?(PRIVATE )?KEY-----"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"ghp_[0-9a-zA-Z]{36}"),
)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def parse_plan_text(text: str) -> Plan:
    try:
        payload = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as exc:
        raise PlanValidationError(f"plan is not valid JSON: {exc}") from exc
    return parse_plan(payload)


def parse_plan(payload: Any) -> Plan:
    if not isinstance(payload, dict):
        raise PlanValidationError("plan must be a JSON object")

    raw_files = payload.get("files") or []
    if not isinstance(raw_files, list):
        raise PlanValidationError("plan.files must be a list")
    files: list[PlanFile] = []
    for position, raw in enumerate(raw_files):
        if not isinstance(raw, dict):
            raise PlanValidationError(f"plan.files[{position}] must be an object")
        path = raw.get("path")
        if not isinstance(path, str) or not path.strip():
            raise PlanValidationError(f"plan.files[{position}].path must be a non-empty string")
        content = raw.get("content", "")
        if not isinstance(content, str):
            raise PlanValidationError(f"plan.files[{position}].content must be a string")
        files.append(PlanFile(path=path, content=content, mode=str(raw.get("mode", "write") or "write")))

    raw_actions = payload.get("repair_actions") or []
    if not isinstance(raw_actions, list):
        raise PlanValidationError("plan.repair_actions must be a list")
    actions: list[str] = []
    for raw in raw_actions:
        # Generators may send either bare ids or {"id": ...} objects.
        if isinstance(raw, dict):
            raw = raw.get("id", "")
        actions.append(str(raw))

    return Plan(
        summary=str(payload.get("summary", "") or ""),
        files=tuple(files),
        changelog_entry=str(payload.get("changelog_entry", "") or ""),
        roadmap_update=str(payload.get("roadmap_update", "") or ""),
        repair_actions=tuple(actions),
    )


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "summary": plan.summary,
        "files": [{"path": item.path, "mode": item.mode, "content": item.content} for item in plan.files],
        "changelog_entry": plan.changelog_entry,
        "roadmap_update": plan.roadmap_update,
        "repair_actions": list(plan.repair_actions),
    }


def _clean(path: str) -> str:
    return posixpath.normpath(path.strip().replace("\\", "/"))


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


class PathPolicyValidator:
    """Reject plans touching denied paths or carrying obvious secrets.

    Paths must also fall under one of ``allow_paths``; ``"."`` allows the
    whole repository.
    """

    def __init__(
        self,
        deny_paths: Sequence[str],
        *,
        allow_paths: Sequence[str] = (".",),
        allow_workflow_edits: bool = False,
    ) -> None:
        self.deny_paths = tuple(deny_paths)
        self.allow_paths = tuple(_clean(path) for path in allow_paths if path.strip())
        self.allow_workflow_edits = allow_workflow_edits

    def validate_paths(self, plan: Plan) -> None:
        for item in plan.files:
            clean_path = _clean(item.path)
            for deny in self.deny_paths:
                clean_deny = _clean(deny)
                if not _under(clean_path, clean_deny):
                    continue
                if clean_deny == _clean(WORKFLOW_DENY_PATH) and self.allow_workflow_edits:
                    continue
                raise PlanValidationError(f"path {clean_path} is denied by rule {deny}")
            if not any(allow == "." or _under(clean_path, allow) for allow in self.allow_paths):
                raise PlanValidationError(f"path {clean_path} is outside allowed paths {list(self.allow_paths)}")

    def scan_for_secrets(self, plan: Plan) -> None:
        for item in plan.files:
            for pattern in PLAN_SECRET_PATTERNS:
                if pattern.search(item.content):
                    raise PlanValidationError(f"security violation: sensitive data detected in {item.path}")
