"""Evolver configuration -- defaults, `.evolver/config.yml`, then `EVOLVER_*` environment overrides."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import Draft202012Validator

from evolver.constants import (
    CONFIG_RELATIVE_PATH,
    CONFIG_SCHEMA_PATH,
    DEFAULT_CAPABILITY_MAX_RUNS_PER_ATTEMPT,
    DEFAULT_CAPABILITY_TIMEOUT_SECONDS,
    DEFAULT_DENY_PATHS,
    DEFAULT_GENERATOR_TIMEOUT_SECONDS,
    DEFAULT_LOCK_FILE,
    DEFAULT_LOCK_STALE_MINUTES,
    DEFAULT_LOG_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_FILES_CHANGED,
    DEFAULT_MAX_LINES_CHANGED,
    DEFAULT_MAX_NEW_FILES,
    DEFAULT_MODE,
    DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT,
    DEFAULT_REPAIR_MAX_ATTEMPTS,
    DEFAULT_RUN_LOG_FILE,
    DEFAULT_STATE_FILE,
)
from evolver.models import (
    BudgetConfig,
    ConfigError,
    EvolverConfig,
    GeneratorConfig,
    LoggingConfig,
    ReliabilityConfig,
    RepairCapability,
    RepairConfig,
    SecurityConfig,
    _coerce_bool,
)


def default_config_payload() -> dict[str, Any]:
    return {
        "mode": DEFAULT_MODE,
        "repo_goal": "",
        "workdir": ".",
        "commands": [],
        "allow_paths": ["."],
        "deny_paths": list(DEFAULT_DENY_PATHS),
        "budgets": {
            "max_files_changed": DEFAULT_MAX_FILES_CHANGED,
            "max_lines_changed": DEFAULT_MAX_LINES_CHANGED,
            "max_new_files": DEFAULT_MAX_NEW_FILES,
        },
        "security": {"allow_workflow_edits": False, "secret_scan": True},
        "reliability": {
            "state_file": DEFAULT_STATE_FILE,
            "run_log_file": DEFAULT_RUN_LOG_FILE,
            "lock_file": DEFAULT_LOCK_FILE,
            "lock_stale_minutes": DEFAULT_LOCK_STALE_MINUTES,
        },
        "repair": {
            "max_attempts": DEFAULT_REPAIR_MAX_ATTEMPTS,
            "max_actions_per_attempt": DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT,
            "capabilities": [],
        },
        "logging": {"level": DEFAULT_LOG_LEVEL, "format": DEFAULT_LOG_FORMAT, "file": ""},
        "generator": {"command": "", "timeout_seconds": DEFAULT_GENERATOR_TIMEOUT_SECONDS},
    }


@lru_cache(maxsize=1)
def _config_validator() -> Draft202012Validator:
    schema = json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_config_payload(payload: dict[str, Any], *, source: str) -> None:
    errors = sorted(_config_validator().iter_errors(payload), key=lambda error: list(error.absolute_path))
    if not errors:
        return
    details = []
    for error in errors[:10]:
        location = ".".join(str(part) for part in error.absolute_path) or "<root>"
        details.append(f"{location}: {error.message}")
    raise ConfigError(f"invalid configuration in {source}: " + "; ".join(details))


def _load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"config could not be parsed at {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config at {path} must be a mapping")
    validate_config_payload(loaded, source=str(path))
    return loaded


def _merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _apply_env_overrides(payload: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    merged = _merge(payload, {})
    string_overrides = {
        "EVOLVER_MODE": ("mode",),
        "EVOLVER_REPO_GOAL": ("repo_goal",),
        "EVOLVER_STATE_FILE": ("reliability", "state_file"),
        "EVOLVER_RUN_LOG_FILE": ("reliability", "run_log_file"),
        "EVOLVER_LOCK_FILE": ("reliability", "lock_file"),
        "EVOLVER_LOG_LEVEL": ("logging", "level"),
        "EVOLVER_LOG_FORMAT": ("logging", "format"),
        "EVOLVER_LOG_FILE": ("logging", "file"),
        "EVOLVER_GENERATOR_COMMAND": ("generator", "command"),
    }
    int_overrides = {
        "EVOLVER_MAX_FILES": ("budgets", "max_files_changed"),
        "EVOLVER_MAX_LINES": ("budgets", "max_lines_changed"),
        "EVOLVER_MAX_NEW_FILES": ("budgets", "max_new_files"),
        "EVOLVER_LOCK_STALE_MINUTES": ("reliability", "lock_stale_minutes"),
        "EVOLVER_REPAIR_MAX_ATTEMPTS": ("repair", "max_attempts"),
        "EVOLVER_REPAIR_MAX_ACTIONS_PER_ATTEMPT": ("repair", "max_actions_per_attempt"),
    }

    def _set(path: tuple[str, ...], value: Any) -> None:
        target = merged
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value

    for name, path in string_overrides.items():
        value = env.get(name, "")
        if value:
            _set(path, value)
    for name, path in int_overrides.items():
        value = _env_int(env, name)
        if value is not None:
            _set(path, value)

    commands = env.get("EVOLVER_COMMANDS", "")
    if commands:
        _set(("commands",), [line.strip() for line in commands.split("\n") if line.strip()])
    if _coerce_bool(env.get("EVOLVER_ALLOW_WORKFLOWS"), default=False):
        _set(("security", "allow_workflow_edits"), True)
    raw_capabilities = env.get("EVOLVER_REPAIR_CAPABILITIES_JSON", "").strip()
    if raw_capabilities:
        try:
            capabilities = json.loads(raw_capabilities)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"EVOLVER_REPAIR_CAPABILITIES_JSON is not valid JSON: {exc}") from exc
        _set(("repair", "capabilities"), capabilities)
    return merged


def parse_capabilities(raw_capabilities: Any) -> tuple[RepairCapability, ...]:
    if raw_capabilities is None:
        return ()
    if not isinstance(raw_capabilities, list):
        raise ConfigError("repair.capabilities must be a list")
    parsed: list[RepairCapability] = []
    seen: set[str] = set()
    for position, raw in enumerate(raw_capabilities):
        if not isinstance(raw, dict):
            raise ConfigError(f"repair.capabilities[{position}] must be a mapping")
        capability_id = str(raw.get("id", "")).strip()
        if not capability_id:
            raise ConfigError(f"repair.capabilities[{position}].id must be non-empty")
        if capability_id in seen:
            raise ConfigError(f"duplicate repair capability id in config: {capability_id}")
        seen.add(capability_id)

        argv = raw.get("argv")
        if not isinstance(argv, list) or not argv or not str(argv[0]).strip():
            raise ConfigError(f"repair capability {capability_id!r} must define a non-empty argv list")
        timeout_seconds = int(raw.get("timeout_seconds", DEFAULT_CAPABILITY_TIMEOUT_SECONDS) or 0)
        if timeout_seconds <= 0:
            raise ConfigError(f"repair capability {capability_id!r} timeout_seconds must be > 0")
        max_runs = int(raw.get("max_runs_per_attempt", DEFAULT_CAPABILITY_MAX_RUNS_PER_ATTEMPT) or 0)
        if max_runs <= 0:
            raise ConfigError(f"repair capability {capability_id!r} max_runs_per_attempt must be > 0")
        kinds = raw.get("allowed_failure_kinds") or []
        if not isinstance(kinds, list):
            raise ConfigError(f"repair capability {capability_id!r} allowed_failure_kinds must be a list")

        parsed.append(
            RepairCapability(
                id=capability_id,
                argv=tuple(str(token) for token in argv),
                description=str(raw.get("description", "")).strip(),
                timeout_seconds=timeout_seconds,
                max_runs_per_attempt=max_runs,
                allowed_failure_kinds=tuple(str(kind).strip().lower() for kind in kinds if str(kind).strip()),
                cwd=str(raw.get("cwd", "") or "").strip(),
            )
        )
    return tuple(parsed)


def _resolve_under(workdir: Path, raw: str) -> Path:
    candidate = Path(raw).expanduser()
    if candidate.is_absolute():
        return candidate
    return workdir / candidate


def build_config(payload: dict[str, Any], *, workdir: Path) -> EvolverConfig:
    budgets = payload["budgets"]
    security = payload["security"]
    reliability = payload["reliability"]
    repair = payload["repair"]
    logging_section = payload["logging"]
    generator = payload["generator"]

    max_attempts = int(repair.get("max_attempts", DEFAULT_REPAIR_MAX_ATTEMPTS))
    if max_attempts < 0:
        raise ConfigError("repair.max_attempts must be >= 0")
    max_actions = int(repair.get("max_actions_per_attempt", DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT))
    if max_actions <= 0:
        raise ConfigError("repair.max_actions_per_attempt must be > 0")

    log_file = str(logging_section.get("file", "") or "").strip()
    return EvolverConfig(
        mode=str(payload.get("mode", DEFAULT_MODE)).strip() or DEFAULT_MODE,
        workdir=workdir,
        repo_goal=str(payload.get("repo_goal", "") or ""),
        commands=tuple(str(command) for command in payload.get("commands") or []),
        allow_paths=tuple(str(path) for path in payload.get("allow_paths") or ["."]),
        deny_paths=tuple(str(path) for path in payload.get("deny_paths") or []),
        budgets=BudgetConfig(
            max_files_changed=int(budgets["max_files_changed"]),
            max_lines_changed=int(budgets["max_lines_changed"]),
            max_new_files=int(budgets["max_new_files"]),
        ),
        security=SecurityConfig(
            allow_workflow_edits=_coerce_bool(security.get("allow_workflow_edits"), default=False),
            secret_scan=_coerce_bool(security.get("secret_scan"), default=True),
        ),
        reliability=ReliabilityConfig(
            state_file=_resolve_under(workdir, str(reliability["state_file"])),
            run_log_file=_resolve_under(workdir, str(reliability["run_log_file"])),
            lock_file=_resolve_under(workdir, str(reliability["lock_file"])),
            lock_stale_minutes=int(reliability["lock_stale_minutes"]),
        ),
        repair=RepairConfig(
            max_attempts=max_attempts,
            max_actions_per_attempt=max_actions,
            capabilities=parse_capabilities(repair.get("capabilities")),
        ),
        logging=LoggingConfig(
            level=str(logging_section.get("level", DEFAULT_LOG_LEVEL)),
            format=str(logging_section.get("format", DEFAULT_LOG_FORMAT)),
            file=str(_resolve_under(workdir, log_file)) if log_file else "",
        ),
        generator=GeneratorConfig(
            command=str(generator.get("command", "") or "").strip(),
            timeout_seconds=float(generator.get("timeout_seconds", DEFAULT_GENERATOR_TIMEOUT_SECONDS)),
        ),
    )


def load_config(workdir: Path | None = None, *, env: Mapping[str, str] | None = None) -> EvolverConfig:
    """Load configuration for ``workdir`` (``EVOLVER_WORKDIR`` wins when set)."""
    environ = os.environ if env is None else env
    raw_workdir = environ.get("EVOLVER_WORKDIR", "").strip()
    root = Path(raw_workdir) if raw_workdir else Path(workdir) if workdir is not None else Path(".")
    root = root.expanduser().resolve()

    file_payload = _load_config_file(root / CONFIG_RELATIVE_PATH)
    payload = _apply_env_overrides(_merge(default_config_payload(), file_payload), environ)
    validate_config_payload(payload, source="effective configuration")
    return build_config(payload, workdir=root)


def config_file_path(workdir: Path) -> Path:
    return workdir / CONFIG_RELATIVE_PATH
