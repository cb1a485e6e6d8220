"""Evolver constants -- failure kinds, defaults, and file locations."""

from __future__ import annotations

from pathlib import Path

# ---------------------------------------------------------------------------
# Failure taxonomy
# ---------------------------------------------------------------------------

KIND_SECURITY_INTEGRITY = "security_integrity"
KIND_TIMEOUT = "timeout_failure"
KIND_ENV_COMMAND_MISSING = "env_command_missing"
KIND_ENV_MISSING_PATH = "env_missing_path"
KIND_ENV_NETWORK = "env_network"
KIND_DEPENDENCY_MANIFEST_MISSING = "dependency_manifest_missing"
KIND_DEPENDENCY_RESOLUTION = "dependency_resolution"
KIND_DEPENDENCY_MANIFEST_INVALID = "dependency_manifest_invalid"
KIND_DEPENDENCY_FETCH = "dependency_fetch"
KIND_VET = "vet_failure"
KIND_LINT = "lint_failure"
KIND_TEST = "test_failure"
KIND_COMPILE = "compile_failure"
KIND_UNKNOWN = "unknown_failure"

FAILURE_KINDS: tuple[str, ...] = (
    KIND_SECURITY_INTEGRITY,
    KIND_TIMEOUT,
    KIND_ENV_COMMAND_MISSING,
    KIND_ENV_MISSING_PATH,
    KIND_ENV_NETWORK,
    KIND_DEPENDENCY_MANIFEST_MISSING,
    KIND_DEPENDENCY_RESOLUTION,
    KIND_DEPENDENCY_MANIFEST_INVALID,
    KIND_DEPENDENCY_FETCH,
    KIND_VET,
    KIND_LINT,
    KIND_TEST,
    KIND_COMPILE,
    KIND_UNKNOWN,
)
TERMINAL_FAILURE_KINDS: frozenset[str] = frozenset({KIND_SECURITY_INTEGRITY})

# ---------------------------------------------------------------------------
# Repair defaults
# ---------------------------------------------------------------------------

DEFAULT_REPAIR_MAX_ATTEMPTS = 2
DEFAULT_REPAIR_MAX_ACTIONS_PER_ATTEMPT = 2
DEFAULT_CAPABILITY_TIMEOUT_SECONDS = 120
DEFAULT_CAPABILITY_MAX_RUNS_PER_ATTEMPT = 1
CAPABILITY_KILL_GRACE_SECONDS = 2

FAILURE_CONTEXT_STDOUT_CHARS = 8000
FAILURE_CONTEXT_STDERR_CHARS = 12000
TRUNCATION_MARKER = "\n...<truncated>...\n"

# ---------------------------------------------------------------------------
# Verification defaults inferred from marker files (first match wins)
# ---------------------------------------------------------------------------

INFERRED_COMMANDS_BY_MARKER: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("go.mod", ("go test ./...",)),
    ("package.json", ("npm test",)),
    ("pyproject.toml", ("python -m pytest -q",)),
    ("setup.py", ("python -m pytest -q",)),
    ("setup.cfg", ("python -m pytest -q",)),
    ("Cargo.toml", ("cargo test",)),
)
COMMAND_NOT_FOUND_EXIT_CODE = 127

# ---------------------------------------------------------------------------
# Configuration and reliability defaults
# ---------------------------------------------------------------------------

EVOLVER_DIR_NAME = ".evolver"
CONFIG_RELATIVE_PATH = Path(EVOLVER_DIR_NAME) / "config.yml"
DEFAULT_STATE_FILE = ".evolver/state.json"
DEFAULT_RUN_LOG_FILE = ".evolver/runs.log"
DEFAULT_LOCK_FILE = ".evolver/run.lock"
DEFAULT_LOCK_STALE_MINUTES = 180

DEFAULT_MODE = "local"
RUN_MODES = ("local", "pr")
DEFAULT_MAX_FILES_CHANGED = 10
DEFAULT_MAX_LINES_CHANGED = 500
DEFAULT_MAX_NEW_FILES = 10
DEFAULT_DENY_PATHS = (".git/", ".github/workflows/", "node_modules/")
WORKFLOW_DENY_PATH = ".github/workflows/"

DEFAULT_LOG_LEVEL = "info"
DEFAULT_LOG_FORMAT = "text"
LOG_FORMATS = ("text", "json")

DEFAULT_GENERATOR_TIMEOUT_SECONDS = 600.0

OUTCOME_RUNNING = "running"
OUTCOME_CHANGED = "changed"
OUTCOME_NOOP = "noop"
OUTCOME_ERROR = "error"

# ---------------------------------------------------------------------------
# Bootstrap scaffolding
# ---------------------------------------------------------------------------

POLICY_TEMPLATE = (
    "# POLICY\n"
    "- Small incremental changes.\n"
    "- Keep repo runnable.\n"
    "- Update CHANGELOG.\n"
    "- Add tests.\n"
    "- No secrets.\n"
)
ROADMAP_TEMPLATE = "# ROADMAP\n## Current Objective\n{goal}\n\n## Now/Next/Later\n- [ ] Initial scaffold\n"
CHANGELOG_TEMPLATE = "# CHANGELOG\n"
DEFAULT_REPO_GOAL = "Build a useful starting project."

CONTEXT_EXCERPT_MAX_BYTES = 5000
CONTEXT_CHANGELOG_TAIL_CHARS = 2000

PACKAGE_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA_PATH = PACKAGE_SCHEMA_DIR / "config.schema.json"
