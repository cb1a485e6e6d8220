"""Evolver failure classifier -- ordered signature table mapping command output to a kind.

The table is evaluated top to bottom and the first matching rule wins.  The
integrity rules sit at the very top so that an output mixing a checksum
mismatch with any other error text is always classified as terminal.  The
rest of the table is a heuristic that projects are expected to extend.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from evolver.constants import (
    KIND_COMPILE,
    KIND_DEPENDENCY_FETCH,
    KIND_DEPENDENCY_MANIFEST_INVALID,
    KIND_DEPENDENCY_MANIFEST_MISSING,
    KIND_DEPENDENCY_RESOLUTION,
    KIND_ENV_COMMAND_MISSING,
    KIND_ENV_MISSING_PATH,
    KIND_ENV_NETWORK,
    KIND_LINT,
    KIND_SECURITY_INTEGRITY,
    KIND_TEST,
    KIND_TIMEOUT,
    KIND_UNKNOWN,
    KIND_VET,
    TERMINAL_FAILURE_KINDS,
)

Predicate = Callable[[str, str], bool]


@dataclass(frozen=True)
class ClassifierRule:
    """One row of the table: ``matches(text, command)`` on lowercased inputs."""

    name: str
    tier: int
    kind: str
    matches: Predicate


def _normalize_command(command: str) -> str:
    words = command.strip().lower().split()
    while words and "=" in words[0] and not words[0].startswith("-"):
        words.pop(0)
    if not words:
        return ""
    words[0] = words[0].replace("\\", "/").rsplit("/", 1)[-1]
    if words[0] in {"python", "python3", "py"} and len(words) > 2 and words[1] == "-m":
        words = words[2:]
    return " ".join(words)


def _phrases(*phrases: str) -> Predicate:
    def _match(text: str, _command: str) -> bool:
        return any(phrase in text for phrase in phrases)

    return _match


def _all_phrases(*phrases: str) -> Predicate:
    def _match(text: str, _command: str) -> bool:
        return all(phrase in text for phrase in phrases)

    return _match


def _command_starts(*prefixes: str) -> Predicate:
    def _match(_text: str, command: str) -> bool:
        normalized = _normalize_command(command)
        return any(normalized == prefix or normalized.startswith(f"{prefix} ") for prefix in prefixes)

    return _match


def _both(first: Predicate, second: Predicate) -> Predicate:
    def _match(text: str, command: str) -> bool:
        return first(text, command) and second(text, command)

    return _match


def _either(*predicates: Predicate) -> Predicate:
    def _match(text: str, command: str) -> bool:
        return any(predicate(text, command) for predicate in predicates)

    return _match


_VET_COMMANDS = ("go vet",)
_LINT_COMMANDS = (
    "golangci-lint",
    "staticcheck",
    "ruff",
    "flake8",
    "pylint",
    "mypy",
    "eslint",
    "npm run lint",
    "cargo clippy",
)
_TEST_COMMANDS = (
    "go test",
    "npm test",
    "npm run test",
    "yarn test",
    "pnpm test",
    "pytest",
    "unittest",
    "tox",
    "cargo test",
    "jest",
    "make test",
)
_BUILD_COMMANDS = (
    "go build",
    "go install",
    "npm run build",
    "yarn build",
    "pnpm build",
    "cargo build",
    "cargo check",
    "tsc",
    "make",
    "build",
)
_PACKAGE_MANAGER_COMMANDS = (
    "go mod",
    "go get",
    "npm install",
    "npm ci",
    "yarn install",
    "pnpm install",
    "pip install",
    "pip",
    "poetry install",
    "poetry lock",
    "cargo fetch",
    "cargo update",
)


RULES: tuple[ClassifierRule, ...] = (
    # Tier 1: integrity. Terminal; keep these phrases specific.
    ClassifierRule(
        "checksum_mismatch",
        1,
        KIND_SECURITY_INTEGRITY,
        _phrases(
            "checksum mismatch",
            "integrity checksum failed",
            "eintegrity",
            "do not match the hashes from the requirements file",
            "gpg: bad signature",
        ),
    ),
    # Tier 2: deadlines.
    ClassifierRule(
        "deadline_exceeded",
        2,
        KIND_TIMEOUT,
        _phrases("context deadline exceeded", "test timed out after", "timed out after", "timeout expired"),
    ),
    # Tier 3: environment / infrastructure.
    ClassifierRule(
        "command_missing",
        3,
        KIND_ENV_COMMAND_MISSING,
        _phrases(
            "command not found",
            "executable file not found",
            "not recognized as an internal or external command",
        ),
    ),
    ClassifierRule(
        "missing_path",
        3,
        KIND_ENV_MISSING_PATH,
        _phrases("no such file or directory", "cannot find the path specified"),
    ),
    ClassifierRule(
        "network",
        3,
        KIND_ENV_NETWORK,
        _phrases(
            "dial tcp",
            "tls handshake timeout",
            "temporary failure in name resolution",
            "i/o timeout",
            "connection refused",
            "connection reset by peer",
            "network is unreachable",
            "could not resolve host",
            "getaddrinfo",
        ),
    ),
    # Tier 4: dependencies and manifests.
    ClassifierRule(
        "manifest_missing",
        4,
        KIND_DEPENDENCY_MANIFEST_MISSING,
        _phrases(
            "go.mod file not found",
            "could not read package.json",
            "could not find `cargo.toml`",
            "neither 'setup.py' nor 'pyproject.toml' found",
        ),
    ),
    ClassifierRule(
        "dependency_resolution",
        4,
        KIND_DEPENDENCY_RESOLUTION,
        _phrases(
            "no required module provides package",
            "missing go.sum entry",
            "cannot find module providing package",
            "unable to resolve dependency tree",
            "could not resolve dependency",
            "eresolve",
            "no matching distribution found",
            "resolutionimpossible",
            "no module named",
            "cannot find package",
        ),
    ),
    ClassifierRule(
        "manifest_invalid",
        4,
        KIND_DEPENDENCY_MANIFEST_INVALID,
        _phrases(
            "errors parsing go.mod",
            "go.mod: unknown directive",
            "ejsonparse",
            "failed to parse manifest",
            "invalid requirement",
        ),
    ),
    ClassifierRule(
        "dependency_fetch",
        4,
        KIND_DEPENDENCY_FETCH,
        _phrases(
            "unable to access",
            "authentication required",
            "terminal prompts disabled",
            "could not read from remote repository",
            "failed to fetch",
            "error downloading",
        ),
    ),
    # Tier 5: static analysis commands.
    ClassifierRule(
        "vet",
        5,
        KIND_VET,
        _either(_command_starts(*_VET_COMMANDS), _phrases("vet:")),
    ),
    ClassifierRule("lint", 5, KIND_LINT, _command_starts(*_LINT_COMMANDS)),
    # Tier 6: code correctness.
    ClassifierRule(
        "test_assertion",
        6,
        KIND_TEST,
        _either(
            _phrases("panic:", "--- fail:", "assertionerror", "assertion failed"),
            _all_phrases("expected", "got"),
            _all_phrases("expected", "received"),
        ),
    ),
    ClassifierRule(
        "compile_error",
        6,
        KIND_COMPILE,
        _phrases(
            "undefined:",
            "cannot use",
            "too many arguments in call",
            "not enough arguments in call",
            "syntax error",
            "syntaxerror",
            "build failed",
            "compilation failed",
            "failed to compile",
            "cannot find symbol",
            "error[e",
        ),
    ),
    ClassifierRule(
        "test_runner_marker",
        6,
        KIND_TEST,
        _both(_command_starts(*_TEST_COMMANDS), _phrases("fail", "error:")),
    ),
    # Tier 7: fall back on what the command was trying to do.
    ClassifierRule("package_manager_command", 7, KIND_DEPENDENCY_RESOLUTION, _command_starts(*_PACKAGE_MANAGER_COMMANDS)),
    ClassifierRule("test_command", 7, KIND_TEST, _command_starts(*_TEST_COMMANDS)),
    ClassifierRule("build_command", 7, KIND_COMPILE, _command_starts(*_BUILD_COMMANDS)),
)


def _inputs(result: Any) -> tuple[str, str]:
    stdout = str(getattr(result, "stdout", "") or "")
    stderr = str(getattr(result, "stderr", "") or "")
    command = str(getattr(result, "command", "") or "")
    return (f"{stdout}\n{stderr}".lower(), command.lower())


def match_rule(result: Any, rules: tuple[ClassifierRule, ...] = RULES) -> ClassifierRule | None:
    text, command = _inputs(result)
    for rule in rules:
        if rule.matches(text, command):
            return rule
    return None


def classify(result: Any, rules: tuple[ClassifierRule, ...] = RULES) -> str:
    """Return the failure kind for anything exposing ``command``/``stdout``/``stderr``."""
    rule = match_rule(result, rules)
    return rule.kind if rule is not None else KIND_UNKNOWN


def is_terminal(kind: str) -> bool:
    return kind.strip().lower() in TERMINAL_FAILURE_KINDS
