"""Evolver repair capability executor -- one allowlisted argv command per call."""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from pathlib import Path, PurePosixPath, PureWindowsPath

from evolver.classifier import classify
from evolver.constants import CAPABILITY_KILL_GRACE_SECONDS, KIND_SECURITY_INTEGRITY
from evolver.models import (
    CapabilityError,
    CapabilityExecutionError,
    CapabilityTimeoutError,
    CommandResult,
    RepairCapability,
    SecurityIntegrityError,
    UnsafeCapabilityCwdError,
)
from evolver.utils import TeeWriter, _pump_stream, _redact_sensitive_text

logger = logging.getLogger(__name__)


def resolve_capability_cwd(repo_root: Path, raw_cwd: str) -> Path:
    value = str(raw_cwd or "").strip()
    if value in {"", "."}:
        return repo_root
    if PurePosixPath(value).is_absolute() or PureWindowsPath(value).is_absolute() or value.startswith(("/", "\\")):
        raise UnsafeCapabilityCwdError(f"unsafe repair capability cwd (absolute): {value!r}")
    segments = value.replace("\\", "/").split("/")
    if any(segment.startswith("..") for segment in segments):
        raise UnsafeCapabilityCwdError(f"unsafe repair capability cwd (parent traversal): {value!r}")

    root = repo_root.resolve()
    resolved = (root / value).resolve()
    try:
        resolved.relative_to(root)
    except ValueError as exc:
        raise UnsafeCapabilityCwdError(f"repair capability cwd escapes repo root: {value!r}") from exc
    return resolved


def execute_capability(
    capability: RepairCapability,
    *,
    repo_root: Path,
    stream_output: bool = True,
    log: logging.Logger | None = None,
) -> None:
    """Run ``capability.argv`` under its deadline.

    Raises ``CapabilityTimeoutError`` when the deadline fires (the output is
    not classified), ``SecurityIntegrityError`` when a non-zero exit is
    classified as an integrity failure, and ``CapabilityExecutionError`` for
    any other non-zero exit.
    """
    log = log or logger
    if not capability.argv:
        raise CapabilityError(f"repair capability {capability.id!r} has empty argv")
    cwd = resolve_capability_cwd(repo_root, capability.cwd)
    display = _redact_sensitive_text(" ".join(capability.argv))
    rel_cwd = "." if cwd == repo_root else str(cwd)

    stdout_tee = TeeWriter(sys.stdout if stream_output else None)
    stderr_tee = TeeWriter(sys.stderr if stream_output else None)
    log.info(
        "repair capability command started",
        extra={
            "id": capability.id,
            "command": display,
            "cwd": rel_cwd,
            "timeout_seconds": capability.timeout_seconds,
        },
    )
    started = time.monotonic()
    try:
        process = subprocess.Popen(
            list(capability.argv),
            cwd=cwd,
            shell=False,
            text=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=1,
            errors="replace",
        )
    except OSError as exc:
        log.error("repair capability command could not start", extra={"id": capability.id, "error": str(exc)})
        raise CapabilityError(f"repair capability {capability.id!r} could not start: {exc}") from exc

    pumps = [
        threading.Thread(target=_pump_stream, args=(process.stdout, stdout_tee), daemon=True),
        threading.Thread(target=_pump_stream, args=(process.stderr, stderr_tee), daemon=True),
    ]
    for pump in pumps:
        pump.start()

    try:
        returncode = process.wait(timeout=capability.timeout_seconds)
    except subprocess.TimeoutExpired:
        process.terminate()
        try:
            process.wait(timeout=CAPABILITY_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        duration_ms = int((time.monotonic() - started) * 1000)
        log.error(
            "repair capability command timed out",
            extra={"id": capability.id, "command": display, "duration_ms": duration_ms},
        )
        raise CapabilityTimeoutError(
            f"repair capability {capability.id!r} timed out after {capability.timeout_seconds}s"
        )
    finally:
        for pump in pumps:
            pump.join(timeout=CAPABILITY_KILL_GRACE_SECONDS)

    duration_ms = int((time.monotonic() - started) * 1000)
    if returncode == 0:
        log.info(
            "repair capability command succeeded",
            extra={"id": capability.id, "command": display, "duration_ms": duration_ms},
        )
        return

    kind = classify(
        CommandResult(
            index=1,
            total=1,
            command=" ".join(capability.argv),
            exit_code=returncode,
            stdout=stdout_tee.getvalue(),
            stderr=stderr_tee.getvalue(),
            duration_ms=duration_ms,
        )
    )
    log.error(
        "repair capability command failed",
        extra={
            "id": capability.id,
            "command": display,
            "duration_ms": duration_ms,
            "exit_code": returncode,
            "kind": kind,
        },
    )
    if kind == KIND_SECURITY_INTEGRITY:
        raise SecurityIntegrityError(
            f"security-integrity failure during repair capability {capability.id!r}"
        )
    raise CapabilityExecutionError(capability.id, returncode, kind)
