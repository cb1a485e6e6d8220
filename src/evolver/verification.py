"""Evolver verification runner -- ordered, stop-on-first-failure command execution."""

from __future__ import annotations

import logging
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Sequence, TextIO

from evolver.classifier import classify
from evolver.constants import COMMAND_NOT_FOUND_EXIT_CODE, INFERRED_COMMANDS_BY_MARKER
from evolver.models import CommandFailureError, CommandResult, Report
from evolver.utils import TeeWriter, _pump_stream, _redact_sensitive_text

logger = logging.getLogger(__name__)


def infer_commands(cwd: Path | None = None) -> list[str]:
    root = Path(cwd) if cwd is not None else Path.cwd()
    for marker, commands in INFERRED_COMMANDS_BY_MARKER:
        if (root / marker).exists():
            return list(commands)
    return []


def _run_streamed(
    argv: list[str],
    *,
    cwd: Path | None,
    stdout_sink: TextIO | None,
    stderr_sink: TextIO | None,
) -> tuple[int, str, str]:
    stdout_tee = TeeWriter(stdout_sink)
    stderr_tee = TeeWriter(stderr_sink)
    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            shell=False,
            text=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=1,
            errors="replace",
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        stderr_tee.write(f"{argv[0]}: command not found ({exc})\n")
        return (COMMAND_NOT_FOUND_EXIT_CODE, stdout_tee.getvalue(), stderr_tee.getvalue())

    pumps = [
        threading.Thread(target=_pump_stream, args=(process.stdout, stdout_tee), daemon=True),
        threading.Thread(target=_pump_stream, args=(process.stderr, stderr_tee), daemon=True),
    ]
    for pump in pumps:
        pump.start()
    returncode = process.wait()
    for pump in pumps:
        pump.join()
    return (returncode, stdout_tee.getvalue(), stderr_tee.getvalue())


def run_verification(
    commands: Sequence[str],
    *,
    cwd: Path | None = None,
    stream_output: bool = True,
    log: logging.Logger | None = None,
) -> Report:
    """Run ``commands`` in order and return the report.

    Raises ``CommandFailureError`` (carrying the classified result and the
    partial report) on the first non-zero exit.  Commands are split with
    ``shlex`` and never passed through a shell.
    """
    log = log or logger
    planned = [command for command in commands if str(command).strip()]
    if not commands:
        planned = infer_commands(cwd)
    log.info("verification commands prepared", extra={"count": len(planned)})

    stdout_sink = sys.stdout if stream_output else None
    stderr_sink = sys.stderr if stream_output else None
    report = Report()
    total = len(planned)
    for index, command in enumerate(planned, start=1):
        display = _redact_sensitive_text(command)
        log.info("verification command started", extra={"index": index, "total": total, "command": display})
        started = time.monotonic()
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            returncode, stdout, stderr = (-1, "", f"could not parse command: {exc}\n")
        else:
            returncode, stdout, stderr = _run_streamed(
                argv, cwd=cwd, stdout_sink=stdout_sink, stderr_sink=stderr_sink
            )
        duration_ms = int((time.monotonic() - started) * 1000)

        if returncode == 0:
            report.append(
                CommandResult(
                    index=index,
                    total=total,
                    command=command,
                    exit_code=0,
                    stdout=stdout,
                    stderr=stderr,
                    duration_ms=duration_ms,
                    passed=True,
                )
            )
            log.info(
                "verification command succeeded",
                extra={"index": index, "total": total, "command": display, "duration_ms": duration_ms},
            )
            continue

        unclassified = CommandResult(
            index=index,
            total=total,
            command=command,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            passed=False,
        )
        result = replace(unclassified, kind=classify(unclassified))
        report.append(result)
        log.error(
            "verification command failed",
            extra={
                "index": index,
                "total": total,
                "command": display,
                "duration_ms": duration_ms,
                "exit_code": returncode,
                "kind": result.kind,
            },
        )
        raise CommandFailureError(result, report)

    return report
