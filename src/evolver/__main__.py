from __future__ import annotations

import argparse
import sys
import time
from dataclasses import asdict
from pathlib import Path

from evolver.classifier import classify, match_rule
from evolver.config import load_config
from evolver.driver import run_once
from evolver.logsetup import configure_logging
from evolver.models import CommandFailureError, CommandResult, EvolverError
from evolver.runstate import load_run_state, read_lock_payload
from evolver.verification import run_verification


def _workdir(args: argparse.Namespace) -> Path:
    return Path(args.workdir).expanduser().resolve()


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_config(_workdir(args))
        close_logging = configure_logging(config.logging)
    except EvolverError as exc:
        print(f"evolver run: ERROR {exc}", file=sys.stderr)
        return 1
    try:
        outcome = run_once(config)
    except (EvolverError, OSError) as exc:
        print(f"evolver run: ERROR {exc}", file=sys.stderr)
        return 1
    finally:
        close_logging()

    print(f"evolver run: {'changed' if outcome.changed else 'no changes'}")
    print(f"summary: {outcome.summary}")
    return outcome.exit_code


def _cmd_verify(args: argparse.Namespace) -> int:
    try:
        config = load_config(_workdir(args))
        close_logging = configure_logging(config.logging)
    except EvolverError as exc:
        print(f"evolver verify: ERROR {exc}", file=sys.stderr)
        return 1
    commands = list(args.commands) if args.commands else list(config.commands)
    try:
        report = run_verification(commands, cwd=config.workdir, stream_output=not args.quiet)
    except CommandFailureError as failure:
        result = failure.result
        print(
            f"evolver verify: FAIL command {result.index}/{result.total} {result.command!r} "
            f"exit={result.exit_code} kind={result.kind}",
            file=sys.stderr,
        )
        return 1
    finally:
        close_logging()

    for result in report.commands:
        print(f"PASS {result.index}/{result.total} {result.command} ({result.duration_ms}ms)")
    print(f"evolver verify: passed ({len(report.commands)} command(s))")
    return 0


def _cmd_classify(args: argparse.Namespace) -> int:
    if args.input and args.input != "-":
        try:
            text = Path(args.input).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            print(f"evolver classify: ERROR {exc}", file=sys.stderr)
            return 1
    else:
        text = sys.stdin.read()

    result = CommandResult(
        index=1,
        total=1,
        command=args.command_line,
        exit_code=args.exit_code,
        stdout="",
        stderr=text,
    )
    kind = classify(result)
    if args.verbose:
        rule = match_rule(result)
        print(f"rule: {rule.name if rule else '<none>'}")
    print(kind)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        config = load_config(_workdir(args))
        state = load_run_state(config.reliability.state_file)
    except EvolverError as exc:
        print(f"evolver status: ERROR {exc}", file=sys.stderr)
        return 1

    print("evolver status")
    print(f"state_file: {config.reliability.state_file}")
    for key, value in asdict(state).items():
        print(f"{key}: {value if value != '' else '<none>'}")
    payload = read_lock_payload(config.reliability.lock_file)
    print(f"lock: {payload or '<free>'}")
    return 0


def _cmd_unlock(args: argparse.Namespace) -> int:
    try:
        config = load_config(_workdir(args))
    except EvolverError as exc:
        print(f"evolver unlock: ERROR {exc}", file=sys.stderr)
        return 1

    lock_path = config.reliability.lock_file
    if not lock_path.exists():
        print(f"evolver unlock: no lock at {lock_path}")
        return 0
    age_seconds = time.time() - lock_path.stat().st_mtime
    stale_seconds = config.reliability.lock_stale_minutes * 60
    if not args.force and (stale_seconds <= 0 or age_seconds <= stale_seconds):
        print(
            f"evolver unlock: ERROR lock is not stale ({int(age_seconds)}s old): {lock_path}; "
            "pass --force to remove it anyway",
            file=sys.stderr,
        )
        return 1
    lock_path.unlink(missing_ok=True)
    print(f"evolver unlock: removed {lock_path}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="evolver command line interface")
    subparsers = parser.add_subparsers(dest="command")

    def _add_workdir(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--workdir",
            default=".",
            help="Repository root to operate on (default: current directory; EVOLVER_WORKDIR wins)",
        )

    run = subparsers.add_parser("run", help="Run one locked evolution cycle")
    _add_workdir(run)
    run.set_defaults(handler=_cmd_run)

    verify = subparsers.add_parser("verify", help="Run the verification commands only")
    _add_workdir(verify)
    verify.add_argument(
        "--command",
        dest="commands",
        action="append",
        default=[],
        help="Verification command (repeatable; defaults to the configured commands)",
    )
    verify.add_argument("--quiet", action="store_true", help="Do not stream command output")
    verify.set_defaults(handler=_cmd_verify)

    classify_parser = subparsers.add_parser("classify", help="Classify failure output for a command")
    classify_parser.add_argument("--command", dest="command_line", default="", help="Command that produced the output")
    classify_parser.add_argument("--input", default="-", help="File holding the output (default: stdin)")
    classify_parser.add_argument("--exit-code", type=int, default=1, help="Exit code of the failed command")
    classify_parser.add_argument("--verbose", action="store_true", help="Also print the matching rule")
    classify_parser.set_defaults(handler=_cmd_classify)

    status = subparsers.add_parser("status", help="Print the persisted run state")
    _add_workdir(status)
    status.set_defaults(handler=_cmd_status)

    unlock = subparsers.add_parser("unlock", help="Remove a stale run lock")
    _add_workdir(unlock)
    unlock.add_argument("--force", action="store_true", help="Remove the lock even if it is not stale")
    unlock.set_defaults(handler=_cmd_unlock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
