from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pytest

from evolver.classifier import classify
from evolver.collaborators import Collaborators
from evolver.constants import KIND_COMPILE, KIND_DEPENDENCY_RESOLUTION, KIND_SECURITY_INTEGRITY, KIND_TEST
from evolver.models import (
    BudgetConfig,
    BudgetExceededError,
    CapabilityExecutionError,
    CommandFailureError,
    CommandResult,
    ConfigError,
    DiffStats,
    Plan,
    PlanFile,
    PlanGenerationError,
    PlanValidationError,
    RepairActionError,
    RepairAttempt,
    RepairBoundsError,
    RepairCapability,
    RepairExhaustedError,
    Report,
    RepoContext,
    SecurityIntegrityError,
    TerminalFailureError,
)
from evolver.repair import (
    APPLYING,
    DONE_EXHAUSTED,
    DONE_SUCCESS,
    DONE_TERMINAL,
    EXECUTING_CAPABILITIES,
    GENERATING_PLAN,
    REVALIDATING_BUDGET,
    VERIFYING,
    RepairOrchestrator,
    filter_capabilities,
    force_repair_mode,
    format_failure_context,
)

BUDGET = BudgetConfig(max_files_changed=10, max_lines_changed=500, max_new_files=10)


class _FakeGenerator:
    def __init__(self, plans: Sequence[Plan] = (), error: Exception | None = None) -> None:
        self.plans = list(plans)
        self.error = error
        self.calls: list[dict[str, object]] = []

    def generate_plan(self, repo_context: RepoContext) -> Plan:
        raise AssertionError("initial plans are not requested by the repair loop")

    def generate_repair_plan(self, repo_context, original_summary, failure_context, allowed_capabilities) -> Plan:
        self.calls.append(
            {
                "summary": original_summary,
                "failure_context": failure_context,
                "allowed": [capability.id for capability in allowed_capabilities],
            }
        )
        if self.error is not None:
            raise self.error
        if self.plans:
            return self.plans.pop(0)
        return Plan(summary="repair", files=(PlanFile(path="fix.txt", content="x"),))


class _FakeValidator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.validated: list[Plan] = []
        self.scanned: list[Plan] = []

    def validate_paths(self, plan: Plan) -> None:
        self.validated.append(plan)
        if self.error is not None:
            raise self.error

    def scan_for_secrets(self, plan: Plan) -> None:
        self.scanned.append(plan)


class _FakeApplier:
    def __init__(self) -> None:
        self.applied: list[Plan] = []

    def apply(self, plan: Plan) -> int:
        self.applied.append(plan)
        return len(plan.files)


class _FakeBudget:
    def __init__(self, stats: DiffStats | None = None) -> None:
        self.stats = stats or DiffStats(files_changed=1, lines_changed=3, new_files=0)
        self.discarded = 0

    def compute_diff_stats(self) -> DiffStats:
        return self.stats

    def discard_changes(self) -> None:
        self.discarded += 1


class _FakeContext:
    def __init__(self) -> None:
        self.calls = 0

    def gather(self) -> RepoContext:
        self.calls += 1
        return RepoContext(files=["main.go"])


class _ScriptedVerify:
    """Fail with the queued outputs in order, then pass."""

    def __init__(self, failures: Sequence[tuple[str, str]], *, always_fail: bool = False) -> None:
        self.failures = list(failures)
        self.always_fail = always_fail
        self.calls = 0

    def __call__(self, commands, *, cwd=None, log=None) -> Report:
        self.calls += 1
        if self.failures:
            command, stderr = self.failures[0] if self.always_fail else self.failures.pop(0)
            partial = CommandResult(index=1, total=1, command=command, exit_code=2, stderr=stderr)
            result = CommandResult(
                index=1, total=1, command=command, exit_code=2, stderr=stderr, kind=classify(partial)
            )
            report = Report()
            report.append(result)
            raise CommandFailureError(result, report)
        report = Report()
        report.append(CommandResult(index=1, total=1, command="go test ./...", exit_code=0, passed=True))
        return report


class _RecordingExecute:
    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.executed: list[str] = []

    def __call__(self, capability: RepairCapability, *, repo_root: Path, log=None) -> None:
        self.executed.append(capability.id)
        if capability.id in self.errors:
            raise self.errors[capability.id]


def _collaborators(generator=None, validator=None, budget=None) -> Collaborators:
    return Collaborators(
        generator=generator or _FakeGenerator(),
        validator=validator or _FakeValidator(),
        applier=_FakeApplier(),
        budget=budget or _FakeBudget(),
        context=_FakeContext(),
    )


def _orchestrator(
    tmp_path: Path,
    *,
    verify,
    collaborators: Collaborators | None = None,
    capabilities: Sequence[RepairCapability] = (),
    max_attempts: int = 2,
    execute=None,
    **kwargs,
) -> RepairOrchestrator:
    return RepairOrchestrator(
        collaborators=collaborators or _collaborators(),
        capabilities=capabilities,
        budget=BUDGET,
        max_attempts=max_attempts,
        repo_root=tmp_path,
        verify=verify,
        execute=execute or _RecordingExecute(),
        **kwargs,
    )


def test_compile_failure_is_repaired_in_one_attempt(tmp_path: Path) -> None:
    verify = _ScriptedVerify([("go build ./...", "undefined: Foo")])
    collaborators = _collaborators()
    orchestrator = _orchestrator(tmp_path, verify=verify, collaborators=collaborators)

    outcome = orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="add feature")

    assert outcome.status == "success"
    assert outcome.attempts_used == 1
    assert outcome.summary == "repair"
    assert verify.calls == 2
    assert collaborators.generator.calls[0]["summary"] == "add feature"
    assert "Kind: compile_failure" in collaborators.generator.calls[0]["failure_context"]
    assert outcome.transitions == (
        VERIFYING,
        GENERATING_PLAN,
        APPLYING,
        EXECUTING_CAPABILITIES,
        REVALIDATING_BUDGET,
        VERIFYING,
        DONE_SUCCESS,
    )


def test_terminal_failure_never_calls_generator(tmp_path: Path) -> None:
    verify = _ScriptedVerify([("go mod verify", "SECURITY ERROR: checksum mismatch")])
    generator = _FakeGenerator()
    orchestrator = _orchestrator(tmp_path, verify=verify, collaborators=_collaborators(generator=generator))

    with pytest.raises(TerminalFailureError) as excinfo:
        orchestrator.run(["go mod verify"], repo_context=RepoContext(), original_summary="s")

    assert generator.calls == []
    assert excinfo.value.result.kind == KIND_SECURITY_INTEGRITY
    assert excinfo.value.attempts_used == 0
    assert "go mod verify" in str(excinfo.value)
    assert orchestrator.transitions[-1] == DONE_TERMINAL


def test_attempts_are_exhausted_after_max_attempts(tmp_path: Path) -> None:
    verify = _ScriptedVerify([("go test ./...", "--- FAIL: TestX")], always_fail=True)
    generator = _FakeGenerator()
    orchestrator = _orchestrator(
        tmp_path, verify=verify, collaborators=_collaborators(generator=generator), max_attempts=2
    )

    with pytest.raises(RepairExhaustedError) as excinfo:
        orchestrator.run(["go test ./..."], repo_context=RepoContext(), original_summary="s")

    assert len(generator.calls) == 2
    assert verify.calls == 3
    assert excinfo.value.attempts_used == 2
    assert excinfo.value.result.kind == KIND_TEST
    message = str(excinfo.value)
    assert "go test ./..." in message
    assert "kind=test_failure" in message
    assert "exited 2" in message
    assert orchestrator.transitions.count(GENERATING_PLAN) == 2
    assert orchestrator.transitions[-1] == DONE_EXHAUSTED


def test_zero_max_attempts_fails_after_first_verification(tmp_path: Path) -> None:
    verify = _ScriptedVerify([("go test ./...", "--- FAIL: TestX")], always_fail=True)
    generator = _FakeGenerator()
    orchestrator = _orchestrator(
        tmp_path, verify=verify, collaborators=_collaborators(generator=generator), max_attempts=0
    )

    with pytest.raises(RepairExhaustedError):
        orchestrator.run(["go test ./..."], repo_context=RepoContext(), original_summary="s")
    assert generator.calls == []


def test_passing_verification_needs_no_repair(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, verify=_ScriptedVerify([]))

    outcome = orchestrator.run(["go test ./..."], repo_context=RepoContext(), original_summary="s")

    assert outcome.attempts_used == 0
    assert outcome.summary == "s"
    assert outcome.transitions == (VERIFYING, DONE_SUCCESS)


def test_repeated_capability_beyond_max_runs_aborts_attempt(tmp_path: Path) -> None:
    tidy = RepairCapability(id="go_mod_tidy", argv=("go", "mod", "tidy"), max_runs_per_attempt=1)
    other = RepairCapability(id="other", argv=("true",))
    plan = Plan(summary="tidy", repair_actions=("go_mod_tidy", "go_mod_tidy"))
    execute = _RecordingExecute()
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "missing go.sum entry for module")]),
        collaborators=_collaborators(generator=_FakeGenerator([plan])),
        capabilities=(tidy, other),
        execute=execute,
    )

    with pytest.raises(RepairBoundsError, match="exceeded max_runs_per_attempt"):
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")
    assert execute.executed == ["go_mod_tidy"]


def test_too_many_actions_are_rejected_before_any_run(tmp_path: Path) -> None:
    capability = RepairCapability(id="a", argv=("true",), max_runs_per_attempt=5)
    execute = _RecordingExecute()
    orchestrator = _orchestrator(tmp_path, verify=_ScriptedVerify([]), capabilities=(capability,), execute=execute)
    failure = CommandResult(index=1, total=1, command="x", exit_code=1, kind=KIND_TEST)
    attempt = RepairAttempt(number=1, failure=failure, allowed=(capability,))

    with pytest.raises(RepairBoundsError, match="too many repair actions requested: 3 > 2"):
        orchestrator.execute_actions(attempt, ["a", "a", "a"])
    assert execute.executed == []


def test_actions_must_be_allowed_for_failure_kind(tmp_path: Path) -> None:
    dependency_only = RepairCapability(
        id="tidy", argv=("go", "mod", "tidy"), allowed_failure_kinds=(KIND_DEPENDENCY_RESOLUTION,)
    )
    generator = _FakeGenerator([Plan(summary="try", repair_actions=("tidy",))])
    execute = _RecordingExecute()
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(generator=generator),
        capabilities=(dependency_only,),
        execute=execute,
    )

    with pytest.raises(RepairBoundsError, match="not allowed for failure kind 'compile_failure'"):
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")
    assert generator.calls[0]["allowed"] == []
    assert execute.executed == []


def test_empty_action_id_is_rejected(tmp_path: Path) -> None:
    capability = RepairCapability(id="a", argv=("true",))
    orchestrator = _orchestrator(tmp_path, verify=_ScriptedVerify([]), capabilities=(capability,))
    failure = CommandResult(index=1, total=1, command="x", exit_code=1, kind=KIND_TEST)

    with pytest.raises(RepairBoundsError, match="empty id"):
        orchestrator.execute_actions(RepairAttempt(number=1, failure=failure, allowed=(capability,)), ["  "])


def test_capability_failure_is_wrapped_with_id(tmp_path: Path) -> None:
    capability = RepairCapability(id="fmt", argv=("gofmt", "-w", "."))
    execute = _RecordingExecute({"fmt": CapabilityExecutionError("fmt", 1, KIND_COMPILE)})
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(generator=_FakeGenerator([Plan(summary="fmt", repair_actions=("fmt",))])),
        capabilities=(capability,),
        execute=execute,
    )

    with pytest.raises(RepairActionError) as excinfo:
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")
    assert excinfo.value.capability_id == "fmt"
    assert not excinfo.value.is_security_integrity


def test_capability_failure_stops_remaining_actions(tmp_path: Path) -> None:
    fmt = RepairCapability(id="fmt", argv=("gofmt", "-w", "."))
    other = RepairCapability(id="other", argv=("go", "mod", "tidy"))
    execute = _RecordingExecute({"fmt": CapabilityExecutionError("fmt", 1, KIND_COMPILE)})
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(
            generator=_FakeGenerator([Plan(summary="fmt", repair_actions=("fmt", "other"))])
        ),
        capabilities=(fmt, other),
        execute=execute,
    )

    with pytest.raises(RepairActionError) as excinfo:
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")
    assert excinfo.value.capability_id == "fmt"
    assert execute.executed == ["fmt"]


def test_integrity_failure_during_capability_is_fatal(tmp_path: Path) -> None:
    capability = RepairCapability(id="download", argv=("go", "mod", "download"))
    execute = _RecordingExecute({"download": SecurityIntegrityError("security-integrity failure during repair capability 'download'")})
    verify = _ScriptedVerify([("go build ./...", "missing go.sum entry")], always_fail=True)
    orchestrator = _orchestrator(
        tmp_path,
        verify=verify,
        collaborators=_collaborators(
            generator=_FakeGenerator([Plan(summary="dl", repair_actions=("download",))] * 3)
        ),
        capabilities=(capability,),
        execute=execute,
    )

    with pytest.raises(RepairActionError) as excinfo:
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")
    assert excinfo.value.is_security_integrity
    assert verify.calls == 1


def test_generator_error_is_fatal_with_attempt_context(tmp_path: Path) -> None:
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(generator=_FakeGenerator(error=RuntimeError("quota"))),
    )

    with pytest.raises(PlanGenerationError, match=r"attempt 1/2\): quota"):
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")


def test_validation_error_is_fatal(tmp_path: Path) -> None:
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(validator=_FakeValidator(PlanValidationError("path .git/config is denied"))),
    )

    with pytest.raises(PlanValidationError, match="denied"):
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")


def test_budget_is_rechecked_after_repair(tmp_path: Path) -> None:
    budget = _FakeBudget(DiffStats(files_changed=11, lines_changed=1, new_files=0))
    orchestrator = _orchestrator(
        tmp_path,
        verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]),
        collaborators=_collaborators(budget=budget),
    )

    with pytest.raises(BudgetExceededError):
        orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="s")


def test_repair_plans_drop_audit_metadata(tmp_path: Path) -> None:
    plan = Plan(summary="", changelog_entry="- entry", roadmap_update="# new", files=(PlanFile("a", "b"),))
    collaborators = _collaborators(generator=_FakeGenerator([plan]))
    orchestrator = _orchestrator(
        tmp_path, verify=_ScriptedVerify([("go build ./...", "undefined: Foo")]), collaborators=collaborators
    )

    outcome = orchestrator.run(["go build ./..."], repo_context=RepoContext(), original_summary="original")

    applied = collaborators.applier.applied[0]
    assert applied.changelog_entry == ""
    assert applied.roadmap_update == ""
    assert applied.summary == "original"
    assert outcome.summary == "original"


def test_duplicate_capability_ids_are_rejected(tmp_path: Path) -> None:
    duplicated = (RepairCapability(id="a", argv=("x",)), RepairCapability(id="a", argv=("y",)))

    with pytest.raises(ConfigError, match="duplicate repair capability id in config: a"):
        _orchestrator(tmp_path, verify=_ScriptedVerify([]), capabilities=duplicated)


def test_filter_capabilities_matches_kind_case_insensitively() -> None:
    unrestricted = RepairCapability(id="any", argv=("x",))
    scoped = RepairCapability(id="dep", argv=("x",), allowed_failure_kinds=("Dependency_Resolution",))
    broken = RepairCapability(id="broken", argv=())

    assert [cap.id for cap in filter_capabilities((unrestricted, scoped, broken), KIND_DEPENDENCY_RESOLUTION)] == [
        "any",
        "dep",
    ]
    assert [cap.id for cap in filter_capabilities((unrestricted, scoped), KIND_TEST)] == ["any"]


def test_failure_context_truncates_long_output() -> None:
    failure = CommandResult(
        index=2, total=3, command="go test ./...", exit_code=1, stdout="a" * 9000, stderr="b" * 100, kind=KIND_TEST
    )

    context = format_failure_context(None, failure)

    assert "Failed command (2/3): go test ./..." in context
    assert "...<truncated>..." in context
    assert "b" * 100 in context


def test_force_repair_mode_keeps_existing_summary() -> None:
    plan = force_repair_mode(Plan(summary="fix it", changelog_entry="x"), "fallback")

    assert plan.summary == "fix it"
    assert plan.changelog_entry == ""
