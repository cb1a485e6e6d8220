from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from evolver.config import default_config_payload, load_config, parse_capabilities
from evolver.models import ConfigError


def _write_config(repo: Path, payload: dict) -> None:
    path = repo / ".evolver" / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path, env={})

    assert config.workdir == tmp_path.resolve()
    assert config.mode == "local"
    assert config.commands == ()
    assert config.deny_paths == (".git/", ".github/workflows/", "node_modules/")
    assert config.budgets.max_files_changed == 10
    assert config.budgets.max_lines_changed == 500
    assert config.budgets.max_new_files == 10
    assert config.security.secret_scan is True
    assert config.security.allow_workflow_edits is False
    assert config.reliability.state_file == tmp_path.resolve() / ".evolver" / "state.json"
    assert config.reliability.lock_file == tmp_path.resolve() / ".evolver" / "run.lock"
    assert config.reliability.lock_stale_minutes == 180
    assert config.repair.max_attempts == 2
    assert config.repair.max_actions_per_attempt == 2
    assert config.repair.capabilities == ()
    assert config.logging.level == "info"
    assert config.logging.format == "text"
    assert config.logging.file == ""


def test_config_file_values_are_merged_with_defaults(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {
            "commands": ["go vet ./...", "go test ./..."],
            "budgets": {"max_lines_changed": 80},
            "repair": {
                "max_attempts": 3,
                "capabilities": [
                    {
                        "id": "go_mod_tidy",
                        "argv": ["go", "mod", "tidy"],
                        "allowed_failure_kinds": ["Dependency_Resolution"],
                        "timeout_seconds": 60,
                    }
                ],
            },
            "logging": {"file": "logs/evolver.log", "format": "json"},
        },
    )

    config = load_config(tmp_path, env={})

    assert config.commands == ("go vet ./...", "go test ./...")
    assert config.budgets.max_lines_changed == 80
    assert config.budgets.max_files_changed == 10
    assert config.repair.max_attempts == 3
    capability = config.repair.capabilities[0]
    assert capability.id == "go_mod_tidy"
    assert capability.argv == ("go", "mod", "tidy")
    assert capability.timeout_seconds == 60
    assert capability.max_runs_per_attempt == 1
    assert capability.allowed_failure_kinds == ("dependency_resolution",)
    assert config.logging.file == str(tmp_path.resolve() / "logs" / "evolver.log")
    assert config.logging.format == "json"


def test_env_overrides_win_over_file(tmp_path: Path) -> None:
    _write_config(tmp_path, {"mode": "local", "budgets": {"max_files_changed": 3}})
    env = {
        "EVOLVER_MODE": "pr",
        "EVOLVER_MAX_FILES": "7",
        "EVOLVER_MAX_LINES": "90",
        "EVOLVER_MAX_NEW_FILES": "1",
        "EVOLVER_COMMANDS": "make lint\n\nmake test\n",
        "EVOLVER_ALLOW_WORKFLOWS": "true",
        "EVOLVER_STATE_FILE": "/var/tmp/evolver-state.json",
        "EVOLVER_LOCK_STALE_MINUTES": "5",
        "EVOLVER_REPAIR_MAX_ATTEMPTS": "0",
        "EVOLVER_REPAIR_MAX_ACTIONS_PER_ATTEMPT": "4",
        "EVOLVER_LOG_LEVEL": "debug",
        "EVOLVER_GENERATOR_COMMAND": "my-planner --json",
    }

    config = load_config(tmp_path, env=env)

    assert config.mode == "pr"
    assert config.budgets.max_files_changed == 7
    assert config.budgets.max_lines_changed == 90
    assert config.budgets.max_new_files == 1
    assert config.commands == ("make lint", "make test")
    assert config.security.allow_workflow_edits is True
    assert config.reliability.state_file == Path("/var/tmp/evolver-state.json")
    assert config.reliability.lock_stale_minutes == 5
    assert config.repair.max_attempts == 0
    assert config.repair.max_actions_per_attempt == 4
    assert config.logging.level == "debug"
    assert config.generator.command == "my-planner --json"


def test_workdir_env_overrides_argument(tmp_path: Path) -> None:
    other = tmp_path / "other"
    other.mkdir()

    config = load_config(tmp_path, env={"EVOLVER_WORKDIR": str(other)})

    assert config.workdir == other.resolve()


def test_capabilities_from_env_json(tmp_path: Path) -> None:
    env = {"EVOLVER_REPAIR_CAPABILITIES_JSON": json.dumps([{"id": "fmt", "argv": ["gofmt", "-w", "."], "cwd": "src"}])}

    config = load_config(tmp_path, env=env)

    assert [capability.id for capability in config.repair.capabilities] == ["fmt"]
    assert config.repair.capabilities[0].cwd == "src"


def test_malformed_integer_env_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="EVOLVER_MAX_FILES must be an integer"):
        load_config(tmp_path, env={"EVOLVER_MAX_FILES": "lots"})


def test_malformed_capabilities_json_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(tmp_path, env={"EVOLVER_REPAIR_CAPABILITIES_JSON": "[{"})


def test_schema_violations_are_reported(tmp_path: Path) -> None:
    _write_config(tmp_path, {"mode": "yolo", "repair": {"max_attempts": -1}})

    with pytest.raises(ConfigError) as excinfo:
        load_config(tmp_path, env={})

    message = str(excinfo.value)
    assert "mode" in message
    assert "repair.max_attempts" in message


def test_capability_without_argv_is_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, {"repair": {"capabilities": [{"id": "x", "argv": []}]}})

    with pytest.raises(ConfigError):
        load_config(tmp_path, env={})


def test_invalid_yaml_is_config_error(tmp_path: Path) -> None:
    path = tmp_path / ".evolver" / "config.yml"
    path.parent.mkdir(parents=True)
    path.write_text("commands: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="could not be parsed"):
        load_config(tmp_path, env={})


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / ".evolver" / "config.yml"
    path.parent.mkdir(parents=True)
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="must be a mapping"):
        load_config(tmp_path, env={})


def test_duplicate_capability_ids_fail_at_load(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="duplicate repair capability id in config: tidy"):
        parse_capabilities(
            [
                {"id": "tidy", "argv": ["go", "mod", "tidy"]},
                {"id": "tidy", "argv": ["go", "mod", "download"]},
            ]
        )


def test_default_payload_validates_and_round_trips(tmp_path: Path) -> None:
    _write_config(tmp_path, default_config_payload())

    config = load_config(tmp_path, env={})

    assert config.budgets.max_new_files == 10
