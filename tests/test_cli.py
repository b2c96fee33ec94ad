"""Tests for the aumai-taskrl CLI and engine settings."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import pydantic
import pytest
from click.testing import CliRunner

from aumai_taskrl.cli import main
from aumai_taskrl.config import EngineSettings, configure_logging

FAST_RUN = ["--quantity", "1", "--timeout", "2", "--max-retries", "0", "--seed", "3"]


def invoke(data_dir: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(main, ["--data-dir", str(data_dir), "--log-level", "CRITICAL", *args])


def task_id_from(output: str) -> str:
    match = re.search(r"Task id\s+: (\w+)", output)
    assert match is not None, output
    return match.group(1)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestEngineSettings:
    def test_defaults(self) -> None:
        settings = EngineSettings.from_env({})
        assert settings.data_dir == Path("data")
        assert settings.log_level == "INFO"
        assert settings.controller.max_retries == 3
        assert settings.controller.timeout == 70.0

    def test_environment_overrides(self) -> None:
        settings = EngineSettings.from_env(
            {
                "TASKRL_MAX_RETRIES": "5",
                "TASKRL_RETRY_DELAY": "0.25",
                "TASKRL_TIMEOUT": "12",
                "TASKRL_DATA_DIR": "/tmp/taskrl",
                "TASKRL_LOG_LEVEL": "debug",
            }
        )
        assert settings.controller.max_retries == 5
        assert settings.controller.retry_delay == 0.25
        assert settings.controller.timeout == 12.0
        assert settings.data_dir == Path("/tmp/taskrl")
        assert settings.log_level == "DEBUG"

    def test_invalid_environment_value(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            EngineSettings.from_env({"TASKRL_MAX_RETRIES": "-1"})

    def test_configure_logging_idempotent(self) -> None:
        logger = configure_logging("WARNING")
        handlers = len(logger.handlers)
        configure_logging("DEBUG")
        assert len(logger.handlers) == handlers
        assert logger.level == logging.DEBUG


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_run_mining_saves_version(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "run", *FAST_RUN)
        assert result.exit_code == 0, result.output
        assert "Model        : mining v1" in result.output
        assert (tmp_path / "models" / "mining" / "v000001.json").exists()

    def test_second_run_resumes_latest(self, tmp_path: Path) -> None:
        invoke(tmp_path, "run", *FAST_RUN)
        result = invoke(tmp_path, "run", *FAST_RUN)
        assert result.exit_code == 0, result.output
        assert "Loaded mining version 1" in result.output
        assert "mining v2" in result.output

    def test_run_navigation_with_render(self, tmp_path: Path) -> None:
        result = invoke(
            tmp_path, "run", "--domain", "navigation", "--width", "4", "--height", "4",
            "--timeout", "2", "--max-retries", "0", "--seed", "1", "--render",
        )
        assert result.exit_code == 0, result.output
        assert "A" in result.output
        assert "navigation v1" in result.output

    def test_invalid_domain_rejected(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "run", "--domain", "fishing")
        assert result.exit_code != 0


class TestModelCommands:
    def test_versions_empty(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "versions", "mining")
        assert result.exit_code == 0
        assert "No versions stored" in result.output

    def test_versions_and_inspect(self, tmp_path: Path) -> None:
        invoke(tmp_path, "run", *FAST_RUN)
        listed = invoke(tmp_path, "versions", "mining")
        assert listed.exit_code == 0
        assert "v1" in listed.output

        inspected = invoke(tmp_path, "inspect", "models/mining/v000001.json")
        assert inspected.exit_code == 0, inspected.output
        assert "Agent          : mining" in inspected.output

    def test_inspect_missing(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "inspect", "models/none.json")
        assert result.exit_code != 0
        assert "No model stored" in result.output

    def test_rollback(self, tmp_path: Path) -> None:
        invoke(tmp_path, "run", *FAST_RUN)
        invoke(tmp_path, "run", *FAST_RUN)
        result = invoke(tmp_path, "rollback", "mining", "1")
        assert result.exit_code == 0, result.output
        assert "now current as v3" in result.output

    def test_rollback_unknown_version(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "rollback", "mining", "4")
        assert result.exit_code != 0


class TestProgressCommand:
    def test_progress_of_finished_task(self, tmp_path: Path) -> None:
        run = invoke(tmp_path, "run", *FAST_RUN)
        task_id = task_id_from(run.output)
        result = invoke(tmp_path, "progress", task_id)
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["progress"]["task_id"] == task_id
        assert payload["result"]["task_id"] == task_id
        assert payload["progress"]["history_length"] >= 1

    def test_progress_unknown_task(self, tmp_path: Path) -> None:
        result = invoke(tmp_path, "progress", "missing")
        assert result.exit_code != 0
