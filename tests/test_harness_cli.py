"""Tests for the vmpipe-harness command line."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from vmpipe import harness_cli
from vmpipe.exceptions import GuestAgentError
from vmpipe.models import GuestCommandResult

CHECKED_OUT = GuestCommandResult(0, '{"status": "checked_out", "item": 42, "ts": "2024-05-01T10:00:00Z"}\n', "")


def _run(argv, capsys):
    code = harness_cli.main(argv)
    captured = capsys.readouterr()
    lines = captured.out.splitlines()
    assert len(lines) == 1
    return code, json.loads(lines[0]), captured.err


@pytest.fixture
def expected_file(scenario_file):
    return scenario_file.parent / "expected" / "checkout-cycle.yaml"


class TestOperationSubcommands:
    def test_pass_emits_single_record(self, scenario_file, expected_file, capsys):
        argv = [
            "--scenarios", str(scenario_file),
            "--expected", str(expected_file),
            "--operation", "checkout-42",
            "--scenario", "checkout-cycle",
            "check-out", "--item", "42",
        ]
        with patch("vmpipe.harness_cli.local_runner", return_value=CHECKED_OUT) as mock_runner:
            code, record, _ = _run(argv, capsys)
        assert code == 0
        assert mock_runner.call_args[0][0] == "invctl checkout --item 42"
        assert list(record)[:5] == ["operation", "kind", "scenario", "identity", "status"]
        assert record["operation"] == "checkout-42"
        assert record["status"] == "pass"
        assert record["diffs"] == []

    def test_scenario_flag_not_taken_for_scenarios(self, scenario_file, capsys):
        argv = ["--scenarios", str(scenario_file), "--scenario", "reporting", "report"]
        with patch("vmpipe.harness_cli.local_runner", return_value=GuestCommandResult(0, "", "")):
            code, record, _ = _run(argv, capsys)
        assert code == 0
        assert record["scenario"] == "reporting"

    def test_unexpected_error_still_emits_record(self, scenario_file, capsys):
        argv = ["--scenarios", str(scenario_file), "report"]
        with patch("vmpipe.harness_cli.local_runner", side_effect=RuntimeError("boom")):
            code, record, err = _run(argv, capsys)
        assert code == 2
        assert record["status"] == "error"
        assert record["error"] == "unexpected error: boom"
        assert "Traceback" in err

    def test_mismatch_exit_code(self, scenario_file, expected_file, capsys):
        wrong = GuestCommandResult(0, '{"status": "error", "item": 42}', "")
        argv = [
            "--scenarios", str(scenario_file),
            "--expected", str(expected_file),
            "--operation", "checkout-42",
            "check-out", "--item", "42",
        ]
        with patch("vmpipe.harness_cli.local_runner", return_value=wrong):
            code, record, _ = _run(argv, capsys)
        assert code == 1
        assert record["status"] == "fail"
        assert record["diffs"] == [{"field": "status", "expected": "checked_out", "actual": "error"}]

    def test_execution_error_exit_code(self, scenario_file, capsys):
        argv = ["--scenarios", str(scenario_file), "check-in", "--item", "7"]
        with patch("vmpipe.harness_cli.local_runner", side_effect=GuestAgentError("spawn failed")):
            code, record, _ = _run(argv, capsys)
        assert code == 2
        assert record["status"] == "error"
        assert "spawn failed" in record["error"]

    def test_without_expected_checks_exit_code(self, scenario_file, capsys):
        argv = ["--scenarios", str(scenario_file), "report"]
        with patch("vmpipe.harness_cli.local_runner", return_value=GuestCommandResult(0, "anything", "")):
            code, record, _ = _run(argv, capsys)
        assert code == 0
        assert record["operation"] == "report"

    def test_diagnostics_go_to_stderr(self, scenario_file, expected_file, capsys):
        argv = [
            "--scenarios", str(scenario_file),
            "--expected", str(expected_file),
            "--operation", "unknown-op",
            "report",
        ]
        with patch("vmpipe.harness_cli.local_runner", return_value=GuestCommandResult(0, "", "")):
            code, _, err = _run(argv, capsys)
        assert code == 0
        assert "No expected result for 'unknown-op'" in err


class TestUsageErrors:
    @pytest.mark.parametrize(
        "argv",
        [
            [],
            ["check-out", "--item", "1"],
            ["--scenarios", "{set}", "check-out"],
            ["--scenarios", "{set}", "teleport"],
            ["--scenarios", "{set}/missing.yaml", "report"],
            ["replay", "--record", "r.json"],
        ],
    )
    def test_usage_exit_code(self, scenario_file, capsys, argv):
        argv = [a.replace("{set}", str(scenario_file)) for a in argv]
        code, record, _ = _run(argv, capsys)
        assert code == 64
        assert record["status"] == "usage"


class TestReplay:
    def test_replay_from_stage_log(self, tmp_path, expected_file, make_record, capsys):
        log_file = tmp_path / "execute.log"
        stale = make_record(stdout='{"status": "error", "item": 42}')
        fresh = make_record(stdout='{"status": "checked_out", "item": 42, "ts": "x"}')
        log_file.write_text(
            "2024-01-01T00:00:00Z stage execute started\n"
            + json.dumps(stale.to_dict())
            + "\n"
            + json.dumps(fresh.to_dict())
            + "\n"
        )
        argv = ["--expected", str(expected_file), "--operation", "checkout-42", "replay", "--record", str(log_file)]
        code, record, _ = _run(argv, capsys)
        assert code == 0
        assert record["status"] == "pass"

    def test_replay_unknown_operation(self, tmp_path, make_record, capsys):
        path = tmp_path / "record.json"
        path.write_text(json.dumps(make_record().to_dict()))
        code, record, _ = _run(["--operation", "nope", "replay", "--record", str(path)], capsys)
        assert code == 2
        assert "No execution record for operation 'nope'" in record["error"]


class TestHelp:
    def test_help_keeps_stdout_to_one_record(self, scenario_file, capsys):
        code, record, err = _run(["--scenarios", str(scenario_file), "--help"], capsys)
        assert code == 0
        assert record == {"operation": None, "status": "help", "error": None}
        assert "check-out" in err
