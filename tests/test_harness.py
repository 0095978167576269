"""Tests for vmpipe.harness normalization, comparison and classification."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import patch

import pytest

from vmpipe.exceptions import GuestAgentError
from vmpipe.harness import (
    ABSENT,
    diff_values,
    evaluate,
    exit_code_for,
    invoke,
    local_runner,
    normalize_structured,
    normalize_text,
    result_record,
    schema_diffs,
)
from vmpipe.models import (
    AssertionStatus,
    ExpectedResult,
    FieldDiff,
    GuestCommandResult,
    NormalizationRule,
    Operation,
)

CHECKOUT_EXPECTED = ExpectedResult(
    mode="structured",
    stdout={"status": "checked_out", "item": 42},
    normalize=(NormalizationRule("ignore", "ts"),),
)


class TestCheckoutExamples:
    def test_volatile_timestamp_is_ignored(self, make_record):
        record = make_record(stdout='{"status":"checked_out","item":42,"ts":"2024-01-01T00:00:00Z"}')
        normalized, outcome = evaluate(record, CHECKOUT_EXPECTED)
        assert outcome.status == AssertionStatus.PASS
        assert outcome.diffs == ()
        assert normalized == {"status": "checked_out", "item": 42}

    def test_wrong_status_yields_field_diff(self, make_record):
        record = make_record(stdout='{"status":"error","item":42}')
        _, outcome = evaluate(record, CHECKOUT_EXPECTED)
        assert outcome.status == AssertionStatus.FAIL
        assert outcome.diffs == (FieldDiff("status", "checked_out", "error"),)
        assert exit_code_for(outcome) != 0

    def test_evaluation_is_idempotent(self, make_record):
        record = make_record(stdout='{"status":"error","item":42,"ts":"x"}')
        first = evaluate(record, CHECKOUT_EXPECTED)
        second = evaluate(record, CHECKOUT_EXPECTED)
        assert first == second

    def test_evaluate_does_not_mutate_expected(self, make_record):
        expected = ExpectedResult(
            mode="structured",
            stdout={"id": "abc", "ts": 1},
            normalize=(NormalizationRule("ignore", "ts"), NormalizationRule("match-pattern:^[a-z]+$", "id")),
        )
        evaluate(make_record(stdout='{"id":"zzz","ts":2}'), expected)
        assert expected.stdout == {"id": "abc", "ts": 1}


class TestNormalizeStructured:
    def test_match_pattern_accepts_matching_value(self):
        rules = (NormalizationRule("match-pattern:^[0-9a-f]{8}$", "id"),)
        want, got = normalize_structured({"id": "anything"}, {"id": "deadbeef"}, rules)
        assert want == got

    def test_match_pattern_rejects_non_matching_value(self):
        rules = (NormalizationRule("match-pattern:^[0-9a-f]{8}$", "id"),)
        want, got = normalize_structured({"id": "x"}, {"id": "not-hex"}, rules)
        assert diff_values(want, got) == [FieldDiff("id", "<match-pattern:^[0-9a-f]{8}$>", "not-hex")]

    def test_match_pattern_missing_field_is_a_diff(self):
        rules = (NormalizationRule("match-pattern:^\\d+$", "id"),)
        want, got = normalize_structured({}, {}, rules)
        assert diff_values(want, got) == [FieldDiff("id", "<match-pattern:^\\d+$>", ABSENT)]

    def test_ignore_nested_field(self):
        rules = (NormalizationRule("ignore", "meta.request_id"),)
        want, got = normalize_structured(
            {"meta": {"request_id": 1, "ok": True}},
            {"meta": {"request_id": 2, "ok": True}},
            rules,
        )
        assert want == got == {"meta": {"ok": True}}

    def test_replace_on_field(self):
        rules = (NormalizationRule("replace:\\d+", "msg"),)
        want, got = normalize_structured({"msg": "took 10ms"}, {"msg": "took 37ms"}, rules)
        assert want == got


class TestDiffValues:
    def test_extra_and_missing_fields(self):
        diffs = diff_values({"a": 1, "b": 2}, {"a": 1, "c": 3})
        assert FieldDiff("b", 2, ABSENT) in diffs
        assert FieldDiff("c", ABSENT, 3) in diffs

    def test_nested_list_paths(self):
        diffs = diff_values({"items": [1, 2]}, {"items": [1, 5, 6]})
        assert diffs == [FieldDiff("items.1", 2, 5), FieldDiff("items.2", ABSENT, 6)]

    def test_bool_and_int_are_distinct(self):
        assert diff_values({"ok": True}, {"ok": 1}) == [FieldDiff("ok", True, 1)]

    def test_type_mismatch_at_root(self):
        assert diff_values({"a": 1}, [1]) == [FieldDiff("<root>", {"a": 1}, [1])]


class TestSchema:
    def test_schema_violation_reported_per_field(self):
        schema = {"type": "object", "properties": {"item": {"type": "integer"}}, "required": ["item"]}
        diffs = schema_diffs(schema, {"item": "42"})
        assert len(diffs) == 1
        assert diffs[0].field == "item"
        assert diffs[0].expected.startswith("schema:")

    def test_schema_only_expected_result(self, make_record):
        expected = ExpectedResult(mode="structured", schema={"type": "object", "required": ["state"]})
        _, ok = evaluate(make_record(stdout='{"state":"in"}'), expected)
        _, bad = evaluate(make_record(stdout='{"other":1}'), expected)
        assert ok.status == AssertionStatus.PASS
        assert bad.status == AssertionStatus.FAIL


class TestGoldenAndExitCode:
    def test_golden_with_replace_and_strip(self, make_record):
        expected = ExpectedResult(
            mode="golden",
            stdout="generated 2000-01-01\nitems: 3\n",
            normalize=(NormalizationRule("replace:\\d{4}-\\d{2}-\\d{2}"), NormalizationRule("strip")),
        )
        _, outcome = evaluate(make_record(stdout="generated 2031-07-15   \nitems: 3\n\n"), expected)
        assert outcome.status == AssertionStatus.PASS

    def test_golden_mismatch(self, make_record):
        expected = ExpectedResult(mode="golden", stdout="a\n")
        _, outcome = evaluate(make_record(stdout="b\n"), expected)
        assert outcome.diffs == (FieldDiff("stdout", "a\n", "b\n"),)

    def test_exit_code_only(self, make_record):
        _, outcome = evaluate(make_record(exit_code=3), ExpectedResult())
        assert outcome.status == AssertionStatus.FAIL
        assert outcome.diffs == (FieldDiff("exit_code", 0, 3),)

    def test_unparseable_structured_output(self, make_record):
        _, outcome = evaluate(make_record(stdout="not json"), CHECKOUT_EXPECTED)
        assert outcome.status == AssertionStatus.FAIL
        assert outcome.diffs[0].field == "stdout"


class TestExecutionErrors:
    def test_timeout_is_execution_error(self, make_record):
        _, outcome = evaluate(make_record(exit_code=None, timed_out=True), ExpectedResult())
        assert outcome.status == AssertionStatus.ERROR
        assert "timed out" in outcome.error
        assert exit_code_for(outcome) == 2

    def test_command_not_found(self, make_record):
        _, outcome = evaluate(make_record(exit_code=127, stderr="sh: invctl: not found\n"), ExpectedResult())
        assert outcome.status == AssertionStatus.ERROR
        assert "command not found" in outcome.error

    def test_expected_127_is_not_an_error(self, make_record):
        _, outcome = evaluate(make_record(exit_code=127), ExpectedResult(exit_code=127))
        assert outcome.status == AssertionStatus.PASS

    def test_transport_failure_captured(self):
        op = Operation(id="op", kind="k", command="true", identity="validator", scenario="s")

        def runner(command, identity, timeout):
            raise GuestAgentError("socket closed")

        record, outcome = invoke(op, ExpectedResult(), runner, 5)
        assert record.error.startswith("guest command channel failed")
        assert outcome.status == AssertionStatus.ERROR


class TestInvokeAndRecord:
    def test_invoke_attaches_normalized_output(self):
        op = Operation(id="checkout-42", kind="check-out", command="x", identity="validator", scenario="c")
        runner = lambda c, i, t: GuestCommandResult(0, '{"status":"checked_out","item":42,"ts":"t"}', "")  # noqa: E731
        record, outcome = invoke(op, CHECKOUT_EXPECTED, runner, 5)
        assert outcome.passed
        assert record.normalized == {"status": "checked_out", "item": 42}
        assert record.stdout.startswith('{"status"')

    def test_result_record_field_order(self, make_record):
        record = make_record(stdout='{"status":"error","item":42}')
        _, outcome = evaluate(record, CHECKOUT_EXPECTED)
        result = result_record(record, outcome)
        assert list(result) == [
            "operation",
            "kind",
            "scenario",
            "identity",
            "status",
            "exit_code",
            "timed_out",
            "diffs",
            "error",
            "started_at",
            "duration_s",
        ]
        assert json.loads(json.dumps(result))["diffs"][0]["field"] == "status"


class TestNormalizeText:
    def test_replace_then_strip(self):
        rules = (NormalizationRule("replace:id=\\w+"), NormalizationRule("strip"))
        assert normalize_text("id=abc ok  \n\n", rules) == "<normalized> ok"


class TestLocalRunner:
    def test_success(self):
        proc = subprocess.CompletedProcess(args=["/bin/sh"], returncode=0, stdout="hi\n", stderr="")
        with patch("vmpipe.harness.subprocess.run", return_value=proc) as mock_run:
            result = local_runner("echo hi", "validator", 5)
        assert result == GuestCommandResult(0, "hi\n", "")
        assert mock_run.call_args[0][0] == ["/bin/sh", "-c", "echo hi"]

    def test_timeout_flags_record(self):
        exc = subprocess.TimeoutExpired(cmd="sleep", timeout=1, output=b"partial", stderr=None)
        with patch("vmpipe.harness.subprocess.run", side_effect=exc):
            result = local_runner("sleep 10", "validator", 1)
        assert result.timed_out is True
        assert result.exit_code is None
        assert result.stdout == "partial"

    def test_spawn_failure_raises_agent_error(self):
        with patch("vmpipe.harness.subprocess.run", side_effect=OSError("no sh")):
            with pytest.raises(GuestAgentError):
                local_runner("true", "validator", 1)
