"""Validation harness: capture, normalization and comparison of operation output.

Every function here that takes an :class:`ExecutionRecord` is pure. Running a
captured record through :func:`evaluate` any number of times yields the same
:class:`AssertionOutcome`, which is what lets the Validate stage re-derive
verdicts from the Execute stage's records without touching the guest.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import re
import subprocess
import time
from collections import OrderedDict
from typing import Any, Callable, List, Optional, Tuple

from jsonschema import Draft202012Validator

from vmpipe.constants import (
    EXEC_FAILURE_CODES,
    HARNESS_EXIT_EXEC_ERROR,
    HARNESS_EXIT_MISMATCH,
    HARNESS_EXIT_PASS,
)
from vmpipe.exceptions import GuestAgentError
from vmpipe.models import (
    AssertionOutcome,
    AssertionStatus,
    ExecutionRecord,
    ExpectedResult,
    FieldDiff,
    GuestCommandResult,
    NormalizationRule,
    Operation,
)
from vmpipe.utils import utc_now

ABSENT = "<absent>"
NORMALIZED = "<normalized>"

Runner = Callable[[str, str, int], GuestCommandResult]


class _Missing:
    pass


_MISSING = _Missing()


def _split_path(path: str) -> List[str]:
    return [part for part in path.split(".") if part]


def _walk(obj: Any, parts: List[str]) -> Tuple[Any, Optional[Any]]:
    """Return (parent, key) for the last path element, or (None, None)."""
    current = obj
    for part in parts[:-1]:
        current = _child(current, part)
        if current is _MISSING:
            return None, None
    if not parts:
        return None, None
    key: Any = parts[-1]
    if isinstance(current, list):
        if not key.isdigit():
            return None, None
        key = int(key)
    elif not isinstance(current, dict):
        return None, None
    return current, key


def _child(obj: Any, part: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(part, _MISSING)
    if isinstance(obj, list) and part.isdigit() and int(part) < len(obj):
        return obj[int(part)]
    return _MISSING


def get_field(obj: Any, path: str) -> Any:
    current = obj
    for part in _split_path(path):
        current = _child(current, part)
        if current is _MISSING:
            return _MISSING
    return current


def _delete_field(obj: Any, path: str) -> None:
    parent, key = _walk(obj, _split_path(path))
    if isinstance(parent, dict):
        parent.pop(key, None)
    elif isinstance(parent, list) and key < len(parent):
        parent[key] = NORMALIZED


def _set_field(obj: Any, path: str, value: Any) -> None:
    parent, key = _walk(obj, _split_path(path))
    if isinstance(parent, dict):
        parent[key] = value
    elif isinstance(parent, list) and key < len(parent):
        parent[key] = value


def _map_strings(obj: Any, func: Callable[[str], str]) -> Any:
    if isinstance(obj, str):
        return func(obj)
    if isinstance(obj, list):
        return [_map_strings(item, func) for item in obj]
    if isinstance(obj, dict):
        return {key: _map_strings(value, func) for key, value in obj.items()}
    return obj


def _strip_text(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.strip("\n").splitlines())


def normalize_text(text: str, rules: Tuple[NormalizationRule, ...]) -> str:
    for rule in rules:
        if rule.kind == "replace":
            text = re.sub(rule.argument, NORMALIZED, text)
        elif rule.kind == "strip":
            text = _strip_text(text)
    return text


def normalize_structured(expected: Any, actual: Any, rules: Tuple[NormalizationRule, ...]) -> Tuple[Any, Any]:
    """Apply rules to copies of both sides; returns (expected, actual)."""
    expected = copy.deepcopy(expected)
    actual = copy.deepcopy(actual)
    for rule in rules:
        if rule.kind == "ignore":
            _delete_field(expected, rule.field)
            _delete_field(actual, rule.field)
        elif rule.kind == "match-pattern":
            placeholder = f"<{rule.rule}>"
            value = get_field(actual, rule.field)
            if value is not _MISSING and re.fullmatch(rule.argument, str(value)):
                _set_field(actual, rule.field, placeholder)
            _set_field(expected, rule.field, placeholder)
        elif rule.kind in {"replace", "strip"}:
            if rule.kind == "replace":
                func = lambda text, pattern=rule.argument: re.sub(pattern, NORMALIZED, text)  # noqa: E731
            else:
                func = str.strip
            if rule.field:
                for side in (expected, actual):
                    value = get_field(side, rule.field)
                    if isinstance(value, str):
                        _set_field(side, rule.field, func(value))
            else:
                expected = _map_strings(expected, func)
                actual = _map_strings(actual, func)
    return expected, actual


def diff_values(expected: Any, actual: Any, path: str = "") -> List[FieldDiff]:
    """Exact-match comparison producing one diff per mismatching leaf field."""
    label = path or "<root>"
    if isinstance(expected, dict) and isinstance(actual, dict):
        diffs: List[FieldDiff] = []
        for key in expected:
            child = f"{path}.{key}" if path else str(key)
            if key not in actual:
                diffs.append(FieldDiff(child, expected[key], ABSENT))
            else:
                diffs.extend(diff_values(expected[key], actual[key], child))
        for key in actual:
            if key not in expected:
                child = f"{path}.{key}" if path else str(key)
                diffs.append(FieldDiff(child, ABSENT, actual[key]))
        return diffs
    if isinstance(expected, list) and isinstance(actual, list):
        diffs = []
        for index in range(max(len(expected), len(actual))):
            child = f"{path}.{index}" if path else str(index)
            if index >= len(actual):
                diffs.append(FieldDiff(child, expected[index], ABSENT))
            elif index >= len(expected):
                diffs.append(FieldDiff(child, ABSENT, actual[index]))
            else:
                diffs.extend(diff_values(expected[index], actual[index], child))
        return diffs
    # bool is an int subclass; keep true/1 distinct
    if type(expected) is bool or type(actual) is bool:
        return [] if type(expected) is type(actual) and expected == actual else [FieldDiff(label, expected, actual)]
    if expected == actual:
        return []
    return [FieldDiff(label, expected, actual)]


def schema_diffs(schema: dict, payload: Any) -> List[FieldDiff]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path])
    return [
        FieldDiff(
            ".".join(str(p) for p in error.absolute_path) or "<root>",
            f"schema: {error.message}",
            error.instance,
        )
        for error in errors
    ]


def _parse_json(text: str) -> Any:
    return json.loads(text)


def _expected_payload(expected: ExpectedResult) -> Any:
    if isinstance(expected.stdout, str):
        return _parse_json(expected.stdout)
    return expected.stdout


def execution_error(record: ExecutionRecord, expected: ExpectedResult) -> Optional[str]:
    """Return a description when the operation itself failed to run."""
    if record.error:
        return record.error
    if record.timed_out:
        return f"operation timed out after {record.duration_s:.1f}s"
    if record.exit_code is None:
        return "operation produced no exit code"
    if record.exit_code in EXEC_FAILURE_CODES and record.exit_code != expected.exit_code:
        detail = record.stderr.strip().splitlines()[-1] if record.stderr.strip() else ""
        reason = "command not found" if record.exit_code == 127 else "command not executable"
        return f"{reason} (exit {record.exit_code})" + (f": {detail}" if detail else "")
    return None


def evaluate(record: ExecutionRecord, expected: ExpectedResult) -> Tuple[Any, AssertionOutcome]:
    """Normalize and compare a captured record; returns (normalized_stdout, outcome)."""
    error = execution_error(record, expected)
    if error is not None:
        outcome = AssertionOutcome(record.operation_id, record.scenario, AssertionStatus.ERROR, error=error)
        return None, outcome

    diffs: List[FieldDiff] = []
    if record.exit_code != expected.exit_code:
        diffs.append(FieldDiff("exit_code", expected.exit_code, record.exit_code))

    normalized: Any = None
    if expected.mode == "structured":
        try:
            actual = _parse_json(record.stdout)
        except ValueError as exc:
            diffs.append(FieldDiff("stdout", "valid JSON document", f"unparseable output ({exc})"))
        else:
            if expected.schema is not None:
                diffs.extend(schema_diffs(expected.schema, actual))
            if expected.stdout is not None:
                want, got = normalize_structured(_expected_payload(expected), actual, expected.normalize)
                diffs.extend(diff_values(want, got))
                normalized = got
            else:
                _, normalized = normalize_structured(None, actual, expected.normalize)
    elif expected.mode == "golden":
        normalized = normalize_text(record.stdout, expected.normalize)
        if expected.stdout is not None:
            want_text = normalize_text(expected.stdout, expected.normalize)
            if want_text != normalized:
                diffs.append(FieldDiff("stdout", want_text, normalized))

    status = AssertionStatus.PASS if not diffs else AssertionStatus.FAIL
    return normalized, AssertionOutcome(record.operation_id, record.scenario, status, diffs=tuple(diffs))


def capture(operation: Operation, runner: Runner, timeout: int) -> ExecutionRecord:
    """Run one operation through ``runner`` and capture its raw output."""
    started_at = utc_now()
    start = time.monotonic()
    error: Optional[str] = None
    try:
        result = runner(operation.command, operation.identity, timeout)
    except GuestAgentError as exc:
        result = GuestCommandResult(exit_code=None, stdout="", stderr="")
        error = f"guest command channel failed: {exc}"
    return ExecutionRecord(
        operation_id=operation.id,
        kind=operation.kind,
        scenario=operation.scenario,
        identity=operation.identity,
        command=operation.command,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        started_at=started_at,
        duration_s=round(time.monotonic() - start, 3),
        timed_out=result.timed_out,
        error=error,
    )


def invoke(
    operation: Operation,
    expected: ExpectedResult,
    runner: Runner,
    timeout: int,
) -> Tuple[ExecutionRecord, AssertionOutcome]:
    """Perform exactly one operation: capture, normalize, compare."""
    raw = capture(operation, runner, timeout)
    normalized, outcome = evaluate(raw, expected)
    record = dataclasses.replace(raw, normalized=normalized)
    return record, outcome


def exit_code_for(outcome: AssertionOutcome) -> int:
    if outcome.status == AssertionStatus.PASS:
        return HARNESS_EXIT_PASS
    if outcome.status == AssertionStatus.FAIL:
        return HARNESS_EXIT_MISMATCH
    return HARNESS_EXIT_EXEC_ERROR


def result_record(record: ExecutionRecord, outcome: AssertionOutcome) -> "OrderedDict[str, Any]":
    """Machine-parseable result record with a stable field order."""
    return OrderedDict(
        [
            ("operation", record.operation_id),
            ("kind", record.kind),
            ("scenario", record.scenario),
            ("identity", record.identity),
            ("status", outcome.status.value),
            ("exit_code", record.exit_code),
            ("timed_out", record.timed_out),
            ("diffs", [d.to_dict() for d in outcome.diffs]),
            ("error", outcome.error),
            ("started_at", record.started_at),
            ("duration_s", record.duration_s),
        ]
    )


def local_runner(command: str, identity: str, timeout: int) -> GuestCommandResult:
    """Run a command in-process as the invoking identity (the harness CLI's own user)."""
    try:
        proc = subprocess.run(
            ["/bin/sh", "-c", command],
            capture_output=True,
            text=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout.decode("utf-8", errors="replace") if isinstance(exc.stdout, bytes) else exc.stdout or ""
        stderr = exc.stderr.decode("utf-8", errors="replace") if isinstance(exc.stderr, bytes) else exc.stderr or ""
        return GuestCommandResult(exit_code=None, stdout=stdout, stderr=stderr, timed_out=True)
    except OSError as exc:
        raise GuestAgentError(f"failed to spawn /bin/sh: {exc}") from exc
    return GuestCommandResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
