"""Validation Harness CLI: one subcommand per operation kind, one operation per call.

stdout carries exactly one JSON result record; diagnostics go to stderr.
`--help` prints usage to stderr and still emits a record with status "help".
"""

from __future__ import annotations

import argparse
import json
import sys
import traceback
from contextlib import redirect_stdout
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from vmpipe.constants import (
    DEFAULT_OPERATION_TIMEOUT,
    HARNESS_EXIT_EXEC_ERROR,
    HARNESS_EXIT_USAGE,
)
from vmpipe.exceptions import PipelineError
from vmpipe.harness import evaluate, exit_code_for, invoke, local_runner, result_record
from vmpipe.models import ExecutionRecord, ExpectedResult, Operation, OperationSpec
from vmpipe.scenarios import load_catalog, load_expected_results, render_command
from vmpipe.utils import get_env, log, parse_int_env


class UsageError(Exception):
    pass


class HarnessArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose errors map to the harness usage exit code.

    Prefix matching is off: ``--scenario`` must never be read as ``--scenarios``.
    """

    def __init__(self, *args, **kwargs) -> None:
        kwargs.setdefault("allow_abbrev", False)
        super().__init__(*args, **kwargs)

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def _param_flag(name: str) -> str:
    return "--" + name.replace("_", "-")


def build_parser(catalog: Dict[str, OperationSpec]) -> HarnessArgumentParser:
    parser = HarnessArgumentParser(prog="vmpipe-harness", description="Run one operation and validate its output")
    parser.add_argument("--scenarios", type=Path, metavar="FILE", help="Scenario set providing the operation catalog")
    parser.add_argument("--expected", type=Path, metavar="FILE", help="Expected result YAML file")
    parser.add_argument("--operation", metavar="ID", help="Operation id to look up in the expected result file")
    parser.add_argument("--scenario", default="", metavar="NAME", help="Scenario name recorded in the result")
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        metavar="SECONDS",
        help=f"Per-operation timeout (default: VMPIPE_OPERATION_TIMEOUT or {DEFAULT_OPERATION_TIMEOUT})",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", parser_class=HarnessArgumentParser)

    replay = subparsers.add_parser("replay", help="Re-evaluate a captured Execution Record offline")
    replay.add_argument("--record", type=Path, required=True, metavar="FILE", help="JSON record or JSON-lines log")

    for kind in sorted(catalog):
        spec = catalog[kind]
        sub = subparsers.add_parser(kind, help=spec.command)
        for param in spec.params:
            sub.add_argument(_param_flag(param), dest=f"param_{param}", required=True, metavar=param.upper())
    return parser


def _load_expected(path: Optional[Path], operation_id: str) -> ExpectedResult:
    if path is None:
        return ExpectedResult()
    results = load_expected_results(path)
    if operation_id not in results:
        log("WARN", f"No expected result for '{operation_id}' in {path}; comparing exit code only")
        return ExpectedResult()
    return results[operation_id]


def _read_record(path: Path, operation_id: str) -> ExecutionRecord:
    try:
        text = path.read_text()
    except OSError as exc:
        raise PipelineError(f"Cannot read record file {path}: {exc}")
    try:
        document = json.loads(text)
        candidates = document if isinstance(document, list) else [document]
    except json.JSONDecodeError:
        # stage logs mix text lines and JSON lines
        candidates = []
        for line in text.splitlines():
            line = line.strip()
            if line.startswith("{"):
                try:
                    candidates.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    matches = [c for c in candidates if isinstance(c, dict) and c.get("operation") == operation_id]
    if not matches:
        raise PipelineError(f"No execution record for operation '{operation_id}' in {path}")
    return ExecutionRecord.from_dict(matches[-1])


def _replay(args: argparse.Namespace) -> Tuple[int, Dict[str, Any]]:
    if not args.operation:
        raise UsageError("replay requires --operation")
    record = _read_record(args.record, args.operation)
    _, outcome = evaluate(record, _load_expected(args.expected, args.operation))
    return exit_code_for(outcome), result_record(record, outcome)


def _run_operation(args: argparse.Namespace, spec: OperationSpec) -> Tuple[int, Dict[str, Any]]:
    params = {name: getattr(args, f"param_{name}") for name in spec.params}
    operation_id = args.operation or spec.kind
    timeout = args.timeout
    if timeout is None:
        timeout = parse_int_env("VMPIPE_OPERATION_TIMEOUT", str(DEFAULT_OPERATION_TIMEOUT))
    operation = Operation(
        id=operation_id,
        kind=spec.kind,
        command=render_command(spec, params),
        identity=get_env("USER") or spec.identity,
        params=params,
        scenario=args.scenario,
    )
    record, outcome = invoke(operation, _load_expected(args.expected, operation_id), local_runner, timeout)
    return exit_code_for(outcome), result_record(record, outcome)


def _error_record(message: str, status: str = "error") -> Dict[str, Any]:
    return {"operation": None, "status": status, "error": message}


def _dispatch(argv: List[str]) -> Tuple[int, Dict[str, Any]]:
    pre = HarnessArgumentParser(add_help=False)
    pre.add_argument("--scenarios", type=Path)
    known, _ = pre.parse_known_args(argv)
    catalog: Dict[str, OperationSpec] = {}
    if known.scenarios is not None:
        try:
            catalog = load_catalog(known.scenarios)
        except PipelineError as exc:
            raise UsageError(str(exc))

    parser = build_parser(catalog)
    args = parser.parse_args(argv)
    if args.command is None:
        raise UsageError("an operation kind or 'replay' is required")
    if args.command == "replay":
        return _replay(args)
    if known.scenarios is None:
        raise UsageError("--scenarios is required to run an operation")
    return _run_operation(args, catalog[args.command])


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    stdout = sys.stdout
    with redirect_stdout(sys.stderr):
        try:
            code, record = _dispatch(argv)
        except UsageError as exc:
            log("ERROR", f"usage: {exc}")
            code, record = HARNESS_EXIT_USAGE, _error_record(str(exc), status="usage")
        except PipelineError as exc:
            log("ERROR", str(exc))
            code, record = HARNESS_EXIT_EXEC_ERROR, _error_record(str(exc))
        except SystemExit as exc:
            # argparse exits after printing --help
            code = exc.code if isinstance(exc.code, int) else HARNESS_EXIT_USAGE
            record = {"operation": None, "status": "help", "error": None}
        except Exception as exc:
            log("ERROR", f"Unexpected error: {exc}")
            traceback.print_exc()
            code, record = HARNESS_EXIT_EXEC_ERROR, _error_record(f"unexpected error: {exc}")
    stdout.write(json.dumps(record) + "\n")
    stdout.flush()
    return code


if __name__ == "__main__":
    raise SystemExit(main())
