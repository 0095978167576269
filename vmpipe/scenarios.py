"""Scenario set and expected-result loading for vmpipe."""

from __future__ import annotations

import json
import re
import shlex
import string
from pathlib import Path
from typing import Any, Dict, List, Tuple

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmpipe.constants import HARNESS_RESERVED_COMMANDS
from vmpipe.exceptions import PipelineError
from vmpipe.models import (
    ExpectedResult,
    IdentityConfig,
    NormalizationRule,
    Operation,
    OperationSpec,
    Scenario,
    ScenarioSet,
)

EXPECTED_MODES = {"structured", "golden", "exit-code"}
NORMALIZATION_KINDS = {"ignore", "match-pattern", "replace", "strip"}
_KIND_RE = re.compile(r"^[a-z][a-z0-9-]*$")


def _load_yaml_mapping(path: Path, label: str) -> Dict[str, Any]:
    if not path.exists():
        raise PipelineError(f"{label} missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise PipelineError(f"{label} {path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise PipelineError(f"{label} {path} must be a YAML mapping")
    return data


def template_fields(template: str) -> List[str]:
    return [name for _, name, _, _ in string.Formatter().parse(template) if name]


def render_command(spec: OperationSpec, params: Dict[str, Any]) -> str:
    """Substitute shell-quoted parameter values into the operation template."""
    missing = [name for name in spec.params if name not in params]
    if missing:
        raise PipelineError(f"Operation '{spec.kind}' is missing parameter(s): {', '.join(missing)}")
    unknown = sorted(set(params) - set(spec.params))
    if unknown:
        raise PipelineError(f"Operation '{spec.kind}' does not accept parameter(s): {', '.join(unknown)}")
    quoted = {name: shlex.quote(str(value)) for name, value in params.items()}
    return spec.command.format(**quoted)


def parse_catalog(raw: Any) -> Dict[str, OperationSpec]:
    if not isinstance(raw, dict) or not raw:
        raise PipelineError("Scenario set must declare an 'operations' catalog")
    catalog: Dict[str, OperationSpec] = {}
    for kind, entry in raw.items():
        if not _KIND_RE.match(str(kind)):
            raise PipelineError(f"Operation kind '{kind}' must be lowercase letters, digits and '-'")
        if kind in HARNESS_RESERVED_COMMANDS:
            raise PipelineError(f"Operation kind '{kind}' is reserved by the harness CLI")
        if isinstance(entry, str):
            entry = {"command": entry}
        if not isinstance(entry, dict) or not entry.get("command"):
            raise PipelineError(f"Operation '{kind}' needs a 'command' template")
        command = str(entry["command"])
        params = entry.get("params")
        if params is None:
            params = template_fields(command)
        params = tuple(str(p) for p in params)
        undeclared = sorted(set(template_fields(command)) - set(params))
        if undeclared:
            raise PipelineError(
                f"Operation '{kind}' template references undeclared parameter(s): {', '.join(undeclared)}"
            )
        identity = str(entry.get("identity", "validator")).strip().lower()
        if identity not in {"operator", "validator"}:
            raise PipelineError(f"Operation '{kind}' identity must be 'operator' or 'validator' (got '{identity}')")
        catalog[kind] = OperationSpec(kind=kind, command=command, params=params, identity=identity)
    return catalog


def load_catalog(path: Path) -> Dict[str, OperationSpec]:
    """Load only the operation catalog of a scenario set file."""
    return parse_catalog(_load_yaml_mapping(path, "Scenario set").get("operations"))


def parse_normalization(raw: Any, label: str) -> Tuple[NormalizationRule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise PipelineError(f"{label}: 'normalize' must be a list")
    rules = []
    for item in raw:
        if isinstance(item, str):
            # shorthand "ignore:ts"
            kind, _, field_name = item.partition(":")
            if kind != "ignore" or not field_name:
                raise PipelineError(f"{label}: shorthand rule '{item}' must be 'ignore:<field>'")
            item = {"field": field_name, "rule": "ignore"}
        if not isinstance(item, dict) or "rule" not in item:
            raise PipelineError(f"{label}: each normalization rule needs a 'rule'")
        rule = NormalizationRule(rule=str(item["rule"]), field=item.get("field"))
        if rule.kind not in NORMALIZATION_KINDS:
            raise PipelineError(f"{label}: unknown normalization rule '{rule.rule}'")
        if rule.kind in {"ignore", "match-pattern"} and not rule.field:
            raise PipelineError(f"{label}: rule '{rule.kind}' requires a 'field'")
        if rule.kind in {"match-pattern", "replace"}:
            try:
                re.compile(rule.argument)
            except re.error as exc:
                raise PipelineError(f"{label}: invalid regex in rule '{rule.rule}': {exc}")
        rules.append(rule)
    return tuple(rules)


def parse_expected(raw: Any, label: str) -> ExpectedResult:
    if not isinstance(raw, dict):
        raise PipelineError(f"{label}: expected result must be a mapping")
    mode = str(raw.get("mode") or ("structured" if isinstance(raw.get("stdout"), (dict, list)) else "golden"))
    if "stdout" not in raw and "mode" not in raw:
        mode = "exit-code"
    if mode not in EXPECTED_MODES:
        raise PipelineError(f"{label}: unknown mode '{mode}'. Expected one of {', '.join(sorted(EXPECTED_MODES))}")
    stdout = raw.get("stdout")
    if mode == "golden" and stdout is not None and not isinstance(stdout, str):
        raise PipelineError(f"{label}: golden mode requires 'stdout' to be text")
    if mode == "structured" and isinstance(stdout, str):
        try:
            json.loads(stdout)
        except ValueError as exc:
            raise PipelineError(f"{label}: structured 'stdout' is not valid JSON: {exc}")
    schema = raw.get("schema")
    if schema is not None and not isinstance(schema, dict):
        raise PipelineError(f"{label}: 'schema' must be a mapping")
    if schema is not None:
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as exc:
            raise PipelineError(f"{label}: invalid JSON Schema: {exc.message}")
    exit_code = raw.get("exit_code", 0)
    if not isinstance(exit_code, int):
        raise PipelineError(f"{label}: 'exit_code' must be an integer")
    return ExpectedResult(
        mode=mode,
        exit_code=exit_code,
        stdout=stdout,
        schema=schema,
        normalize=parse_normalization(raw.get("normalize"), label),
    )


def load_expected_results(path: Path) -> Dict[str, ExpectedResult]:
    data = _load_yaml_mapping(path, "Expected result file")
    results = data.get("results") or {}
    if not isinstance(results, dict):
        raise PipelineError(f"Expected result file {path}: 'results' must be a mapping of operation id -> record")
    return {
        str(op_id): parse_expected(entry, f"{path.name}:{op_id}")
        for op_id, entry in results.items()
    }


def _parse_scenario(
    raw: Any,
    index: int,
    catalog: Dict[str, OperationSpec],
    base_dir: Path,
    identities: IdentityConfig,
) -> Scenario:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise PipelineError(f"Scenario #{index + 1} needs a 'name'")
    name = str(raw["name"])
    steps = raw.get("steps") or []
    if not isinstance(steps, list) or not steps:
        raise PipelineError(f"Scenario '{name}' has no steps")

    operations: List[Operation] = []
    seen_ids = set()
    for step_index, step in enumerate(steps, start=1):
        if isinstance(step, str):
            step = {"kind": step}
        if not isinstance(step, dict) or "kind" not in step:
            raise PipelineError(f"Scenario '{name}' step {step_index} needs a 'kind'")
        kind = str(step["kind"])
        spec = catalog.get(kind)
        if spec is None:
            raise PipelineError(f"Scenario '{name}' step {step_index}: unknown operation kind '{kind}'")
        params = step.get("params") or {}
        if not isinstance(params, dict):
            raise PipelineError(f"Scenario '{name}' step {step_index}: 'params' must be a mapping")
        op_id = str(step.get("id") or f"{kind}-{step_index}")
        if op_id in seen_ids:
            raise PipelineError(f"Scenario '{name}' declares operation id '{op_id}' twice")
        seen_ids.add(op_id)
        role = str(step.get("as") or spec.identity).strip().lower()
        if role not in {"operator", "validator"}:
            raise PipelineError(f"Scenario '{name}' step {step_index}: 'as' must be operator or validator")
        identity = identities.operator if role == "operator" else identities.validator
        operations.append(
            Operation(
                id=op_id,
                kind=kind,
                command=render_command(spec, params),
                identity=identity,
                params=dict(params),
                scenario=name,
            )
        )

    expected_ref = str(raw.get("expected") or "")
    expected: Dict[str, ExpectedResult] = {}
    if expected_ref:
        expected = load_expected_results((base_dir / expected_ref).resolve())
        unknown = sorted(set(expected) - seen_ids)
        if unknown:
            raise PipelineError(
                f"Scenario '{name}': expected results reference unknown operation id(s): {', '.join(unknown)}"
            )
    return Scenario(name=name, operations=tuple(operations), expected_ref=expected_ref, expected=expected)


def load_scenario_set(path: Path, identities: IdentityConfig) -> ScenarioSet:
    """Load a versioned scenario set file read-only, in declaration order."""
    data = _load_yaml_mapping(path, "Scenario set")
    catalog = parse_catalog(data.get("operations"))
    raw_scenarios = data.get("scenarios") or []
    if not isinstance(raw_scenarios, list) or not raw_scenarios:
        raise PipelineError(f"Scenario set {path} declares no scenarios")
    scenarios = []
    names = set()
    for index, raw in enumerate(raw_scenarios):
        scenario = _parse_scenario(raw, index, catalog, path.parent, identities)
        if scenario.name in names:
            raise PipelineError(f"Scenario '{scenario.name}' is declared twice")
        names.add(scenario.name)
        scenarios.append(scenario)
    return ScenarioSet(path=path, catalog=catalog, scenarios=tuple(scenarios))
