"""Workflow executor for vmpipe: drives scenarios through the harness."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from vmpipe.exceptions import PipelineError
from vmpipe.harness import evaluate, invoke
from vmpipe.models import (
    AssertionOutcome,
    AssertionStatus,
    ExecutionConfig,
    ExecutionRecord,
    Scenario,
)
from vmpipe.utils import log

RecordSink = Callable[[ExecutionRecord, AssertionOutcome], None]


@dataclass
class WorkflowResult:
    records: List[ExecutionRecord] = field(default_factory=list)
    outcomes: List[AssertionOutcome] = field(default_factory=list)
    halted: bool = False


def _skipped(scenario: Scenario, start: int, reason: str) -> List[AssertionOutcome]:
    return [
        AssertionOutcome(op.id, scenario.name, AssertionStatus.SKIPPED, error=reason)
        for op in scenario.operations[start:]
    ]


class WorkflowExecutor:
    """Runs scenarios in declaration order, one operation at a time."""

    def __init__(self, session, cfg: ExecutionConfig, on_record: Optional[RecordSink] = None) -> None:
        self.session = session
        self.cfg = cfg
        self._on_record = on_record

    def run(self, scenarios: Sequence[Scenario], result: Optional[WorkflowResult] = None) -> WorkflowResult:
        """Execute ``scenarios``, appending to ``result`` as each operation completes."""
        if result is None:
            result = WorkflowResult()
        fail_fast = self.cfg.batch_policy == "fail-fast"
        for position, scenario in enumerate(scenarios):
            if result.halted:
                result.outcomes.extend(_skipped(scenario, 0, "skipped: fail-fast policy stopped the run"))
                continue
            log("INFO", f"Scenario '{scenario.name}' ({len(scenario.operations)} operation(s))")
            for index, operation in enumerate(scenario.operations):
                if not self.session.is_alive():
                    raise PipelineError(
                        f"VM stopped during scenario '{scenario.name}' before operation '{operation.id}'"
                    )
                record, outcome = invoke(
                    operation,
                    scenario.expected_for(operation.id),
                    self.session.run,
                    self.cfg.operation_timeout,
                )
                result.records.append(record)
                result.outcomes.append(outcome)
                if self._on_record is not None:
                    self._on_record(record, outcome)
                self._log_outcome(outcome)

                if outcome.status == AssertionStatus.ERROR:
                    # later operations depend on this one's side effects
                    result.outcomes.extend(
                        _skipped(scenario, index + 1, f"skipped: operation '{operation.id}' failed to execute")
                    )
                    if fail_fast:
                        result.halted = True
                    break
                if not outcome.passed and fail_fast:
                    result.outcomes.extend(
                        _skipped(scenario, index + 1, "skipped: fail-fast policy stopped the run")
                    )
                    result.halted = True
                    break
            if result.halted and position + 1 < len(scenarios):
                log("WARN", "fail-fast: remaining scenarios will not run")
        return result

    @staticmethod
    def _log_outcome(outcome: AssertionOutcome) -> None:
        label = f"{outcome.scenario}/{outcome.operation_id}"
        if outcome.status == AssertionStatus.PASS:
            log("SUCCESS", f"PASS  {label}")
        elif outcome.status == AssertionStatus.FAIL:
            fields = ", ".join(d.field for d in outcome.diffs)
            log("ERROR", f"FAIL  {label} (fields: {fields})")
        else:
            log("ERROR", f"ERROR {label}: {outcome.error}")


def validate(
    scenarios: Sequence[Scenario],
    records: Sequence[ExecutionRecord],
    skipped: Sequence[AssertionOutcome] = (),
) -> List[AssertionOutcome]:
    """Re-derive one Assertion Outcome per declared operation from captured records."""
    by_key: Dict[Tuple[str, str], ExecutionRecord] = {(r.scenario, r.operation_id): r for r in records}
    skip_reasons = {(o.scenario, o.operation_id): o.error for o in skipped if o.status == AssertionStatus.SKIPPED}
    outcomes: List[AssertionOutcome] = []
    for scenario in scenarios:
        for operation in scenario.operations:
            key = (scenario.name, operation.id)
            record = by_key.get(key)
            if record is None:
                reason = skip_reasons.get(key) or "skipped: operation was not executed"
                outcomes.append(AssertionOutcome(operation.id, scenario.name, AssertionStatus.SKIPPED, error=reason))
                continue
            _, outcome = evaluate(record, scenario.expected_for(operation.id))
            outcomes.append(outcome)
    return outcomes


def count_outcomes(outcomes: Sequence[AssertionOutcome]) -> Dict[str, int]:
    counts = {status.value: 0 for status in AssertionStatus}
    for outcome in outcomes:
        counts[outcome.status.value] += 1
    counts["total"] = len(outcomes)
    return counts
