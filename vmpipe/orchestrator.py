"""Pipeline Orchestrator: the stage-sequenced state machine for one run."""

from __future__ import annotations

import json
import time
import traceback
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from vmpipe import __version__
from vmpipe.artifacts import ArtifactManager
from vmpipe.boot import BootController, VMSession
from vmpipe.exceptions import BootError, PipelineError, ProvisionError, RunCancelled
from vmpipe.models import (
    STAGE_ORDER,
    AssertionOutcome,
    AssertionStatus,
    BaselineBundle,
    PipelineConfig,
    PublishedBundle,
    RunInputs,
    RunState,
    ScenarioSet,
    Stage,
    StageOutcome,
    StageStatus,
)
from vmpipe.provision import ProvisioningExecutor
from vmpipe.runlog import RunLog
from vmpipe.scenarios import load_scenario_set
from vmpipe.utils import ensure_directory, log, sanitize_tag, utc_now
from vmpipe.workflow import WorkflowExecutor, WorkflowResult, count_outcomes, validate

TRANSITIONS: Dict[RunState, Tuple[RunState, ...]] = {
    RunState.PENDING: (RunState.FETCHING, RunState.FAILED),
    RunState.FETCHING: (RunState.BOOTING, RunState.FAILED),
    RunState.BOOTING: (RunState.PROVISIONING, RunState.FAILED),
    RunState.PROVISIONING: (RunState.EXECUTING, RunState.FAILED),
    RunState.EXECUTING: (RunState.VALIDATING, RunState.FAILED),
    RunState.VALIDATING: (RunState.PUBLISHING, RunState.FAILED),
    RunState.PUBLISHING: (RunState.PASSED, RunState.FAILED),
    RunState.PASSED: (),
    RunState.FAILED: (),
}

STAGE_STATES: Dict[Stage, RunState] = {
    Stage.FETCH: RunState.FETCHING,
    Stage.BOOT: RunState.BOOTING,
    Stage.PROVISION: RunState.PROVISIONING,
    Stage.EXECUTE: RunState.EXECUTING,
    Stage.VALIDATE: RunState.VALIDATING,
    Stage.PUBLISH: RunState.PUBLISHING,
}

# stages whose logs depend on a live console capture
CONSOLE_STAGES = (Stage.BOOT, Stage.PROVISION, Stage.EXECUTE)

StageResult = Tuple[StageStatus, str]


@dataclass
class RunResult:
    run_id: str
    state: RunState
    stages: List[StageOutcome]
    assertions: List[AssertionOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    published: Optional[PublishedBundle] = None
    report_path: Optional[Path] = None

    @property
    def passed(self) -> bool:
        return self.state == RunState.PASSED

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1


class Orchestrator:
    """Runs Fetch, Boot, Provision, Execute, Validate and Publish in order.

    A stage only starts once its predecessor reached SUCCESS. Publish is the
    exception: it always runs, after teardown, so logs from a failed or
    cancelled run are still collected.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        inputs: RunInputs,
        scenario_set: Optional[ScenarioSet] = None,
        artifacts: Optional[ArtifactManager] = None,
        boot_controller: Optional[BootController] = None,
        run_id: Optional[str] = None,
        report_path: Optional[Path] = None,
    ) -> None:
        self.cfg = cfg
        self.inputs = inputs
        self.scenario_set = scenario_set
        self.artifacts = artifacts or ArtifactManager(cfg.store_dir)
        self.boot_controller = boot_controller or BootController(cfg.boot)
        self.run_id = run_id or f"{sanitize_tag(inputs.pipeline_id)}-{uuid.uuid4().hex[:8]}"
        self.run_dir = cfg.work_dir / self.run_id
        self.report_path = report_path or self.run_dir / "report.json"

        self.state = RunState.PENDING
        self.history: List[RunState] = [self.state]
        self.stages: List[StageOutcome] = []
        self.warnings: List[str] = []
        self.bundle: Optional[BaselineBundle] = None
        self.session: Optional[VMSession] = None
        self.workflow = WorkflowResult()
        self.assertions: List[AssertionOutcome] = []
        self.published: Optional[PublishedBundle] = None
        self.cancelled: Optional[str] = None
        self.finishing = False
        self.runlog: Optional[RunLog] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _transition(self, target: RunState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise PipelineError(f"Illegal run state transition {self.state.value} -> {target.value}")
        log("DEBUG", f"Run state: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def _stage_log(self, stage: Stage, message: str) -> None:
        if self.runlog is not None:
            self.runlog.write(stage, message)

    def _record(self, stage: Stage, status: StageStatus, reason: str, started_at: str, duration: float) -> StageOutcome:
        logs: Tuple[str, ...] = ()
        if self.runlog is not None:
            logs = tuple(str(p) for p in self.runlog.files(stage))
        outcome = StageOutcome(stage, status, reason, started_at, duration, logs)
        self.stages.append(outcome)
        level = {StageStatus.SUCCESS: "SUCCESS", StageStatus.FAILURE: "ERROR"}.get(status, "INFO")
        log(level, f"Stage {stage.value}: {status.value}" + (f" ({reason})" if reason else ""))
        return outcome

    def _run_stage(self, stage: Stage, handler: Callable[[], StageResult]) -> StageOutcome:
        self._transition(STAGE_STATES[stage])
        started_at = utc_now()
        start = time.monotonic()
        self._stage_log(stage, f"stage {stage.value} started")
        try:
            status, reason = handler()
        except KeyboardInterrupt:
            self.cancelled = "SIGINT"
            self._cancel_stage(stage, started_at, start)
            raise RunCancelled("SIGINT")
        except RunCancelled as exc:
            self.cancelled = exc.signal_name or "cancel"
            self._cancel_stage(stage, started_at, start)
            raise
        except PipelineError as exc:
            status, reason = StageStatus.FAILURE, str(exc)
        except Exception as exc:
            self._stage_log(stage, traceback.format_exc())
            status, reason = StageStatus.FAILURE, f"unexpected error: {exc}"
        if status == StageStatus.SUCCESS and stage in CONSOLE_STAGES:
            console_error = getattr(self.session, "console_error", None)
            if console_error is not None:
                status, reason = StageStatus.FAILURE, f"console capture failed: {console_error}"
        self._stage_log(stage, f"stage {stage.value} finished: {status.value} {reason}".rstrip())
        return self._record(stage, status, reason, started_at, time.monotonic() - start)

    def _cancel_stage(self, stage: Stage, started_at: str, start: float) -> None:
        reason = f"cancelled ({self.cancelled})"
        self._stage_log(stage, f"stage {stage.value} {reason}")
        self._record(stage, StageStatus.FAILURE, reason, started_at, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------
    def _fetch(self) -> StageResult:
        if self.scenario_set is None:
            self.scenario_set = load_scenario_set(self.inputs.scenario_set, self.cfg.identities)
        self._stage_log(Stage.FETCH, f"scenario set {self.scenario_set.path}: {len(self.scenario_set.scenarios)} scenario(s)")
        self.bundle = self.artifacts.fetch(self.inputs.baseline_tag)
        self._stage_log(Stage.FETCH, f"baseline {self.bundle.version_tag} image={self.bundle.image_path}")
        return StageStatus.SUCCESS, f"baseline {self.bundle.version_tag}"

    def _boot(self) -> StageResult:
        assert self.bundle is not None
        kernel = self.cfg.boot.kernel_override or self.bundle.kernel_path
        initrd = self.cfg.boot.initrd_override or self.bundle.initrd_path
        if kernel is None or initrd is None:
            raise BootError(f"baseline bundle {self.bundle.version_tag} provides no kernel/initrd and none is configured")
        try:
            self.session = self.boot_controller.boot(
                kernel, initrd, self.bundle.image_path, self.run_dir, name=f"vmpipe-{self.run_id}"
            )
        except BootError as exc:
            if exc.partial_console_log:
                self._stage_log(Stage.BOOT, "partial console log:\n" + exc.partial_console_log)
            raise
        self._stage_log(Stage.BOOT, f"guest ready, command channel {self.session.endpoint}")
        return StageStatus.SUCCESS, ""

    def _provision(self) -> StageResult:
        assert self.session is not None
        executor = ProvisioningExecutor(
            self.session,
            self.cfg.provision,
            self.cfg.identities,
            on_record=lambda record: self._write_record(Stage.PROVISION, record),
        )
        try:
            records = executor.run()
        except ProvisionError as exc:
            self._stage_log(Stage.PROVISION, f"failed command: {exc.command}")
            if exc.record is not None:
                self._stage_log(Stage.PROVISION, f"stdout:\n{exc.record.stdout}")
                self._stage_log(Stage.PROVISION, f"stderr:\n{exc.record.stderr}")
            raise
        return StageStatus.SUCCESS, f"{len(records)} command(s)"

    def _write_record(self, stage: Stage, record, outcome: Optional[AssertionOutcome] = None) -> None:
        if self.runlog is None:
            return
        extra = {"status": outcome.status.value} if outcome is not None else None
        self.runlog.write_record(stage, record, extra)

    def _execute(self) -> StageResult:
        assert self.session is not None and self.scenario_set is not None
        executor = WorkflowExecutor(
            self.session,
            self.cfg.execution,
            on_record=lambda record, outcome: self._write_record(Stage.EXECUTE, record, outcome),
        )
        self.workflow = WorkflowResult()
        executor.run(self.scenario_set.scenarios, self.workflow)
        errors = sum(1 for o in self.workflow.outcomes if o.status == AssertionStatus.ERROR)
        reason = f"{len(self.workflow.records)} operation(s) executed"
        if errors:
            reason += f", {errors} execution error(s)"
        if self.workflow.halted:
            reason += ", halted by fail-fast policy"
        return StageStatus.SUCCESS, reason

    def _validate(self) -> StageResult:
        assert self.scenario_set is not None
        self.assertions = validate(self.scenario_set.scenarios, self.workflow.records, self.workflow.outcomes)
        for outcome in self.assertions:
            if not outcome.passed:
                self._stage_log(Stage.VALIDATE, json.dumps(outcome.to_dict(), default=str))
        counts = count_outcomes(self.assertions)
        summary = ", ".join(f"{counts[s.value]} {s.value}" for s in AssertionStatus)
        self._stage_log(Stage.VALIDATE, f"assertions: {summary}")
        if not counts["total"]:
            return StageStatus.SUCCESS, "no operations declared"
        if counts[AssertionStatus.PASS.value] == counts["total"]:
            return StageStatus.SUCCESS, f"{counts['total']} assertion(s) passed"
        return StageStatus.FAILURE, summary

    # ------------------------------------------------------------------
    # Teardown and publish
    # ------------------------------------------------------------------
    def _teardown(self) -> None:
        if self.session is None:
            return
        try:
            self.session.teardown()
        except Exception as exc:
            message = f"VM teardown raised: {exc}"
            self.warnings.append(message)
            log("WARN", message)

    def _assess_partial_execution(self) -> None:
        """Evaluate whatever Execute captured when Validate never ran."""
        if self.assertions or self.scenario_set is None or not self.workflow.records:
            return
        self.assertions = validate(self.scenario_set.scenarios, self.workflow.records, self.workflow.outcomes)
        counts = count_outcomes(self.assertions)
        self._stage_log(
            Stage.EXECUTE,
            f"partial execution: {counts['total'] - counts['skipped']} of {counts['total']} operation(s) assessed",
        )

    def _stage_succeeded(self, stage: Stage) -> bool:
        return any(o.stage == stage and o.succeeded for o in self.stages)

    def _verdict(self) -> bool:
        return self.cancelled is None and all(self._stage_succeeded(s) for s in STAGE_ORDER if s != Stage.PUBLISH)

    def _publish(self) -> StageResult:
        full = all(self._stage_succeeded(s) for s in self.cfg.publish.required_stages)
        image = self.session.work_disk if (full and self.session is not None) else None
        logs: List[Path] = []
        if self.runlog is not None:
            logs.extend(self.runlog.files())
        console_log = self.run_dir / "console.log"
        if console_log.is_file():
            logs.append(console_log)
        diffs = [o.to_dict() for o in self.assertions if o.status in (AssertionStatus.FAIL, AssertionStatus.ERROR)]
        verdict = self._verdict()
        metadata = {
            "baseline_tag": self.bundle.version_tag if self.bundle else self.inputs.baseline_tag,
            "commit": self.inputs.commit,
            "pipeline_id": self.inputs.pipeline_id,
            "run_id": self.run_id,
            "verdict": "passed" if verdict else "failed",
            "build": {
                "vmpipe_version": __version__,
                "backend": self.cfg.boot.backend,
                "arch": self.cfg.boot.arch,
            },
            "stages": [o.to_dict() for o in self.stages],
        }
        self._stage_log(Stage.PUBLISH, f"publishing {'full' if image else 'partial'} bundle, {len(logs)} log file(s)")
        self.published = self.artifacts.publish(
            image,
            logs,
            diffs,
            metadata,
            base_tag=f"{self.inputs.pipeline_id}-{self.inputs.commit[:12]}",
            kernel=self.bundle.kernel_path if (image and self.bundle) else None,
            initrd=self.bundle.initrd_path if (image and self.bundle) else None,
            flatten=self.cfg.publish.flatten_image,
            update_latest=image is not None and verdict,
        )
        if self.published.image_error is not None:
            self.warnings.append(f"image not published: {self.published.image_error}")
            return StageStatus.FAILURE, f"partial bundle {self.published.version_tag}: {self.published.image_error}"
        kind = "partial" if self.published.partial else "full"
        return StageStatus.SUCCESS, f"{kind} bundle {self.published.version_tag}"

    def _run_publish(self) -> None:
        started_at = utc_now()
        start = time.monotonic()
        if self.state == RunState.VALIDATING:
            self._transition(RunState.PUBLISHING)
        try:
            status, reason = self._publish()
        except PipelineError as exc:
            status, reason = StageStatus.FAILURE, str(exc)
            self.warnings.append(f"publish failed: {exc}")
        except Exception as exc:
            status, reason = StageStatus.FAILURE, f"unexpected error: {exc}"
            self.warnings.append(f"publish failed: {exc}")
            self._stage_log(Stage.PUBLISH, traceback.format_exc())
        self._record(Stage.PUBLISH, status, reason, started_at, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------
    def build_report(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "inputs": {
                "baseline": self.inputs.baseline_tag,
                "scenario_set": str(self.inputs.scenario_set),
                "commit": self.inputs.commit,
                "pipeline_id": self.inputs.pipeline_id,
            },
            "state": self.state.value,
            "verdict": "passed" if self.state == RunState.PASSED else "failed",
            "cancelled": self.cancelled,
            "stages": [o.to_dict() for o in self.stages],
            "counts": count_outcomes(self.assertions),
            "assertions": [o.to_dict() for o in self.assertions],
            "warnings": list(self.warnings),
            "published": self.published.version_tag if self.published else None,
            "published_partial": self.published.partial if self.published else None,
        }

    def _write_report(self) -> None:
        try:
            ensure_directory(self.report_path.parent)
            self.report_path.write_text(json.dumps(self.build_report(), indent=2, default=str) + "\n")
        except OSError as exc:
            log("ERROR", f"Could not write run report {self.report_path}: {exc}")
            return
        log("INFO", f"Run report written to {self.report_path}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self) -> RunResult:
        log("INFO", f"Run {self.run_id}: baseline={self.inputs.baseline_tag} commit={self.inputs.commit}")
        ensure_directory(self.run_dir)
        self.runlog = RunLog(self.run_dir)
        handlers = (
            (Stage.FETCH, self._fetch),
            (Stage.BOOT, self._boot),
            (Stage.PROVISION, self._provision),
            (Stage.EXECUTE, self._execute),
            (Stage.VALIDATE, self._validate),
        )
        try:
            for stage, handler in handlers:
                outcome = self._run_stage(stage, handler)
                if outcome.succeeded:
                    continue
                if stage != Stage.VALIDATE:
                    self._transition(RunState.FAILED)
                break
        except RunCancelled as exc:
            log("WARN", f"{exc}; tearing down")
            self.warnings.append(str(exc))
            self._transition(RunState.FAILED)
        finally:
            self.finishing = True
            self._teardown()
            self._assess_partial_execution()
            for stage in STAGE_ORDER[:-1]:
                if not any(o.stage == stage for o in self.stages):
                    self._record(stage, StageStatus.SKIPPED, "previous stage did not succeed", "", 0.0)
            self._run_publish()
            if self.state == RunState.PUBLISHING:
                self._transition(RunState.PASSED if self._verdict() else RunState.FAILED)
            self.runlog.close()
            self._write_report()

        counts = count_outcomes(self.assertions)
        log(
            "SUCCESS" if self.state == RunState.PASSED else "ERROR",
            f"Run {self.run_id} {self.state.value.upper()} "
            f"({counts['pass']} pass, {counts['fail']} fail, {counts['error']} error, {counts['skipped']} skipped)",
        )
        return RunResult(
            run_id=self.run_id,
            state=self.state,
            stages=list(self.stages),
            assertions=list(self.assertions),
            warnings=list(self.warnings),
            published=self.published,
            report_path=self.report_path,
        )
