"""Data models for vmpipe."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple


class Stage(str, Enum):
    FETCH = "fetch"
    BOOT = "boot"
    PROVISION = "provision"
    EXECUTE = "execute"
    VALIDATE = "validate"
    PUBLISH = "publish"


STAGE_ORDER: Tuple[Stage, ...] = (
    Stage.FETCH,
    Stage.BOOT,
    Stage.PROVISION,
    Stage.EXECUTE,
    Stage.VALIDATE,
    Stage.PUBLISH,
)


class RunState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BOOTING = "booting"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    PUBLISHING = "publishing"
    PASSED = "passed"
    FAILED = "failed"


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class AssertionStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class GuestCommandResult(NamedTuple):
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False


@dataclass(frozen=True)
class BaselineBundle:
    version_tag: str
    bundle_dir: Path
    image_path: Path
    kernel_path: Optional[Path]
    initrd_path: Optional[Path]
    commit: str
    pipeline_id: str
    created_at: str
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class NormalizationRule:
    rule: str  # "ignore", "match-pattern:<regex>", "replace:<regex>", "strip"
    field: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.rule.split(":", 1)[0]

    @property
    def argument(self) -> str:
        return self.rule.split(":", 1)[1] if ":" in self.rule else ""


@dataclass(frozen=True)
class ExpectedResult:
    mode: str = "exit-code"  # "structured", "golden", "exit-code"
    exit_code: int = 0
    stdout: Any = None
    schema: Optional[Dict[str, Any]] = None
    normalize: Tuple[NormalizationRule, ...] = ()


@dataclass(frozen=True)
class OperationSpec:
    kind: str
    command: str
    params: Tuple[str, ...] = ()
    identity: str = "validator"


@dataclass(frozen=True)
class Operation:
    id: str
    kind: str
    command: str
    identity: str
    params: Dict[str, Any] = field(default_factory=dict, compare=False)
    scenario: str = ""


@dataclass(frozen=True)
class Scenario:
    name: str
    operations: Tuple[Operation, ...]
    expected_ref: str = ""
    expected: Dict[str, ExpectedResult] = field(default_factory=dict, compare=False)

    def expected_for(self, operation_id: str) -> ExpectedResult:
        return self.expected.get(operation_id, ExpectedResult())


@dataclass(frozen=True)
class ScenarioSet:
    path: Path
    catalog: Dict[str, OperationSpec]
    scenarios: Tuple[Scenario, ...]


@dataclass(frozen=True)
class ExecutionRecord:
    operation_id: str
    kind: str
    scenario: str
    identity: str
    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    started_at: str
    duration_s: float
    timed_out: bool = False
    error: Optional[str] = None
    normalized: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation_id,
            "kind": self.kind,
            "scenario": self.scenario,
            "identity": self.identity,
            "command": self.command,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "error": self.error,
            "started_at": self.started_at,
            "duration_s": self.duration_s,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "normalized": self.normalized,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        return cls(
            operation_id=data["operation"],
            kind=data.get("kind", ""),
            scenario=data.get("scenario", ""),
            identity=data.get("identity", ""),
            command=data.get("command", ""),
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            exit_code=data.get("exit_code"),
            started_at=data.get("started_at", ""),
            duration_s=float(data.get("duration_s", 0.0)),
            timed_out=bool(data.get("timed_out", False)),
            error=data.get("error"),
            normalized=data.get("normalized"),
        )


@dataclass(frozen=True)
class FieldDiff:
    field: str
    expected: Any
    actual: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "expected": self.expected, "actual": self.actual}


@dataclass(frozen=True)
class AssertionOutcome:
    operation_id: str
    scenario: str
    status: AssertionStatus
    diffs: Tuple[FieldDiff, ...] = ()
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == AssertionStatus.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation_id,
            "scenario": self.scenario,
            "status": self.status.value,
            "diffs": [d.to_dict() for d in self.diffs],
            "error": self.error,
        }


@dataclass(frozen=True)
class StageOutcome:
    stage: Stage
    status: StageStatus
    reason: str = ""
    started_at: str = ""
    duration_s: float = 0.0
    logs: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "reason": self.reason,
            "started_at": self.started_at,
            "duration_s": round(self.duration_s, 3),
            "logs": list(self.logs),
        }


@dataclass(frozen=True)
class PublishedBundle:
    version_tag: str
    bundle_dir: Path
    partial: bool
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)
    image_error: Optional[str] = None


@dataclass(frozen=True)
class RunInputs:
    baseline_tag: str
    scenario_set: Path
    commit: str
    pipeline_id: str


@dataclass
class BootConfig:
    backend: str = "qemu"
    arch: str = "x86_64"
    memory_mb: int = 2048
    cpus: int = 2
    kernel_cmdline: str = ""
    readiness_pattern: str = ""
    timeout: int = 300
    agent_timeout: int = 60
    kernel_override: Optional[Path] = None
    initrd_override: Optional[Path] = None
    extra_args: List[str] = field(default_factory=list)


@dataclass
class IdentityConfig:
    operator: str = "operator"
    validator: str = "validator"
    create: bool = True


@dataclass
class ProvisionConfig:
    commands: List[str] = field(default_factory=list)
    smoke_binaries: List[str] = field(default_factory=list)
    smoke_paths: List[str] = field(default_factory=list)
    timeout: int = 600


@dataclass
class ExecutionConfig:
    batch_policy: str = "run-all"
    operation_timeout: int = 60


@dataclass
class PublishConfig:
    required_stages: List[Stage] = field(
        default_factory=lambda: [Stage.FETCH, Stage.BOOT, Stage.PROVISION, Stage.EXECUTE, Stage.VALIDATE]
    )
    flatten_image: bool = True


@dataclass
class PipelineConfig:
    store_dir: Path
    work_dir: Path
    boot: BootConfig = field(default_factory=BootConfig)
    identities: IdentityConfig = field(default_factory=IdentityConfig)
    provision: ProvisionConfig = field(default_factory=ProvisionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
