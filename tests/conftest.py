"""Shared test fixtures: fake guest sessions, configs and scenario files."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from vmpipe.models import (
    BootConfig,
    ExecutionRecord,
    GuestCommandResult,
    IdentityConfig,
    PipelineConfig,
)

Response = Union[GuestCommandResult, BaseException, Callable[[str, str, float], GuestCommandResult]]


class FakeSession:
    """Stands in for a booted VMSession; answers commands from a script."""

    def __init__(self, responses: Optional[Dict[str, Response]] = None, default: Optional[Response] = None) -> None:
        self.responses = responses or {}
        self.default = default or GuestCommandResult(0, "", "")
        self.calls: List[Tuple[str, str, float]] = []
        self.alive = True
        self.torn_down = 0
        self.work_disk = Path("/nonexistent/disk.qcow2")
        self.endpoint = "fake:session"
        self.console_error: Optional[BaseException] = None

    def _response_for(self, command: str) -> Response:
        for needle, response in self.responses.items():
            if needle in command:
                return response
        return self.default

    def run(self, command: str, identity: str, timeout: float) -> GuestCommandResult:
        self.calls.append((command, identity, timeout))
        response = self._response_for(command)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(command, identity, timeout)
        return response

    def is_alive(self) -> bool:
        return self.alive

    def teardown(self) -> None:
        self.torn_down += 1
        self.alive = False


@pytest.fixture
def fake_session_factory():
    return FakeSession


_VMPIPE_ENV_VARS = [
    "VMPIPE_STORE_DIR",
    "VMPIPE_WORK_DIR",
    "VMPIPE_BOOT_BACKEND",
    "VMPIPE_BOOT_TIMEOUT",
    "VMPIPE_OPERATION_TIMEOUT",
    "VMPIPE_BATCH_POLICY",
    "VMPIPE_MEMORY",
    "VMPIPE_CPUS",
    "VMPIPE_ARCH",
    "REQUIRE_KVM",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the config layer reads."""
    for key in _VMPIPE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


@pytest.fixture
def pipeline_config(tmp_path) -> PipelineConfig:
    """Return a PipelineConfig rooted in tmp_path with short timeouts."""
    return PipelineConfig(
        store_dir=tmp_path / "store",
        work_dir=tmp_path / "runs",
        boot=BootConfig(
            kernel_cmdline="console=ttyS0 root=/dev/vda rw",
            readiness_pattern=r"VMPIPE-READY",
            timeout=5,
            agent_timeout=5,
        ),
        identities=IdentityConfig(operator="operator", validator="validator", create=True),
    )


@pytest.fixture
def make_record():
    def _make(**overrides) -> ExecutionRecord:
        values = dict(
            operation_id="checkout-42",
            kind="check-out",
            scenario="checkout-cycle",
            identity="validator",
            command="invctl checkout --item 42",
            stdout="",
            stderr="",
            exit_code=0,
            started_at="2024-01-01T00:00:00Z",
            duration_s=0.1,
        )
        values.update(overrides)
        return ExecutionRecord(**values)

    return _make


SCENARIO_SET = """\
operations:
  check-out:
    command: "invctl checkout --item {item}"
    params: [item]
  check-in:
    command: "invctl checkin --item {item}"
    params: [item]
  report:
    command: "invctl report"
    identity: operator
scenarios:
  - name: checkout-cycle
    expected: expected/checkout-cycle.yaml
    steps:
      - kind: check-out
        id: checkout-42
        params: {item: 42}
      - kind: check-in
        id: checkin-42
        params: {item: 42}
  - name: reporting
    steps:
      - report
"""

EXPECTED_CHECKOUT = """\
results:
  checkout-42:
    stdout: {status: checked_out, item: 42}
    normalize:
      - ignore:ts
  checkin-42:
    stdout: {status: checked_in, item: 42}
    normalize:
      - ignore:ts
"""


@pytest.fixture
def scenario_file(tmp_path) -> Path:
    """Write a two-scenario set plus its expected results; returns the set path."""
    root = tmp_path / "scenarios"
    (root / "expected").mkdir(parents=True)
    (root / "expected" / "checkout-cycle.yaml").write_text(EXPECTED_CHECKOUT)
    path = root / "set.yaml"
    path.write_text(SCENARIO_SET)
    return path


@pytest.fixture
def write_yaml(tmp_path):
    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content))
        return path

    return _write
