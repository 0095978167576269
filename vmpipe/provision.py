"""Provisioning executor for vmpipe."""

from __future__ import annotations

import shlex
from typing import Callable, List, Optional

from vmpipe.constants import ROOT_IDENTITY
from vmpipe.exceptions import ProvisionError
from vmpipe.harness import capture
from vmpipe.models import ExecutionRecord, IdentityConfig, Operation, ProvisionConfig
from vmpipe.utils import generate_password, hash_password, log

RecordSink = Callable[[ExecutionRecord], None]


def identity_bootstrap_command(name: str, password_hash: str) -> str:
    return (
        f"id -u {name} >/dev/null 2>&1 || "
        f"useradd --create-home --shell /bin/sh --password {shlex.quote(password_hash)} {name}"
    )


class ProvisioningExecutor:
    """Runs setup commands as the operator identity, failing fast."""

    def __init__(
        self,
        session,
        cfg: ProvisionConfig,
        identities: IdentityConfig,
        on_record: Optional[RecordSink] = None,
    ) -> None:
        self.session = session
        self.cfg = cfg
        self.identities = identities
        self.records: List[ExecutionRecord] = []
        self._on_record = on_record

    def _run_step(self, op_id: str, command: str, identity: str) -> ExecutionRecord:
        operation = Operation(id=op_id, kind="provision", command=command, identity=identity, scenario="provision")
        record = capture(operation, self.session.run, self.cfg.timeout)
        self.records.append(record)
        if self._on_record is not None:
            self._on_record(record)
        return record

    def _require_success(self, record: ExecutionRecord, description: str) -> None:
        if record.error:
            raise ProvisionError(f"{description}: {record.error}", record.command, record)
        if record.timed_out:
            raise ProvisionError(f"{description}: timed out after {self.cfg.timeout}s", record.command, record)
        if record.exit_code != 0:
            detail = record.stderr.strip() or record.stdout.strip()
            message = f"{description}: exit {record.exit_code}"
            if detail:
                message += f" ({detail.splitlines()[-1]})"
            raise ProvisionError(message, record.command, record)

    def bootstrap_identities(self) -> None:
        """Create the operator and validator guest users when missing."""
        for name in (self.identities.operator, self.identities.validator):
            # the password only has to exist; nothing logs in interactively
            command = identity_bootstrap_command(name, hash_password(generate_password()))
            record = self._run_step(f"identity-{name}", command, ROOT_IDENTITY)
            self._require_success(record, f"creating guest identity '{name}' failed")
        log("SUCCESS", f"Guest identities ready: {self.identities.operator}, {self.identities.validator}")

    def run_commands(self) -> None:
        operator = self.identities.operator
        total = len(self.cfg.commands)
        for index, command in enumerate(self.cfg.commands, start=1):
            log("INFO", f"Provision [{index}/{total}] as {operator}: {command}")
            record = self._run_step(f"setup-{index}", command, operator)
            self._require_success(record, f"setup command {index} failed")

    def smoke_check(self) -> None:
        operator = self.identities.operator
        checks = [(f"binary '{b}' present", f"command -v {shlex.quote(b)}") for b in self.cfg.smoke_binaries]
        checks += [(f"path '{p}' present", f"test -e {shlex.quote(p)}") for p in self.cfg.smoke_paths]
        for index, (description, command) in enumerate(checks, start=1):
            record = self._run_step(f"smoke-{index}", command, operator)
            self._require_success(record, f"smoke assertion failed: {description}")
        if checks:
            log("SUCCESS", f"{len(checks)} smoke assertion(s) passed")

    def run(self) -> List[ExecutionRecord]:
        if self.identities.create:
            self.bootstrap_identities()
        self.run_commands()
        self.smoke_check()
        return self.records
