"""VM boot control for vmpipe: direct kernel boot, readiness detection, sessions."""

from __future__ import annotations

import json
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional

from vmpipe.console import ConsoleDrain, ConsoleLog, read_fd
from vmpipe.constants import QGA_CHANNEL_NAME, SUPPORTED_ARCHES
from vmpipe.exceptions import BootError, GuestAgentError, PipelineError
from vmpipe.guest import GuestAgent, SocketTransport
from vmpipe.models import BootConfig, GuestCommandResult
from vmpipe.utils import get_env_bool, kvm_available, log, run


def detect_image_format(image: Path) -> str:
    info = subprocess.run(
        ["qemu-img", "info", "--output=json", str(image)],
        capture_output=True,
        text=True,
    )
    if info.returncode != 0:
        raise BootError(f"qemu-img info failed for {image}: {info.stderr.strip()}")
    try:
        return json.loads(info.stdout).get("format", "raw")
    except json.JSONDecodeError:
        raise BootError(f"qemu-img info returned malformed output for {image}")


def create_overlay(base_disk: Path, overlay: Path) -> None:
    """Create a qcow2 overlay so the baseline disk is never written."""
    base_format = detect_image_format(base_disk)
    try:
        run(
            [
                "qemu-img",
                "create",
                "-f",
                "qcow2",
                "-F",
                base_format,
                "-b",
                str(base_disk.resolve()),
                str(overlay),
            ],
            capture_output=True,
        )
    except subprocess.CalledProcessError as exc:
        raise BootError(f"Failed to create disk overlay {overlay}: {(exc.stderr or '').strip()}") from exc
    except FileNotFoundError as exc:
        raise BootError("qemu-img not found; install qemu-utils") from exc


def build_qemu_command(
    cfg: BootConfig,
    name: str,
    kernel: Path,
    initrd: Path,
    disk: Path,
    qga_socket: Path,
    accel: str,
    cpu_model: str,
) -> List[str]:
    profile = SUPPORTED_ARCHES[cfg.arch]
    cmd = [
        profile["binary"],
        "-name",
        name,
        "-machine",
        f"{profile['machine']},accel={accel}",
        "-cpu",
        cpu_model,
        "-m",
        str(cfg.memory_mb),
        "-smp",
        str(cfg.cpus),
        "-display",
        "none",
        "-no-reboot",
        "-kernel",
        str(kernel),
        "-initrd",
        str(initrd),
        "-append",
        cfg.kernel_cmdline,
        "-drive",
        f"file={disk},if=virtio,format=qcow2",
        "-serial",
        "stdio",
        "-monitor",
        "none",
        "-chardev",
        f"socket,id=qga0,path={qga_socket},server=on,wait=off",
        "-device",
        "virtio-serial",
        "-device",
        f"virtserialport,chardev=qga0,name={QGA_CHANNEL_NAME}",
        "-netdev",
        "user,id=net0",
        "-device",
        "virtio-net-pci,netdev=net0",
        "-device",
        "virtio-rng-pci",
    ]
    cmd.extend(cfg.extra_args)
    return cmd


class QemuProcess:
    """A qemu-system process whose serial console is its stdout."""

    def __init__(self, proc: subprocess.Popen, transport: SocketTransport, endpoint: str) -> None:
        self.proc = proc
        self.transport = transport
        self.endpoint = endpoint

    def console_source(self) -> Iterable[bytes]:
        assert self.proc.stdout is not None
        return read_fd(self.proc.stdout.fileno())

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def exit_status(self) -> Optional[int]:
        return self.proc.poll()

    def stop(self, timeout: float = 10.0) -> None:
        if self.proc.poll() is None:
            self.proc.terminate()
            try:
                self.proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log("WARN", f"QEMU (PID {self.proc.pid}) ignored SIGTERM; killing")
                self.proc.kill()
                self.proc.wait(timeout=timeout)
        self.transport.close()

    def release(self) -> None:
        if self.proc.stdout is not None:
            self.proc.stdout.close()


class QemuBackend:
    name = "qemu"

    def launch(
        self,
        cfg: BootConfig,
        name: str,
        kernel: Path,
        initrd: Path,
        disk: Path,
        run_dir: Path,
    ) -> QemuProcess:
        profile = SUPPORTED_ARCHES[cfg.arch]
        if kvm_available():
            accel, cpu_model = "kvm", "host"
        else:
            if get_env_bool("REQUIRE_KVM", False):
                raise PipelineError(
                    "REQUIRE_KVM=1 is set but /dev/kvm is not available. "
                    "Expose /dev/kvm to the runner or unset REQUIRE_KVM."
                )
            log("WARN", "/dev/kvm not available; booting with TCG software emulation (10-50x slower)")
            accel, cpu_model = "tcg", profile["tcg_fallback"]

        qga_socket = run_dir / "qga.sock"
        qga_socket.unlink(missing_ok=True)
        cmd = build_qemu_command(cfg, name, kernel, initrd, disk, qga_socket, accel, cpu_model)
        log("DEBUG", f"Launching: {' '.join(cmd)}")
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        log("INFO", f"QEMU started (PID {proc.pid}, accel={accel})")
        return QemuProcess(proc, SocketTransport(qga_socket), endpoint=f"unix:{qga_socket}")


class VMSession:
    """Command and teardown capability for one booted guest."""

    def __init__(
        self,
        name: str,
        vm,
        console: ConsoleLog,
        drain: ConsoleDrain,
        agent: GuestAgent,
        work_disk: Path,
    ) -> None:
        self.name = name
        self.vm = vm
        self.console = console
        self.drain = drain
        self.agent = agent
        self.work_disk = work_disk
        self._lock = threading.Lock()
        self._closed = False

    @property
    def endpoint(self) -> str:
        return self.vm.endpoint

    @property
    def console_log_path(self) -> Path:
        return self.console.path

    @property
    def console_error(self) -> Optional[BaseException]:
        """Exception that stopped console capture, if any."""
        return self.drain.error

    @property
    def closed(self) -> bool:
        return self._closed

    def is_alive(self) -> bool:
        return not self._closed and self.vm.is_alive()

    def run(self, command: str, identity: str, timeout: float) -> GuestCommandResult:
        if self._closed:
            raise GuestAgentError(f"session {self.name} has been torn down")
        if not self.vm.is_alive():
            raise GuestAgentError(f"VM process for {self.name} is no longer running")
        with self._lock:
            return self.agent.run(command, identity, timeout)

    def teardown(self) -> None:
        """Stop the VM and flush the console; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        log("INFO", f"Tearing down VM session {self.name}")
        try:
            self.vm.stop()
        finally:
            self.drain.join()
            self.vm.release()
            self.console.close()


class BootController:
    def __init__(self, cfg: BootConfig, backend=None) -> None:
        self.cfg = cfg
        if backend is None:
            if cfg.backend == "libvirt":
                from vmpipe.libvirt_backend import LibvirtBackend

                backend = LibvirtBackend()
            else:
                backend = QemuBackend()
        self.backend = backend

    def boot(self, kernel: Path, initrd: Path, base_disk: Path, run_dir: Path, name: str = "vmpipe") -> VMSession:
        """Boot a guest and return a session only once readiness was observed.

        Raises BootError on launch failure, console capture failure or
        readiness timeout; the VM is always stopped before raising.
        """
        for label, path in (("kernel", kernel), ("initrd", initrd), ("base disk", base_disk)):
            if not path.is_file():
                raise BootError(f"{label} image not found: {path}")

        work_disk = run_dir / "disk.qcow2"
        create_overlay(base_disk, work_disk)

        try:
            console = ConsoleLog(run_dir / "console.log")
        except OSError as exc:
            raise BootError(f"console capture failed: cannot open console log: {exc}") from exc

        log("INFO", f"Booting {name} via {self.backend.name} (kernel={kernel.name}, initrd={initrd.name})")
        try:
            vm = self.backend.launch(self.cfg, name, kernel, initrd, work_disk, run_dir)
        except (OSError, PipelineError) as exc:
            console.close()
            raise BootError(f"VM launch failed: {exc}") from exc

        drain = ConsoleDrain(console, vm.console_source(), name=f"{name}-console")
        agent = GuestAgent(vm.transport)
        session = VMSession(name, vm, console, drain, agent, work_disk)
        try:
            drain.start()
        except RuntimeError as exc:
            session.teardown()
            raise BootError(f"console capture failed: {exc}", console.tail(200)) from exc

        try:
            self._await_ready(session)
        except BaseException:
            # cancellation included: never leave the VM running
            session.teardown()
            raise
        return session

    def _await_ready(self, session: VMSession) -> None:
        vm, console, drain, agent = session.vm, session.console, session.drain, session.agent
        start = time.monotonic()
        pattern = re.compile(self.cfg.readiness_pattern)
        line = console.wait_for(pattern, self.cfg.timeout, abort=lambda: not vm.is_alive())
        if line is None:
            if drain.error is not None:
                reason = f"console capture failed: {drain.error}"
            elif not vm.is_alive():
                reason = f"VM process exited before readiness (status {vm.exit_status()})"
            else:
                reason = "readiness timeout"
            session.teardown()
            log("ERROR", f"Boot failed: {reason}")
            raise BootError(reason, console.tail(200))
        log("SUCCESS", f"Readiness marker observed after {time.monotonic() - start:.1f}s: {line.strip()}")

        if not agent.wait_until_responsive(self.cfg.agent_timeout):
            session.teardown()
            raise BootError(
                f"guest agent did not respond within {self.cfg.agent_timeout}s after readiness",
                console.tail(200),
            )
        log("SUCCESS", f"Guest command channel ready ({vm.endpoint})")
