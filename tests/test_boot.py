"""Tests for boot control: command building, readiness and teardown."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from vmpipe.boot import BootController, QemuBackend, build_qemu_command, create_overlay
from vmpipe.exceptions import BootError, GuestAgentError, PipelineError
from vmpipe.models import BootConfig


class FakeVM:
    """Backend handle whose console replays canned chunks."""

    def __init__(self, chunks, alive=True, transport=None):
        self.chunks = chunks
        self.alive = alive
        self.transport = transport or MagicMock(return_value={"return": {}})
        self.endpoint = "fake:vm"
        self.stopped = 0
        self.released = 0

    def console_source(self):
        return iter(self.chunks)

    def is_alive(self):
        return self.alive

    def exit_status(self):
        return None if self.alive else 1

    def stop(self, timeout=10.0):
        self.stopped += 1
        self.alive = False

    def release(self):
        self.released += 1


class FakeBackend:
    name = "fake"

    def __init__(self, vm=None, error=None):
        self.vm = vm
        self.error = error
        self.launches = []

    def launch(self, cfg, name, kernel, initrd, disk, run_dir):
        self.launches.append((name, kernel, initrd, disk))
        if self.error is not None:
            raise self.error
        return self.vm


@pytest.fixture
def boot_inputs(tmp_path):
    kernel = tmp_path / "vmlinuz"
    initrd = tmp_path / "initrd.img"
    disk = tmp_path / "disk.qcow2"
    for path in (kernel, initrd, disk):
        path.write_bytes(b"x")
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    return kernel, initrd, disk, run_dir


@pytest.fixture
def no_overlay():
    with patch("vmpipe.boot.create_overlay", side_effect=lambda base, overlay: overlay.write_bytes(b"")) as mock:
        yield mock


def _cfg(**overrides):
    values = dict(kernel_cmdline="console=ttyS0", readiness_pattern=r"VMPIPE-READY", timeout=5, agent_timeout=5)
    values.update(overrides)
    return BootConfig(**values)


class TestBuildQemuCommand:
    def test_direct_kernel_boot_with_serial_and_agent(self, tmp_path):
        cfg = _cfg(memory_mb=1024, cpus=4, extra_args=["-snapshot"])
        cmd = build_qemu_command(
            cfg, "vm1", tmp_path / "k", tmp_path / "i", tmp_path / "d.qcow2", tmp_path / "qga.sock", "kvm", "host"
        )
        assert cmd[0] == "qemu-system-x86_64"
        assert cmd[cmd.index("-kernel") + 1] == str(tmp_path / "k")
        assert cmd[cmd.index("-initrd") + 1] == str(tmp_path / "i")
        assert cmd[cmd.index("-append") + 1] == "console=ttyS0"
        assert cmd[cmd.index("-machine") + 1] == "q35,accel=kvm"
        assert cmd[cmd.index("-serial") + 1] == "stdio"
        assert cmd[cmd.index("-m") + 1] == "1024"
        assert "virtserialport,chardev=qga0,name=org.qemu.guest_agent.0" in cmd
        assert cmd[-1] == "-snapshot"

    def test_aarch64_profile(self, tmp_path):
        cmd = build_qemu_command(
            _cfg(arch="aarch64"), "vm1", tmp_path / "k", tmp_path / "i", tmp_path / "d", tmp_path / "s", "tcg", "cortex-a72"
        )
        assert cmd[0] == "qemu-system-aarch64"
        assert cmd[cmd.index("-machine") + 1] == "virt,accel=tcg"


class TestCreateOverlay:
    @patch("vmpipe.boot.run")
    @patch("vmpipe.boot.detect_image_format", return_value="qcow2")
    def test_backing_file_is_base(self, mock_detect, mock_run, tmp_path):
        base = tmp_path / "base.qcow2"
        create_overlay(base, tmp_path / "overlay.qcow2")
        cmd = mock_run.call_args[0][0]
        assert cmd[:6] == ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2"]
        assert cmd[cmd.index("-b") + 1] == str(base.resolve())

    @patch("vmpipe.boot.run", side_effect=subprocess.CalledProcessError(1, ["qemu-img"], stderr="bad backing"))
    @patch("vmpipe.boot.detect_image_format", return_value="raw")
    def test_failure_is_boot_error(self, mock_detect, mock_run, tmp_path):
        with pytest.raises(BootError, match="bad backing"):
            create_overlay(tmp_path / "base.img", tmp_path / "overlay.qcow2")


class TestQemuBackend:
    @patch("vmpipe.boot.kvm_available", return_value=False)
    def test_require_kvm_refuses_tcg(self, mock_kvm, mock_env, boot_inputs):
        mock_env(REQUIRE_KVM="1")
        kernel, initrd, disk, run_dir = boot_inputs
        with pytest.raises(PipelineError, match="REQUIRE_KVM"):
            QemuBackend().launch(_cfg(), "vm1", kernel, initrd, disk, run_dir)


class TestBootController:
    def test_session_returned_after_readiness_and_agent(self, boot_inputs, no_overlay):
        vm = FakeVM([b"[    0.1] Linux version\n", b"VMPIPE-READY\n"])
        backend = FakeBackend(vm)
        session = BootController(_cfg(), backend=backend).boot(*boot_inputs, name="vm1")
        try:
            assert session.is_alive()
            assert session.endpoint == "fake:vm"
            assert session.work_disk == boot_inputs[3] / "disk.qcow2"
            assert backend.launches[0][3] == session.work_disk
            assert vm.transport.call_args[0][0] == {"execute": "guest-ping"}
        finally:
            session.teardown()
        assert "VMPIPE-READY" in (boot_inputs[3] / "console.log").read_text()

    def test_no_readiness_means_no_session(self, boot_inputs, no_overlay):
        vm = FakeVM([b"[    0.1] Linux version\n", b"Kernel panic - not syncing\n"])
        with pytest.raises(BootError) as excinfo:
            BootController(_cfg(), backend=FakeBackend(vm)).boot(*boot_inputs)
        assert excinfo.value.reason == "readiness timeout"
        assert "Kernel panic" in excinfo.value.partial_console_log
        assert vm.stopped == 1
        assert vm.released == 1

    def test_vm_exit_before_readiness(self, boot_inputs, no_overlay):
        vm = FakeVM([], alive=False)
        with pytest.raises(BootError, match="exited before readiness"):
            BootController(_cfg(), backend=FakeBackend(vm)).boot(*boot_inputs)

    def test_agent_never_answers(self, boot_inputs, no_overlay):
        transport = MagicMock(side_effect=GuestAgentError("refused"))
        vm = FakeVM([b"VMPIPE-READY\n"], transport=transport)
        with pytest.raises(BootError, match="guest agent did not respond"):
            BootController(_cfg(agent_timeout=0), backend=FakeBackend(vm)).boot(*boot_inputs)
        assert vm.stopped == 1

    def test_launch_failure(self, boot_inputs, no_overlay):
        backend = FakeBackend(error=PipelineError("qemu missing"))
        with pytest.raises(BootError, match="VM launch failed: qemu missing"):
            BootController(_cfg(), backend=backend).boot(*boot_inputs)

    def test_missing_kernel(self, boot_inputs, no_overlay):
        kernel, initrd, disk, run_dir = boot_inputs
        kernel.unlink()
        with pytest.raises(BootError, match="kernel image not found"):
            BootController(_cfg(), backend=FakeBackend()).boot(kernel, initrd, disk, run_dir)
        no_overlay.assert_not_called()


class TestVMSession:
    def test_run_after_teardown_raises(self, boot_inputs, no_overlay):
        vm = FakeVM([b"VMPIPE-READY\n"])
        session = BootController(_cfg(), backend=FakeBackend(vm)).boot(*boot_inputs)
        session.teardown()
        session.teardown()
        assert vm.stopped == 1
        with pytest.raises(GuestAgentError, match="torn down"):
            session.run("true", "operator", 5)
        assert session.is_alive() is False

    def test_console_error_exposed(self, boot_inputs, no_overlay):
        def _source():
            yield b"VMPIPE-READY\n"
            raise OSError("pty closed")

        vm = FakeVM([])
        vm.console_source = _source
        session = BootController(_cfg(), backend=FakeBackend(vm)).boot(*boot_inputs)
        try:
            session.drain.join()
            assert isinstance(session.console_error, OSError)
        finally:
            session.teardown()
