"""libvirt boot backend for vmpipe: transient domains with direct kernel boot."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Iterable, Optional
from xml.etree.ElementTree import Element, SubElement, tostring

try:
    import libvirt  # type: ignore
except ImportError:  # pragma: no cover - optional extra
    libvirt = None

from vmpipe.console import follow_file
from vmpipe.constants import QGA_CHANNEL_NAME, SUPPORTED_ARCHES
from vmpipe.exceptions import PipelineError
from vmpipe.guest import VirshTransport
from vmpipe.models import BootConfig
from vmpipe.utils import get_env_bool, kvm_available, log

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")


def render_domain_xml(
    cfg: BootConfig,
    name: str,
    kernel: Path,
    initrd: Path,
    disk: Path,
    serial_log: Path,
    kvm: bool,
) -> str:
    profile = SUPPORTED_ARCHES[cfg.arch]
    domain = Element("domain", type="kvm" if kvm else "qemu")
    SubElement(domain, "name").text = name
    SubElement(domain, "memory", unit="MiB").text = str(cfg.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(cfg.cpus)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch=cfg.arch, machine=profile["machine"]).text = "hvm"
    SubElement(os_el, "kernel").text = str(kernel)
    SubElement(os_el, "initrd").text = str(initrd)
    SubElement(os_el, "cmdline").text = cfg.kernel_cmdline

    if kvm:
        SubElement(domain, "cpu", mode="host-passthrough")
    else:
        cpu_el = SubElement(domain, "cpu", mode="custom", match="exact")
        SubElement(cpu_el, "model", fallback="allow").text = profile["tcg_fallback"]

    SubElement(domain, "on_reboot").text = "destroy"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")
    disk_el = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk_el, "driver", name="qemu", type="qcow2")
    SubElement(disk_el, "source", file=str(disk))
    SubElement(disk_el, "target", dev="vda", bus="virtio")

    iface = SubElement(devices, "interface", type="user")
    SubElement(iface, "model", type="virtio")

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "log", file=str(serial_log), append="off")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "target", type="virtio", name=QGA_CHANNEL_NAME)

    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return tostring(domain, encoding="unicode")


class LibvirtDomain:
    """A transient libvirt domain whose serial console is logged to a file."""

    def __init__(self, conn, domain, serial_log: Path, name: str) -> None:
        self.conn = conn
        self.domain = domain
        self.serial_log = serial_log
        self.transport = VirshTransport(LIBVIRT_URI, name)
        self.endpoint = f"{LIBVIRT_URI}#{name}"
        self._stop = threading.Event()

    def console_source(self) -> Iterable[bytes]:
        return follow_file(self.serial_log, self._stop)

    def is_alive(self) -> bool:
        try:
            return bool(self.domain.isActive())
        except libvirt.libvirtError:
            return False

    def exit_status(self) -> Optional[int]:
        return None

    def stop(self, timeout: float = 10.0) -> None:
        try:
            if self.domain.isActive():
                self.domain.destroy()
        except libvirt.libvirtError as exc:
            log("WARN", f"Could not destroy domain: {exc}")
        finally:
            self._stop.set()

    def release(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError:
                log("DEBUG", "libvirt connection already closed")
            self.conn = None


class LibvirtBackend:
    name = "libvirt"

    def launch(
        self,
        cfg: BootConfig,
        name: str,
        kernel: Path,
        initrd: Path,
        disk: Path,
        run_dir: Path,
    ) -> LibvirtDomain:
        if libvirt is None:
            raise PipelineError("libvirt python bindings not available; install the 'libvirt' extra")
        kvm = kvm_available()
        if not kvm:
            if get_env_bool("REQUIRE_KVM", False):
                raise PipelineError("REQUIRE_KVM=1 is set but /dev/kvm is not available.")
            log("WARN", "/dev/kvm not available; libvirt domain will use TCG")

        conn = libvirt.open(LIBVIRT_URI)
        if conn is None:
            raise PipelineError(f"Failed to open libvirt connection to {LIBVIRT_URI}")
        serial_log = run_dir / "serial.log"
        xml = render_domain_xml(cfg, name, kernel, initrd, disk, serial_log, kvm)
        try:
            domain = conn.createXML(xml, 0)
        except libvirt.libvirtError as exc:
            conn.close()
            message = exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)
            raise PipelineError(f"Failed to start domain {name}: {message}") from exc
        if domain is None:
            conn.close()
            raise PipelineError(f"libvirt refused to create domain {name}")
        log("SUCCESS", f"Domain {name} started")
        return LibvirtDomain(conn, domain, serial_log, name)
