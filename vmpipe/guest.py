"""QEMU Guest Agent command channel for vmpipe."""

from __future__ import annotations

import base64
import json
import random
import shlex
import socket
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from vmpipe.constants import ROOT_IDENTITY
from vmpipe.exceptions import GuestAgentError
from vmpipe.models import GuestCommandResult
from vmpipe.utils import log

Transport = Callable[[Dict[str, Any], float], Dict[str, Any]]


class SocketTransport:
    """Talk QGA JSON over the unix socket QEMU exposes for the agent channel."""

    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path
        self._sock: Optional[socket.socket] = None
        self._buffer = b""

    def _connect(self, timeout: float) -> socket.socket:
        if self._sock is not None:
            return self._sock
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(str(self.socket_path))
        except OSError as exc:
            sock.close()
            raise GuestAgentError(f"cannot connect to guest agent socket {self.socket_path}: {exc}") from exc
        self._sock = sock
        self._buffer = b""
        try:
            self._sync(timeout)
        except GuestAgentError:
            self.close()
            raise
        return sock

    def _sync(self, timeout: float) -> None:
        # Discard stale replies left by an earlier, timed-out exchange.
        token = random.randint(1, 2**31 - 1)
        self._send({"execute": "guest-sync", "arguments": {"id": token}})
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            reply = self._recv(deadline - time.monotonic())
            if reply.get("return") == token:
                return
        raise GuestAgentError("guest agent did not answer guest-sync")

    def _send(self, payload: Dict[str, Any]) -> None:
        assert self._sock is not None
        try:
            self._sock.sendall(json.dumps(payload).encode("utf-8") + b"\n")
        except OSError as exc:
            self.close()
            raise GuestAgentError(f"guest agent write failed: {exc}") from exc

    def _recv(self, timeout: float) -> Dict[str, Any]:
        assert self._sock is not None
        self._sock.settimeout(max(timeout, 0.1))
        while b"\n" not in self._buffer:
            try:
                chunk = self._sock.recv(65536)
            except socket.timeout as exc:
                raise GuestAgentError("guest agent reply timed out") from exc
            except OSError as exc:
                self.close()
                raise GuestAgentError(f"guest agent read failed: {exc}") from exc
            if not chunk:
                self.close()
                raise GuestAgentError("guest agent closed the connection")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        try:
            return json.loads(line.decode("utf-8", errors="replace").lstrip("\xff"))
        except json.JSONDecodeError as exc:
            raise GuestAgentError(f"malformed guest agent reply: {line[:200]!r}") from exc

    def __call__(self, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self._connect(timeout)
        self._send(payload)
        try:
            return self._recv(timeout)
        except GuestAgentError:
            # the connection may now hold a late reply; reconnect next time
            self.close()
            raise

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None


class VirshTransport:
    """Reach the guest agent through `virsh qemu-agent-command`."""

    def __init__(self, uri: str, domain_name: str) -> None:
        self.uri = uri
        self.domain_name = domain_name

    def __call__(self, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        cmd = ["virsh", "-c", self.uri, "qemu-agent-command", self.domain_name, json.dumps(payload)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise GuestAgentError(f"virsh qemu-agent-command timed out after {timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise GuestAgentError("virsh binary not found") from exc
        if result.returncode != 0:
            raise GuestAgentError(f"virsh qemu-agent-command failed: {result.stderr.strip() or result.returncode}")
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise GuestAgentError(f"malformed guest agent reply: {result.stdout[:200]!r}") from exc

    def close(self) -> None:
        pass


def identity_argv(command: str, identity: str) -> List[str]:
    """argv that runs ``command`` through /bin/sh as the named guest identity."""
    if identity == ROOT_IDENTITY:
        return ["/bin/sh", "-c", command]
    return ["runuser", "-u", identity, "--", "/bin/sh", "-c", command]


class GuestAgent:
    def __init__(self, transport: Transport, poll_interval: float = 0.2) -> None:
        self.transport = transport
        self.poll_interval = poll_interval

    def _execute(self, command: str, arguments: Optional[Dict[str, Any]], timeout: float) -> Any:
        payload: Dict[str, Any] = {"execute": command}
        if arguments is not None:
            payload["arguments"] = arguments
        reply = self.transport(payload, timeout)
        if "error" in reply:
            desc = reply["error"].get("desc") if isinstance(reply["error"], dict) else reply["error"]
            raise GuestAgentError(f"{command} failed: {desc}")
        return reply.get("return")

    def ping(self, timeout: float = 5.0) -> bool:
        try:
            self._execute("guest-ping", None, timeout)
        except GuestAgentError as exc:
            log("DEBUG", f"guest-ping failed: {exc}")
            return False
        return True

    def wait_until_responsive(self, timeout: float, interval: float = 2.0) -> bool:
        """Poll guest-ping until it answers or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self.ping(timeout=min(5.0, remaining)):
                return True
            time.sleep(min(interval, max(deadline - time.monotonic(), 0)))

    def run(self, command: str, identity: str, timeout: float) -> GuestCommandResult:
        """Run a shell command as ``identity``; blocks at most ``timeout`` seconds."""
        argv = identity_argv(command, identity)
        log("DEBUG", f"guest-exec as {identity}: {shlex.join(argv)}")
        ret = self._execute(
            "guest-exec",
            {"path": argv[0], "arg": argv[1:], "capture-output": True},
            min(timeout, 10.0),
        )
        pid = (ret or {}).get("pid")
        if pid is None:
            raise GuestAgentError("guest-exec returned no pid")

        deadline = time.monotonic() + timeout
        while True:
            status = self._execute("guest-exec-status", {"pid": pid}, 10.0) or {}
            if status.get("exited"):
                return GuestCommandResult(
                    exit_code=status.get("exitcode", -1),
                    stdout=_decode(status.get("out-data")),
                    stderr=_decode(status.get("err-data")),
                )
            if time.monotonic() >= deadline:
                log("WARN", f"Guest command exceeded {timeout}s timeout (pid {pid}): {command}")
                return GuestCommandResult(exit_code=None, stdout="", stderr="", timed_out=True)
            time.sleep(self.poll_interval)


def _decode(data: Optional[str]) -> str:
    if not data:
        return ""
    return base64.b64decode(data).decode("utf-8", errors="replace")
