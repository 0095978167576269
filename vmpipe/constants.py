"""Global constants and path configuration for vmpipe."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("pipeline.yaml")

# VMPIPE_DATA_DIR provides a single mount point for the store and run state.
_DATA_DIR = os.environ.get("VMPIPE_DATA_DIR")
if _DATA_DIR:
    _data = Path(_DATA_DIR)
    STORE_DIR = _data / "store"
    WORK_DIR = _data / "runs"
else:
    STORE_DIR = Path("/var/lib/vmpipe/store")
    WORK_DIR = Path("/var/lib/vmpipe/runs")

BUNDLES_DIRNAME = "bundles"
CACHE_DIRNAME = "cache"
LATEST_GOOD_POINTER = "latest-good"
METADATA_FILENAME = "metadata.json"

TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_BOOT_TIMEOUT = 300
DEFAULT_OPERATION_TIMEOUT = 60
DEFAULT_PROVISION_TIMEOUT = 600
DEFAULT_READINESS_PATTERN = r"VMPIPE-READY"
DEFAULT_KERNEL_CMDLINE = "root=/dev/vda rw panic=-1"

# in-memory console window; console.log on disk is never truncated
CONSOLE_BUFFER_LINES = 10000
CONSOLE_MAX_LINE_LENGTH = 65536

OPERATOR_IDENTITY = "operator"
VALIDATOR_IDENTITY = "validator"
ROOT_IDENTITY = "root"

BOOT_BACKENDS = {"qemu", "libvirt"}
BATCH_POLICIES = {"run-all", "fail-fast"}

SUPPORTED_ARCHES = {
    "x86_64": {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "console": "ttyS0",
        "tcg_fallback": "qemu64",
    },
    "aarch64": {
        "binary": "qemu-system-aarch64",
        "machine": "virt",
        "console": "ttyAMA0",
        "tcg_fallback": "cortex-a72",
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

QGA_CHANNEL_NAME = "org.qemu.guest_agent.0"

# Guest shell exit codes meaning the command could not run at all.
EXEC_FAILURE_CODES = {126, 127}

HARNESS_EXIT_PASS = 0
HARNESS_EXIT_MISMATCH = 1
HARNESS_EXIT_EXEC_ERROR = 2
HARNESS_EXIT_USAGE = 64

HARNESS_RESERVED_COMMANDS = {"replay"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

VERSION_TAG_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._-]{0,127}$")
IDENTITY_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
