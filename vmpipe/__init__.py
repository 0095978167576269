"""vmpipe package."""

__version__ = "0.4.0"

__all__ = [
    "artifacts",
    "boot",
    "cli",
    "config",
    "console",
    "constants",
    "exceptions",
    "guest",
    "harness",
    "harness_cli",
    "libvirt_backend",
    "models",
    "orchestrator",
    "provision",
    "runlog",
    "scenarios",
    "utils",
    "workflow",
]
