"""Custom exceptions for vmpipe."""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class FetchError(PipelineError):
    """Baseline bundle could not be fetched or failed verification."""


class NotFoundError(FetchError):
    """Requested bundle version does not exist in the store."""


class BootError(PipelineError):
    def __init__(self, reason: str, partial_console_log: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.partial_console_log = partial_console_log


class GuestAgentError(PipelineError):
    """The guest command channel failed (not the command itself)."""


class ProvisionError(PipelineError):
    def __init__(self, message: str, command: str = "", record=None) -> None:
        super().__init__(message)
        self.command = command
        self.record = record


class PublishError(PipelineError):
    """Bundle could not be written to the content store."""


class RunCancelled(PipelineError):
    def __init__(self, signal_name: Optional[str] = None) -> None:
        super().__init__(f"run cancelled ({signal_name})" if signal_name else "run cancelled")
        self.signal_name = signal_name
