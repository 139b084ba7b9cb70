"""
Errors — failure taxonomy for the build and image pipelines.

  ConfigurationError  invalid OS / arch / VM type; nothing was touched
  LocalIOError        writing config, staging, copying or chmodding files
  SandboxError        a requested restriction could not be applied
  ProcessStartError   the program could not be started at all
  CommandFailed       the program ran and exited non-zero or timed out
  BuildFailure        a CommandFailed from the compile step, annotated
  ImageBuildError     a CommandFailed from the image script

Only CommandFailed (and the errors wrapping it) carry captured output.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from kernel_builder.core.process import ExecutionOutcome


class KernelBuilderError(Exception):
    """Base class for all kernel_builder errors."""

    kind = "error"


class ConfigurationError(KernelBuilderError):
    kind = "configuration"


class LocalIOError(KernelBuilderError):
    kind = "io"


class SandboxError(KernelBuilderError):
    kind = "sandbox"


class ProcessStartError(KernelBuilderError):
    kind = "execution"


class CommandFailed(KernelBuilderError):
    """A sandboxed command ran but did not succeed (non-zero exit or timeout)."""

    kind = "execution"

    def __init__(self, message: str, outcome: "ExecutionOutcome"):
        super().__init__(message)
        self.outcome = outcome

    @property
    def output(self) -> bytes:
        return self.outcome.output


class BuildFailure(KernelBuilderError):
    """
    Compilation failure with an optional root-cause title.

    ``str(err)`` is the title when one was extracted, otherwise the
    message of the raw error.
    """

    kind = "execution"

    def __init__(self, raw_error: Exception, title: Optional[str], output: bytes):
        super().__init__(title if title is not None else str(raw_error))
        self.raw_error = raw_error
        self.title = title
        self.output = output


class ImageBuildError(KernelBuilderError):
    kind = "execution"

    def __init__(self, message: str, output: bytes = b""):
        super().__init__(message)
        self.output = output
