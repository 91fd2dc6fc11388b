"""Exceptions raised by shell-plumber."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import RunningPipeline
    from .status import PipelineResult


class PipelineError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(PipelineError, ValueError):
    """Raised before anything is spawned when the request itself is invalid."""


class SpawnError(PipelineError, OSError):
    """Raised when a stage could not be started.

    Stages spawned before the failure keep running. They are available
    on ``started`` so the caller can wait for or kill them.
    """

    def __init__(
        self,
        argv: Sequence[str],
        message: str,
        errno: Optional[int] = None,
        started: Optional["RunningPipeline"] = None,
    ):
        self.argv = list(argv)
        self.started = started
        super().__init__(f"{message}: {self.argv}")
        # OSError.__init__ with a single argument leaves errno unset
        self.errno = errno


class ResolutionError(SpawnError):
    """Raised when the executable for a stage cannot be found."""


class CommandError(PipelineError):
    """Raised when a pipeline fails and the caller asked for a check."""

    def __init__(self, result: "PipelineResult"):
        self.result = result
        super().__init__(
            f"Pipeline failed with {result.composite}\n"
            f"stages: {[str(s) for s in result]}"
        )


class TimeoutExpired(PipelineError):
    """Raised when a caller-side deadline expires."""

    def __init__(self, args: list, timeout: float):
        self.args_list = args
        self.timeout = timeout
        super().__init__(f"Pipeline timed out after {timeout}s: {args}")
