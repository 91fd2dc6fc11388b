"""Exit status values for single stages and whole pipelines."""

from __future__ import annotations

import abc
import enum
import signal
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, overload

from .errors import CommandError


class Outcome(enum.Enum):
    EXITED = "exited"
    SIGNALED = "signaled"
    STOPPED = "stopped"


class StatusLike(abc.ABC):
    """Read-only interface shared by `Status` and `PipelineResult`.

    Subclasses provide `_status`, the `Status` the queries answer for.
    """

    @property
    @abc.abstractmethod
    def _status(self) -> "Status": ...

    @property
    def pid(self) -> Optional[int]:
        return self._status.pid

    @property
    def exited(self) -> bool:
        return self._status.outcome is Outcome.EXITED

    @property
    def signaled(self) -> bool:
        return self._status.outcome is Outcome.SIGNALED

    @property
    def stopped(self) -> bool:
        return self._status.outcome is Outcome.STOPPED

    @property
    def exitstatus(self) -> Optional[int]:
        """Exit code, or None if the process did not exit normally."""
        return self._status.code if self.exited else None

    @property
    def termsig(self) -> Optional[int]:
        return self._status.signal if self.signaled else None

    @property
    def stopsig(self) -> Optional[int]:
        return self._status.signal if self.stopped else None

    @property
    def returncode(self) -> int:
        """subprocess-style code: exit code, or -N for signal N."""
        if self.exited:
            return self._status.code
        return -self._status.signal

    @property
    def succeeded(self) -> bool:
        """True iff the process exited with code 0."""
        return self.exited and self._status.code == 0

    # Shorter aliases matching Result.ok in the rest of the API
    ok = succeeded

    def __bool__(self) -> bool:
        return self.succeeded


@dataclass(frozen=True)
class Status(StatusLike):
    """Normalized exit outcome of one stage."""

    outcome: Outcome
    code: Optional[int] = None
    signal: Optional[int] = None
    pid: Optional[int] = None

    @property
    def _status(self) -> "Status":
        return self

    @classmethod
    def exited_with(cls, code: int, pid: Optional[int] = None) -> "Status":
        return cls(Outcome.EXITED, code=code, pid=pid)

    @classmethod
    def killed_by(cls, signum: int, pid: Optional[int] = None) -> "Status":
        return cls(Outcome.SIGNALED, signal=signum, pid=pid)

    @classmethod
    def stopped_by(cls, signum: int, pid: Optional[int] = None) -> "Status":
        return cls(Outcome.STOPPED, signal=signum, pid=pid)

    @classmethod
    def from_returncode(cls, pid: int, returncode: int) -> "Status":
        """Decode a subprocess-style return code."""
        if returncode < 0:
            return cls.killed_by(-returncode, pid)
        return cls.exited_with(returncode, pid)

    def __str__(self) -> str:
        if self.exited:
            return f"exited({self.code})"
        try:
            name = signal.Signals(self.signal).name
        except ValueError:
            name = str(self.signal)
        return f"{self.outcome.value}({name})"


def select_composite(statuses: Sequence[Status]) -> Status:
    """First failing status in spawn order, else the last one."""
    for status in statuses:
        if not status.succeeded:
            return status
    return statuses[-1]


class PipelineResult(Sequence[Status], StatusLike):
    """Per-stage statuses of a pipeline, usable as the composite status.

    Indexing and iteration give the stages in pipeline order; the status
    queries (``succeeded``, ``exitstatus``, ...) answer for ``composite``.
    """

    def __init__(self, statuses: Sequence[Status]):
        if not statuses:
            raise ValueError("a pipeline result needs at least one status")
        self._statuses = tuple(statuses)
        self._composite = select_composite(self._statuses)

    @property
    def _status(self) -> Status:
        return self._composite

    @property
    def composite(self) -> Status:
        return self._composite

    @property
    def statuses(self) -> tuple[Status, ...]:
        return self._statuses

    @property
    def returncodes(self) -> list[int]:
        return [s.returncode for s in self._statuses]

    @overload
    def __getitem__(self, index: int) -> Status: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Status]: ...

    def __getitem__(self, index):
        return self._statuses[index]

    def __len__(self) -> int:
        return len(self._statuses)

    def __iter__(self) -> Iterator[Status]:
        return iter(self._statuses)

    def __bool__(self) -> bool:
        # Sequence would make any non-empty result truthy
        return self.succeeded

    def __eq__(self, other) -> bool:
        if isinstance(other, PipelineResult):
            return self._statuses == other._statuses
        return NotImplemented

    __hash__ = None

    def raise_on_error(self) -> "PipelineResult":
        """Raise CommandError if any stage failed."""
        if not self.succeeded:
            raise CommandError(self)
        return self

    def __repr__(self) -> str:
        stages = ", ".join(str(s) for s in self._statuses)
        return f"PipelineResult([{stages}], composite={self._composite})"
