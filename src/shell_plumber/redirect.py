"""Turns redirection targets into descriptors a child can be given."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from . import bridge
from .errors import ConfigurationError
from .pipes import Ownership, PipeEndpoint
from .spawn import ProcessHandle
from .targets import (
    DEFAULT,
    DataSink,
    DataSource,
    DescriptorNumber,
    ExistingStream,
    InheritStderr,
    InheritStdout,
    NestedPipeline,
    NullSink,
    ZeroSource,
    classify,
)

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import Orchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostStreams:
    """The orchestrating process's own standard streams."""

    stdin: Any
    stdout: Any
    stderr: Any

    @classmethod
    def current(cls) -> "HostStreams":
        return cls(sys.stdin, sys.stdout, sys.stderr)


@dataclass
class Resolved:
    """A descriptor for one role of a stage, plus what it set in motion.

    ``handed`` endpoints go to the child and are closed in this process
    right after the spawn. ``bridges`` and ``processes`` belong to the
    whole pipeline and are joined/waited with it.
    """

    fd: int
    handed: list[PipeEndpoint] = field(default_factory=list)
    bridges: list[bridge.Bridge] = field(default_factory=list)
    processes: list[ProcessHandle] = field(default_factory=list)


class RedirectionResolver:
    def __init__(self, orchestrator: "Orchestrator", host: HostStreams):
        self._orchestrator = orchestrator
        self._registry = orchestrator.registry
        self._host = host

    def resolve(self, role: str, target: Any, close: Sequence[int] = ()) -> Resolved:
        """Resolve ``target`` for the ``role`` stream of a stage about to spawn.

        Args:
            role: "stdin", "stdout" or "stderr".
            target: A classified redirection target, or DEFAULT.
            close: Descriptors a nested pipeline started from here must
                keep out of its children.
        """
        if target is DEFAULT:
            return self.resolve(role, classify(role, getattr(self._host, role)), close)

        if isinstance(target, ExistingStream):
            if role != "stdin":
                # Python-level buffers would otherwise land after the child's output
                with contextlib.suppress(OSError, ValueError, AttributeError):
                    target.stream.flush()
            return Resolved(_checked(target.fd))

        if isinstance(target, DescriptorNumber):
            return Resolved(_checked(target.fd))

        if role == "stdin":
            if isinstance(target, ZeroSource):
                return self._input_pipe(bridge.feed_zeros, "zero")
            if isinstance(target, DataSource):
                return self._input_pipe(bridge.feed_from(target.source), "feed")
        else:
            if isinstance(target, NullSink):
                return self._output_pipe(bridge.discard, f"{role}-null")
            if isinstance(target, InheritStdout):
                return self.resolve(role, classify(role, self._host.stdout), close)
            if isinstance(target, InheritStderr):
                return self.resolve(role, classify(role, self._host.stderr), close)
            if isinstance(target, DataSink):
                return self._output_pipe(bridge.drain_into(target.sink, text=target.text), f"{role}-drain")
            if isinstance(target, NestedPipeline):
                return self._child_pipe(target, close)

        raise ConfigurationError(f"invalid redirection for {role}: {target!r}")

    def _input_pipe(self, pump: bridge.Pump, name: str) -> Resolved:
        reader, writer = self._registry.pipe(Ownership.CHILD, Ownership.FEEDING)
        task = bridge.Bridge(writer, pump, name).start()
        return Resolved(reader.fd, handed=[reader], bridges=[task])

    def _output_pipe(self, pump: bridge.Pump, name: str) -> Resolved:
        reader, writer = self._registry.pipe(Ownership.DRAINING, Ownership.CHILD)
        task = bridge.Bridge(reader, pump, name).start()
        return Resolved(writer.fd, handed=[writer], bridges=[task])

    def _child_pipe(self, target: NestedPipeline, close: Sequence[int]) -> Resolved:
        reader, writer = self._registry.pipe(Ownership.CHILD, Ownership.CHILD)
        try:
            started = self._orchestrator.start_chain(
                target.specs, stdin=DescriptorNumber(reader.fd), close=[writer.fd, *close]
            )
        except BaseException:
            reader.close()
            writer.close()
            raise
        # The reader stays open in this process until the current stage has
        # spawned; its owner closes both ends then.
        return Resolved(
            writer.fd,
            handed=[writer, reader],
            bridges=started.bridges,
            processes=started.processes,
        )


def _checked(fd: int) -> int:
    """Raise OSError (EBADF) now if ``fd`` is not open in this process."""
    os.fstat(fd)
    return fd
