"""Pipeline orchestration: resolve, spawn, wait, aggregate.

A pipeline ``a | b | c`` is built as one nested structure: ``a``'s
stdout is a NestedPipeline holding ``b``, whose stdout holds ``c``.
Starting ``a`` resolves its stdout, which starts ``b`` (and so ``c``)
on the read end of a fresh pipe before ``a`` itself is spawned.
"""

from __future__ import annotations

import errno
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Optional, Sequence

from .bridge import Bridge
from .errors import ConfigurationError, ResolutionError, SpawnError
from .paths import find_executable
from .pipes import PipeEndpoint, PipeRegistry, default_registry
from .redirect import HostStreams, RedirectionResolver
from .spawn import ProcessHandle, Spawner, default_spawner
from .status import PipelineResult
from .targets import (
    DEFAULT,
    ROLES,
    DescriptorNumber,
    NestedPipeline,
    ProcessSpec,
    as_spec,
    classify,
    coerce_specs,
)

logger = logging.getLogger(__name__)


def link(
    specs: Sequence[ProcessSpec],
    stdin: Any = DEFAULT,
    stdout: Any = DEFAULT,
    stderr: Any = DEFAULT,
) -> ProcessSpec:
    """Chain ``specs`` into one spec whose stdout nests the rest.

    The caller's specs are copied, never modified.

    Raises:
        ConfigurationError: if a stage sets a stream the chain provides.
    """
    if not specs:
        raise ConfigurationError("invalid use of pipeline: no commands given")
    last = len(specs) - 1
    for index, spec in enumerate(specs):
        if spec.stdin is not DEFAULT and (index > 0 or stdin is not DEFAULT):
            raise ConfigurationError(f"stage {index} {list(spec.argv)} sets stdin inside a pipeline")
        if spec.stdout is not DEFAULT and (index < last or stdout is not DEFAULT):
            raise ConfigurationError(f"stage {index} {list(spec.argv)} sets stdout inside a pipeline")

    tail: Optional[ProcessSpec] = None
    for index in range(last, -1, -1):
        changes: dict[str, Any] = {}
        if tail is not None:
            changes["stdout"] = NestedPipeline((tail,))
        elif stdout is not DEFAULT:
            changes["stdout"] = classify("stdout", stdout)
        if index == 0 and stdin is not DEFAULT:
            changes["stdin"] = classify("stdin", stdin)
        if stderr is not DEFAULT:
            changes["stderr"] = classify("stderr", stderr)
        tail = replace(specs[index], **changes) if changes else specs[index]
    return tail


def _check_tree(spec: ProcessSpec) -> None:
    """Link every nested pipeline below ``spec`` once, before anything runs."""
    for role in ("stdout", "stderr"):
        target = getattr(spec, role)
        if isinstance(target, NestedPipeline):
            _check_tree(link(target.specs, stdin=DescriptorNumber(0)))


@dataclass
class _Started:
    processes: list[ProcessHandle] = field(default_factory=list)
    bridges: list[Bridge] = field(default_factory=list)


class RunningPipeline:
    """Spawned stages and the bridges feeding and draining them.

    ``wait()`` reaps every stage in pipeline order, then joins every
    bridge. Bridges are only joined after all stages exit: joining one
    earlier could block on a pipe a live stage has not drained yet.
    """

    def __init__(self, processes: Sequence[ProcessHandle], bridges: Sequence[Bridge]):
        self._processes = list(processes)
        self._bridges = list(bridges)
        self._result: Optional[PipelineResult] = None
        self._lock = threading.Lock()

    @property
    def processes(self) -> list[ProcessHandle]:
        return list(self._processes)

    @property
    def bridges(self) -> list[Bridge]:
        return list(self._bridges)

    @property
    def pids(self) -> list[Optional[int]]:
        return [p.pid for p in self._processes]

    @property
    def args_list(self) -> list[list[str]]:
        return [p.argv for p in self._processes]

    @property
    def endpoints(self) -> list[PipeEndpoint]:
        return [b.endpoint for b in self._bridges]

    def wait(self) -> PipelineResult:
        """Wait for all stages and bridges; safe to call more than once."""
        with self._lock:
            if self._result is None:
                statuses = [process.wait() for process in self._processes]
                for task in self._bridges:
                    task.join()
                for task in self._bridges:
                    task.endpoint.close()
                self._result = PipelineResult(statuses)
                logger.debug("pipeline %s finished: %r", self.args_list, self._result)
            return self._result

    def kill(self) -> None:
        """Send SIGKILL to every stage that has not been reaped."""
        for process in self._processes:
            process.kill()

    def terminate(self) -> None:
        """Send SIGTERM to every stage that has not been reaped."""
        for process in self._processes:
            process.terminate()

    def __enter__(self) -> "RunningPipeline":
        return self

    def __exit__(self, *args) -> None:
        self.wait()

    def __repr__(self) -> str:
        return f"<RunningPipeline pids={self.pids}>"


class Orchestrator:
    """Starts pipelines against one registry, spawner and set of host streams."""

    def __init__(
        self,
        registry: Optional[PipeRegistry] = None,
        spawner: Optional[Spawner] = None,
        host: Optional[HostStreams] = None,
    ):
        self.registry = registry if registry is not None else default_registry
        self.spawner = spawner if spawner is not None else default_spawner()
        self.resolver = RedirectionResolver(self, host or HostStreams.current())

    def start(
        self,
        specs: Any,
        stdin: Any = DEFAULT,
        stdout: Any = DEFAULT,
        stderr: Any = DEFAULT,
    ) -> RunningPipeline:
        """Spawn every stage and return without waiting.

        Raises:
            ConfigurationError: nothing was spawned.
            SpawnError: a stage could not start; ``started`` holds the
                stages that did.
        """
        root = link(coerce_specs(specs), stdin, stdout, stderr)
        _check_tree(root)
        logger.debug("starting pipeline from %s", list(root.argv))
        started = self.start_spec(root)
        return RunningPipeline(started.processes, started.bridges)

    def start_chain(self, specs: Sequence[ProcessSpec], stdin: Any = DEFAULT, close: Sequence[int] = ()) -> _Started:
        return self.start_spec(link(specs, stdin=stdin), close)

    def start_spec(self, spec: ProcessSpec, close: Sequence[int] = ()) -> _Started:
        """Resolve the streams of ``spec``, start what they need, spawn it."""
        executable = find_executable(spec.program)
        if executable is None:
            raise ResolutionError(spec.argv, "command not found", errno=errno.ENOENT)

        handed: list[PipeEndpoint] = []
        started = _Started()
        stdio = []
        try:
            for role in ROLES:
                resolved = self.resolver.resolve(
                    role,
                    getattr(spec, role),
                    [*(e.fd for e in handed), *spec.close, *close],
                )
                stdio.append(resolved.fd)
                handed.extend(resolved.handed)
                started.processes.extend(resolved.processes)
                started.bridges.extend(resolved.bridges)

            process = self.spawner.spawn(
                spec,
                executable,
                tuple(stdio),
                [*(e.fd for e in handed), *spec.close, *close],
                self.registry,
            )
        except SpawnError as exc:
            exc.started = _abandon(started, handed, exc.started)
            raise
        except OSError as exc:
            orphans = _abandon(started, handed, None)
            raise SpawnError(spec.argv, "cannot set up redirections", errno=exc.errno, started=orphans) from exc
        finally:
            for endpoint in handed:
                endpoint.close()

        started.processes.insert(0, process)
        return started


def _abandon(started: _Started, handed: Sequence[PipeEndpoint], inner: Optional[RunningPipeline]) -> Optional[RunningPipeline]:
    """Collect what a failed stage leaves behind.

    Running stages come back as a RunningPipeline for the caller. With
    none, the bridges are joined here: once the handed ends are closed
    each one sees EOF or EPIPE and closes its own endpoint.
    """
    for endpoint in handed:
        endpoint.close()
    processes = list(started.processes)
    bridges = list(started.bridges)
    if inner is not None:
        processes.extend(inner.processes)
        bridges.extend(inner.bridges)
    if processes:
        return RunningPipeline(processes, bridges)
    for task in bridges:
        task.join()
        task.endpoint.close()
    return None


class Pipeline:
    """An ordered list of specs built with ``|``.

    Examples:
        (cmd("ls") | cmd("grep", "py") | cmd("wc", "-l")).run(stdout=buf)
    """

    def __init__(self, specs: Any):
        self.specs = coerce_specs(specs)

    def __or__(self, other: Any) -> "Pipeline":
        if isinstance(other, ProcessSpec):
            return Pipeline(self.specs + (other,))
        if isinstance(other, Pipeline):
            return Pipeline(self.specs + other.specs)
        return NotImplemented

    def __len__(self) -> int:
        return len(self.specs)

    def __iter__(self) -> Iterator[ProcessSpec]:
        return iter(self.specs)

    def start(self, **options: Any) -> RunningPipeline:
        return start(self, **options)

    def run(self, **options: Any) -> PipelineResult:
        return run(self, **options)

    async def run_async(self, **options: Any) -> PipelineResult:
        from .aio import run_async

        return await run_async(self, **options)

    def __repr__(self) -> str:
        stages = " | ".join(repr(list(s.argv)) for s in self.specs)
        return f"Pipeline({stages})"


def start(
    specs: Any,
    *,
    stdin: Any = DEFAULT,
    stdout: Any = DEFAULT,
    stderr: Any = DEFAULT,
    registry: Optional[PipeRegistry] = None,
    spawner: Optional[Spawner] = None,
) -> RunningPipeline:
    """Spawn a pipeline and return its handles without waiting."""
    orchestrator = Orchestrator(registry=registry, spawner=spawner)
    return orchestrator.start(specs, stdin=stdin, stdout=stdout, stderr=stderr)


def run(
    specs: Any,
    *,
    stdin: Any = DEFAULT,
    stdout: Any = DEFAULT,
    stderr: Any = DEFAULT,
    check: bool = False,
    registry: Optional[PipeRegistry] = None,
    spawner: Optional[Spawner] = None,
) -> PipelineResult:
    """
    Run a pipeline and wait for it.

    Args:
        specs: Stages, each a ProcessSpec or an argv list (a single argv
               list is one stage).
        stdin: Feeds the first stage. Defaults to this process's stdin.
        stdout: Receives the last stage's output. Defaults to this
                process's stdout.
        stderr: If given, every stage's stderr goes here.
        check: If True, raise CommandError when any stage fails.

    Returns:
        PipelineResult with one Status per stage; the result itself
        answers status queries for the first failing stage, or the last
        stage if none failed.
    """
    result = start(
        specs, stdin=stdin, stdout=stdout, stderr=stderr,
        registry=registry, spawner=spawner,
    ).wait()
    if check:
        result.raise_on_error()
    return result


def run_single(
    spec: Any,
    *,
    check: bool = False,
    registry: Optional[PipeRegistry] = None,
    spawner: Optional[Spawner] = None,
) -> PipelineResult:
    """Run one spec with its own redirections.

    Its stdout may nest further stages, which are reported too.
    """
    return run((as_spec(spec),), check=check, registry=registry, spawner=spawner)
