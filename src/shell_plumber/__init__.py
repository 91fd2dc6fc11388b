"""
Process pipelines with explicit redirections for Python.

Usage:
    import io
    from shell_plumber import cmd, run, NULL, STDOUT

    # One command, output into a buffer
    out = io.StringIO()
    result = run(["echo", "hello", "world"], stdout=out)
    print(out.getvalue())          # "hello world\n"

    # Piping with | operator
    result = (cmd("cat") | cmd("grep", "fox") | cmd("wc", "-l")).run(
        stdin="The quick brown fox\n", stdout=out
    )

    # Per-stage and composite status
    result = run([["true"], ["false"], ["true"]])
    [s.succeeded for s in result]   # [True, False, True]
    result.succeeded                # False: the first failing stage

    # Redirections: buffers, files, descriptors, NULL, ZERO,
    # STDOUT / STDERR (this process's streams), nested specs
    run(cmd("make", stderr=STDOUT, stdout=cmd("tee", "build.log")))

    # Async, with a caller-side deadline
    result = await run_async([["sleep", "10"]], timeout=1.0)
"""

from __future__ import annotations

from .aio import run_async
from .bridge import CHUNK_SIZE, Bridge
from .errors import (
    CommandError,
    ConfigurationError,
    PipelineError,
    ResolutionError,
    SpawnError,
    TimeoutExpired,
)
from .paths import find_executable
from .pipeline import (
    Orchestrator,
    Pipeline,
    RunningPipeline,
    run,
    run_single,
    start,
)
from .pipes import Ownership, PipeEndpoint, PipeRegistry, default_registry
from .spawn import (
    EXIT_CANNOT_EXECUTE,
    EXIT_NOT_FOUND,
    FailedExecHandle,
    PosixSpawner,
    ProcessHandle,
    Spawner,
    Win32Spawner,
    default_spawner,
)
from .status import Outcome, PipelineResult, Status
from .targets import (
    DEFAULT,
    NULL,
    STDERR,
    STDOUT,
    ZERO,
    DataSink,
    DataSource,
    DescriptorNumber,
    ExistingStream,
    InheritStderr,
    InheritStdout,
    NestedPipeline,
    NullSink,
    ProcessSpec,
    Redirect,
    ZeroSource,
    cmd,
)

__version__ = "0.1.0"

__all__ = [
    "ProcessSpec",
    "Pipeline",
    "cmd",
    "run",
    "run_single",
    "start",
    "run_async",
    "RunningPipeline",
    "Orchestrator",
    "Status",
    "Outcome",
    "PipelineResult",
    "Redirect",
    "DEFAULT",
    "NULL",
    "ZERO",
    "STDOUT",
    "STDERR",
    "ExistingStream",
    "DescriptorNumber",
    "NullSink",
    "ZeroSource",
    "InheritStdout",
    "InheritStderr",
    "DataSource",
    "DataSink",
    "NestedPipeline",
    "PipeEndpoint",
    "PipeRegistry",
    "Ownership",
    "default_registry",
    "Bridge",
    "CHUNK_SIZE",
    "ProcessHandle",
    "Spawner",
    "FailedExecHandle",
    "PosixSpawner",
    "Win32Spawner",
    "default_spawner",
    "EXIT_CANNOT_EXECUTE",
    "EXIT_NOT_FOUND",
    "find_executable",
    "PipelineError",
    "ConfigurationError",
    "SpawnError",
    "ResolutionError",
    "CommandError",
    "TimeoutExpired",
    "__version__",
]
