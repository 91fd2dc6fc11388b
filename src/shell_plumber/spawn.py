"""Process creation for the two OS process models.

Both spawners go through `subprocess.Popen`, which forks and execs in C
on POSIX. `PosixSpawner` lets the child keep only its three standard
streams. `Win32Spawner` marks what must not be inherited and lets
CreateProcess hand the child its standard handles.
"""

from __future__ import annotations

import abc
import contextlib
import errno
import logging
import os
import signal
import subprocess
import threading
from typing import Any, Iterable, Optional, Sequence

from .errors import SpawnError
from .pipes import PipeRegistry
from .status import Status
from .targets import ProcessSpec

logger = logging.getLogger(__name__)

# Exit codes of a stage that could not exec, as POSIX shells use them
EXIT_CANNOT_EXECUTE = 126
EXIT_NOT_FOUND = 127

# errno of a failed exec (or chdir before it) -> reported exit code
EXEC_FAILURES = {
    errno.ENOENT: EXIT_NOT_FOUND,
    errno.ENOTDIR: EXIT_NOT_FOUND,
    errno.ENAMETOOLONG: EXIT_NOT_FOUND,
    errno.ELOOP: EXIT_NOT_FOUND,
    errno.EACCES: EXIT_CANNOT_EXECUTE,
    errno.EPERM: EXIT_CANNOT_EXECUTE,
    errno.ENOEXEC: EXIT_CANNOT_EXECUTE,
    errno.EISDIR: EXIT_CANNOT_EXECUTE,
}

CREATE_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0x08000000)

Stdio = tuple[int, int, int]


class ProcessHandle(abc.ABC):
    """A spawned stage: enough to wait for it and signal it.

    Waiting happens in two steps. ``_block`` waits for the stage to exit
    without releasing its pid, then ``_reap`` collects the status while
    holding the lock ``send_signal`` takes, so a signal never reaches a
    pid the OS has handed to another process.
    """

    def __init__(self, pid: Optional[int], argv: Sequence[str]):
        self.pid = pid
        self.argv = list(argv)
        self._status: Optional[Status] = None
        self._lock = threading.Lock()
        self._reaping = threading.Lock()

    @property
    def status(self) -> Optional[Status]:
        """Exit status once reaped, else None."""
        return self._status

    def wait(self) -> Status:
        with self._lock:
            if self._status is None:
                self._block()
                with self._reaping:
                    self._status = self._reap()
                logger.debug("pid %s %s: %s", self.pid, self.argv, self._status)
            return self._status

    def kill(self) -> None:
        self.send_signal(getattr(signal, "SIGKILL", signal.SIGTERM))

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def send_signal(self, signum: int) -> None:
        with self._reaping:
            if self._status is not None:
                return  # Already reaped
            try:
                self._signal(signum)
            except ProcessLookupError:
                pass  # Already dead

    def _block(self) -> None:
        """Wait until ``_reap`` would not block."""

    @abc.abstractmethod
    def _reap(self) -> Status: ...

    @abc.abstractmethod
    def _signal(self, signum: int) -> None: ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pid={self.pid} {self.argv!r}>"


class PopenProcessHandle(ProcessHandle):
    def __init__(self, popen: subprocess.Popen, argv: Sequence[str]):
        super().__init__(popen.pid, argv)
        self._popen = popen

    def _block(self) -> None:
        if not hasattr(os, "waitid"):
            # Windows keeps the process handle, and with it the pid, until Popen drops it
            self._popen.wait()
            return
        # WNOWAIT leaves a zombie behind, which keeps the pid reserved
        with contextlib.suppress(ChildProcessError):
            os.waitid(os.P_PID, self.pid, os.WEXITED | os.WNOWAIT)

    def _reap(self) -> Status:
        return Status.from_returncode(self.pid, self._popen.wait())

    def _signal(self, signum: int) -> None:
        self._popen.send_signal(signum)


class FailedExecHandle(ProcessHandle):
    """A stage whose program could not be executed.

    It reports the exit code a shell would give, so the failure shows up
    in the pipeline's statuses like any other.
    """

    def __init__(self, argv: Sequence[str], code: int):
        super().__init__(None, argv)
        self.code = code

    def _reap(self) -> Status:
        return Status.exited_with(self.code)

    def _signal(self, signum: int) -> None:
        pass


class Spawner(abc.ABC):
    """Creates one OS process bound to already-resolved descriptors."""

    @abc.abstractmethod
    def spawn(
        self,
        spec: ProcessSpec,
        executable: str,
        stdio: Stdio,
        close: Iterable[int],
        registry: PipeRegistry,
    ) -> ProcessHandle:
        """Start ``spec`` with ``stdio`` as its standard streams.

        Every descriptor in ``close`` and every endpoint held in
        ``registry`` at the moment of spawning stays out of the child.
        A program that cannot be executed yields a `FailedExecHandle`.

        Raises:
            SpawnError: if the OS refused to create the process.
        """

    def _popen(self, spec: ProcessSpec, args: Any, stdio: Stdio, **options: Any) -> ProcessHandle:
        try:
            popen = subprocess.Popen(
                args,
                stdin=stdio[0],
                stdout=stdio[1],
                stderr=stdio[2],
                cwd=spec.cwd,
                **options,
            )
        except OSError as exc:
            code = EXEC_FAILURES.get(exc.errno)
            if code is None:
                raise SpawnError(spec.argv, "cannot create process", errno=exc.errno) from exc
            _report_exec_failure(stdio[2], spec.argv, exc)
            logger.debug("exec of %s failed: %s", list(spec.argv), exc)
            return FailedExecHandle(spec.argv, code)

        logger.debug("spawned pid %d: %s (stdio=%s)", popen.pid, list(spec.argv), stdio)
        return PopenProcessHandle(popen, spec.argv)


def _report_exec_failure(fd: int, argv: Sequence[str], exc: OSError) -> None:
    """Write the diagnostic the stage would have printed to its own stderr."""
    message = f"shell-plumber: {argv[0]}: {exc.strerror or os.strerror(exc.errno or 0)}\n"
    with contextlib.suppress(OSError):
        os.write(fd, message.encode(errors="replace"))


class PosixSpawner(Spawner):
    def spawn(self, spec, executable, stdio, close, registry):
        # close_fds keeps every descriptor above 2, registry ends included, out of the child
        return self._popen(
            spec,
            list(spec.argv),
            stdio,
            executable=executable,
            close_fds=True,
            restore_signals=True,
        )


class Win32Spawner(Spawner):
    def spawn(self, spec, executable, stdio, close, registry):
        with registry.frozen() as held:
            for fd in (held | frozenset(close)) - set(stdio):
                with contextlib.suppress(OSError):
                    os.set_inheritable(fd, False)
            # Popen duplicates the three standard handles as inheritable
            return self._popen(
                spec,
                subprocess.list2cmdline(spec.argv),
                stdio,
                executable=executable,
                close_fds=False,
                creationflags=CREATE_NO_WINDOW,
            )


def default_spawner() -> Spawner:
    """The spawner for the host's process model."""
    if os.name == "nt":
        return Win32Spawner()
    return PosixSpawner()
