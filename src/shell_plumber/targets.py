"""Process specifications and the redirection targets they refer to.

Raw redirection values (file objects, ints, buffers, sentinels, nested
specs) are classified into one of the variant classes below when a
`ProcessSpec` is built. Everything downstream dispatches on the variant
and never probes the original value again.
"""

from __future__ import annotations

import enum
import io
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from .errors import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import Pipeline

ROLES = ("stdin", "stdout", "stderr")


class Redirect(enum.Enum):
    """Symbolic redirection values."""

    NULL = "null"
    ZERO = "zero"
    STDOUT = "stdout"
    STDERR = "stderr"


NULL = Redirect.NULL
ZERO = Redirect.ZERO
STDOUT = Redirect.STDOUT
STDERR = Redirect.STDERR


class _Default:
    """Marker for "the host's own stream for this role"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DEFAULT"


DEFAULT: Any = _Default()


# -- variants ----------------------------------------------------------------


@dataclass(frozen=True)
class ExistingStream:
    """An OS-level stream the caller owns; passed to the child as is."""

    stream: Any
    fd: int


@dataclass(frozen=True)
class DescriptorNumber:
    fd: int


@dataclass(frozen=True)
class NullSink:
    pass


@dataclass(frozen=True)
class ZeroSource:
    pass


@dataclass(frozen=True)
class InheritStdout:
    pass


@dataclass(frozen=True)
class InheritStderr:
    pass


@dataclass(frozen=True)
class DataSource:
    """A buffer-like object read in chunks by a bridge."""

    source: Any


@dataclass(frozen=True)
class DataSink:
    """A buffer-like object written in chunks by a bridge."""

    sink: Any

    @property
    def text(self) -> bool:
        return isinstance(self.sink, io.TextIOBase)


@dataclass(frozen=True)
class NestedPipeline:
    """A sub-pipeline fed from this point."""

    specs: tuple["ProcessSpec", ...]


RedirectionTarget = Union[
    ExistingStream,
    DescriptorNumber,
    NullSink,
    ZeroSource,
    InheritStdout,
    InheritStderr,
    DataSource,
    DataSink,
    NestedPipeline,
]


def _fileno(value: Any) -> Optional[int]:
    """Descriptor behind a file-like object, or None if it has none."""
    fileno = getattr(value, "fileno", None)
    if fileno is None:
        return None
    try:
        fd = fileno()
    except (OSError, ValueError):
        # io.UnsupportedOperation for in-memory streams, ValueError once closed
        return None
    return fd if isinstance(fd, int) else None


def classify(role: str, value: Any) -> Union[RedirectionTarget, _Default]:
    """Turn a raw redirection value into its variant.

    Raises:
        ConfigurationError: if the value is not valid for the role.
    """
    if role not in ROLES:
        raise ConfigurationError(f"unknown stream role {role!r}")

    if value is DEFAULT or isinstance(value, (
        ExistingStream, DescriptorNumber, NullSink, ZeroSource,
        InheritStdout, InheritStderr, DataSource, DataSink, NestedPipeline,
    )):
        _check_role(role, value)
        return value

    # bool is an int, but never a descriptor
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise ConfigurationError(f"invalid file descriptor {value} for {role}")
        return DescriptorNumber(value)

    fd = _fileno(value)
    if fd is not None:
        return ExistingStream(value, fd)

    if role == "stdin":
        if value is None or value is Redirect.NULL:
            return DataSource(io.BytesIO())
        if value is Redirect.ZERO:
            return ZeroSource()
        if isinstance(value, str):
            return DataSource(io.BytesIO(value.encode("utf-8")))
        if isinstance(value, (bytes, bytearray, memoryview)):
            return DataSource(io.BytesIO(bytes(value)))
        if hasattr(value, "read"):
            return DataSource(value)
        raise ConfigurationError(f"invalid input object for stdin: {value!r}")

    if value is None or value is Redirect.NULL or value is Redirect.ZERO:
        return NullSink()
    if value is Redirect.STDOUT:
        return InheritStdout()
    if value is Redirect.STDERR:
        return InheritStderr()
    nested = _as_nested(value)
    if nested is not None:
        return nested
    if hasattr(value, "write"):
        return DataSink(value)
    raise ConfigurationError(f"invalid output object for {role}: {value!r}")


def _check_role(role: str, target: Any) -> None:
    if role == "stdin" and isinstance(target, (NullSink, InheritStdout, InheritStderr, DataSink, NestedPipeline)):
        raise ConfigurationError(f"{type(target).__name__} cannot feed stdin")
    if role != "stdin" and isinstance(target, (ZeroSource, DataSource)):
        raise ConfigurationError(f"{type(target).__name__} cannot receive {role}")


def _as_nested(value: Any) -> Optional[NestedPipeline]:
    from .pipeline import Pipeline

    if isinstance(value, ProcessSpec):
        return NestedPipeline((value,))
    if isinstance(value, Pipeline):
        return NestedPipeline(value.specs)
    if isinstance(value, (list, tuple)) and value:
        if all(isinstance(v, str) for v in value):
            return NestedPipeline((ProcessSpec(value),))
        return NestedPipeline(tuple(as_spec(v) for v in value))
    return None


# -- process specs -----------------------------------------------------------


@dataclass(frozen=True)
class ProcessSpec:
    """One command of a pipeline.

    ``argv[0]`` names the program unless ``executable`` overrides it; the
    child still sees ``argv[0]`` unchanged. ``close`` lists descriptors
    (ints or objects with ``fileno()``) the child must not inherit.
    """

    argv: tuple[str, ...]
    executable: Optional[str] = None
    cwd: Optional[str] = None
    stdin: Any = DEFAULT
    stdout: Any = DEFAULT
    stderr: Any = DEFAULT
    close: tuple[int, ...] = field(default=())

    def __post_init__(self):
        if isinstance(self.argv, (str, bytes)):
            raise ConfigurationError(f"argv must be a sequence of arguments, not {self.argv!r}")
        argv = tuple(os.fspath(a) if isinstance(a, os.PathLike) else a for a in self.argv)
        if not argv:
            raise ConfigurationError("empty argv")
        for arg in argv:
            if not isinstance(arg, str):
                raise ConfigurationError(f"argument {arg!r} is not a string")
        object.__setattr__(self, "argv", argv)
        if self.executable is not None:
            object.__setattr__(self, "executable", os.fspath(self.executable))
        if self.cwd is not None:
            object.__setattr__(self, "cwd", os.fspath(self.cwd))
        for role in ROLES:
            object.__setattr__(self, role, classify(role, getattr(self, role)))
        object.__setattr__(self, "close", tuple(_close_fd(c) for c in self.close))

    @property
    def program(self) -> str:
        """Name looked up on PATH."""
        return self.executable or self.argv[0]

    def __or__(self, other: Any) -> "Pipeline":
        from .pipeline import Pipeline

        if isinstance(other, (ProcessSpec, Pipeline)):
            return Pipeline((self,)) | other
        return NotImplemented

    def run(self, **kwargs: Any):
        """Run this spec (and whatever its stdout chains to)."""
        from .pipeline import run_single

        return run_single(self, **kwargs)

    def __repr__(self) -> str:
        return f"ProcessSpec({list(self.argv)!r})"


def _close_fd(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    fd = _fileno(value)
    if fd is None:
        raise ConfigurationError(f"cannot close {value!r}: no file descriptor")
    return fd


def as_spec(value: Any) -> ProcessSpec:
    """Accept a ProcessSpec or an argv list."""
    if isinstance(value, ProcessSpec):
        return value
    if isinstance(value, (list, tuple)):
        return ProcessSpec(tuple(value))
    raise ConfigurationError(f"not a command: {value!r}")


def cmd(*argv: str, **options: Any) -> ProcessSpec:
    """Shortcut: ``cmd("grep", "-v", "x", stdout=buf)``."""
    return ProcessSpec(argv, **options)


def coerce_specs(specs: Any) -> tuple[ProcessSpec, ...]:
    """Normalize the forms `run` accepts into a tuple of specs."""
    from .pipeline import Pipeline

    if isinstance(specs, ProcessSpec):
        return (specs,)
    if isinstance(specs, Pipeline):
        return specs.specs
    if isinstance(specs, (str, bytes)) or not isinstance(specs, Sequence):
        raise ConfigurationError(f"expected a list of commands, got {specs!r}")
    if not specs:
        raise ConfigurationError("invalid use of pipeline: no commands given")
    if all(isinstance(s, str) for s in specs):
        return (ProcessSpec(tuple(specs)),)
    out = []
    for s in specs:
        if isinstance(s, str):
            raise ConfigurationError(f"bare string {s!r} among pipeline stages")
        out.append(as_spec(s))
    return tuple(out)
