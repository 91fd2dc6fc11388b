"""Background copy loops between pipes and non-process data."""

from __future__ import annotations

import codecs
import logging
import os
import threading
from typing import Any, Callable, Optional

from .pipes import PipeEndpoint

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024

Pump = Callable[[int], None]


class Bridge:
    """A thread that owns one pipe endpoint and runs a pump over it.

    Errors raised by the pump are logged and dropped: a peer closing its
    end early is the usual way a bridge stops. The endpoint is closed on
    every exit path.
    """

    def __init__(self, endpoint: PipeEndpoint, pump: Pump, name: str = "bridge"):
        self.endpoint = endpoint
        self._pump = pump
        self._thread = threading.Thread(
            target=self._run, name=f"shell-plumber-{name}", daemon=True
        )

    def start(self) -> "Bridge":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._pump(self.endpoint.fd)
        except Exception as exc:
            logger.debug("%s stopped: %r", self._thread.name, exc)
        finally:
            self.endpoint.close()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def __repr__(self) -> str:
        state = "running" if self.is_alive() else "done"
        return f"<Bridge {self._thread.name} fd={self.endpoint.fd} {state}>"


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


# -- feeding pumps (write end of a child's stdin) --------------------------------


def feed_zeros(fd: int) -> None:
    """Write zero bytes until the reader goes away."""
    zeros = b"\x00" * CHUNK_SIZE
    while True:
        _write_all(fd, zeros)


def feed_from(source: Any) -> Pump:
    """Copy ``source.read(CHUNK_SIZE)`` into the pipe until it runs dry."""

    def pump(fd: int) -> None:
        while True:
            data = source.read(CHUNK_SIZE)
            if not data:
                break
            if isinstance(data, str):
                data = data.encode("utf-8")
            _write_all(fd, data)

    return pump


# -- draining pumps (read end of a child's stdout/stderr) ------------------------


def discard(fd: int) -> None:
    """Read and drop everything until EOF."""
    while os.read(fd, CHUNK_SIZE):
        pass


def drain_into(sink: Any, text: bool = False) -> Pump:
    """Copy the pipe into ``sink.write`` until EOF.

    Text sinks get utf-8 decoded incrementally so multi-byte characters
    split across reads come out whole.
    """

    def pump(fd: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace") if text else None
        while True:
            data = os.read(fd, CHUNK_SIZE)
            if not data:
                break
            if decoder is not None:
                chunk = decoder.decode(data)
                if chunk:
                    sink.write(chunk)
            else:
                sink.write(data)
        if decoder is not None:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.write(tail)
        flush = getattr(sink, "flush", None)
        if flush is not None:
            flush()

    return pump
