"""OS pipe endpoints and the registry of endpoints this process holds."""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import threading
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class Ownership(enum.Enum):
    """Who an endpoint is for."""

    FEEDING = "feeding"      # parent writes into a child's stdin
    DRAINING = "draining"    # parent reads a child's output
    CHILD = "child"          # handed to a child, closed in the parent after spawn


class PipeEndpoint:
    """One end of an OS pipe.

    Closing is idempotent and removes the endpoint from its registry, so
    an endpoint is closed exactly once whichever path gets there first.
    """

    def __init__(self, fd: int, ownership: Ownership, registry: "PipeRegistry"):
        self.fd = fd
        self.ownership = ownership
        self._registry = registry
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._registry._lock:
            if self._closed:
                return
            self._closed = True
            self._registry._endpoints.pop(self.fd, None)
            os.close(self.fd)

    def fileno(self) -> int:
        return self.fd

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<PipeEndpoint fd={self.fd} {self.ownership.value} {state}>"


class PipeRegistry:
    """Thread-safe set of the pipe endpoints this process currently holds.

    Children spawned from this process close every registered descriptor,
    so a pipe meant for one stage never leaks into another.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._endpoints: dict[int, PipeEndpoint] = {}

    def pipe(self, read_owner: Ownership, write_owner: Ownership) -> tuple[PipeEndpoint, PipeEndpoint]:
        """Create an OS pipe and register both ends."""
        with self._lock:
            r, w = os.pipe()
            reader = PipeEndpoint(r, read_owner, self)
            writer = PipeEndpoint(w, write_owner, self)
            self._endpoints[r] = reader
            self._endpoints[w] = writer
        logger.debug("pipe r=%d (%s) w=%d (%s)", r, read_owner.value, w, write_owner.value)
        return reader, writer

    def snapshot(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._endpoints)

    @contextlib.contextmanager
    def frozen(self) -> Iterator[frozenset[int]]:
        """Hold the registry still and yield its descriptors.

        No endpoint can be added or closed until the block exits, so a
        child spawned inside the block sees exactly the yielded set.
        """
        with self._lock:
            yield frozenset(self._endpoints)

    def get(self, fd: int) -> Optional[PipeEndpoint]:
        with self._lock:
            return self._endpoints.get(fd)

    def __len__(self) -> int:
        with self._lock:
            return len(self._endpoints)

    def __contains__(self, fd: object) -> bool:
        with self._lock:
            return fd in self._endpoints


# Shared by every pipeline that does not bring its own registry
default_registry = PipeRegistry()
