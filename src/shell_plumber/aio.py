"""asyncio front end with a caller-side deadline.

The engine never times out on its own. ``run_async`` races the blocking
wait against ``timeout`` and, when the deadline wins, kills the stages
and reaps them before raising.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .errors import TimeoutExpired
from .pipeline import RunningPipeline, start
from .status import PipelineResult

logger = logging.getLogger(__name__)


async def _reap(running: RunningPipeline, waiter: asyncio.Future) -> None:
    running.kill()
    await waiter


async def run_async(
    specs: Any,
    *,
    timeout: Optional[float] = None,
    check: bool = False,
    **options: Any,
) -> PipelineResult:
    """
    Run a pipeline without blocking the event loop.

    Args:
        specs: Same forms as ``run``.
        timeout: Seconds to wait before killing every stage. None means
                 no deadline. Raises TimeoutExpired if exceeded.
        check: If True, raise CommandError when any stage fails.
        **options: stdin, stdout, stderr, registry, spawner as for ``run``.

    Returns:
        PipelineResult, as ``run`` returns it.
    """
    running = start(specs, **options)
    waiter = asyncio.ensure_future(asyncio.to_thread(running.wait))
    try:
        result = await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("deadline of %ss hit, killing %s", timeout, running.pids)
        await _reap(running, waiter)
        raise TimeoutExpired(running.args_list, timeout)
    except asyncio.CancelledError:
        # External cancellation - cleanup
        await _reap(running, waiter)
        raise

    if check:
        result.raise_on_error()
    return result
