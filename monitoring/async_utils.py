import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def run_periodic(
    name: str,
    interval_s: float,
    step: Callable[[], Awaitable[None]],
    is_running: Callable[[], bool],
) -> None:
    """Call ``step`` every ``interval_s`` seconds until ``is_running`` turns false."""
    while is_running():
        await step()
        try:
            await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            logger.debug("%s loop cancelled", name)
            break
