"""
Task helpers shared by the relay loops
"""

import asyncio
from typing import Awaitable


async def run_until_first_exit(*aws: Awaitable) -> None:
    """
    Run awaitables concurrently until the first one finishes.

    The remaining ones are cancelled and awaited. If the first to finish
    raised, the exception is re-raised here.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
