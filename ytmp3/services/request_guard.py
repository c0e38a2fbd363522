"""
Race a request's job against its deadline and a client disconnect.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

import structlog
from starlette.requests import Request

from ytmp3.config import settings
from ytmp3.errors import ClientDisconnected, DownloadTimeout
from ytmp3.services.session import DownloadSession

logger = structlog.get_logger()

T = TypeVar("T")

TIMEOUT_MESSAGE = "Timed out while processing the download."


async def _pause(stop: Optional[asyncio.Event], interval: float) -> None:
    if stop is None:
        await asyncio.sleep(interval)
        return
    try:
        await asyncio.wait_for(stop.wait(), timeout=interval)
    except asyncio.TimeoutError:
        pass


async def watch_disconnect(
    request: Request,
    session: DownloadSession,
    stop: Optional[asyncio.Event] = None,
    interval: Optional[float] = None,
) -> bool:
    """
    Poll the connection until the client leaves, the session is cancelled,
    or ``stop`` is set.

    Returns:
        True if the client disconnected
    """
    interval = interval if interval is not None else settings.DISCONNECT_POLL_INTERVAL
    while not session.cancelled.is_set() and not (stop is not None and stop.is_set()):
        if await request.is_disconnected():
            session.mark_disconnected()
            return True
        await _pause(stop, interval)
    return False


async def stop_watcher(watcher: asyncio.Task, stop: asyncio.Event) -> None:
    """
    End a disconnect watcher and wait for it.

    Request.is_disconnected() awaits receive() inside an already cancelled
    cancel scope, which can absorb task.cancel(); the watcher is stopped
    through its event instead.
    """
    stop.set()
    if watcher is asyncio.current_task():
        return
    try:
        await watcher
    except Exception as e:
        logger.debug("disconnect_watcher_failed", error=str(e))


async def cancel_task(task: asyncio.Task) -> None:
    """Cancel a task and wait for it to unwind."""
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug("cancelled_task_raised", error=str(e))


async def run_guarded(
    request: Request,
    session: DownloadSession,
    job: Awaitable[T],
    timeout: float,
) -> T:
    """
    Run ``job`` until it finishes, the deadline passes, or the client leaves.

    On disconnect or timeout the session is cancelled (subprocesses killed,
    streams closed, temp files deleted) and the job task is cancelled.

    Raises:
        ClientDisconnected: The client went away first
        DownloadTimeout: The deadline passed first
        DownloadError: Whatever the job raised
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    job_task = asyncio.ensure_future(job)
    stop = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, session, stop=stop))

    try:
        done, _ = await asyncio.wait(
            {job_task, watcher},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if watcher in done and job_task not in done:
            if watcher.result():
                await session.cancel("client_disconnected")
                await cancel_task(job_task)
                raise ClientDisconnected("Client disconnected before the response was ready")
            # session cancelled by the job itself; it ends with its own error
            done, _ = await asyncio.wait({job_task}, timeout=max(deadline - loop.time(), 0))

        if job_task in done:
            return job_task.result()

        session.logger.warning("request_deadline_exceeded", timeout_seconds=timeout)
        await session.cancel("timeout")
        await cancel_task(job_task)
        raise DownloadTimeout(TIMEOUT_MESSAGE)

    except asyncio.CancelledError:
        await session.cancel("request_cancelled")
        await cancel_task(job_task)
        raise

    finally:
        await stop_watcher(watcher, stop)
