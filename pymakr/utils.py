import asyncio
import inspect
import logging
import os
import re
from typing import Awaitable, Callable, Optional, TypeVar, Union

T = TypeVar("T")
F = TypeVar("F")

logger = logging.getLogger(__name__)

_MULTI_SLASH_RE = re.compile(r"/+")


def env_parse_bool(env_var, default_value=False):
    if env_var in os.environ:
        env_value = os.environ[env_var].lower()
        return env_value == "true" or env_value == "1"
    else:
        return default_value


def normalize_remote_path(root: str, destination: str = "") -> str:
    """Join ``destination`` onto the board's ``root`` mount.

    Repeated separators are collapsed and trailing separators removed.

    Examples
    --------
    >>> normalize_remote_path("/flash", "//lib/foo.py")
    '/flash/lib/foo.py'
    >>> normalize_remote_path("/flash", "/")
    '/flash'
    """
    path = _MULTI_SLASH_RE.sub("/", f"/{root}/{destination}")
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def relative_remote_path(root: str, path: str) -> str:
    """Strip the board's ``root`` mount from an absolute board ``path``."""
    root = normalize_remote_path(root)
    path = normalize_remote_path("/", path)
    if root != "/" and (path == root or path.startswith(root + "/")):
        path = path[len(root) :]
    return path.lstrip("/")


def _discard_late_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Discarding late failure of timed-out operation: %r", exc)
    else:
        logger.debug("Discarding late result of timed-out operation.")


async def wait_for(
    primary: Awaitable[T],
    time_allowance: float,
    fallback: Union[BaseException, Callable[[], Union[F, Awaitable[F]]]],
) -> Union[T, F]:
    """Await ``primary`` with a time allowance.

    If the allowance runs out first, ``fallback`` decides the outcome: an
    exception instance is raised, a callable is invoked (and awaited if it
    returns an awaitable) and its result returned.

    The primary operation is **not** cancelled on expiry; it keeps running in
    the background and its eventual outcome is discarded.

    Parameters
    ----------
    primary: Awaitable
        Operation to wait for.
    time_allowance: float
        Seconds to wait before resorting to ``fallback``.
    fallback: Union[BaseException, Callable]
        Exception to raise, or action whose result to return, on expiry.
    """
    task = asyncio.ensure_future(primary)
    try:
        return await asyncio.wait_for(asyncio.shield(task), time_allowance)
    except asyncio.TimeoutError:
        task.add_done_callback(_discard_late_result)

    if isinstance(fallback, BaseException):
        raise fallback
    result = fallback()
    if inspect.isawaitable(result):
        result = await result
    return result


class Debouncer:
    """Cancel-and-restart timer.

    Every :meth:`trigger` (re)schedules ``callback`` to run ``delay`` seconds
    later; the callback only runs once the timer fires without being
    rescheduled.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set = set()

    @property
    def pending(self) -> bool:
        """A trigger is waiting for its timer to fire."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self.callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced callback failed.", exc_info=task.exception())

    async def wait(self) -> None:
        """Wait until all fired callbacks have finished."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel the pending timer and any callback still running."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
