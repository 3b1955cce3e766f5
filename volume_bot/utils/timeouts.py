from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, TypeVar

from volume_bot.exceptions import ExecutionError

T = TypeVar("T")


class CallTimeout(ExecutionError):
    """Raised when a collaborator call exceeds its time budget."""


def call_with_timeout(func: Callable[..., T], timeout_seconds: float, *args: Any, **kwargs: Any) -> T:
    """
    Run ``func`` in a worker thread and wait at most ``timeout_seconds``.

    The worker is not killed on timeout; it finishes in the background and its
    result is discarded. The pool is released without waiting for it.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="call-timeout")
    future = pool.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        name = getattr(func, "__qualname__", repr(func))
        raise CallTimeout(f"{name} excedió {timeout_seconds}s") from exc
    finally:
        pool.shutdown(wait=False)
