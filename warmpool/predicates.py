"""Polling predicates for eventually-consistent backends.

A freshly created resource may not be visible to the next API call. These
helpers poll a check at a fixed interval until it holds or a deadline passes.
"""

from __future__ import annotations

from collections.abc import Callable

from tenacity import RetryError, Retrying, retry_if_result, stop_before_delay, wait_fixed


def _is_false(result: bool) -> bool:
    return not result


def await_true(
    check: Callable[[], bool],
    max_wait: float,
    interval: float,
    *,
    sleep: Callable[[float], None] | None = None,
) -> bool:
    """Poll ``check`` until it returns True or ``max_wait`` seconds elapse.

    Exceptions raised by ``check`` are not retried: they propagate on the
    first occurrence. A "not yet" is a False return, never an exception.

    Args:
        check: Zero-argument callable polled at a fixed cadence.
        max_wait: No poll starts later than this many seconds in. Zero polls once.
        interval: Seconds between polls.
        sleep: Sleep function override, for tests.

    Returns:
        True if ``check`` held before the deadline, False otherwise.
    """
    kwargs = {"sleep": sleep} if sleep is not None else {}
    retrying = Retrying(
        stop=stop_before_delay(max_wait),
        wait=wait_fixed(interval),
        retry=retry_if_result(_is_false),
        **kwargs,
    )
    try:
        return bool(retrying(check))
    except RetryError:
        return False


class RetryablePredicate[T]:
    """A predicate over a value that is retried until it holds.

    Example:
        node_running = RetryablePredicate(is_running, timeout=600, interval=5)
        if not node_running(handle):
            ...
    """

    def __init__(
        self,
        predicate: Callable[[T], bool],
        *,
        timeout: float,
        interval: float,
    ) -> None:
        self._predicate = predicate
        self.timeout = timeout
        self.interval = interval

    def __call__(self, value: T) -> bool:
        return await_true(lambda: self._predicate(value), self.timeout, self.interval)

    def __repr__(self) -> str:
        name = getattr(self._predicate, "__name__", repr(self._predicate))
        return f"RetryablePredicate({name}, timeout={self.timeout}, interval={self.interval})"
