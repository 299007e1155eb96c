"""Deduplicating result cache for provisioning side effects.

Provisioning a node touches shared, region-scoped resources: a security
group per node group, a keypair, an image lookup. Many threads can ask for
the same resource at once. `ResultCache` collapses those requests into a
single load per key, and the two loader decorators add the failure policy:

- `retry_on_timeout` retries loads that time out, a bounded number of times;
- `first_failure_broadcast` remembers the first authorization failure and
  fails every later load fast, without touching the backend again.

Typical wiring::

    slot = SharedErrorSlot()
    groups = ResultCache(
        first_failure_broadcast(retry_on_timeout(create_group, 3), slot),
        name="security-groups",
    )
    group_id = groups.get(RegionAndName("us-east-1", "pool"))
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Callable, Hashable
from concurrent.futures import Future

from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt

from warmpool.exceptions import is_authorization_error, is_timeout_error

log = logger.bind(component="cache")

type Loader[K, V] = Callable[[K], V]

__all__ = [
    "Loader",
    "ResultCache",
    "SharedErrorSlot",
    "retry_on_timeout",
    "first_failure_broadcast",
]


class ResultCache[K: Hashable, V]:
    """Keyed cache with at most one in-flight load per key.

    The first caller for a missing key runs the loader; callers arriving while
    that load is in flight wait on the same promise and receive the identical
    value or the identical exception. Successful values are kept for the life
    of the cache. Failures are not kept: the next ``get`` loads again.
    """

    def __init__(self, loader: Loader[K, V], *, name: str = "cache") -> None:
        self._loader = loader
        self.name = name
        self._lock = threading.Lock()
        self._values: dict[K, V] = {}
        self._inflight: dict[K, Future[V]] = {}

    def get(self, key: K) -> V:
        with self._lock:
            if key in self._values:
                return self._values[key]
            promise = self._inflight.get(key)
            owner = promise is None
            if promise is None:
                promise = Future()
                promise.set_running_or_notify_cancel()
                self._inflight[key] = promise

        if not owner:
            return promise.result()

        log.trace("Loading {cache}[{key}]", cache=self.name, key=key)
        try:
            value = self._loader(key)
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            promise.set_exception(exc)
            raise

        with self._lock:
            self._values[key] = value
            self._inflight.pop(key, None)
        promise.set_result(value)
        return value

    def get_if_present(self, key: K) -> V | None:
        with self._lock:
            return self._values.get(key)

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._values[key] = value

    def invalidate(self, key: K) -> None:
        """Drop a loaded value. An in-flight load for the key is unaffected."""
        with self._lock:
            self._values.pop(key, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._values.clear()

    def snapshot(self) -> dict[K, V]:
        with self._lock:
            return dict(self._values)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __repr__(self) -> str:
        return f"ResultCache(name={self.name!r}, size={len(self)})"


class SharedErrorSlot:
    """Thread-safe cell holding at most one error until cleared."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._error: BaseException | None = None

    def get(self) -> BaseException | None:
        with self._lock:
            return self._error

    def set_once(self, error: BaseException) -> BaseException:
        """Store ``error`` unless a value is already present.

        Returns:
            The error now held by the slot, which is ``error`` only for the
            first writer.
        """
        with self._lock:
            if self._error is None:
                self._error = error
            return self._error

    def clear(self) -> None:
        with self._lock:
            self._error = None

    def __bool__(self) -> bool:
        return self.get() is not None


def retry_on_timeout[K, V](
    loader: Loader[K, V],
    max_attempts: int = 3,
    *,
    is_timeout: Callable[[BaseException], bool] = is_timeout_error,
) -> Loader[K, V]:
    """Retry ``loader`` immediately while it raises a timeout.

    Makes at most ``max_attempts`` calls in total, then re-raises the last
    error. Non-timeout errors propagate on the first occurrence.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def _log_retry(retry_state) -> None:
        log.debug(
            "Load timed out (attempt {n}/{max}), retrying: {err}",
            n=retry_state.attempt_number,
            max=max_attempts,
            err=retry_state.outcome.exception(),
        )

    return retry(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception(is_timeout),
        before_sleep=_log_retry,
        reraise=True,
    )(loader)


def first_failure_broadcast[K, V](
    loader: Loader[K, V],
    slot: SharedErrorSlot,
    *,
    is_fatal: Callable[[BaseException], bool] = is_authorization_error,
) -> Loader[K, V]:
    """Fail fast for every caller once ``loader`` hits an authorization error.

    The first fatal error is stored in ``slot`` and raised. From then on any
    call through a loader sharing the slot raises the stored error without
    invoking ``loader``, until ``slot.clear()``.
    """

    @functools.wraps(loader)
    def wrapper(key: K) -> V:
        if (stored := slot.get()) is not None:
            raise stored
        try:
            return loader(key)
        except Exception as exc:
            if not is_fatal(exc):
                raise
            stored = slot.set_once(exc)
            if stored is exc:
                log.error("Credentials rejected, failing further loads fast: {err}", err=exc)
                raise
            raise stored

    return wrapper
