"""
cairn/remote/fanout.py

Structured per-host concurrency:

  - AbortSignal: an operator-triggered cancellation flag shared by every fan-out
    in one reconciliation call.
  - fan_out: run one unit of work per host, optionally capped by a semaphore,
    and join every task before returning. Per-host failures do not cancel
    siblings; an abort does, and raises ReconcileAborted once the cancelled
    tasks have unwound (killing their ssh subprocesses on the way).
  - HostErrors: several hosts failed; maps host -> exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Set,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReconcileAborted(Exception):
    """Raised when an operator abort interrupts in-flight work."""


class HostErrors(Exception):
    """Aggregate of per-host failures collected during a fan-out."""

    def __init__(self, failures: Dict[str, BaseException]) -> None:
        self.failures = dict(failures)
        details = "; ".join(f"{host}: {exc}" for host, exc in self.failures.items())
        super().__init__(f"{len(self.failures)} host(s) failed: {details}")

    @property
    def hosts(self) -> List[str]:
        return list(self.failures)


class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def abort(self, reason: str = "reconciliation aborted by operator") -> None:
        if not self._event.is_set():
            logger.warning("Abort requested: %s", reason)
            self.reason = reason
            self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise ReconcileAborted(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early with ReconcileAborted on abort."""
        self.raise_if_aborted()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise ReconcileAborted(self.reason)


class FanOutResult(Generic[T]):
    """
    Outcome of one fan-out. `results` and `errors` are keyed by host; `errors`
    keeps completion order, so the first entry is the first failure observed.
    """

    def __init__(self, hosts: List[str]) -> None:
        self.hosts = hosts
        self.results: Dict[str, T] = {}
        self.errors: Dict[str, BaseException] = {}

    @property
    def ok(self) -> bool:
        return not self.errors

    def ordered_results(self) -> List[T]:
        return [self.results[h] for h in self.hosts if h in self.results]

    def raise_first(self) -> None:
        if self.errors:
            raise next(iter(self.errors.values()))

    def raise_aggregate(self) -> None:
        if self.errors:
            raise HostErrors(self.errors)


async def fan_out(
    hosts: Iterable[str],
    work: Callable[[str], Awaitable[T]],
    *,
    limit: Optional[int] = None,
    abort: Optional[AbortSignal] = None,
) -> FanOutResult[T]:
    """
    Run `work(host)` for every distinct host and wait for all of them.

    Args:
        hosts: Target hosts; duplicates are collapsed.
        work: Coroutine function executed once per host.
        limit: If set, at most this many hosts run concurrently.
        abort: If set, firing it cancels all in-flight work.

    Returns:
        FanOutResult with per-host results and errors.

    Raises:
        ReconcileAborted: If `abort` fired before all work finished.
    """
    host_list = list(dict.fromkeys(hosts))
    outcome: FanOutResult[T] = FanOutResult(host_list)
    if abort is not None:
        abort.raise_if_aborted()
    if not host_list:
        return outcome

    semaphore = asyncio.Semaphore(limit) if limit else None

    async def _run_one(host: str) -> T:
        if semaphore is None:
            return await work(host)
        async with semaphore:
            if abort is not None:
                abort.raise_if_aborted()
            return await work(host)

    tasks: Dict["asyncio.Future[T]", str] = {
        asyncio.ensure_future(_run_one(h)): h for h in host_list
    }
    pending: Set["asyncio.Future[T]"] = set(tasks)
    abort_waiter: Optional["asyncio.Future[None]"] = (
        asyncio.ensure_future(abort.wait()) if abort is not None else None
    )

    try:
        while pending:
            waiting: Set["asyncio.Future[object]"] = set()
            waiting.update(pending)  # type: ignore[arg-type]
            if abort_waiter is not None:
                waiting.add(abort_waiter)  # type: ignore[arg-type]
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            for task in done:
                if task is abort_waiter:
                    continue
                pending.discard(task)  # type: ignore[arg-type]
                host = tasks[task]  # type: ignore[index]
                if task.cancelled():
                    outcome.errors[host] = asyncio.CancelledError()
                elif task.exception() is not None:
                    exc = task.exception()
                    assert exc is not None
                    logger.debug("[%s] failed: %s", host, exc)
                    outcome.errors[host] = exc
                else:
                    outcome.results[host] = task.result()  # type: ignore[assignment]

            if abort_waiter is not None and abort_waiter.done() and pending:
                assert abort is not None
                raise ReconcileAborted(abort.reason)
    finally:
        if abort_waiter is not None:
            abort_waiter.cancel()
        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    return outcome
