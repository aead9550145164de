"""A small abstraction over ThreadPoolExecutor inspired by `p-map`'s `pSettle`.

Goals
-----
- One call: ``p_map_settled(iterable, mapper, concurrency=...)``.
- Hide ``ThreadPoolExecutor`` mechanics (submission window, shutdown).
- Preserve input order while running work concurrently.
- Never fail fast: every item gets an outcome, either a value or the exception
  its mapper raised. Batch jobs (the catch-up driver) use this to isolate
  failures per item.

Non-goals
---------
- Async iterables.
- Process pools.
- Per-item timeouts (callers pass their own deadline into the mapper).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, TypeVar

InT = TypeVar("InT")
OutT = TypeVar("OutT")


@dataclass(frozen=True, slots=True)
class Settled(Generic[InT, OutT]):
    """Outcome of one mapper call. Exactly one of ``value``/``error`` is meaningful."""

    item: InT
    value: OutT | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def p_map_settled(
    iterable: Iterable[InT],
    mapper: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[Settled[InT, OutT]]:
    """Map ``iterable`` through ``mapper`` with at most ``concurrency`` calls in flight.

    The result preserves input order and contains one :class:`Settled` per
    input item. Exceptions raised by ``mapper`` are captured on the outcome;
    they are not re-raised here.
    """

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    # Avoid pre-materializing the iterable so large inputs don't blow memory.
    it = enumerate(iterable)

    outcomes: dict[int, Settled[InT, OutT]] = {}
    future_to_item: dict[Future, tuple[int, InT]] = {}

    def _submit(pool: ThreadPoolExecutor) -> Future | None:
        try:
            idx, item = next(it)
        except StopIteration:
            return None
        fut = pool.submit(mapper, item)
        future_to_item[fut] = (idx, item)
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future] = set()
        for _ in range(concurrency):
            fut = _submit(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)
            for fut in done:
                idx, item = future_to_item.pop(fut)
                exc = fut.exception()
                if isinstance(exc, Exception):
                    outcomes[idx] = Settled(item=item, error=exc)
                elif exc is not None:
                    # KeyboardInterrupt / SystemExit must not be captured.
                    raise exc
                else:
                    outcomes[idx] = Settled(item=item, value=fut.result())

            # Top up: one new submission per completion.
            for _ in range(len(done)):
                fut = _submit(pool)
                if fut is None:
                    break
                active.add(fut)

    return [outcomes[i] for i in range(len(outcomes))]


__all__ = ["Settled", "p_map_settled"]
