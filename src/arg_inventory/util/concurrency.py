from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
) -> List[R]:
    """
    Run func over items in a thread pool; results keep the input order.

    The first failing item (in input order) cancels the work not yet started
    and its exception is raised, so callers never get a partial list.
    With max_workers <= 1 items are mapped inline on the calling thread.
    """
    if max_workers <= 1:
        return [func(item) for item in items]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures: List[Future[R]] = [executor.submit(func, item) for item in items]
        try:
            return [fut.result() for fut in futures]
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
