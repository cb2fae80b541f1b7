from __future__ import annotations

from typing import Callable, Generator, Optional, Tuple, TypeVar

T = TypeVar("T")


def paginate_pages(
    fetch: Callable[[Optional[str]], Tuple[T, Optional[str]]],
    *,
    max_pages: Optional[int] = None,
    on_truncated: Optional[Callable[[str], None]] = None,
) -> Generator[T, None, None]:
    """
    Yield whole pages from a fetch(skip_token) function.
    The fetch function must return (page, next_skip_token); a falsy token ends
    the iteration. max_pages bounds the number of requests issued; when it
    stops iteration while a token remains, on_truncated receives that token.
    """
    token: Optional[str] = None
    fetched = 0
    while True:
        page, next_token = fetch(token)
        fetched += 1
        yield page
        if not next_token:
            break
        if max_pages is not None and fetched >= max_pages:
            if on_truncated is not None:
                on_truncated(next_token)
            break
        token = next_token
