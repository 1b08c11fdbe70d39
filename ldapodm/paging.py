"""
Paged search iteration (RFC 2696 simple paged results).
"""

import enum
import logging
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Model

logger = logging.getLogger("django-ldapodm")

#: Fetches one page: takes the previous cookie, returns ``(records, next_cookie)``.
PageFetcher = Callable[[bytes], "tuple[list[Model], bytes]"]


class PageState(enum.Enum):
    HAS_MORE = "has_more"
    EXHAUSTED = "exhausted"


class Page:
    """
    One page of paged search results.

    Args:
        results: The records on this page.
        cookie: The cookie for the next page; empty after the last page.
        has_more: Whether another page can be requested.

    """

    def __init__(self, results: list["Model"], cookie: bytes, has_more: bool):  # noqa: FBT001
        self.results = results
        self.cookie = cookie
        self.has_more = has_more

    def __repr__(self) -> str:
        return f"<Page: {len(self)} results, has_more={self.has_more}>"

    def __iter__(self) -> Iterator["Model"]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, key):
        return self.results[key]


class PagedSearch:
    """
    A lazy, finite sequence of :py:class:`Page` objects.

    Every step issues one page request carrying the cookie of the previous
    page.  The search is exhausted once the server returns an empty cookie;
    iterating further simply ends the sequence.  A ``PagedSearch`` cannot be
    restarted: start a new one instead.

    Example:
        .. code-block:: python

            for page in session.pages(Person, page_size=50):
                for person in page:
                    ...

    Args:
        fetch: Performs one page request.

    Raises:
        SizeLimitExceeded: from a page request that hit the server's size
            limit.

    """

    def __init__(self, fetch: PageFetcher) -> None:
        self._fetch = fetch
        self.state = PageState.HAS_MORE
        self.cookie = b""
        self.pages_fetched = 0

    def __repr__(self) -> str:
        return f"<PagedSearch: {self.state.value}, {self.pages_fetched} pages>"

    @property
    def exhausted(self) -> bool:
        return self.state is PageState.EXHAUSTED

    def next_page(self) -> Page | None:
        """
        Fetch the next page.

        Returns:
            The page, or ``None`` if the search is exhausted.

        """
        if self.exhausted:
            return None
        results, cookie = self._fetch(self.cookie)
        self.pages_fetched += 1
        self.cookie = cookie or b""
        if not self.cookie:
            self.state = PageState.EXHAUSTED
        logger.debug(
            "ldapodm.paging.page number=%d results=%d has_more=%s",
            self.pages_fetched,
            len(results),
            not self.exhausted,
        )
        return Page(results, self.cookie, not self.exhausted)

    def __iter__(self) -> "PagedSearch":
        return self

    def __next__(self) -> Page:
        page = self.next_page()
        if page is None:
            raise StopIteration
        return page
