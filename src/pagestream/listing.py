from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Mapping, TypeVar

from .errors import MalformedResponse, RequestError
from .http_utils import HttpResponse
from .models import Page, RequestSpec, Thing
from .pipeline import RequestPipeline


logger = logging.getLogger(__name__)

T = TypeVar("T")

Decoder = Callable[[Mapping[str, Any]], T]
PageParser = Callable[[Any], Page[Mapping[str, Any]]]

TIME_FILTERS = ("hour", "day", "week", "month", "year", "all")
MAX_PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class ListingOptions:
    """
    listing 的分页配置。

    page_size:
      - 每次请求的条目数（服务端上限 100）
    max_items:
      - 最多产出多少条；None 表示直到 listing 结束
    after / before:
      - 起始锚点（互斥）：after 取锚点之后（更旧）的条目，before 取锚点之前的条目
    sort / time_filter:
      - 排序方式与时间窗口（hour/day/week/month/year/all），仅部分 listing 支持
    """

    page_size: int = 25
    max_items: int | None = None
    after: str | None = None
    before: str | None = None
    sort: str | None = None
    time_filter: str | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be within 1..{MAX_PAGE_SIZE}, got {self.page_size}")
        if self.max_items is not None and self.max_items < 0:
            raise ValueError(f"max_items must be >= 0, got {self.max_items}")
        if self.after and self.before:
            raise ValueError("after and before anchors are mutually exclusive")
        if self.time_filter is not None and self.time_filter not in TIME_FILTERS:
            raise ValueError(f"time_filter must be one of {', '.join(TIME_FILTERS)}, got {self.time_filter!r}")

    @property
    def direction(self) -> str:
        return "before" if self.before else "after"

    @property
    def anchor(self) -> str | None:
        return self.before or self.after


def _cursor(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def parse_listing_page(payload: Any) -> Page[Mapping[str, Any]]:
    """
    解析服务端 listing 响应：

    {"kind": "Listing", "data": {"children": [{"kind": ..., "data": {...}}], "after": ..., "before": ...}}

    评论接口返回 [帖子 listing, 评论 listing]，此时取最后一个 listing。
    """
    if isinstance(payload, list):
        listings = [p for p in payload if isinstance(p, dict) and p.get("kind") == "Listing"]
        if not listings:
            raise MalformedResponse("expected at least one Listing in response array")
        payload = listings[-1]
    if not isinstance(payload, dict):
        raise MalformedResponse(f"expected Listing object, got {type(payload).__name__}")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedResponse("Listing has no data object")
    children = data.get("children")
    if not isinstance(children, list):
        raise MalformedResponse("Listing data has no children array")
    return Page(
        items=tuple(c for c in children if isinstance(c, dict)),
        after=_cursor(data.get("after")),
        before=_cursor(data.get("before")),
    )


def decode_page(resp: HttpResponse, *, decoder: Decoder[T], page_parser: PageParser = parse_listing_page) -> Page[T]:
    try:
        payload = resp.json()
    except ValueError as e:
        raise MalformedResponse(f"response is not valid JSON: {resp.url}") from e
    raw = page_parser(payload)
    items: list[T] = []
    for child in raw.items:
        try:
            items.append(decoder(child))
        except MalformedResponse:
            raise
        except Exception as e:  # noqa: BLE001
            raise MalformedResponse(f"item decode failed: {type(e).__name__}: {e}") from e
    return Page(items=tuple(items), after=raw.after, before=raw.before)


def fetch_page(
    pipeline: RequestPipeline,
    path: str,
    *,
    params: Iterable[tuple[str, Any]] = (),
    decoder: Decoder[T],
    page_parser: PageParser = parse_listing_page,
    cancel: threading.Event | None = None,
) -> Page[T]:
    """单页拉取：Listing 与 StreamPoller 共用。"""
    spec = RequestSpec.get(path, params)
    resp = pipeline.execute(spec, cancel=cancel)
    return decode_page(resp, decoder=decoder, page_parser=page_parser)


class Listing(Generic[T]):
    """
    惰性分页迭代器：只有当前页耗尽且存在下一页 cursor 时才发起请求。

    - 条目顺序与服务端返回一致（页内顺序 + 按 cursor 翻页），不重排、不重复
    - 达到 max_items 后立即结束，不再多发请求
    - 拉取失败时该次 next() 抛出 RequestError，之后迭代器即结束（不可恢复）
    - 不支持回绕；需要重新遍历请新建 Listing
    """

    def __init__(
        self,
        pipeline: RequestPipeline,
        path: str,
        *,
        options: ListingOptions | None = None,
        decoder: Decoder[T] = Thing.from_json,
        page_parser: PageParser = parse_listing_page,
        base_params: Iterable[tuple[str, Any]] = (),
    ) -> None:
        self._pipeline = pipeline
        self._path = path
        self._options = options or ListingOptions()
        self._decoder = decoder
        self._page_parser = page_parser
        self._base_params = tuple(base_params)

        self._buffer: deque[T] = deque()
        self._cursor: str | None = self._options.anchor
        self._seen_cursors: set[str] = set()
        self._done = False

        self.pages_fetched = 0
        self.items_yielded = 0

    @property
    def options(self) -> ListingOptions:
        return self._options

    @property
    def exhausted(self) -> bool:
        return self._done and not self._buffer

    def __iter__(self) -> Listing[T]:
        return self

    def __next__(self) -> T:
        while True:
            if self._cap_reached():
                self._done = True
                self._buffer.clear()
                raise StopIteration
            if self._buffer:
                self.items_yielded += 1
                return self._buffer.popleft()
            if self._done:
                raise StopIteration
            self._fetch_next_page()

    def _cap_reached(self) -> bool:
        cap = self._options.max_items
        return cap is not None and self.items_yielded >= cap

    def _remaining(self) -> int | None:
        cap = self._options.max_items
        if cap is None:
            return None
        return cap - self.items_yielded - len(self._buffer)

    def _params(self) -> list[tuple[str, Any]]:
        limit = self._options.page_size
        remaining = self._remaining()
        if remaining is not None:
            limit = max(1, min(limit, remaining))
        params: list[tuple[str, Any]] = list(self._base_params)
        params.append(("limit", limit))
        if self._options.sort:
            params.append(("sort", self._options.sort))
        if self._options.time_filter:
            params.append(("t", self._options.time_filter))
        if self._cursor:
            params.append((self._options.direction, self._cursor))
        return params

    def _fetch_next_page(self) -> None:
        params = self._params()
        try:
            page = fetch_page(
                self._pipeline,
                self._path,
                params=params,
                decoder=self._decoder,
                page_parser=self._page_parser,
            )
        except RequestError:
            self._done = True
            logger.warning("listing fetch failed: path=%s cursor=%s pages_fetched=%d", self._path, self._cursor, self.pages_fetched)
            raise

        self.pages_fetched += 1
        self._buffer.extend(page.items)

        next_cursor = page.before if self._options.direction == "before" else page.after
        if next_cursor is None:
            self._done = True
        elif next_cursor == self._cursor or next_cursor in self._seen_cursors:
            logger.warning("listing cursor repeated, stopping: path=%s cursor=%s", self._path, next_cursor)
            self._done = True
        else:
            if self._cursor:
                self._seen_cursors.add(self._cursor)
            self._cursor = next_cursor

        logger.debug(
            "listing page fetched: path=%s items=%d next_cursor=%s pages_fetched=%d",
            self._path,
            len(page.items),
            next_cursor,
            self.pages_fetched,
        )
