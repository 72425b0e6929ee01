"""
持续轮询流：把反复拉取的“最新一页”变成只包含新条目的无限序列。

要点：
- 首轮拉取只做播种（记录已存在条目），不产出任何条目，避免启动时把整页当成新内容重放
- SeenSet 有容量上限，按插入顺序淘汰最旧的标识，无限流下内存有界；
  不晚于淘汰水位（horizon）的条目视为已处理，被淘汰的旧条目再次出现时不会重复投递
- 新条目按时间从旧到新产出；服务端的排序约定可配置或自动探测
- 拉取失败不会终止流：错误进入独立的错误通道，按退避间隔继续轮询；
  可选的连续失败上限触发 StreamFatal
- cancel() 后不再发起请求或进入等待，阻塞中的 next() 会立即收到 StreamClosed
"""

from __future__ import annotations

import logging
import queue
import random
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Sequence, TypeVar

from .errors import RequestCancelled, RequestError, StreamClosed, StreamFatal
from .listing import MAX_PAGE_SIZE, Decoder, PageParser, fetch_page, parse_listing_page
from .models import Thing, utc_now
from .pipeline import RequestPipeline, compute_backoff


logger = logging.getLogger(__name__)

T = TypeVar("T")

ORDERINGS = ("newest_first", "oldest_first", "auto")

_CLOSED = object()


@dataclass(frozen=True, slots=True)
class StreamOptions:
    """
    轮询流配置。

    page_size:
      - 每轮拉取的最新条目数（不翻页）
    poll_interval_seconds:
      - 本轮没有新条目时，到下一轮的等待时长
    burst_interval_seconds:
      - 本轮有新条目时的等待时长（更快地消化突发），默认为 poll_interval 的一半
    seen_capacity:
      - SeenSet 容量；小于 page_size 时，时间戳不晚于淘汰水位的迟到条目会被跳过
    max_consecutive_failures:
      - 连续失败上限；None 表示永远重试
    max_backoff_seconds:
      - 失败退避的等待上限
    ordering:
      - 服务端条目顺序：newest_first / oldest_first / auto（按首尾条目 order_key 探测）
    """

    page_size: int = 25
    poll_interval_seconds: float = 5.0
    burst_interval_seconds: float | None = None
    seen_capacity: int = 1000
    max_consecutive_failures: int | None = None
    max_backoff_seconds: float = 300.0
    ordering: str = "auto"

    def __post_init__(self) -> None:
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be within 1..{MAX_PAGE_SIZE}, got {self.page_size}")
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must be >= 0")
        if self.burst_interval_seconds is not None and self.burst_interval_seconds < 0:
            raise ValueError("burst_interval_seconds must be >= 0")
        if self.seen_capacity < 1:
            raise ValueError("seen_capacity must be >= 1")
        if self.max_consecutive_failures is not None and self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if self.ordering not in ORDERINGS:
            raise ValueError(f"ordering must be one of {', '.join(ORDERINGS)}, got {self.ordering!r}")

    @property
    def effective_burst_interval(self) -> float:
        if self.burst_interval_seconds is None:
            return self.poll_interval_seconds / 2
        return self.burst_interval_seconds


class SeenSet:
    """
    有界的“已投递标识”集合：identifier -> 排序标记（marker）。

    达到容量后按插入顺序淘汰最旧的条目；重复 add 不会刷新其位置。
    horizon 记录被淘汰过的最大 marker：不晚于它的条目可能已被投递过，只是已不在集合中。
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._entries: OrderedDict[str, Any] = OrderedDict()
        self.evictions = 0
        self.horizon: Any = None

    @property
    def capacity(self) -> int:
        return self._capacity

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, identifier: str, marker: Any = None) -> bool:
        """记录标识；已存在时返回 False。"""
        if identifier in self._entries:
            return False
        self._entries[identifier] = marker if marker is not None else utc_now()
        while len(self._entries) > self._capacity:
            _, evicted = self._entries.popitem(last=False)
            self.evictions += 1
            self._advance_horizon(evicted)
        return True

    def behind_horizon(self, marker: Any) -> bool:
        """marker 不晚于已淘汰的最大 marker；无法比较时返回 False。"""
        if self.horizon is None or marker is None:
            return False
        try:
            return marker <= self.horizon
        except TypeError:
            return False

    def identifiers(self) -> list[str]:
        return list(self._entries)

    def _advance_horizon(self, marker: Any) -> None:
        try:
            if self.horizon is None or marker > self.horizon:
                self.horizon = marker
        except TypeError:
            self.horizon = marker


@dataclass(slots=True)
class PollState:
    seen: SeenSet
    high_water_mark: Any = None
    seeded: bool = False
    cycles: int = 0
    delivered: int = 0
    skipped: int = 0
    consecutive_failures: int = 0
    last_error: RequestError | None = None


def detect_ordering(items: Sequence[Any]) -> str:
    """根据首尾条目的 order_key 判断服务端顺序；无法判断时按 newest_first 处理。"""
    if len(items) < 2:
        return "newest_first"
    try:
        first, last = items[0].order_key, items[-1].order_key
        if first < last:
            return "oldest_first"
    except TypeError:
        pass
    return "newest_first"


class StreamPoller(Generic[T]):
    """
    单个 listing 的轮询流。

    用法：
        with client.community("python").new_stream() as stream:
            for post in stream:
                ...

    - poll_once() 同步执行一轮（测试与自定义调度可直接调用）
    - start() 启动后台线程持续轮询；next() 阻塞等待下一个新条目
    - PollState/SeenSet 只归本实例所有，不要在后台线程运行时再调用 poll_once()
    """

    def __init__(
        self,
        pipeline: RequestPipeline,
        path: str,
        *,
        options: StreamOptions | None = None,
        decoder: Decoder[T] = Thing.from_json,
        page_parser: PageParser = parse_listing_page,
        base_params: Iterable[tuple[str, Any]] = (),
        on_error: Callable[[RequestError], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._path = path
        self._options = options or StreamOptions()
        self._decoder = decoder
        self._page_parser = page_parser
        self._base_params = tuple(base_params)
        self._on_error = on_error
        self._rng = rng or random.Random()

        self._state = PollState(seen=SeenSet(self._options.seen_capacity))
        self._items: queue.Queue[Any] = queue.Queue()
        self._errors: queue.Queue[RequestError] = queue.Queue()
        self._cancel = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._fatal: StreamFatal | None = None

        if self._options.seen_capacity < self._options.page_size:
            logger.warning(
                "stream seen_capacity below page_size, items at or behind the eviction horizon are skipped: path=%s seen_capacity=%d page_size=%d",
                path,
                self._options.seen_capacity,
                self._options.page_size,
            )

    @property
    def path(self) -> str:
        return self._path

    @property
    def options(self) -> StreamOptions:
        return self._options

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> list[T]:
        """
        执行一轮轮询，返回本轮新出现的条目（从旧到新）。

        首次成功的轮询只播种 SeenSet 与高水位，返回空列表。
        失败时抛出 RequestError，状态不变。
        """
        params = [*self._base_params, ("limit", self._options.page_size)]
        page = fetch_page(
            self._pipeline,
            self._path,
            params=params,
            decoder=self._decoder,
            page_parser=self._page_parser,
            cancel=self._cancel,
        )
        chronological = self._chronological(page.items)
        state = self._state
        state.cycles += 1

        if not state.seeded:
            for item in chronological:
                self._remember(item)
            state.seeded = True
            logger.info("stream seeded: path=%s items=%d high_water_mark=%s", self._path, len(chronological), state.high_water_mark)
            return []

        fresh: list[T] = []
        for item in chronological:
            if item.identifier in state.seen:
                continue
            if state.seen.behind_horizon(item.order_key):
                state.skipped += 1
                continue
            self._remember(item)
            fresh.append(item)
        state.delivered += len(fresh)
        return fresh

    def _chronological(self, items: Sequence[T]) -> list[T]:
        ordering = self._options.ordering
        if ordering == "auto":
            ordering = detect_ordering(items)
        if ordering == "newest_first":
            return list(reversed(items))
        return list(items)

    def _remember(self, item: Any) -> None:
        state = self._state
        key = item.order_key
        state.seen.add(item.identifier, key)
        if key is None:
            return
        try:
            if state.high_water_mark is None or key > state.high_water_mark:
                state.high_water_mark = key
        except TypeError:
            state.high_water_mark = key

    def start(self) -> StreamPoller[T]:
        with self._start_lock:
            if self._thread is not None or self._cancel.is_set():
                return self
            self._thread = threading.Thread(target=self._run, name=f"pagestream-poller:{self._path}", daemon=True)
            self._thread.start()
            logger.info(
                "stream started: path=%s poll_interval_seconds=%.2f page_size=%d seen_capacity=%d",
                self._path,
                self._options.poll_interval_seconds,
                self._options.page_size,
                self._options.seen_capacity,
            )
        return self

    def cancel(self) -> None:
        if self._cancel.is_set():
            return
        self._cancel.set()
        self._items.put(_CLOSED)
        logger.info("stream cancel requested: path=%s", self._path)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def errors(self) -> list[RequestError]:
        """取出错误通道中积压的错误（取出即清空）。"""
        drained: list[RequestError] = []
        while True:
            try:
                drained.append(self._errors.get_nowait())
            except queue.Empty:
                return drained

    def next(self, timeout: float | None = None) -> T:
        """
        阻塞直到出现新条目。

        - 已取消：抛 StreamClosed
        - 连续失败达到上限：抛 StreamFatal
        - timeout 到期仍无新条目：抛 TimeoutError
        """
        if self._cancel.is_set():
            raise StreamClosed(f"stream closed: {self._path}")
        self.start()
        try:
            obj = self._items.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"no new item within {timeout}s: {self._path}") from None
        if obj is _CLOSED:
            self._items.put(_CLOSED)
            if self._fatal is not None:
                raise self._fatal
            raise StreamClosed(f"stream closed: {self._path}")
        if self._cancel.is_set():
            raise StreamClosed(f"stream closed: {self._path}")
        return obj

    def __iter__(self) -> StreamPoller[T]:
        return self

    def __next__(self) -> T:
        try:
            return self.next()
        except StreamClosed:
            raise StopIteration from None

    def __enter__(self) -> StreamPoller[T]:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.cancel()
        self.join(timeout=self._options.poll_interval_seconds + 1.0)

    def _run(self) -> None:
        try:
            while not self._cancel.is_set():
                delay = self._cycle()
                if delay is None:
                    break
                if self._cancel.wait(delay):
                    break
        finally:
            self._items.put(_CLOSED)
            state = self._state
            logger.info(
                "stream stopped: path=%s cycles=%d delivered=%d skipped=%d fatal=%s",
                self._path,
                state.cycles,
                state.delivered,
                state.skipped,
                self._fatal is not None,
            )

    def _cycle(self) -> float | None:
        """执行一轮并返回下一轮前的等待秒数；返回 None 表示流应当停止。"""
        state = self._state
        try:
            fresh = self.poll_once()
        except RequestCancelled:
            return None
        except RequestError as e:
            return self._handle_failure(e)
        except Exception as e:  # noqa: BLE001
            logger.exception("stream cycle crashed: path=%s cycles=%d", self._path, state.cycles)
            self._fatal = StreamFatal(state.consecutive_failures + 1, None)
            self._fatal.__cause__ = e
            return None

        if state.consecutive_failures:
            logger.info("stream recovered: path=%s after_failures=%d", self._path, state.consecutive_failures)
        state.consecutive_failures = 0
        for item in fresh:
            self._items.put(item)
        if fresh:
            logger.debug("stream cycle: path=%s new_items=%d", self._path, len(fresh))
            return self._options.effective_burst_interval
        return self._options.poll_interval_seconds

    def _handle_failure(self, error: RequestError) -> float | None:
        state = self._state
        state.consecutive_failures += 1
        state.last_error = error
        self._errors.put(error)
        logger.warning(
            "stream poll failed: path=%s consecutive_failures=%d error=%s: %s",
            self._path,
            state.consecutive_failures,
            type(error).__name__,
            error,
        )
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:  # noqa: BLE001
                logger.exception("stream on_error callback failed: path=%s", self._path)

        cap = self._options.max_consecutive_failures
        if cap is not None and state.consecutive_failures >= cap:
            self._fatal = StreamFatal(state.consecutive_failures, error)
            logger.error("stream giving up: path=%s consecutive_failures=%d", self._path, state.consecutive_failures)
            return None

        return compute_backoff(
            state.consecutive_failures - 1,
            base=max(self._options.poll_interval_seconds, 0.0),
            cap=self._options.max_backoff_seconds,
            rng=self._rng,
        )
