from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping

from .errors import MalformedResponse, RequestError
from .http_utils import url_escape
from .listing import Listing, ListingOptions, fetch_page, parse_listing_page
from .models import Page, parse_timestamp
from .pipeline import RequestPipeline
from .stream import StreamOptions, StreamPoller

if TYPE_CHECKING:
    from .client import ServiceClient


logger = logging.getLogger(__name__)

KIND_COMMENT = "t1"
KIND_POST = "t3"
KIND_MESSAGE = "t4"
KIND_MORE = "more"

RAW_JSON = (("raw_json", "1"),)

MORE_CHILDREN_PATH = "/api/morechildren"
MORE_CHILDREN_BATCH = 100


def _str(data: Mapping[str, Any], key: str) -> str:
    v = data.get(key)
    return "" if v is None else str(v)


def _int(data: Mapping[str, Any], key: str) -> int:
    v = data.get(key)
    if isinstance(v, bool):
        return int(v)
    try:
        return int(v)
    except (TypeError, ValueError):
        return 0


def _fullname(kind: str, data: Mapping[str, Any]) -> str:
    name = _str(data, "name")
    if name:
        return name
    raw_id = _str(data, "id")
    if not raw_id:
        raise ValueError(f"{kind} has neither name nor id")
    return f"{kind}_{raw_id}"


def _unwrap(obj: Mapping[str, Any], *kinds: str) -> tuple[str, Mapping[str, Any]]:
    kind = str(obj.get("kind") or "")
    if kinds and kind not in kinds:
        raise ValueError(f"unexpected kind {kind!r}, expected one of {', '.join(kinds)}")
    data = obj.get("data")
    if not isinstance(data, dict):
        raise ValueError(f"{kind or 'thing'} has no data object")
    return kind, data


@dataclass(frozen=True, slots=True)
class Post:
    """帖子（链接帖或文字帖）。"""

    identifier: str
    id: str
    title: str
    author: str
    community: str
    url: str
    permalink: str
    selftext: str
    is_self: bool
    score: int
    num_comments: int
    created_utc: int
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def order_key(self) -> int:
        return self.created_utc

    @classmethod
    def from_thing(cls, obj: Mapping[str, Any]) -> Post:
        kind, data = _unwrap(obj, KIND_POST)
        return cls(
            identifier=_fullname(kind, data),
            id=_str(data, "id"),
            title=_str(data, "title"),
            author=_str(data, "author"),
            community=_str(data, "subreddit"),
            url=_str(data, "url"),
            permalink=_str(data, "permalink"),
            selftext=_str(data, "selftext"),
            is_self=bool(data.get("is_self")),
            score=_int(data, "score"),
            num_comments=_int(data, "num_comments"),
            created_utc=parse_timestamp(data.get("created_utc")) or 0,
            raw=data,
        )


@dataclass(frozen=True, slots=True)
class Comment:
    identifier: str
    id: str
    author: str
    body: str
    parent_id: str
    link_id: str
    score: int
    created_utc: int
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def order_key(self) -> int:
        return self.created_utc

    @property
    def is_top_level(self) -> bool:
        return self.parent_id == self.link_id

    @classmethod
    def from_thing(cls, obj: Mapping[str, Any]) -> Comment:
        kind, data = _unwrap(obj, KIND_COMMENT)
        return cls(
            identifier=_fullname(kind, data),
            id=_str(data, "id"),
            author=_str(data, "author"),
            body=_str(data, "body"),
            parent_id=_str(data, "parent_id"),
            link_id=_str(data, "link_id"),
            score=_int(data, "score"),
            created_utc=parse_timestamp(data.get("created_utc")) or 0,
            raw=data,
        )


@dataclass(frozen=True, slots=True)
class Message:
    """
    收件箱条目：私信（t4）或评论回复（t1）。

    unread 对应服务端的 new 字段。
    """

    identifier: str
    id: str
    kind: str
    author: str
    subject: str
    body: str
    parent_id: str | None
    unread: bool
    created_utc: int
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def order_key(self) -> int:
        return self.created_utc

    @property
    def is_comment_reply(self) -> bool:
        return self.kind == KIND_COMMENT

    @classmethod
    def from_thing(cls, obj: Mapping[str, Any]) -> Message:
        kind, data = _unwrap(obj, KIND_MESSAGE, KIND_COMMENT)
        return cls(
            identifier=_fullname(kind, data),
            id=_str(data, "id"),
            kind=kind,
            author=_str(data, "author"),
            subject=_str(data, "subject"),
            body=_str(data, "body"),
            parent_id=_str(data, "parent_id") or None,
            unread=bool(data.get("new")),
            created_utc=parse_timestamp(data.get("created_utc")) or 0,
            raw=data,
        )


def parse_comment_page(payload: Any) -> Page[Mapping[str, Any]]:
    """
    评论流的页解析：丢弃 "more" 占位条目（新评论流不展开折叠的子评论）。
    """
    page = parse_listing_page(payload)
    kept = tuple(c for c in page.items if c.get("kind") != KIND_MORE)
    dropped = len(page.items) - len(kept)
    if dropped:
        logger.debug("comment page: dropped %d 'more' placeholders", dropped)
    return Page(items=kept, after=page.after, before=page.before)


@dataclass(frozen=True, slots=True)
class MoreChildren:
    """
    评论页中的 "more" 占位：被折叠的子评论 id 列表。

    children 为空时表示“继续该讨论串”的链接，无法通过 morechildren 展开。
    """

    identifier: str
    parent_id: str
    count: int
    children: tuple[str, ...]

    @classmethod
    def from_thing(cls, obj: Mapping[str, Any]) -> MoreChildren:
        _, data = _unwrap(obj, KIND_MORE)
        children = data.get("children") or ()
        if not isinstance(children, (list, tuple)):
            raise ValueError("more.children is not an array")
        return cls(
            identifier=_str(data, "name") or _str(data, "id"),
            parent_id=_str(data, "parent_id"),
            count=_int(data, "count"),
            children=tuple(str(c) for c in children if c),
        )


def decode_comment_or_more(obj: Mapping[str, Any]) -> Comment | MoreChildren:
    if obj.get("kind") == KIND_MORE:
        return MoreChildren.from_thing(obj)
    return Comment.from_thing(obj)


def parse_more_children(payload: Any) -> Page[Mapping[str, Any]]:
    """
    解析 /api/morechildren 的响应：

    {"json": {"errors": [], "data": {"things": [{"kind": "t1", ...}, {"kind": "more", ...}]}}}

    没有 data 时视为空结果。
    """
    body = payload.get("json") if isinstance(payload, dict) else None
    if not isinstance(body, dict):
        raise MalformedResponse("morechildren response has no json object")
    errors = body.get("errors")
    if errors:
        raise MalformedResponse(f"morechildren returned errors: {errors}")
    data = body.get("data")
    if data is None:
        return Page(items=())
    things = data.get("things") if isinstance(data, dict) else None
    if not isinstance(things, list):
        raise MalformedResponse("morechildren data has no things array")
    return Page(items=tuple(t for t in things if isinstance(t, dict)))


class CommentReplies(Listing[Comment]):
    """
    帖子评论的惰性迭代：先按 cursor 翻完评论 listing，再逐个展开 "more" 占位。

    - 展开只在当前缓冲耗尽时发生，每次最多提交 MORE_CHILDREN_BATCH 个 id
    - 展开结果中新的 "more" 追加到队尾，按同样方式继续展开
    - max_items 对展开出的评论同样生效
    """

    def __init__(self, pipeline: RequestPipeline, post_id: str, path: str, *, options: ListingOptions | None = None) -> None:
        super().__init__(
            pipeline,
            path,
            options=options,
            decoder=decode_comment_or_more,
            page_parser=parse_listing_page,
            base_params=RAW_JSON,
        )
        self._link_id = f"{KIND_POST}_{post_id}"
        self._pending: deque[MoreChildren] = deque()
        self._listing_done = False
        self.expansions = 0

    @property
    def pending_more(self) -> int:
        return len(self._pending)

    def _fetch_next_page(self) -> None:
        if not self._listing_done:
            super()._fetch_next_page()
            self._listing_done = self._done
        else:
            self._expand_next()
        self._sift()
        self._done = self._listing_done and not self._pending

    def _sift(self) -> None:
        comments: list[Any] = []
        for item in self._buffer:
            if not isinstance(item, MoreChildren):
                comments.append(item)
            elif item.children:
                self._pending.append(item)
            else:
                logger.debug("comment thread: skipping unexpandable 'more': link_id=%s parent_id=%s", self._link_id, item.parent_id)
        self._buffer = deque(comments)

    def _expand_next(self) -> None:
        more = self._pending.popleft()
        batch = more.children[:MORE_CHILDREN_BATCH]
        rest = more.children[MORE_CHILDREN_BATCH:]
        if rest:
            self._pending.appendleft(replace(more, children=rest))
        params = [("api_type", "json"), ("link_id", self._link_id), ("children", ",".join(batch)), *RAW_JSON]
        try:
            page = fetch_page(
                self._pipeline,
                MORE_CHILDREN_PATH,
                params=params,
                decoder=decode_comment_or_more,
                page_parser=parse_more_children,
            )
        except RequestError:
            self._pending.clear()
            self._listing_done = True
            self._done = True
            logger.warning("comment expansion failed: link_id=%s children=%d expansions=%d", self._link_id, len(batch), self.expansions)
            raise
        self.expansions += 1
        self._buffer.extend(page.items)
        logger.debug("comment expansion: link_id=%s requested=%d returned=%d", self._link_id, len(batch), len(page.items))


@dataclass(frozen=True, slots=True)
class Community:
    """
    某个社区（/r/<name>）的帖子 listing 与新帖流。

    hot / new / rising 不带时间窗口；top / controversial 需要 time_filter。
    """

    client: ServiceClient
    name: str

    def _path(self, sort: str) -> str:
        return f"/r/{url_escape(self.name)}/{sort}"

    def _listing(self, sort: str, options: ListingOptions | None) -> Listing[Post]:
        return self.client.listing(self._path(sort), options=options, decoder=Post.from_thing, params=RAW_JSON)

    def hot(self, options: ListingOptions | None = None) -> Listing[Post]:
        return self._listing("hot", options)

    def new(self, options: ListingOptions | None = None) -> Listing[Post]:
        return self._listing("new", options)

    def rising(self, options: ListingOptions | None = None) -> Listing[Post]:
        return self._listing("rising", options)

    def top(self, time_filter: str = "all", options: ListingOptions | None = None) -> Listing[Post]:
        return self._listing("top", _with_time_filter(self.client.listing_options(options), time_filter))

    def controversial(self, time_filter: str = "all", options: ListingOptions | None = None) -> Listing[Post]:
        return self._listing("controversial", _with_time_filter(self.client.listing_options(options), time_filter))

    def new_stream(self, options: StreamOptions | None = None) -> StreamPoller[Post]:
        return self.client.stream(self._path("new"), options=options, decoder=Post.from_thing, params=RAW_JSON)


@dataclass(frozen=True, slots=True)
class UserProfile:
    client: ServiceClient
    name: str

    def submissions(self, options: ListingOptions | None = None) -> Listing[Post]:
        path = f"/user/{url_escape(self.name)}/submitted"
        return self.client.listing(path, options=options, decoder=Post.from_thing, params=RAW_JSON)

    def comments(self, options: ListingOptions | None = None) -> Listing[Comment]:
        path = f"/user/{url_escape(self.name)}/comments"
        return self.client.listing(path, options=options, decoder=Comment.from_thing, params=RAW_JSON)


@dataclass(frozen=True, slots=True)
class Inbox:
    """当前登录账号的收件箱（需要非匿名凭证）。"""

    client: ServiceClient

    def inbox(self, options: ListingOptions | None = None) -> Listing[Message]:
        return self.client.listing("/message/inbox", options=options, decoder=Message.from_thing, params=RAW_JSON)

    def unread(self, options: ListingOptions | None = None) -> Listing[Message]:
        return self.client.listing("/message/unread", options=options, decoder=Message.from_thing, params=RAW_JSON)

    def unread_stream(self, options: StreamOptions | None = None) -> StreamPoller[Message]:
        return self.client.stream("/message/unread", options=options, decoder=Message.from_thing, params=RAW_JSON)


@dataclass(frozen=True, slots=True)
class CommentThread:
    """某个帖子下的评论（post_id 不带 t3_ 前缀）。"""

    client: ServiceClient
    post_id: str

    @property
    def path(self) -> str:
        return f"/comments/{url_escape(self.post_id)}"

    def replies(self, options: ListingOptions | None = None) -> CommentReplies:
        """全部评论，折叠的子评论在翻页结束后按需展开。"""
        return CommentReplies(self.client.pipeline, self.post_id, self.path, options=self.client.listing_options(options))

    def reply_stream(self, options: StreamOptions | None = None) -> StreamPoller[Comment]:
        return self.client.stream(
            self.path,
            options=options,
            decoder=Comment.from_thing,
            page_parser=parse_comment_page,
            params=(("sort", "new"), *RAW_JSON),
        )


def _with_time_filter(options: ListingOptions, time_filter: str) -> ListingOptions:
    return replace(options, time_filter=time_filter)

