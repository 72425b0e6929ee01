from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from .auth import AnonymousAuthenticator, Authenticator, TokenAuthenticator
from .config import ClientConfig
from .errors import AuthError, RequestError
from .http_utils import Transport, UrllibTransport
from .listing import Decoder, Listing, ListingOptions, PageParser, parse_listing_page
from .models import Thing
from .pipeline import RequestPipeline
from .resources import CommentThread, Community, Inbox, UserProfile
from .stream import StreamOptions, StreamPoller


logger = logging.getLogger(__name__)


class ServiceClient:
    """
    一个 ServiceClient 对应一个账号（或匿名）的连接，所有 listing/stream 共享同一个 RequestPipeline，
    从而共享同一个凭证与刷新锁。
    """

    def __init__(
        self,
        pipeline: RequestPipeline,
        *,
        listing_defaults: ListingOptions | None = None,
        stream_defaults: StreamOptions | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._listing_defaults = listing_defaults or ListingOptions()
        self._stream_defaults = stream_defaults or StreamOptions()

    @property
    def pipeline(self) -> RequestPipeline:
        return self._pipeline

    def listing_options(self, options: ListingOptions | None = None) -> ListingOptions:
        return options or self._listing_defaults

    def stream_options(self, options: StreamOptions | None = None) -> StreamOptions:
        return options or self._stream_defaults

    def listing(
        self,
        path: str,
        *,
        options: ListingOptions | None = None,
        decoder: Decoder[Any] = Thing.from_json,
        page_parser: PageParser = parse_listing_page,
        params: Iterable[tuple[str, Any]] = (),
    ) -> Listing[Any]:
        return Listing(
            self._pipeline,
            path,
            options=self.listing_options(options),
            decoder=decoder,
            page_parser=page_parser,
            base_params=params,
        )

    def stream(
        self,
        path: str,
        *,
        options: StreamOptions | None = None,
        decoder: Decoder[Any] = Thing.from_json,
        page_parser: PageParser = parse_listing_page,
        params: Iterable[tuple[str, Any]] = (),
        on_error: Callable[[RequestError], None] | None = None,
    ) -> StreamPoller[Any]:
        return StreamPoller(
            self._pipeline,
            path,
            options=self.stream_options(options),
            decoder=decoder,
            page_parser=page_parser,
            base_params=params,
            on_error=on_error,
        )

    def community(self, name: str) -> Community:
        return Community(client=self, name=name)

    def user(self, name: str) -> UserProfile:
        return UserProfile(client=self, name=name)

    def messages(self) -> Inbox:
        return Inbox(client=self)

    def comments(self, post_id: str) -> CommentThread:
        return CommentThread(client=self, post_id=post_id)


def build_authenticator(config: ClientConfig) -> Authenticator:
    token_env = config.auth.token_env
    if not token_env:
        return AnonymousAuthenticator()

    ttl = config.auth.token_ttl_seconds

    def fetch_token() -> tuple[str, float]:
        token = config.resolve_env(token_env)
        if not token:
            raise AuthError(f"environment variable {token_env} is not set")
        return token, ttl

    return TokenAuthenticator(fetch_token)


def build_client(config: ClientConfig, *, transport: Transport | None = None) -> ServiceClient:
    """
    根据配置构建 ServiceClient。

    设计取舍（v0）：
    - 统一在这里做“配置 -> 实例”的装配
    - token 只通过环境变量读取，避免落盘
    """
    authenticator = build_authenticator(config)
    pipeline = RequestPipeline(
        transport=transport
        or UrllibTransport(timeout_seconds=config.http.timeout_seconds, verify_ssl=config.http.verify_ssl),
        auth=authenticator,
        base_url=config.http.base_url,
        user_agent=config.http.user_agent,
        retry=config.retry,
    )
    logger.debug(
        "client built: base_url=%s authenticator=%s max_retries=%d",
        config.http.base_url,
        type(authenticator).__name__,
        config.retry.max_retries,
    )
    return ServiceClient(pipeline, listing_defaults=config.listing, stream_defaults=config.stream)
