"""
pagestream

面向分页、限流、需认证的 REST 服务的客户端库，提供两种访问方式：
- Listing：惰性分页迭代，按 cursor 逐页拉取
- StreamPoller：持续轮询最新一页，只产出新出现的条目
"""

from .client import ServiceClient, build_client
from .config import ClientConfig, load_config
from .errors import (
    AuthFailed,
    ClientError,
    MalformedResponse,
    PagestreamError,
    RateLimited,
    RequestCancelled,
    RequestError,
    ServiceUnavailable,
    StreamClosed,
    StreamFatal,
)
from .listing import Listing, ListingOptions
from .models import Credential, Page, Thing
from .stream import StreamOptions, StreamPoller

__all__ = [
    "AuthFailed",
    "ClientConfig",
    "ClientError",
    "Credential",
    "Listing",
    "ListingOptions",
    "MalformedResponse",
    "Page",
    "PagestreamError",
    "RateLimited",
    "RequestCancelled",
    "RequestError",
    "ServiceClient",
    "ServiceUnavailable",
    "StreamClosed",
    "StreamFatal",
    "StreamOptions",
    "StreamPoller",
    "Thing",
    "build_client",
    "load_config",
]
