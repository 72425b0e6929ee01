from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from .listing import ListingOptions
from .pipeline import RetryPolicy
from .stream import StreamOptions


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_bool(d: Mapping[str, Any], key: str, default: bool) -> bool:
    v = d.get(key, default)
    return bool(v)


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_optional_int(d: Mapping[str, Any], key: str) -> int | None:
    if d.get(key) is None:
        return None
    v = _get_int(d, key, -1)
    return v if v >= 0 else None


def _get_float(d: Mapping[str, Any], key: str, default: float) -> float:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


@dataclass(frozen=True, slots=True)
class HttpConfig:
    """
    传输层配置。

    base_url:
      - 服务根地址，所有 listing path 拼接在其后
    user_agent:
      - 建议格式 platform:program:version (by /u/name)，服务端会拒绝泛化的 UA
    """

    base_url: str = "https://oauth.reddit.com"
    user_agent: str = "pagestream/0"
    timeout_seconds: float = 20.0
    verify_ssl: bool = True


@dataclass(frozen=True, slots=True)
class AuthConfig:
    """
    认证配置。

    token_env:
      - bearer token 所在环境变量名；不配置则匿名访问
    token_ttl_seconds:
      - token 的有效期；到期后重新读取环境变量
    """

    token_env: str | None = None
    token_ttl_seconds: float = 3600.0


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """
    客户端总配置（v0 版本）。

    JSON 顶层结构（示意）：
    {
      "http": {"base_url": "...", "user_agent": "...", "timeout_seconds": 20},
      "auth": {"token_env": "PAGESTREAM_TOKEN"},
      "retry": {"max_retries": 3, "base_backoff_seconds": 0.8, "max_backoff_seconds": 60},
      "listing": {"page_size": 25, "max_items": null},
      "stream": {"page_size": 25, "poll_interval_seconds": 5, "seen_capacity": 1000, ...}
    }
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    listing: ListingOptions = field(default_factory=ListingOptions)
    stream: StreamOptions = field(default_factory=StreamOptions)

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)


def config_from_dict(raw: Any) -> ClientConfig:
    root = _require_dict(raw, where="$")

    http_raw = _require_dict(root.get("http", {}), where="$.http")
    http_defaults = HttpConfig()
    http = HttpConfig(
        base_url=_get_str(http_raw, "base_url", http_defaults.base_url) or http_defaults.base_url,
        user_agent=_get_str(http_raw, "user_agent", http_defaults.user_agent) or http_defaults.user_agent,
        timeout_seconds=_get_float(http_raw, "timeout_seconds", http_defaults.timeout_seconds),
        verify_ssl=_get_bool(http_raw, "verify_ssl", http_defaults.verify_ssl),
    )

    auth_raw = _require_dict(root.get("auth", {}), where="$.auth")
    auth = AuthConfig(
        token_env=_get_str(auth_raw, "token_env", None),
        token_ttl_seconds=_get_float(auth_raw, "token_ttl_seconds", AuthConfig().token_ttl_seconds),
    )

    retry_raw = _require_dict(root.get("retry", {}), where="$.retry")
    retry_defaults = RetryPolicy()
    retry = RetryPolicy(
        max_retries=max(0, _get_int(retry_raw, "max_retries", retry_defaults.max_retries)),
        base_backoff_seconds=_get_float(retry_raw, "base_backoff_seconds", retry_defaults.base_backoff_seconds),
        max_backoff_seconds=_get_float(retry_raw, "max_backoff_seconds", retry_defaults.max_backoff_seconds),
    )

    listing_raw = _require_dict(root.get("listing", {}), where="$.listing")
    listing = ListingOptions(
        page_size=_get_int(listing_raw, "page_size", ListingOptions().page_size),
        max_items=_get_optional_int(listing_raw, "max_items"),
    )

    stream_raw = _require_dict(root.get("stream", {}), where="$.stream")
    stream_defaults = StreamOptions()
    burst = stream_raw.get("burst_interval_seconds")
    stream = StreamOptions(
        page_size=_get_int(stream_raw, "page_size", stream_defaults.page_size),
        poll_interval_seconds=_get_float(stream_raw, "poll_interval_seconds", stream_defaults.poll_interval_seconds),
        burst_interval_seconds=None if burst is None else _get_float(stream_raw, "burst_interval_seconds", 0.0),
        seen_capacity=_get_int(stream_raw, "seen_capacity", stream_defaults.seen_capacity),
        max_consecutive_failures=_get_optional_int(stream_raw, "max_consecutive_failures"),
        max_backoff_seconds=_get_float(stream_raw, "max_backoff_seconds", stream_defaults.max_backoff_seconds),
        ordering=_get_str(stream_raw, "ordering", stream_defaults.ordering) or stream_defaults.ordering,
    )

    return ClientConfig(http=http, auth=auth, retry=retry, listing=listing, stream=stream)


def load_config(config_path: str) -> ClientConfig:
    """
    v0 约定：使用 JSON 作为配置落地形式，避免引入第三方 YAML 解析依赖。

    secret（token）只通过环境变量读取，配置文件中只出现环境变量名。
    """
    with open(config_path, "rb") as f:
        raw = json.loads(f.read().decode("utf-8"))
    return config_from_dict(raw)
