from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Mapping, Protocol

from .errors import TransportError
from .models import utc_now


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lowered:
                return v
        return None

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class Transport(Protocol):
    """
    原始传输层接口：发送一次 HTTP 请求并返回状态码/头/响应体。

    约定：
    - 非 2xx 也正常返回 HttpResponse，由 RequestPipeline 负责分类
    - 连接失败、超时等 I/O 错误抛 TransportError
    """

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        params: Iterable[tuple[str, str]] = (),
    ) -> HttpResponse: ...


class UrllibTransport:
    """
    轻量传输实现（仅依赖标准库）。

    只做单次发送，不做重试；重试/退避统一由 RequestPipeline 负责。
    """

    def __init__(self, *, timeout_seconds: float = 20.0, verify_ssl: bool = True) -> None:
        self._timeout_seconds = timeout_seconds
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        params: Iterable[tuple[str, str]] = (),
    ) -> HttpResponse:
        full_url = with_query_params(url, params)
        req = urllib.request.Request(url=full_url, headers=dict(headers), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:  # noqa: S310
                return HttpResponse(
                    status=getattr(resp, "status", 200),
                    url=resp.geturl(),
                    headers={k: v for k, v in resp.headers.items()},
                    body=resp.read(),
                )
        except urllib.error.HTTPError as e:
            return HttpResponse(
                status=e.code,
                url=full_url,
                headers={k: v for k, v in (e.headers or {}).items()},
                body=e.read() or b"",
            )
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e


def with_query_params(url: str, params: Mapping[str, Any] | Iterable[tuple[str, Any]]) -> str:
    """
    将参数合并进 URL 的 query：按顺序追加，重复的 key 全部保留。

    URL 中已有的同名参数被新参数整体替换；值为 None 的参数被忽略。
    """
    items = params.items() if isinstance(params, Mapping) else params
    added = [(str(k), str(v)) for k, v in items if v is not None]
    replaced = {k for k, _ in added}
    parsed = urllib.parse.urlparse(url)
    kept = [(k, v) for k, v in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True) if k not in replaced]
    new_query = urllib.parse.urlencode(kept + added)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))


_URL_SAFE = frozenset("*-._0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz")


def url_escape(value: str) -> str:
    """
    对路径片段（社区名、用户名等）做 URL 编码。

    规则：空格编码为 '+'；字母数字与 *-._ 原样保留；其余按 UTF-8 字节编码为 %XX。

    示例：
    - "test&co" -> "test%26co"
    - "\\n" -> "%0A"
    """
    out: list[str] = []
    for ch in value:
        if ch == " ":
            out.append("+")
        elif ch in _URL_SAFE:
            out.append(ch)
        else:
            out.extend(f"%{b:02X}" for b in ch.encode("utf-8"))
    return "".join(out)


def parse_retry_after(resp: HttpResponse, *, now: datetime | None = None) -> float | None:
    """
    从响应头中提取服务端建议的等待秒数。

    依次识别：
    - Retry-After: <秒数> 或 HTTP-date
    - X-Ratelimit-Reset: <距离重置的秒数>
    """
    raw = resp.header("Retry-After")
    if raw:
        raw = raw.strip()
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=UTC)
            return max(0.0, (when - (now or utc_now())).total_seconds())

    reset = resp.header("X-Ratelimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset.strip()))
        except ValueError:
            return None
    return None
