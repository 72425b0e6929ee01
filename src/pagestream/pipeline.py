from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .auth import Authenticator, AuthSession
from .errors import (
    ClientError,
    RateLimited,
    RequestCancelled,
    ServiceUnavailable,
    TransportError,
)
from .http_utils import HttpResponse, Transport, parse_retry_after
from .models import Credential, RequestSpec


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    重试策略。

    max_retries:
      - 首次请求之外最多重试的次数（总尝试次数 = max_retries + 1）
    base_backoff_seconds / max_backoff_seconds:
      - 指数退避的基数与上限（服务端给出 Retry-After 时以服务端为准）
    """

    max_retries: int = 3
    base_backoff_seconds: float = 0.8
    max_backoff_seconds: float = 60.0


def compute_backoff(attempt: int, *, base: float, cap: float, rng: random.Random | None = None) -> float:
    """第 attempt 次重试（从 0 开始）的等待时长：base * 2^attempt，叠加至多 25% 的随机抖动。"""
    backoff = base * (2**attempt)
    jitter = (rng or random).random() * 0.25 * backoff
    return min(cap, backoff + jitter)


class RequestPipeline:
    """
    带认证的单次逻辑请求执行器。

    v0 策略：
    - 发送前检查凭证是否过期，过期则（互斥地）刷新
    - 2xx 直接返回；429 按服务端提示或指数退避重试；5xx/传输错误指数退避重试
    - 401 强制刷新一次凭证后重放；其余 4xx 立即失败
    - 重试有上限，耗尽后抛出终态错误，绝不无限重试
    - 退避等待可被 cancel 事件打断
    """

    def __init__(
        self,
        *,
        transport: Transport,
        auth: AuthSession | Authenticator,
        base_url: str,
        user_agent: str = "pagestream/0",
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._auth = auth if isinstance(auth, AuthSession) else AuthSession(auth)
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def auth(self) -> AuthSession:
        return self._auth

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self._base_url + path

    def execute(self, spec: RequestSpec, *, cancel: threading.Event | None = None) -> HttpResponse:
        if cancel is not None and cancel.is_set():
            raise RequestCancelled(f"request cancelled before dispatch: {spec.method} {spec.path}")

        credential = self._auth.credential()
        url = self.url_for(spec.path)
        max_retries = max(0, self._retry.max_retries)
        reauthenticated = False
        attempt = 0

        while True:
            try:
                resp = self._transport.send(
                    spec.method,
                    url,
                    headers=self._headers(credential),
                    params=spec.params,
                )
            except TransportError as e:
                if attempt >= max_retries:
                    raise ServiceUnavailable(
                        f"transport failed after {attempt + 1} attempts: {e}",
                        attempts=attempt + 1,
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "request retry: method=%s path=%s error=%s attempt=%d delay=%.2fs",
                    spec.method,
                    spec.path,
                    e,
                    attempt + 1,
                    delay,
                )
                self._wait(delay, cancel)
                attempt += 1
                continue

            if resp.ok:
                return resp

            status = resp.status
            if status == 401 and not reauthenticated:
                reauthenticated = True
                logger.info("request unauthorized, refreshing credential: method=%s path=%s", spec.method, spec.path)
                credential = self._auth.invalidate(credential)
                continue

            if status == 429:
                hint = parse_retry_after(resp)
                if attempt >= max_retries:
                    raise RateLimited(
                        f"rate limited after {attempt + 1} attempts: {spec.method} {spec.path}",
                        retry_after=hint,
                        attempts=attempt + 1,
                    )
                delay = hint if hint is not None else self._backoff(attempt)
            elif status >= 500:
                if attempt >= max_retries:
                    raise ServiceUnavailable(
                        f"service unavailable after {attempt + 1} attempts: status={status} {spec.method} {spec.path}",
                        status=status,
                        attempts=attempt + 1,
                    )
                delay = self._backoff(attempt)
            else:
                raise ClientError(status, f"client error: status={status} {spec.method} {spec.path}")

            logger.warning(
                "request retry: method=%s path=%s status=%d attempt=%d delay=%.2fs",
                spec.method,
                spec.path,
                status,
                attempt + 1,
                delay,
            )
            self._wait(delay, cancel)
            attempt += 1

    def _headers(self, credential: Credential) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        headers.update(credential.headers())
        return headers

    def _backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            base=self._retry.base_backoff_seconds,
            cap=self._retry.max_backoff_seconds,
            rng=self._rng,
        )

    def _wait(self, delay: float, cancel: threading.Event | None) -> None:
        if cancel is None:
            self._sleep(delay)
            return
        if cancel.wait(delay):
            raise RequestCancelled("request cancelled during backoff")
