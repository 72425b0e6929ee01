"""
认证边界。

核心逻辑只消费 Authenticator 接口，不关心凭证具体如何换取（OAuth / 密码 / 匿名）。
多个请求共享同一个 Authenticator 时，通过 AuthSession 保证刷新互斥：
并发请求同时发现凭证过期，只有一个会真正调用 refresh()，其余等待其结果。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from .errors import AuthError, AuthFailed
from .models import Credential, utc_now


logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    def is_expired(self) -> bool: ...

    def current_credential(self) -> Credential: ...

    def refresh(self) -> Credential: ...


class AnonymousAuthenticator:
    """匿名访问：凭证永不过期，refresh 是空操作。"""

    def is_expired(self) -> bool:
        return False

    def current_credential(self) -> Credential:
        return Credential.anonymous()

    def refresh(self) -> Credential:
        return Credential.anonymous()


class TokenAuthenticator:
    """
    通过回调换取 bearer token 的 Authenticator。

    fetch_token:
      - 返回 (access_token, expires_in_seconds)，失败时抛任意异常
    leeway_seconds:
      - 提前多少秒视为过期，避免请求发出途中 token 失效
    """

    def __init__(self, fetch_token: Callable[[], tuple[str, float]], *, leeway_seconds: float = 60.0) -> None:
        self._fetch_token = fetch_token
        self._leeway_seconds = leeway_seconds
        self._credential: Credential | None = None

    def is_expired(self) -> bool:
        if self._credential is None:
            return True
        return self._credential.is_expired(now=utc_now(), leeway_seconds=self._leeway_seconds)

    def current_credential(self) -> Credential:
        if self._credential is None:
            raise AuthError("no credential has been obtained yet")
        return self._credential

    def refresh(self) -> Credential:
        try:
            token, expires_in = self._fetch_token()
        except Exception as e:  # noqa: BLE001
            raise AuthError(f"token fetch failed: {type(e).__name__}: {e}") from e
        if not token:
            raise AuthError("token fetch returned an empty token")
        self._credential = Credential.expiring_in(token, float(expires_in))
        return self._credential


class AuthSession:
    """
    Authenticator 的单一持有句柄，内部用锁保护刷新。

    - credential()：过期则刷新（双重检查，并发下只刷新一次）
    - invalidate(stale)：服务端返回 401 时调用；若凭证已被其他请求换新则直接复用
    """

    def __init__(self, authenticator: Authenticator) -> None:
        self._authenticator = authenticator
        self._lock = threading.Lock()
        self.refresh_count = 0

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    def credential(self) -> Credential:
        if not self._authenticator.is_expired():
            return self._current()
        with self._lock:
            if self._authenticator.is_expired():
                return self._refresh(reason="expired")
            return self._current()

    def invalidate(self, stale: Credential) -> Credential:
        with self._lock:
            current = self._current()
            if current.token != stale.token:
                return current
            return self._refresh(reason="rejected")

    def _current(self) -> Credential:
        try:
            return self._authenticator.current_credential()
        except Exception as e:  # noqa: BLE001
            raise AuthFailed(f"credential unavailable: {type(e).__name__}: {e}") from e

    def _refresh(self, *, reason: str) -> Credential:
        logger.info("credential refresh: reason=%s authenticator=%s", reason, type(self._authenticator).__name__)
        self.refresh_count += 1
        try:
            return self._authenticator.refresh()
        except Exception as e:  # noqa: BLE001
            logger.warning("credential refresh failed: reason=%s error=%s", reason, e)
            raise AuthFailed(f"credential refresh failed: {type(e).__name__}: {e}") from e
