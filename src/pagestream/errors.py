from __future__ import annotations


class PagestreamError(Exception):
    """pagestream 所有对外异常的基类。"""


class AuthError(Exception):
    """
    Authenticator 边界异常：凭证获取/刷新失败时由 Authenticator 抛出。

    调用方不会直接看到它，RequestPipeline 会将其归类为 AuthFailed。
    """


class TransportError(Exception):
    """
    Transport 边界异常：连接失败、超时等 I/O 层错误。

    调用方不会直接看到它，RequestPipeline 会重试并最终归类为 ServiceUnavailable。
    """


class RequestError(PagestreamError):
    """一次逻辑请求的终态失败。"""

    retryable = False


class AuthFailed(RequestError):
    pass


class ClientError(RequestError):
    """4xx（429 除外）：请求非法或无权限，不重试。"""

    def __init__(self, status: int, message: str | None = None) -> None:
        self.status = status
        super().__init__(message or f"client error: status={status}")


class ServiceUnavailable(RequestError):
    """5xx 或传输层故障，重试耗尽后抛出。"""

    retryable = True

    def __init__(self, message: str, *, status: int | None = None, attempts: int = 0) -> None:
        self.status = status
        self.attempts = attempts
        super().__init__(message)


class RateLimited(RequestError):
    """429 在重试上限内被透明处理；只有重试耗尽时才会抛出。"""

    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, attempts: int = 0) -> None:
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(message)


class MalformedResponse(RequestError):
    """响应体无法解析为预期的 listing 结构。"""


class RequestCancelled(RequestError):
    """退避等待期间收到取消信号。"""


class StreamFatal(PagestreamError):
    """
    StreamPoller 连续失败次数达到上限。

    last_error 为最后一次失败的 RequestError。
    """

    def __init__(self, failures: int, last_error: RequestError | None) -> None:
        self.failures = failures
        self.last_error = last_error
        super().__init__(f"stream stopped after {failures} consecutive failures: {last_error}")


class StreamClosed(PagestreamError):
    """StreamPoller 已取消，不会再产生新条目。"""
