from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, Iterable, Mapping, Protocol, TypeVar

from .errors import MalformedResponse


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_timestamp(value: Any) -> int | None:
    """
    服务端的时间戳有时是整数、有时是浮点数（epoch 秒），统一截断为 int。

    也接受 RFC3339 字符串；无法识别时返回 None。
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        try:
            return int(float(value))
        except ValueError:
            pass
        try:
            return int(parse_rfc3339_datetime(value).timestamp())
        except ValueError:
            return None
    return None


@dataclass(frozen=True, slots=True)
class Credential:
    """
    访问凭证。

    token 为 None 表示匿名访问；expires_at 为 None 表示永不过期。
    """

    token: str | None
    expires_at: datetime | None = None

    @classmethod
    def anonymous(cls) -> Credential:
        return cls(token=None, expires_at=None)

    @classmethod
    def expiring_in(cls, token: str, seconds: float, *, now: datetime | None = None) -> Credential:
        base = now or utc_now()
        return cls(token=token, expires_at=base + timedelta(seconds=seconds))

    def is_expired(self, *, now: datetime | None = None, leeway_seconds: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        current = now or utc_now()
        return current >= self.expires_at - timedelta(seconds=leeway_seconds)

    def headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}


# 互斥的分页指令：同一请求只能带其中一个。
_EXCLUSIVE_CURSOR_PARAMS = ("after", "before")


@dataclass(frozen=True, slots=True)
class RequestSpec:
    """
    一次逻辑请求：method + path + 有序 query 参数。

    params 中值为 None 的参数会被丢弃；after/before 不能同时出现。
    """

    method: str
    path: str
    params: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        present = [k for k, _ in self.params if k in _EXCLUSIVE_CURSOR_PARAMS]
        if len(set(present)) > 1:
            raise ValueError(f"mutually exclusive pagination params: {', '.join(sorted(set(present)))}")

    @classmethod
    def get(cls, path: str, params: Mapping[str, Any] | Iterable[tuple[str, Any]] = ()) -> RequestSpec:
        items = params.items() if isinstance(params, Mapping) else params
        ordered = tuple((str(k), str(v)) for k, v in items if v is not None)
        return cls(method="GET", path=path, params=ordered)

    def with_params(self, **extra: Any) -> RequestSpec:
        """返回替换/追加参数后的新请求（保持原有顺序，新键追加在末尾）。"""
        updates = {k: str(v) for k, v in extra.items() if v is not None}
        dropped = {k for k, v in extra.items() if v is None}
        merged: list[tuple[str, str]] = []
        for k, v in self.params:
            if k in dropped:
                continue
            if k in updates:
                merged.append((k, updates.pop(k)))
            else:
                merged.append((k, v))
        merged.extend(updates.items())
        return RequestSpec(method=self.method, path=self.path, params=tuple(merged))


class Item(Protocol):
    """
    核心逻辑对条目的最小要求：稳定的唯一标识 + 排序键。

    分页与去重只依赖这两个字段，不关心具体资源类型。
    """

    @property
    def identifier(self) -> str: ...

    @property
    def order_key(self) -> Any: ...


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Page(Generic[T]):
    """
    一页 listing：有序条目 + 下一页 cursor。

    after 为 None 表示 listing 已到末尾。
    """

    items: tuple[T, ...]
    after: str | None = None
    before: str | None = None

    @property
    def is_last(self) -> bool:
        return self.after is None


@dataclass(frozen=True, slots=True)
class Thing:
    """
    通用条目：服务端返回的 {"kind": ..., "data": {...}} 原样保留。

    identifier 使用 fullname（data.name，如 t3_abc），缺失时退化为 data.id；
    order_key 使用创建时间（epoch 秒）。
    name 与 id 都缺失的条目无法去重，from_json 直接拒绝。
    """

    kind: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def identifier(self) -> str:
        name = self.data.get("name")
        if name:
            return str(name)
        raw_id = self.data.get("id")
        if raw_id and self.kind:
            return f"{self.kind}_{raw_id}"
        return str(raw_id or "")

    @property
    def order_key(self) -> int:
        ts = parse_timestamp(self.data.get("created_utc"))
        if ts is None:
            ts = parse_timestamp(self.data.get("created"))
        return ts or 0

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> Thing:
        data = obj.get("data")
        thing = cls(kind=str(obj.get("kind") or ""), data=data if isinstance(data, dict) else {})
        if not thing.identifier:
            raise MalformedResponse(f"{thing.kind or 'thing'} has neither name nor id")
        return thing
