from __future__ import annotations

import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar, Union

T = TypeVar("T")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_check(check: Callable[[], Any] | None, default: bool = True) -> bool:
    """Evaluate a sync or async boolean predicate such as a connectivity check."""
    if check is None:
        return default
    return bool(await maybe_await(check()))
