"""
Helpers for invoking user callbacks.

Callbacks may be plain functions or coroutine functions; both are
accepted everywhere a hook is configured.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def notify(callback: Callable[..., Any] | None, *args: Any, name: str = "callback") -> None:
    """
    Invoke a notification callback, logging instead of raising on failure.

    Used for observers (task start/complete/error, state listeners) whose
    failure must not change the outcome of the work being observed.
    """
    if callback is None:
        return
    try:
        await maybe_await(callback(*args))
    except Exception as e:
        logger.error(f"{name} raised {type(e).__name__}: {e}")
