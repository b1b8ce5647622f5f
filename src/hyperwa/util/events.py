from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Awaitable[None]] | Callable[..., None]


class HookRegistry:
    """
    Async-friendly registry of named hooks.

    - `on(event, fn)` registers a listener (sync or async).
    - `emit(event, *args)` awaits listeners in registration order. A failing
      listener is logged and skipped so one consumer cannot break the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, *args: Any) -> int:
        """Run every listener for `event`; returns how many completed without error."""

        ok = 0
        for listener in list(self._listeners.get(event, [])):
            try:
                res = listener(*args)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("hook %r for %s failed", listener, event)
                continue
            ok += 1
        return ok
