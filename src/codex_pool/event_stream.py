# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Assistant event stream.

A push-style producer (``push`` / ``end``) observed by the caller as a
finite, non-restartable async iterator. The stream completes on the first
``done`` or ``error`` event, or when ``end`` is called.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, Optional

from .types import now_ms

TERMINAL_EVENT_TYPES = ("done", "error")

_END = object()


def is_terminal_event(event: Dict[str, Any]) -> bool:
    return event.get("type") in TERMINAL_EVENT_TYPES


def create_error_message(model: Dict[str, Any], message: str) -> Dict[str, Any]:
    """Assistant message used as the payload of a synthetic error event."""
    return {
        "role": "assistant",
        "content": [],
        "api": model.get("api"),
        "provider": model.get("provider"),
        "model": model.get("id"),
        "usage": {
            "input": 0,
            "output": 0,
            "cache_read": 0,
            "cache_write": 0,
            "total_tokens": 0,
        },
        "stop_reason": "error",
        "error_message": message,
        "timestamp": now_ms(),
    }


def create_error_event(
    model: Dict[str, Any], message: str, reason: str = "error"
) -> Dict[str, Any]:
    error = create_error_message(model, message)
    if reason == "aborted":
        error["stop_reason"] = "aborted"
    return {"type": "error", "reason": reason, "error": error}


class AssistantEventStream:
    """Single-consumer event queue with a terminal result."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False
        self._result: asyncio.Future = asyncio.get_running_loop().create_future()
        self._consumed = False
        # Producer task driving this stream, if any
        self.task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._done

    def push(self, event: Dict[str, Any]) -> None:
        if self._done:
            return

        if is_terminal_event(event):
            self._done = True
            if not self._result.done():
                payload = event.get("message") if event["type"] == "done" else event.get("error")
                self._result.set_result(payload)

        self._queue.put_nowait(event)
        if self._done:
            self._queue.put_nowait(_END)

    def end(self, result: Optional[Dict[str, Any]] = None) -> None:
        if not self._result.done():
            self._result.set_result(result)
        if self._done:
            return
        self._done = True
        self._queue.put_nowait(_END)

    async def result(self) -> Optional[Dict[str, Any]]:
        """Final assistant message (from ``done``) or error message (from ``error``)."""
        return await self._result

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        if self._consumed:
            raise RuntimeError("AssistantEventStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item
