# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/utils/abort.py

import asyncio
from typing import Awaitable, Optional, TypeVar

from ..error_handler import RequestAbortedError

T = TypeVar("T")


async def run_abortable(
    awaitable: Awaitable[T],
    signal: Optional[asyncio.Event],
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``awaitable`` unless ``signal`` fires first.

    On abort the pending work is cancelled and ``RequestAbortedError`` is
    raised. ``timeout`` raises ``asyncio.TimeoutError`` as ``wait_for`` does.
    """
    if signal is None:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout)

    if signal.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestAbortedError()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait(
            {work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    # Let the cancellation land so generators are no longer running
    await asyncio.wait({work})
    if waiter in done:
        raise RequestAbortedError()
    raise asyncio.TimeoutError()
