# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Streaming retry wrapper.

Serves one logical streaming request from the account pool. Each attempt
selects an account (manual pin first, automatic otherwise), makes sure its
token is valid, and calls the upstream stream function exactly once.

A quota error seen before any event has been forwarded on the attempt puts
the account into cooldown and moves on to another account. Any error after
output has been forwarded is passed through unchanged, since a retry would
repeat content the caller already received.
"""

import asyncio
import logging
from typing import Any, AsyncIterable, Callable, Dict, Optional, Set, Tuple

from .account_manager import AccountManager
from .config import DEFAULT_MAX_RETRIES
from .error_handler import (
    NoAvailableAccountsError,
    RequestAbortedError,
    get_error_message,
    is_quota_error_message,
    mask_credential,
)
from .event_stream import AssistantEventStream, create_error_event
from .types import Account
from .utils.abort import run_abortable

lib_logger = logging.getLogger("codex_pool")

ACCOUNT_HEADER = "X-Codex-Pool-Account"
UPSTREAM_PROVIDER_ID = "openai-codex"

StreamFunction = Callable[
    [Dict[str, Any], Dict[str, Any], Dict[str, Any]], AsyncIterable[Dict[str, Any]]
]

# Attempt outcomes
_FINISHED = "finished"
_RETRY = "retry"


def _event_error_message(event: Dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("error_message") or error.get("message")
        if isinstance(message, str):
            return message
        return ""
    if isinstance(error, str):
        return error
    message = event.get("error_message")
    return message if isinstance(message, str) else ""


def _rewrite_provenance(event: Dict[str, Any], model: Dict[str, Any]) -> Dict[str, Any]:
    """Report the pool's provider identity instead of the upstream one."""
    rewritten = dict(event)
    for key in ("partial", "message", "error"):
        payload = rewritten.get(key)
        if isinstance(payload, dict):
            payload = dict(payload)
            payload["provider"] = model.get("provider")
            payload["model"] = model.get("id")
            rewritten[key] = payload
    return rewritten


async def _close_inner(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except (RuntimeError, StopAsyncIteration) as e:
        lib_logger.debug(f"Upstream stream did not close cleanly: {e}")


class _RequestRunner:
    """Attempt loop for a single logical request."""

    def __init__(
        self,
        manager: AccountManager,
        stream_fn: StreamFunction,
        max_retries: int,
        model: Dict[str, Any],
        context: Dict[str, Any],
        options: Optional[Dict[str, Any]],
        stream: AssistantEventStream,
    ):
        self.manager = manager
        self.stream_fn = stream_fn
        self.max_retries = max_retries
        self.model = model
        self.context = context
        self.options = dict(options or {})
        self.signal: Optional[asyncio.Event] = self.options.pop("signal", None)
        self.stream = stream
        self.excluded: Set[str] = set()

    async def _select_account(self) -> Tuple[Account, bool]:
        manual = self.manager.get_available_manual_account()
        if manual is not None and manual.email not in self.excluded:
            return manual, True

        account = await self.manager.activate_best(
            exclude_emails=self.excluded, signal=self.signal
        )
        if account is None:
            raise NoAvailableAccountsError()
        return account, False

    def _build_inner_call(
        self, account: Account, token: str, attempt_signal: asyncio.Event
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        inner_model = dict(self.model)
        inner_model["provider"] = UPSTREAM_PROVIDER_ID
        inner_model["headers"] = {
            **(self.model.get("headers") or {}),
            ACCOUNT_HEADER: account.email,
        }
        inner_options = {
            **self.options,
            "api_key": token,
            "account_id": account.account_id,
            "signal": attempt_signal,
        }
        return inner_model, inner_options

    async def _run_attempt(self, account: Account, token: str, attempt: int) -> str:
        attempt_signal = asyncio.Event()
        inner_model, inner_options = self._build_inner_call(account, token, attempt_signal)

        inner = self.stream_fn(inner_model, self.context, inner_options)
        iterator = inner.__aiter__()
        forwarded_any = False

        try:
            while True:
                try:
                    event = await run_abortable(iterator.__anext__(), self.signal)
                except StopAsyncIteration:
                    lib_logger.debug("Upstream stream ended without a terminal event")
                    return _FINISHED
                except RequestAbortedError:
                    attempt_signal.set()
                    raise

                event_type = event.get("type")

                if event_type == "error":
                    message = _event_error_message(event)
                    if (
                        is_quota_error_message(message)
                        and not forwarded_any
                        and attempt < self.max_retries
                    ):
                        lib_logger.warning(
                            f"Quota error on {mask_credential(account.email)} before output: "
                            f"{message[:200]}"
                        )
                        return _RETRY

                    self.stream.push(_rewrite_provenance(event, self.model))
                    return _FINISHED

                forwarded_any = True
                self.stream.push(_rewrite_provenance(event, self.model))

                if event_type == "done":
                    return _FINISHED
        finally:
            await _close_inner(iterator)

    async def run(self) -> None:
        try:
            for attempt in range(self.max_retries + 1):
                if self.signal is not None and self.signal.is_set():
                    raise RequestAbortedError()

                account, is_manual = await self._select_account()
                lib_logger.info(
                    f"Attempting stream with account {mask_credential(account.email)} "
                    f"(Attempt {attempt + 1}/{self.max_retries + 1}"
                    f"{', manual' if is_manual else ''})"
                )

                token = await run_abortable(
                    self.manager.ensure_valid_token(account), self.signal
                )

                outcome = await self._run_attempt(account, token, attempt)
                if outcome != _RETRY:
                    return

                await self.manager.handle_quota_exceeded(account, signal=self.signal)
                self.excluded.add(account.email)
                if is_manual:
                    self.manager.clear_manual_account()

        except asyncio.CancelledError:
            raise
        except RequestAbortedError as e:
            lib_logger.info("Stream request aborted by caller")
            self.stream.push(create_error_event(self.model, str(e), reason="aborted"))
        except Exception as e:
            message = get_error_message(e)
            lib_logger.error(f"Codex pool request failed: {message}")
            self.stream.push(
                create_error_event(self.model, f"Codex pool failed: {message}")
            )
        finally:
            self.stream.end()


def create_stream_wrapper(
    manager: AccountManager,
    stream_fn: Optional[StreamFunction] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Callable[..., AssistantEventStream]:
    """
    Build ``stream_simple(model, context, options)`` backed by the pool.

    ``stream_fn`` defaults to the built-in Codex Responses transport. Must be
    called from a running event loop; the attempt loop runs as a task.
    """
    if stream_fn is None:
        from .providers.openai_codex_transport import stream_openai_codex_responses

        stream_fn = stream_openai_codex_responses

    def stream_simple(
        model: Dict[str, Any],
        context: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> AssistantEventStream:
        stream = AssistantEventStream()
        runner = _RequestRunner(
            manager, stream_fn, max_retries, model, context, options, stream
        )
        stream.task = asyncio.get_running_loop().create_task(runner.run())
        return stream

    return stream_simple
