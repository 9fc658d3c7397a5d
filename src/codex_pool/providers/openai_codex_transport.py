# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/providers/openai_codex_transport.py

import asyncio
import copy
import json
import logging
import os
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import httpx

from ..config import DEFAULT_API_BASE
from ..error_handler import get_error_message
from ..types import now_ms
from ..utils.openai_codex_jwt import account_id_from_token

lib_logger = logging.getLogger("codex_pool")

RESPONSES_ENDPOINT_PATH = "/codex/responses"
DEFAULT_INSTRUCTIONS = "You are a helpful assistant."


# =============================================================================
# Request mapping
# =============================================================================


def _extract_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                if item.get("type") in ("text", "input_text", "output_text"):
                    parts.append(item["text"])
        return "\n".join(parts)
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    return json.dumps(content)


def _convert_user_content(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        parts: List[Dict[str, Any]] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type in ("text", "input_text") and isinstance(item.get("text"), str):
                parts.append({"type": "input_text", "text": item["text"]})
            elif item_type == "image":
                data = item.get("data")
                mime_type = item.get("mime_type") or "image/png"
                if isinstance(data, str) and data:
                    parts.append(
                        {
                            "type": "input_image",
                            "image_url": f"data:{mime_type};base64,{data}",
                            "detail": "auto",
                        }
                    )
        if parts:
            return parts

    return [{"type": "input_text", "text": _extract_text(content)}]


def convert_context_to_codex_input(
    context: Dict[str, Any],
) -> Tuple[str, List[Dict[str, Any]]]:
    """Map a conversation context to Codex ``instructions`` + ``input`` items."""
    instructions: List[str] = []
    system_prompt = context.get("system_prompt")
    if isinstance(system_prompt, str) and system_prompt.strip():
        instructions.append(system_prompt.strip())

    codex_input: List[Dict[str, Any]] = []

    for message in context.get("messages") or []:
        role = message.get("role")
        content = message.get("content")

        if role in ("system", "developer"):
            text = _extract_text(content)
            if text.strip():
                instructions.append(text.strip())
            continue

        if role == "user":
            codex_input.append({"role": "user", "content": _convert_user_content(content)})
            continue

        if role == "assistant":
            text = _extract_text(content)
            if text.strip():
                codex_input.append(
                    {"role": "assistant", "content": [{"type": "output_text", "text": text}]}
                )
            for tool_call in message.get("tool_calls") or []:
                if not isinstance(tool_call, dict):
                    continue
                arguments = tool_call.get("arguments")
                if not isinstance(arguments, str):
                    arguments = json.dumps(arguments or {})
                if isinstance(tool_call.get("id"), str) and isinstance(tool_call.get("name"), str):
                    codex_input.append(
                        {
                            "type": "function_call",
                            "call_id": tool_call["id"],
                            "name": tool_call["name"],
                            "arguments": arguments,
                        }
                    )
            continue

        if role in ("tool", "tool_result"):
            call_id = message.get("tool_call_id")
            if isinstance(call_id, str) and call_id:
                codex_input.append(
                    {
                        "type": "function_call_output",
                        "call_id": call_id,
                        "output": _extract_text(content),
                    }
                )

    # Codex endpoint requires non-empty instructions
    instructions_text = "\n\n".join(instructions).strip() or DEFAULT_INSTRUCTIONS
    if not codex_input:
        codex_input = [{"role": "user", "content": [{"type": "input_text", "text": ""}]}]

    return instructions_text, codex_input


def _convert_tools(tools: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(tools, list) or not tools:
        return None

    converted: List[Dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, dict) or not isinstance(tool.get("name"), str):
            continue
        schema = tool.get("parameters")
        schema = copy.deepcopy(schema) if isinstance(schema, dict) else {
            "type": "object",
            "properties": {},
        }
        converted.append(
            {
                "type": "function",
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": schema,
            }
        )
    return converted or None


def build_codex_payload(
    model: Dict[str, Any], context: Dict[str, Any], options: Dict[str, Any]
) -> Dict[str, Any]:
    instructions, codex_input = convert_context_to_codex_input(context)

    payload: Dict[str, Any] = {
        "model": model.get("id"),
        "stream": True,  # Endpoint currently requires stream=true
        "store": False,
        "instructions": instructions,
        "input": codex_input,
        "text": {"verbosity": os.getenv("CODEX_POOL_TEXT_VERBOSITY", "medium")},
    }

    if options.get("temperature") is not None:
        payload["temperature"] = options["temperature"]

    reasoning = options.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        payload["reasoning"] = {"effort": reasoning, "summary": "auto"}

    tools = _convert_tools(context.get("tools"))
    if tools:
        payload["tools"] = tools
        payload["tool_choice"] = "auto"
        payload["parallel_tool_calls"] = True

    session_id = options.get("session_id")
    if isinstance(session_id, str) and session_id:
        payload["prompt_cache_key"] = session_id

    return payload


def build_request_headers(
    *,
    access_token: str,
    account_id: Optional[str],
    extra_headers: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "OpenAI-Beta": "responses=experimental",
        "originator": "pi",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
        "User-Agent": "codex-pool",
    }
    if account_id:
        headers["chatgpt-account-id"] = account_id
    if extra_headers:
        headers.update({k: str(v) for k, v in extra_headers.items()})
    return headers


# =============================================================================
# SSE parsing + event translation
# =============================================================================


async def iter_sse_events(response: httpx.Response) -> AsyncGenerator[Dict[str, Any], None]:
    """Parse an SSE body into JSON event dictionaries."""
    data_lines: List[str] = []

    async for line in response.aiter_lines():
        if line == "":
            if not data_lines:
                continue
            payload = "\n".join(data_lines).strip()
            data_lines = []
            if payload == "[DONE]":
                return
            if not payload:
                continue
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                lib_logger.debug(f"Codex SSE non-JSON payload ignored: {payload[:200]}")
                continue
            if isinstance(parsed, dict):
                yield parsed
            continue

        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    # Flush trailing event if stream closes without blank line
    payload = "\n".join(data_lines).strip()
    if payload and payload != "[DONE]":
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            return
        if isinstance(parsed, dict):
            yield parsed


class CodexEventTranslator:
    """
    Translates Codex Responses SSE events into assistant stream events.

    Produced event types: ``start``, ``text_delta``, ``toolcall_delta``,
    ``done`` and ``error``. Every event carries the accumulated assistant
    message so far.
    """

    def __init__(self, model: Dict[str, Any]):
        self.message: Dict[str, Any] = {
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
            "stop_reason": "stop",
            "timestamp": now_ms(),
        }
        self._tool_calls: Dict[str, Dict[str, Any]] = {}
        # Argument events reference the output item id, not the call id
        self._item_to_call: Dict[str, str] = {}
        self._started = False

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self.message)

    def _text_block(self) -> Dict[str, Any]:
        content = self.message["content"]
        if content and content[-1].get("type") == "text":
            return content[-1]
        block = {"type": "text", "text": ""}
        content.append(block)
        return block

    def _tool_block(self, call_id: str, name: str = "") -> Dict[str, Any]:
        block = self._tool_calls.get(call_id)
        if block is None:
            block = {"type": "tool_call", "id": call_id, "name": name, "arguments": ""}
            self._tool_calls[call_id] = block
            self.message["content"].append(block)
        elif name and not block["name"]:
            block["name"] = name
        return block

    def _call_id(self, event: Dict[str, Any]) -> Optional[str]:
        call_id = event.get("call_id")
        if isinstance(call_id, str) and call_id:
            return call_id
        item_id = event.get("item_id") or event.get("id")
        if isinstance(item_id, str) and item_id:
            return self._item_to_call.get(item_id, item_id)
        return None

    def error_event(self, message: str, reason: str = "error") -> Dict[str, Any]:
        self.message["stop_reason"] = reason
        self.message["error_message"] = message
        return {"type": "error", "reason": reason, "error": self._snapshot()}

    def start_event(self) -> Optional[Dict[str, Any]]:
        if self._started:
            return None
        self._started = True
        return {"type": "start", "partial": self._snapshot()}

    def _apply_usage(self, response: Dict[str, Any]) -> None:
        usage = response.get("usage")
        if not isinstance(usage, dict):
            return
        details = usage.get("input_tokens_details") or {}
        cached = int(details.get("cached_tokens", 0) or 0) if isinstance(details, dict) else 0
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        self.message["usage"].update(
            {
                "input": input_tokens - cached,
                "output": int(usage.get("output_tokens", 0) or 0),
                "cache_read": cached,
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            }
        )

    def process_event(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        event_type = event.get("type")
        if not isinstance(event_type, str):
            return events

        if event_type == "response.output_text.delta" and isinstance(event.get("delta"), str):
            block = self._text_block()
            block["text"] += event["delta"]
            events.append(
                {"type": "text_delta", "delta": event["delta"], "partial": self._snapshot()}
            )
            return events

        if event_type == "response.output_item.added":
            item = event.get("item")
            if isinstance(item, dict) and item.get("type") == "function_call":
                call_id = self._call_id(item)
                if call_id:
                    if isinstance(item.get("id"), str) and item["id"]:
                        self._item_to_call[item["id"]] = call_id
                    name = item.get("name") if isinstance(item.get("name"), str) else ""
                    self._tool_block(call_id, name)
            return events

        if event_type == "response.function_call_arguments.delta":
            call_id = self._call_id(event)
            delta = event.get("delta")
            if call_id and isinstance(delta, str):
                block = self._tool_block(call_id)
                block["arguments"] += delta
                events.append(
                    {"type": "toolcall_delta", "delta": delta, "partial": self._snapshot()}
                )
            return events

        if event_type == "response.function_call_arguments.done":
            call_id = self._call_id(event)
            if call_id and isinstance(event.get("arguments"), str):
                self._tool_block(call_id)["arguments"] = event["arguments"]
            return events

        if event_type in ("error", "response.failed"):
            payload = event.get("error")
            if not isinstance(payload, dict):
                response = event.get("response")
                payload = response.get("error") if isinstance(response, dict) else None
            payload = payload if isinstance(payload, dict) else {}
            message = payload.get("message")
            if not isinstance(message, str) or not message:
                message = f"Codex stream failed ({event_type})"
            code = payload.get("code") or payload.get("type")
            if isinstance(code, str) and code and code not in message:
                message = f"{code}: {message}"
            events.append(self.error_event(message))
            return events

        if event_type in ("response.completed", "response.incomplete", "response.done"):
            response = event.get("response") if isinstance(event.get("response"), dict) else {}
            self._apply_usage(response)

            if self._tool_calls:
                stop_reason = "tool_use"
            elif event_type == "response.incomplete" or response.get("status") == "incomplete":
                stop_reason = "length"
            else:
                stop_reason = "stop"
            self.message["stop_reason"] = stop_reason
            events.append({"type": "done", "reason": stop_reason, "message": self._snapshot()})
            return events

        # Ignore all other event families safely
        return events


# =============================================================================
# Stream function
# =============================================================================


async def stream_openai_codex_responses(
    model: Dict[str, Any],
    context: Dict[str, Any],
    options: Optional[Dict[str, Any]] = None,
) -> AsyncGenerator[Dict[str, Any], None]:
    """
    Call the Codex Responses endpoint once and yield assistant events.

    Never raises for upstream failures: HTTP errors, transport errors and
    upstream error events all become a single terminal ``error`` event. Not
    retried here; retries belong to the caller.
    """
    options = options or {}
    signal: Optional[asyncio.Event] = options.get("signal")
    translator = CodexEventTranslator(model)

    access_token = options.get("api_key")
    if not isinstance(access_token, str) or not access_token:
        yield translator.error_event("No API key provided for Codex request")
        return

    account_id = options.get("account_id") or account_id_from_token(access_token)
    base_url = (model.get("base_url") or DEFAULT_API_BASE).rstrip("/")
    url = f"{base_url}{RESPONSES_ENDPOINT_PATH}"
    headers = build_request_headers(
        access_token=access_token,
        account_id=account_id,
        extra_headers=model.get("headers"),
    )
    payload = build_codex_payload(model, context, options)
    timeout = httpx.Timeout(connect=30.0, read=300.0, write=30.0, pool=30.0)

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                if response.status_code >= 400:
                    raw_error = await response.aread()
                    error_text = raw_error.decode("utf-8", "replace")
                    yield translator.error_event(
                        f"HTTP {response.status_code}: {error_text[:1000]}"
                    )
                    return

                start = translator.start_event()
                if start:
                    yield start

                async for sse_event in iter_sse_events(response):
                    if signal is not None and signal.is_set():
                        yield translator.error_event("Request was aborted", reason="aborted")
                        return
                    for out in translator.process_event(sse_event):
                        yield out
                        if out["type"] in ("done", "error"):
                            return
    except httpx.HTTPError as e:
        lib_logger.warning(f"Codex transport error: {e}")
        yield translator.error_event(f"Codex request failed: {get_error_message(e)}")
