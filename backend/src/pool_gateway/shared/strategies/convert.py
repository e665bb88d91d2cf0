"""Conversion between the Claude and OpenAI chat dialects.

Requests are converted from the client dialect into the provider's native
dialect before dispatch; responses and stream events are converted back.
Images, documents and thinking blocks pass through only where both sides
have an equivalent.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterator
from typing import Any

import orjson

from pool_gateway.domain.enums import Dialect
from pool_gateway.shared.strategies.base import text_of_content

_FINISH_TO_STOP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}
_STOP_TO_FINISH = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


def _loads_object(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


# ═══════════════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════════════
def _image_block_to_openai(block: dict[str, Any]) -> dict[str, Any] | None:
    source = block.get("source") or {}
    if source.get("type") == "base64":
        url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
    elif source.get("type") == "url":
        url = source.get("url", "")
    else:
        return None
    return {"type": "image_url", "image_url": {"url": url}}


def claude_request_to_openai(body: dict[str, Any]) -> dict[str, Any]:
    messages: list[dict[str, Any]] = []
    system = text_of_content(body.get("system"))
    if system:
        messages.append({"role": "system", "content": system})

    for msg in body.get("messages") or []:
        role = msg.get("role", "user")
        content = msg.get("content", "")
        if isinstance(content, str):
            messages.append({"role": role, "content": content})
            continue

        parts: list[dict[str, Any]] = []
        tool_calls: list[dict[str, Any]] = []
        for block in content or []:
            kind = block.get("type")
            if kind == "text":
                parts.append({"type": "text", "text": block.get("text", "")})
            elif kind == "image":
                image = _image_block_to_openai(block)
                if image is not None:
                    parts.append(image)
            elif kind == "tool_use":
                tool_calls.append(
                    {
                        "id": block.get("id", ""),
                        "type": "function",
                        "function": {
                            "name": block.get("name", ""),
                            "arguments": _dumps(block.get("input") or {}),
                        },
                    }
                )
            elif kind == "tool_result":
                # Tool results are separate messages in OpenAI
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id", ""),
                        "content": text_of_content(block.get("content")),
                    }
                )

        if tool_calls:
            text = "\n".join(p["text"] for p in parts if p["type"] == "text")
            messages.append({"role": role, "content": text or None, "tool_calls": tool_calls})
        elif len(parts) == 1 and parts[0]["type"] == "text":
            messages.append({"role": role, "content": parts[0]["text"]})
        elif parts:
            messages.append({"role": role, "content": parts})

    out: dict[str, Any] = {"model": body.get("model"), "messages": messages}
    for key in ("max_tokens", "temperature", "top_p", "stream"):
        if key in body:
            out[key] = body[key]
    if body.get("stop_sequences"):
        out["stop"] = body["stop_sequences"]
    if body.get("tools"):
        out["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.get("name", ""),
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {},
                },
            }
            for tool in body["tools"]
        ]
    choice = body.get("tool_choice")
    if choice:
        kind = choice.get("type", "auto")
        if kind == "any":
            out["tool_choice"] = "required"
        elif kind == "tool":
            out["tool_choice"] = {"type": "function", "function": {"name": choice.get("name", "")}}
        elif kind in ("auto", "none"):
            out["tool_choice"] = kind
    return out


def _openai_part_to_claude(part: dict[str, Any]) -> dict[str, Any] | None:
    if part.get("type") == "text":
        return {"type": "text", "text": part.get("text", "")}
    if part.get("type") == "image_url":
        url = (part.get("image_url") or {}).get("url", "")
        if url.startswith("data:") and ";base64," in url:
            header, data = url.split(";base64,", 1)
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": header[5:], "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}
    return None


def openai_request_to_claude(body: dict[str, Any]) -> dict[str, Any]:
    system_parts: list[str] = []
    messages: list[dict[str, Any]] = []

    def _append(role: str, blocks: list[dict[str, Any]]) -> None:
        # Claude requires alternating roles; merge consecutive same-role turns
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    for msg in body.get("messages") or []:
        role = msg.get("role")
        content = msg.get("content")
        if role in ("system", "developer"):
            text = text_of_content(content)
            if text:
                system_parts.append(text)
            continue

        if role == "tool":
            _append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": msg.get("tool_call_id", ""),
                        "content": text_of_content(content),
                    }
                ],
            )
            continue

        blocks: list[dict[str, Any]] = []
        if isinstance(content, str):
            if content:
                blocks.append({"type": "text", "text": content})
        elif isinstance(content, list):
            blocks.extend(b for b in (_openai_part_to_claude(p) for p in content) if b is not None)

        for call in msg.get("tool_calls") or []:
            fn = call.get("function") or {}
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}",
                    "name": fn.get("name", ""),
                    "input": _loads_object(fn.get("arguments")),
                }
            )
        if blocks:
            _append("assistant" if role == "assistant" else "user", blocks)

    out: dict[str, Any] = {
        "model": body.get("model"),
        "messages": messages,
        "max_tokens": body.get("max_tokens") or body.get("max_completion_tokens") or 4096,
    }
    if system_parts:
        out["system"] = "\n".join(system_parts)
    for key in ("temperature", "top_p", "stream"):
        if key in body:
            out[key] = body[key]
    stop = body.get("stop")
    if stop:
        out["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
    if body.get("tools"):
        out["tools"] = [
            {
                "name": (tool.get("function") or {}).get("name", ""),
                "description": (tool.get("function") or {}).get("description", ""),
                "input_schema": (tool.get("function") or {}).get("parameters")
                or {"type": "object", "properties": {}},
            }
            for tool in body["tools"]
            if tool.get("type", "function") == "function"
        ]
    choice = body.get("tool_choice")
    if choice == "required":
        out["tool_choice"] = {"type": "any"}
    elif choice in ("auto", "none"):
        out["tool_choice"] = {"type": choice}
    elif isinstance(choice, dict):
        out["tool_choice"] = {"type": "tool", "name": (choice.get("function") or {}).get("name", "")}
    return out


# ═══════════════════════════════════════════════════════════════
#  Full responses
# ═══════════════════════════════════════════════════════════════
def openai_response_to_claude(response: dict[str, Any], model: str) -> dict[str, Any]:
    choice = (response.get("choices") or [{}])[0]
    message = choice.get("message") or {}
    content: list[dict[str, Any]] = []

    text = text_of_content(message.get("content"))
    if text:
        content.append({"type": "text", "text": text})
    for call in message.get("tool_calls") or []:
        fn = call.get("function") or {}
        content.append(
            {
                "type": "tool_use",
                "id": call.get("id", ""),
                "name": fn.get("name", ""),
                "input": _loads_object(fn.get("arguments")),
            }
        )

    usage = response.get("usage") or {}
    return {
        "id": response.get("id") or f"msg_{uuid.uuid4().hex[:24]}",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": content,
        "stop_reason": _FINISH_TO_STOP.get(choice.get("finish_reason") or "stop", "end_turn"),
        "stop_sequence": None,
        "usage": {
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
        },
    }


def claude_response_to_openai(response: dict[str, Any], model: str) -> dict[str, Any]:
    texts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in response.get("content") or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": _dumps(block.get("input") or {}),
                    },
                }
            )

    message: dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if tool_calls:
        message["tool_calls"] = tool_calls

    usage = response.get("usage") or {}
    prompt_tokens = usage.get("input_tokens", 0)
    completion_tokens = usage.get("output_tokens", 0)
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex[:24]}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": _STOP_TO_FINISH.get(response.get("stop_reason") or "end_turn", "stop"),
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


# ═══════════════════════════════════════════════════════════════
#  Streams
# ═══════════════════════════════════════════════════════════════
class StreamConverter:
    """Stateful per-stream event translator.  The identity converter passes through."""

    def __init__(self, model: str) -> None:
        self.model = model

    def feed(self, event: dict[str, Any]) -> Iterator[dict[str, Any]]:
        yield event

    def finish(self) -> Iterator[dict[str, Any]]:
        yield from ()


class ClaudeToOpenAIStream(StreamConverter):
    """Claude stream events in, OpenAI ``chat.completion.chunk`` objects out."""

    def __init__(self, model: str) -> None:
        super().__init__(model)
        self._id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
        self._created = int(time.time())
        self._tool_index: dict[int, int] = {}
        self._finished = False

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return {
            "id": self._id,
            "object": "chat.completion.chunk",
            "created": self._created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def feed(self, event: dict[str, Any]) -> Iterator[dict[str, Any]]:
        kind = event.get("type")
        if kind == "message_start":
            yield self._chunk({"role": "assistant", "content": ""})
        elif kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                position = len(self._tool_index)
                self._tool_index[event.get("index", 0)] = position
                yield self._chunk(
                    {
                        "tool_calls": [
                            {
                                "index": position,
                                "id": block.get("id", ""),
                                "type": "function",
                                "function": {"name": block.get("name", ""), "arguments": ""},
                            }
                        ]
                    }
                )
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                yield self._chunk({"content": delta.get("text", "")})
            elif delta.get("type") == "input_json_delta":
                position = self._tool_index.get(event.get("index", 0), 0)
                yield self._chunk(
                    {
                        "tool_calls": [
                            {"index": position, "function": {"arguments": delta.get("partial_json", "")}}
                        ]
                    }
                )
        elif kind == "message_delta":
            stop = (event.get("delta") or {}).get("stop_reason") or "end_turn"
            self._finished = True
            yield self._chunk({}, _STOP_TO_FINISH.get(stop, "stop"))

    def finish(self) -> Iterator[dict[str, Any]]:
        if not self._finished:
            self._finished = True
            yield self._chunk({}, "tool_calls" if self._tool_index else "stop")


class OpenAIToClaudeStream(StreamConverter):
    """OpenAI chunks in, Claude message events out.

    Emits ``message_start`` on the first chunk and closes the open content
    block before opening another; ``finish`` emits ``message_delta`` and
    ``message_stop``.
    """

    def __init__(self, model: str) -> None:
        super().__init__(model)
        self._started = False
        self._block_index = -1
        self._open_kind: str | None = None
        self._tool_blocks: dict[int, int] = {}
        self._stop_reason = "end_turn"
        self._output_tokens = 0

    def _start_block(self, block: dict[str, Any]) -> Iterator[dict[str, Any]]:
        yield from self._close_block()
        self._block_index += 1
        self._open_kind = block["type"]
        yield {"type": "content_block_start", "index": self._block_index, "content_block": block}

    def _close_block(self) -> Iterator[dict[str, Any]]:
        if self._open_kind is not None:
            yield {"type": "content_block_stop", "index": self._block_index}
            self._open_kind = None

    def feed(self, event: dict[str, Any]) -> Iterator[dict[str, Any]]:
        if not self._started:
            self._started = True
            yield {
                "type": "message_start",
                "message": {
                    "id": f"msg_{uuid.uuid4().hex[:24]}",
                    "type": "message",
                    "role": "assistant",
                    "model": self.model,
                    "content": [],
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            }

        usage = event.get("usage") or {}
        if usage.get("completion_tokens"):
            self._output_tokens = usage["completion_tokens"]

        for choice in event.get("choices") or []:
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                if self._open_kind != "text":
                    yield from self._start_block({"type": "text", "text": ""})
                yield {
                    "type": "content_block_delta",
                    "index": self._block_index,
                    "delta": {"type": "text_delta", "text": text},
                }

            for call in delta.get("tool_calls") or []:
                position = call.get("index", 0)
                fn = call.get("function") or {}
                if position not in self._tool_blocks:
                    yield from self._start_block(
                        {
                            "type": "tool_use",
                            "id": call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}",
                            "name": fn.get("name", ""),
                            "input": {},
                        }
                    )
                    self._tool_blocks[position] = self._block_index
                if fn.get("arguments"):
                    yield {
                        "type": "content_block_delta",
                        "index": self._tool_blocks[position],
                        "delta": {"type": "input_json_delta", "partial_json": fn["arguments"]},
                    }

            finish = choice.get("finish_reason")
            if finish:
                self._stop_reason = _FINISH_TO_STOP.get(finish, "end_turn")

    def finish(self) -> Iterator[dict[str, Any]]:
        if not self._started:
            yield from self.feed({})
        yield from self._close_block()
        if self._tool_blocks and self._stop_reason == "end_turn":
            self._stop_reason = "tool_use"
        yield {
            "type": "message_delta",
            "delta": {"stop_reason": self._stop_reason, "stop_sequence": None},
            "usage": {"output_tokens": self._output_tokens},
        }
        yield {"type": "message_stop"}


# ═══════════════════════════════════════════════════════════════
#  Dispatch by dialect pair
# ═══════════════════════════════════════════════════════════════
def convert_request(body: dict[str, Any], *, source: Dialect, target: Dialect) -> dict[str, Any]:
    if source == target:
        return body
    if source == Dialect.CLAUDE:
        return claude_request_to_openai(body)
    return openai_request_to_claude(body)


def convert_response(
    response: dict[str, Any], *, source: Dialect, target: Dialect, model: str
) -> dict[str, Any]:
    """Convert a provider-native response (``source``) into the client dialect."""
    if source == target:
        return response
    if source == Dialect.OPENAI:
        return openai_response_to_claude(response, model)
    return claude_response_to_openai(response, model)


def stream_converter(*, source: Dialect, target: Dialect, model: str) -> StreamConverter:
    if source == target:
        return StreamConverter(model)
    if source == Dialect.OPENAI:
        return OpenAIToClaudeStream(model)
    return ClaudeToOpenAIStream(model)
