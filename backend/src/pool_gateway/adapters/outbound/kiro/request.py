"""Claude Messages request → CodeWhisperer ``generateAssistantResponse`` body."""

from __future__ import annotations

import uuid
from typing import Any

from pool_gateway.shared.strategies.base import text_of_content

DEFAULT_MODEL = "claude-sonnet-4-20250514"
CHECK_MODEL = "claude-haiku-4-5"
ORIGIN_AI_EDITOR = "AI_EDITOR"
CHAT_TRIGGER_MANUAL = "MANUAL"
MAX_TOOL_OUTPUT_LENGTH = 64_000

KIRO_MODELS: tuple[str, ...] = (
    "claude-opus-4-5",
    "claude-opus-4-5-20251101",
    "claude-haiku-4-5",
    "claude-sonnet-4-5",
    "claude-sonnet-4-5-20250929",
    "claude-sonnet-4-20250514",
    "claude-3-7-sonnet-20250219",
)

MODEL_MAPPING: dict[str, str] = {
    "claude-opus-4-5": "claude-opus-4.5",
    "claude-opus-4-5-20251101": "claude-opus-4.5",
    "claude-haiku-4-5": "claude-haiku-4.5",
    "claude-sonnet-4-5": "CLAUDE_SONNET_4_5_20250929_V1_0",
    "claude-sonnet-4-5-20250929": "CLAUDE_SONNET_4_5_20250929_V1_0",
    "claude-sonnet-4-20250514": "CLAUDE_SONNET_4_20250514_V1_0",
}


def resolve_model_id(model: str | None) -> str:
    """Upstream model id; unknown names fall back to the default model."""
    return MODEL_MAPPING.get(model or "", MODEL_MAPPING[DEFAULT_MODEL])


def _tool_result(block: dict[str, Any]) -> dict[str, Any]:
    text = text_of_content(block.get("content"))
    if len(text) > MAX_TOOL_OUTPUT_LENGTH:
        dropped = len(text) - MAX_TOOL_OUTPUT_LENGTH
        text = f"{text[:MAX_TOOL_OUTPUT_LENGTH]}\n\n[... truncated {dropped} characters ...]"
    return {
        "content": [{"text": text}],
        "status": "error" if block.get("is_error") else "success",
        "toolUseId": block.get("tool_use_id", ""),
    }


def _image(block: dict[str, Any]) -> dict[str, Any] | None:
    source = block.get("source") or {}
    if source.get("type") != "base64":
        return None
    media_type = source.get("media_type") or "image/jpeg"
    return {"format": media_type.split("/")[-1], "source": {"bytes": source.get("data", "")}}


def _unique_results(results: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # The upstream rejects duplicate toolUseIds
    seen: set[str] = set()
    unique = []
    for result in results:
        if result["toolUseId"] not in seen:
            seen.add(result["toolUseId"])
            unique.append(result)
    return unique


def _user_message(
    message: dict[str, Any], model_id: str, *, prefix: str | None = None
) -> dict[str, Any]:
    content = message.get("content")
    text_parts: list[str] = []
    results: list[dict[str, Any]] = []
    images: list[dict[str, Any]] = []

    if isinstance(content, list):
        for block in content:
            kind = block.get("type")
            if kind == "text":
                text_parts.append(block.get("text", ""))
            elif kind == "tool_result":
                results.append(_tool_result(block))
            elif kind == "image":
                image = _image(block)
                if image is not None:
                    images.append(image)
    else:
        text_parts.append(text_of_content(content))

    text = "".join(text_parts)
    if prefix:
        text = f"{prefix}\n\n{text}" if text else prefix
    if not text.strip():
        text = "Tool results provided." if results else "Continue"

    user: dict[str, Any] = {"content": text, "modelId": model_id, "origin": ORIGIN_AI_EDITOR}
    if images:
        user["images"] = images
    if results:
        user["userInputMessageContext"] = {"toolResults": _unique_results(results)}
    return user


def _assistant_message(message: dict[str, Any]) -> dict[str, Any]:
    content = message.get("content")
    text = ""
    tool_uses: list[dict[str, Any]] = []
    if isinstance(content, list):
        for block in content:
            if block.get("type") == "text":
                text += block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_uses.append(
                    {
                        "input": block.get("input") or {},
                        "name": block.get("name", ""),
                        "toolUseId": block.get("id", ""),
                    }
                )
    else:
        text = text_of_content(content)

    if not text.strip():
        text = "Calling tools..." if tool_uses else "..."
    assistant: dict[str, Any] = {"content": text}
    if tool_uses:
        assistant["toolUses"] = tool_uses
    return assistant


def _tool_spec(tool: dict[str, Any]) -> dict[str, Any]:
    return {
        "toolSpecification": {
            "name": tool.get("name", ""),
            "description": tool.get("description") or "",
            "inputSchema": {"json": tool.get("input_schema") or {"type": "object", "properties": {}}},
        }
    }


def build_request(
    body: dict[str, Any],
    *,
    profile_arn: str | None = None,
    conversation_id: str | None = None,
) -> dict[str, Any]:
    """Build the upstream request from a Claude Messages body.

    Every message but the last goes to ``history``; the last becomes
    ``currentMessage``.  The system prompt is prepended to the first user
    turn.  A trailing assistant turn is moved into history and answered
    with a "Continue" user turn.
    """
    model_id = resolve_model_id(body.get("model"))
    system = text_of_content(body.get("system")) or None
    messages = [m for m in body.get("messages") or [] if m.get("role") in ("user", "assistant")]

    if not messages or messages[-1].get("role") == "assistant":
        messages = [*messages, {"role": "user", "content": "Continue"}]

    history: list[dict[str, Any]] = []
    pending_system = system
    if system and messages[0].get("role") != "user":
        history.append(
            {"userInputMessage": {"content": system, "modelId": model_id, "origin": ORIGIN_AI_EDITOR}}
        )
        pending_system = None

    for message in messages[:-1]:
        if message.get("role") == "user":
            history.append(
                {"userInputMessage": _user_message(message, model_id, prefix=pending_system)}
            )
            pending_system = None
        else:
            history.append({"assistantResponseMessage": _assistant_message(message)})

    current = _user_message(messages[-1], model_id, prefix=pending_system)
    if body.get("tools"):
        context = current.setdefault("userInputMessageContext", {})
        context["tools"] = [_tool_spec(tool) for tool in body["tools"]]

    state: dict[str, Any] = {
        "chatTriggerType": CHAT_TRIGGER_MANUAL,
        "conversationId": conversation_id or str(uuid.uuid4()),
        "currentMessage": {"userInputMessage": current},
    }
    if history:
        state["history"] = history

    request: dict[str, Any] = {"conversationState": state}
    if profile_arn:
        request["profileArn"] = profile_arn
    return request
