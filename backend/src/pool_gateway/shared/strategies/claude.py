"""Claude Messages API dialect."""

from __future__ import annotations

from typing import Any

from pool_gateway.domain.enums import Dialect
from pool_gateway.shared.strategies.base import (
    ProtocolStrategy,
    error_type_for_status,
    text_of_content,
)


class ClaudeStrategy(ProtocolStrategy):
    dialect = Dialect.CLAUDE

    def extract_response_text(self, response: dict[str, Any]) -> str:
        # Stream events
        if response.get("type") == "content_block_delta":
            delta = response.get("delta") or {}
            return delta.get("text", "") if delta.get("type") == "text_delta" else ""
        if response.get("type") == "content_block_start":
            block = response.get("content_block") or {}
            return block.get("text", "") if block.get("type") == "text" else ""
        # Full message
        return text_of_content(response.get("content"))

    def extract_prompt_text(self, body: dict[str, Any]) -> str:
        messages = body.get("messages") or []
        if not messages:
            return ""
        return text_of_content(messages[-1].get("content"))

    def extract_system_text(self, body: dict[str, Any]) -> str | None:
        system = body.get("system")
        if system is None:
            return None
        text = text_of_content(system)
        return text or None

    def _with_system_text(self, body: dict[str, Any], text: str) -> dict[str, Any]:
        body["system"] = text
        return body

    def error_body(self, status_code: int, message: str) -> dict[str, Any]:
        return {
            "type": "error",
            "error": {"type": error_type_for_status(status_code), "message": message},
        }

    def format_sse(self, event: dict[str, Any]) -> bytes:
        event_type = event.get("type", "message")
        return f"event: {event_type}\ndata: {self._json(event)}\n\n".encode()
