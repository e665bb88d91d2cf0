"""OpenAI Chat Completions dialect."""

from __future__ import annotations

from typing import Any

from pool_gateway.domain.enums import Dialect
from pool_gateway.shared.strategies.base import (
    ProtocolStrategy,
    error_type_for_status,
    text_of_content,
)


class OpenAIStrategy(ProtocolStrategy):
    dialect = Dialect.OPENAI

    def extract_response_text(self, response: dict[str, Any]) -> str:
        choices = response.get("choices") or []
        if not choices:
            return ""
        choice = choices[0]
        # Stream chunks carry ``delta``, full responses ``message``
        payload = choice.get("delta") or choice.get("message") or {}
        return text_of_content(payload.get("content"))

    def extract_prompt_text(self, body: dict[str, Any]) -> str:
        messages = body.get("messages") or []
        if not messages:
            return ""
        return text_of_content(messages[-1].get("content"))

    def extract_system_text(self, body: dict[str, Any]) -> str | None:
        parts = [
            text_of_content(m.get("content"))
            for m in body.get("messages") or []
            if m.get("role") == "system"
        ]
        text = "\n".join(p for p in parts if p)
        return text or None

    def _with_system_text(self, body: dict[str, Any], text: str) -> dict[str, Any]:
        rest = [m for m in body.get("messages") or [] if m.get("role") != "system"]
        body["messages"] = [{"role": "system", "content": text}, *rest]
        return body

    def error_body(self, status_code: int, message: str) -> dict[str, Any]:
        error_type = "server_error" if status_code >= 500 else error_type_for_status(status_code)
        return {"error": {"message": message, "type": error_type, "code": status_code}}

    def format_sse(self, event: dict[str, Any]) -> bytes:
        return f"data: {self._json(event)}\n\n".encode()

    def stream_terminator(self) -> bytes:
        return b"data: [DONE]\n\n"
