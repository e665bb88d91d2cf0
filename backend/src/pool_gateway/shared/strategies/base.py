"""Shared capability interface for per-dialect protocol strategies."""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson
import structlog

from pool_gateway.domain.enums import Dialect, SystemPromptMode
from pool_gateway.domain.exceptions import InvalidRequest

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelStreamInfo:
    model: str
    stream: bool


# ── System prompt files ──────────────────────────────────────
def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


async def read_prompt_file(path: str | Path) -> str | None:
    """Current file content; None when the file is missing or blank."""
    content = await asyncio.to_thread(_read_text, Path(path))
    if content is None or not content.strip():
        return None
    return content


class ProtocolStrategy(ABC):
    """Per-dialect request/response inspection and system-prompt policy."""

    dialect: Dialect

    # ── Inspection ───────────────────────────────────────────
    def extract_model_and_stream_info(self, body: dict[str, Any]) -> ModelStreamInfo:
        model = body.get("model")
        if not isinstance(model, str) or not model:
            raise InvalidRequest("Request body must contain a 'model' string")
        _check_messages(body.get("messages"))
        return ModelStreamInfo(model=model, stream=body.get("stream") is True)

    @abstractmethod
    def extract_response_text(self, response: dict[str, Any]) -> str:
        """Displayable text of a full response or of one stream event."""

    @abstractmethod
    def extract_prompt_text(self, body: dict[str, Any]) -> str:
        """Text of the last message in the request."""

    @abstractmethod
    def extract_system_text(self, body: dict[str, Any]) -> str | None: ...

    @abstractmethod
    def _with_system_text(self, body: dict[str, Any], text: str) -> dict[str, Any]:
        """Return ``body`` with its system text replaced by ``text``."""

    # ── System prompt policy ─────────────────────────────────
    async def apply_system_prompt_from_file(
        self,
        body: dict[str, Any],
        *,
        path: str | Path,
        mode: SystemPromptMode,
    ) -> dict[str, Any]:
        """Merge the configured file prompt into a copy of ``body``.

        ``append`` yields ``"<caller>\\n<file>"`` (just the file when the caller
        sent none); ``overwrite`` yields the file content.  The file is read on
        every call; a missing or blank file leaves the body unchanged.
        """
        file_text = await read_prompt_file(path)
        if file_text is None:
            return body

        existing = self.extract_system_text(body)
        if mode == SystemPromptMode.APPEND and existing:
            merged = f"{existing}\n{file_text}"
        else:
            merged = file_text

        logger.debug("system_prompt_applied", dialect=self.dialect.value, mode=mode.value)
        return self._with_system_text(copy.deepcopy(body), merged)

    async def manage_system_prompt(self, body: dict[str, Any], *, path: str | Path) -> bool:
        """Keep ``path`` in sync with the caller's system text.

        Writes only when the text differs from the file, and empties the file
        when the caller sent no system text but the file has some.  Returns
        True when the file was written.
        """
        target = Path(path)
        incoming = self.extract_system_text(body) or ""
        current = await asyncio.to_thread(_read_text, target) or ""

        if incoming == current:
            return False
        if not incoming and not current.strip():
            return False

        await asyncio.to_thread(_write_text, target, incoming)
        logger.info(
            "system_prompt_captured" if incoming else "system_prompt_cleared",
            dialect=self.dialect.value,
            path=str(target),
        )
        return True

    # ── Wire helpers ─────────────────────────────────────────
    @abstractmethod
    def error_body(self, status_code: int, message: str) -> dict[str, Any]: ...

    @abstractmethod
    def format_sse(self, event: dict[str, Any]) -> bytes: ...

    def stream_error_event(self, status_code: int, message: str) -> bytes:
        return self.format_sse(self.error_body(status_code, message))

    def stream_terminator(self) -> bytes:
        return b""

    @staticmethod
    def _json(data: Any) -> str:
        return orjson.dumps(data).decode()


def error_type_for_status(status_code: int) -> str:
    if status_code == 401:
        return "authentication_error"
    if status_code == 403:
        return "permission_error"
    if status_code == 404:
        return "not_found_error"
    if status_code == 429:
        return "rate_limit_error"
    if status_code >= 500:
        return "api_error"
    return "invalid_request_error"


def _check_messages(messages: Any) -> None:
    if messages is None:
        return
    if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
        raise InvalidRequest("'messages' must be a list of objects")
    for index, message in enumerate(messages):
        content = message.get("content")
        if isinstance(content, list) and not all(isinstance(part, dict) for part in content):
            raise InvalidRequest(f"messages[{index}].content must be a string or a list of objects")


def text_of_content(content: Any) -> str:
    """Flatten string or block-list message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
        )
    return ""
