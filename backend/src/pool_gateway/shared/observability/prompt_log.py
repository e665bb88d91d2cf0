"""Optional logging of prompt and response text.

``console`` writes through structlog; ``file`` appends to
``{base_name}-{timestamp}.log``, one file per process.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import structlog

from pool_gateway.domain.enums import PromptLogMode

logger = structlog.get_logger(__name__)


class PromptLogger:
    def __init__(self, mode: PromptLogMode = PromptLogMode.NONE, *, base_name: str = "prompt_log") -> None:
        self._mode = mode
        self._path: Path | None = None
        if mode == PromptLogMode.FILE:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            self._path = Path(f"{base_name}-{stamp}.log")
        self._write_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._mode != PromptLogMode.NONE

    @property
    def path(self) -> Path | None:
        return self._path

    async def log_prompt(self, text: str, *, request_id: str, model: str) -> None:
        await self._emit("INPUT", text, request_id=request_id, model=model)

    async def log_response(self, text: str, *, request_id: str, model: str) -> None:
        await self._emit("OUTPUT", text, request_id=request_id, model=model)

    async def _emit(self, direction: str, text: str, *, request_id: str, model: str) -> None:
        if self._mode == PromptLogMode.NONE:
            return
        if self._mode == PromptLogMode.CONSOLE:
            logger.info(
                "conversation_logged",
                direction=direction,
                request_id=request_id,
                model=model,
                text=text,
            )
            return

        path = self._path
        if path is None:
            return
        stamp = datetime.now(timezone.utc).isoformat()
        entry = f"{stamp} [{direction}] request={request_id} model={model}\n{text}\n\n"
        async with self._write_lock:
            await asyncio.to_thread(_append, path, entry)


def _append(path: Path, entry: str) -> None:
    with path.open("a", encoding="utf-8") as fh:
        fh.write(entry)
