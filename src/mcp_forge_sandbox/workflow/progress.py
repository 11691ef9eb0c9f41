"""Per-run progress log."""

import inspect
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from mcp_forge_sandbox.logging import get_logger

logger = get_logger(__name__)

ProgressListener = Callable[[str, str], Optional[Awaitable[None]]]


def format_duration(ms: float) -> str:
    """Human-readable elapsed time: seconds below one minute, else minutes and seconds."""
    if ms >= 60_000:
        minutes = int(ms // 60_000)
        seconds = (ms % 60_000) / 1000
        return f"{minutes}m {seconds:.2f}s"
    return f"{ms / 1000:.2f}s"


class ProgressLog:
    """Ordered, append-only, timestamped entries for one run.

    Each entry is also handed to an optional listener (the MCP log
    notification forwarder) together with its level.
    """

    def __init__(self, listener: Optional[ProgressListener] = None):
        self._entries: List[str] = []
        self._listener = listener

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, message: str, level: str = "info") -> None:
        """Append without notifying the listener."""
        stamp = datetime.now().strftime("%H:%M:%S")
        self._entries.append(f"[{stamp}] {message}")
        logger.info({"event": "progress", "level": level, "message": message})

    async def add(self, message: str, level: str = "info") -> None:
        self.record(message, level)
        if self._listener is None:
            return
        try:
            result = self._listener(level, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # the client side of the progress feed is optional; the run is not
            logger.warning({"event": "progress_forward_failed", "error": str(e)})


class StepTimer:
    """Logs the start and completion of one workflow step with its duration."""

    def __init__(self, log: ProgressLog, index: int, total: int, title: str):
        self.log = log
        self.label = f"Step {index}/{total}: {title}"
        self._started = 0.0

    async def __aenter__(self) -> "StepTimer":
        self._started = time.monotonic()
        await self.log.add(f"{self.label}...")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        elapsed_ms = (time.monotonic() - self._started) * 1000
        if exc is None:
            await self.log.add(f"{self.label} done ({format_duration(elapsed_ms)})")
        else:
            await self.log.add(f"{self.label} failed ({format_duration(elapsed_ms)}): {exc}", level="error")
