"""Fire-and-forget runner for best-effort side effects.

Remote calendar mirroring must never decide whether a local change succeeds,
so those calls are submitted here after the local transaction commits. Each
one runs as its own asyncio task; failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional

from yoyaku.logging_config import get_logger

logger = get_logger(__name__)


class SideEffectDispatcher:
    """Tracks in-flight side-effect tasks and swallows their failures."""

    def __init__(self) -> None:
        self._running: set[asyncio.Task] = set()
        self._failures = 0

    @property
    def pending(self) -> int:
        return len(self._running)

    @property
    def failures(self) -> int:
        """How many side effects have failed since start-up."""
        return self._failures

    def submit(self, name: str, coro: Coroutine[Any, Any, Any], **context: Any) -> asyncio.Task:
        """Schedule ``coro`` and return its task; the caller never awaits it."""
        task = asyncio.create_task(self._run(name, coro, context), name=f"side-effect:{name}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _run(self, name: str, coro: Coroutine[Any, Any, Any], context: dict[str, Any]) -> None:
        try:
            await coro
            logger.debug("side_effect_done", side_effect=name, **context)
        except asyncio.CancelledError:
            logger.warning("side_effect_cancelled", side_effect=name, **context)
            raise
        except Exception as exc:
            self._failures += 1
            logger.warning(
                "side_effect_failed",
                side_effect=name,
                error=f"{type(exc).__name__}: {exc}",
                **context,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight side effect (including ones they submit)."""
        while self._running:
            pending = list(self._running)
            _done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("side_effects_still_running", count=len(not_done))
                return

    async def stop(self, timeout: float = 5.0) -> None:
        """Give in-flight work a grace period, then cancel what is left."""
        await self.drain(timeout=timeout)
        for task in list(self._running):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        logger.info("side_effects_stopped", failures=self._failures)
