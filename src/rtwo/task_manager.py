"""Lifecycle helper for the session's named asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named background tasks so they can be cancelled as a group."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}

    def add(self, task: asyncio.Task[Any], name: str) -> None:
        """Register a task under ``name``.

        A task registered under an existing name replaces the prior entry; the
        old task is *not* cancelled automatically.
        """
        self._named[name] = task
        task.add_done_callback(self._log_exception)

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.debug(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": task.get_name(),
                    "error_type": type(exc).__name__,
                },
            )

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    def request_cancel(self, name: str) -> bool:
        """Ask a named task to cancel without awaiting it; safe from sync code."""
        task = self._named.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [task for task in self._named.values() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._named.clear()

    def discard(self, name: str) -> None:
        """Remove a named task from tracking without cancelling it."""
        self._named.pop(name, None)
