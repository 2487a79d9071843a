"""
Explicit, disposable shutdown coordination.

One ``ShutdownCoordinator`` is created per run and passed through the
orchestrator via the run context. Cleanup callbacks registered on it run
in reverse registration order, exactly once, when a SIGINT/SIGTERM arrives
or ``shutdown()`` is awaited. The phase currently executing is cancelled
first so its child process is killed before cleanups touch its worktree.

Example:
    >>> async with ShutdownCoordinator() as shutdown:
    ...     shutdown.register("finalize-log", log_writer.finalize)
    ...     await orchestrator.run()
"""

import asyncio
import inspect
import signal
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)

Cleanup = Callable[[], Awaitable[Any] | Any]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Tracks cleanup actions and the in-flight phase task for one run."""

    def __init__(self) -> None:
        self._cleanups: list[tuple[str, Cleanup]] = []
        self._shutting_down = False
        self._signal: str | None = None
        self._active_task: asyncio.Task[Any] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def received_signal(self) -> str | None:
        return self._signal

    def register(self, name: str, callback: Cleanup) -> None:
        """Register a cleanup. A second registration under the same name replaces the first."""
        self.unregister(name)
        self._cleanups.append((name, callback))

    def unregister(self, name: str) -> None:
        self._cleanups = [(n, cb) for n, cb in self._cleanups if n != name]

    @property
    def pending_cleanups(self) -> list[str]:
        return [name for name, _ in self._cleanups]

    def set_active_task(self, task: asyncio.Task[Any] | None) -> None:
        """Record the task running the current phase so shutdown can cancel it."""
        self._active_task = task

    async def shutdown(self, reason: str = "requested") -> None:
        """Cancel the active phase and run all cleanups, newest first.

        Safe to call more than once; only the first call does anything.
        A failing cleanup is logged and the remaining cleanups still run.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        log.warning("shutdown_started", reason=reason, cleanups=len(self._cleanups))

        task = self._active_task
        if task is not None and not task.done():
            task.cancel()

        while self._cleanups:
            name, callback = self._cleanups.pop()
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
                log.info("cleanup_completed", cleanup=name)
            except Exception as e:
                log.error("cleanup_failed", cleanup=name, error=str(e))

        log.info("shutdown_completed", reason=reason)

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_task is not None:
            return
        self._signal = sig.name
        self._shutdown_task = asyncio.ensure_future(self.shutdown(reason=sig.name))

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to ``shutdown`` on the running loop."""
        self._loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                log.debug("signal_handler_unavailable", signal=sig.name)
                continue
            self._installed.append(sig)

    async def wait_closed(self) -> None:
        """Wait for a signal-triggered shutdown to finish its cleanups."""
        if self._shutdown_task is not None:
            await self._shutdown_task

    def dispose(self) -> None:
        """Remove signal handlers and forget registered cleanups."""
        if self._loop is not None:
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        self._installed.clear()
        self._cleanups.clear()
        self._active_task = None

    async def __aenter__(self) -> "ShutdownCoordinator":
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.wait_closed()
        self.dispose()
