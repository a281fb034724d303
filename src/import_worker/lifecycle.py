"""Process lifecycle: shutdown token, signal handling and crash-fast policy."""

import asyncio
import signal
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from .config import WorkerConfig
from .errors import describe_exception
from .logger import logger

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownToken:
    """Cancellation token shared by every activity of the process."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "requested") -> None:
        """Cancel the token. Only the first reason is kept."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns True when the token is cancelled.
        """
        if self.cancelled or seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


class Lifecycle:
    """Runs the worker activities until shutdown and decides the exit code.

    Handles:
    - SIGINT/SIGTERM: cancel the token, let activities finish their current
      iteration within the grace period, exit 0
    - An activity dying with an exception: exit 1 immediately
    - Unhandled errors reported by the event loop: exit 1 immediately

    Crashes are not recovered in-process; the supervisor restarts the worker.
    """

    def __init__(self, config: WorkerConfig, token: ShutdownToken | None = None) -> None:
        self.config = config
        self.token = token or ShutdownToken()
        self.exit_code = EXIT_SUCCESS
        self.logger = logger.child({"worker_id": config.worker_id})
        self._tasks: list[asyncio.Task[None]] = []

    def request_shutdown(self, sig_name: str) -> None:
        """Handle shutdown signals gracefully."""
        if self.token.cancelled:
            self.logger.warn(f"Received {sig_name} again, stopping now")
            for task in self._tasks:
                task.cancel()
            return
        self.logger.info(f"Received {sig_name}, shutting down gracefully...")
        self.token.cancel(sig_name)

    def crash(self, message: str, extra: dict[str, Any] | None = None) -> None:
        """Record a fatal error and stop everything."""
        self.logger.error(message, extra)
        self.exit_code = EXIT_FAILURE
        self.token.cancel("crash")

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exc = context.get("exception")
        extra: dict[str, Any] = {"context": context.get("message")}
        if exc is not None:
            extra.update(describe_exception(exc))
        self.crash("Unhandled rejection", extra)

    def _on_activity_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.crash("Fatal error", {"activity": task.get_name(), **describe_exception(exc)})
        elif not self.token.cancelled:
            self.crash("Activity exited unexpectedly", {"activity": task.get_name()})

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                # Windows
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signal.Signals(signum).name
                    ),
                )
            except RuntimeError:
                self.logger.warn(f"Cannot handle {sig.name} outside the main thread")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    async def _drain(self) -> None:
        if self._tasks and self.exit_code == EXIT_SUCCESS:
            _, pending = await asyncio.wait(
                self._tasks, timeout=self.config.shutdown_grace_period_seconds
            )
            if pending:
                self.logger.warn(
                    "Activities still running after grace period, cancelling",
                    {"activities": sorted(task.get_name() for task in pending)},
                )
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _start(self, startup: Coroutine[Any, Any, None]) -> bool:
        """Run startup unless a shutdown is requested first.

        Returns False when the token was cancelled before startup finished.
        Startup errors propagate.
        """
        task = asyncio.create_task(startup, name="startup")
        waiter = asyncio.create_task(self.token.wait(), name="startup-shutdown-wait")
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if not task.done():
            self.logger.info("Shutdown requested during startup")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return False
        task.result()
        return not self.token.cancelled

    async def run(
        self,
        activities: dict[str, Coroutine[Any, Any, None]],
        cleanup: Callable[[], Awaitable[None]] | None = None,
        startup: Coroutine[Any, Any, None] | None = None,
    ) -> int:
        """Run named activities concurrently until the token is cancelled.

        Signal handlers are installed before ``startup`` runs, so a shutdown
        requested during startup skips the activities and still exits cleanly.
        Returns the process exit code.
        """
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

        pending = dict(activities)
        try:
            if startup is None or await self._start(startup):
                for name in list(pending):
                    task = asyncio.create_task(pending.pop(name), name=name)
                    task.add_done_callback(self._on_activity_done)
                    self._tasks.append(task)

                await self.token.wait()
                await self._drain()
        finally:
            for coro in pending.values():
                coro.close()
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(previous_handler)
            if cleanup is not None:
                try:
                    await cleanup()
                except Exception as e:
                    self.logger.error("Cleanup failed", describe_exception(e))

        self.logger.info(
            "Worker stopped", {"exit_code": self.exit_code, "reason": self.token.reason}
        )
        return self.exit_code
