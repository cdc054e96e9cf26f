"""Lifecycle of the external streaming process.

The ``running``/``idle`` flag is owned by the liveness poll alone. ``start``
spawns the runner and returns; the next poll that finds it alive flips the
flag, so a runner that dies on launch never leaves the flag stuck at
``running``. Going back to ``idle`` needs several consecutive misses to ride
out a single flaky ``pgrep``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any, Callable, Mapping, Sequence

from .processes import ProcessControl, ProcessError
from .stream_config import AppliedConfig, ConfigStore

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_LIVENESS_CONFIRMATIONS = 2

StateListener = Callable[[bool], None]


class StreamSupervisor:
    def __init__(
        self,
        config_store: ConfigStore,
        process_control: ProcessControl,
        *,
        runner_command: Sequence[str],
        runner_pattern: str,
        encoder_process: str,
        helper_processes: Sequence[str] = (),
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        liveness_confirmations: int = DEFAULT_LIVENESS_CONFIRMATIONS,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if liveness_confirmations < 1:
            raise ValueError("liveness_confirmations must be at least 1")
        self._config_store = config_store
        self._process_control = process_control
        self._runner_command = list(runner_command)
        self._runner_pattern = runner_pattern
        self._encoder_process = encoder_process
        self._helper_processes = list(helper_processes)
        self._poll_interval = float(poll_interval)
        self._confirmations = int(liveness_confirmations)
        self._logger = logger or logging.getLogger("castdeck.supervisor")
        self._listeners: list[StateListener] = []
        self._running = False
        self._spawn_pending = False
        self._starting = False
        self._misses = 0
        self._task: asyncio.Task | None = None

    @property
    def is_streaming(self) -> bool:
        return self._running

    def status_payload(self) -> dict[str, bool]:
        return {"is_streaming": self._running}

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def start(
        self,
        params: Mapping[str, Any],
        *,
        on_applied: Callable[[AppliedConfig], None] | None = None,
    ) -> AppliedConfig:
        if self._running or self._spawn_pending:
            raise ProcessError("already streaming")
        if self._starting:
            raise ProcessError("stream start already in progress")
        self._starting = True
        try:
            applied = await self._config_store.apply(params)
            if on_applied is not None:
                on_applied(applied)
            config = applied.config
            argv = [
                *self._runner_command,
                applied.pipeline.path,
                config.delay,
                config.srtla_addr,
                config.srtla_port,
                config.srt_latency,
                config.srt_streamid,
            ]
            await self._process_control.spawn(argv, detached=True)
            self._spawn_pending = True
            self._misses = 0
        finally:
            self._starting = False
        self._logger.info("Streaming runner launched with pipeline %s", applied.pipeline.name)
        return applied

    async def stop(self) -> bool:
        """Terminate the runner and its helpers; False when nothing to stop."""

        if not self._running and not self._spawn_pending:
            return False
        self._logger.info("Stopping streaming processes")
        errors: list[ProcessError] = []
        try:
            await self._process_control.terminate_by_pattern(self._runner_pattern)
        except ProcessError as exc:
            errors.append(exc)
        for name in (*self._helper_processes, self._encoder_process):
            try:
                await self._process_control.terminate_by_name(name)
            except ProcessError as exc:
                errors.append(exc)
        self._spawn_pending = False
        if errors:
            for exc in errors:
                self._logger.error("Failed to stop streaming process: %s", exc)
            raise errors[0]
        return True

    async def update_bitrate(
        self,
        params: Mapping[str, Any],
        *,
        on_committed: Callable[[tuple[Any, Any]], None] | None = None,
    ) -> tuple[Any, Any] | None:
        """Live bitrate change; ignored (None) unless a stream is running.

        ``on_committed`` runs once the new rates are stored, before the encoder
        is signalled.
        """

        if not self._running:
            return None
        rates = self._config_store.apply_bitrate_only(params)
        if on_committed is not None:
            on_committed(rates)
        await self._process_control.signal_by_name(self._encoder_process, signal.SIGHUP)
        return rates

    async def poll_once(self) -> None:
        try:
            alive = await self._process_control.is_alive(self._runner_pattern)
        except Exception as exc:
            # An inspection failure is not evidence either way.
            self._logger.warning("Liveness check failed: %s", exc)
            return
        if alive:
            self._misses = 0
            self._spawn_pending = False
            self._set_running(True)
            return
        self._misses += 1
        if self._misses >= self._confirmations:
            self._spawn_pending = False
            self._set_running(False)

    def _set_running(self, running: bool) -> None:
        if running == self._running:
            return
        self._running = running
        self._logger.info("Streaming state changed: %s", "running" if running else "idle")
        for listener in list(self._listeners):
            try:
                listener(running)
            except Exception:
                self._logger.exception("Streaming state listener failed")

    async def start_polling(self) -> None:
        await self.poll_once()
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop_polling(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                await self.poll_once()
        finally:
            self._task = None


__all__ = ["StreamSupervisor"]
