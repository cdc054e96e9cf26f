"""Periodic relay of network interface metrics to connected operators."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol

DEFAULT_POLL_INTERVAL = 1.0

MetricsListener = Callable[[dict[str, dict[str, Any]]], None]


class MetricsSource(Protocol):
    def poll(self) -> Awaitable[Mapping[str, Mapping[str, Any]]]: ...


class NetworkMonitor:
    """Polls a metrics source and publishes ``{name: {ip, txb, tp}}``.

    ``tp`` is the byte delta since the previous tick (0 for a newly seen
    interface). Each tick replaces the published mapping wholesale.
    """

    def __init__(
        self,
        source: MetricsSource,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._source = source
        self._poll_interval = float(poll_interval)
        self._logger = logger or logging.getLogger("castdeck.netif")
        self._listeners: list[MetricsListener] = []
        self._interfaces: dict[str, dict[str, Any]] = {}
        self._task: asyncio.Task | None = None

    def add_listener(self, listener: MetricsListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._interfaces)

    async def poll_once(self) -> None:
        try:
            raw = await self._source.poll()
        except Exception as exc:
            self._logger.warning("Interface metrics poll failed: %s", exc)
            return

        previous = self._interfaces
        current: dict[str, dict[str, Any]] = {}
        for name, metrics in raw.items():
            txb = int(metrics.get("tx_bytes") or 0)
            prior = previous.get(name)
            tp = txb - prior["txb"] if prior is not None else 0
            current[name] = {"ip": metrics.get("address"), "txb": txb, "tp": tp}
        self._interfaces = current

        for listener in list(self._listeners):
            try:
                listener(self.snapshot())
            except Exception:
                self._logger.exception("Interface metrics listener failed")

    async def start(self) -> None:
        await self.poll_once()
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
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


__all__ = ["MetricsSource", "NetworkMonitor"]
