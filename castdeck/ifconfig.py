"""Interface metrics scraped from ``ifconfig`` output."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable

_INET_RE = re.compile(r"inet (\d+\.\d+\.\d+\.\d+)")
_TX_BYTES_RE = re.compile(r"TX packets \d+\s+bytes (\d+)")


class MetricsSourceError(Exception):
    """Raised when interface metrics cannot be collected."""


def parse_ifconfig(output: str, *, ignore: Iterable[str] = ("lo",)) -> dict[str, dict[str, object]]:
    """Map interface name to ``{"address", "tx_bytes"}``.

    Interfaces without an IPv4 address are skipped.
    """

    ignored = set(ignore)
    interfaces: dict[str, dict[str, object]] = {}
    for block in output.split("\n\n"):
        block = block.strip("\n")
        if not block or block[0].isspace():
            continue
        name = block.split(":", 1)[0].split()[0]
        if name in ignored:
            continue
        inet = _INET_RE.search(block)
        if inet is None:
            continue
        tx = _TX_BYTES_RE.search(block)
        interfaces[name] = {
            "address": inet.group(1),
            "tx_bytes": int(tx.group(1)) if tx else 0,
        }
    return interfaces


class IfconfigMetricsSource:
    def __init__(
        self,
        *,
        ignore: Iterable[str] = ("lo",),
        command: Iterable[str] = ("ifconfig",),
        logger: logging.Logger | None = None,
    ) -> None:
        self._ignore = tuple(ignore)
        self._command = list(command)
        self._logger = logger or logging.getLogger("castdeck.netif")

    async def poll(self) -> dict[str, dict[str, object]]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise MetricsSourceError(f"unable to run {self._command[0]}: {exc}") from exc
        stdout_raw, stderr_raw = await proc.communicate()
        if proc.returncode != 0:
            stderr = stderr_raw.decode("utf-8", errors="replace").strip()
            raise MetricsSourceError(f"{self._command[0]} failed ({proc.returncode}): {stderr}")
        return parse_ifconfig(stdout_raw.decode("utf-8", errors="replace"), ignore=self._ignore)


__all__ = ["IfconfigMetricsSource", "MetricsSourceError", "parse_ifconfig"]
