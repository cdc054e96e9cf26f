"""Spawning and inspecting the external streaming processes.

The runner and its helpers outlive the control service, so they are always
looked up by name or command-line pattern rather than by a remembered handle.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Sequence


class ProcessError(Exception):
    """Raised when an external process cannot be spawned or signalled."""


# pgrep/pkill/killall exit 1 when nothing matched
_NO_MATCH = 1


async def _run(argv: Sequence[str]) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ProcessError(f"{argv[0]} not found") from exc
    except OSError as exc:
        raise ProcessError(f"unable to run {argv[0]}: {exc}") from exc

    stdout_raw, stderr_raw = await proc.communicate()
    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return proc.returncode, stdout, stderr


class ProcessControl:
    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("castdeck.processes")

    async def spawn(self, argv: Sequence[str], *, detached: bool = True) -> int:
        """Start ``argv`` without waiting for it; returns the pid."""

        if not argv:
            raise ProcessError("empty command")
        args = [str(arg) for arg in argv]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=detached,
            )
        except FileNotFoundError as exc:
            raise ProcessError(f"{args[0]} not found") from exc
        except OSError as exc:
            raise ProcessError(f"unable to start {args[0]}: {exc}") from exc
        self._logger.info("Spawned %s (pid %s)", args[0], proc.pid)
        return proc.pid

    async def is_alive(self, pattern: str) -> bool:
        code, _, stderr = await _run(["pgrep", "-f", pattern])
        if code == 0:
            return True
        if code == _NO_MATCH:
            return False
        raise ProcessError(f"pgrep failed ({code}): {stderr.strip()}")

    async def terminate_by_pattern(self, pattern: str) -> bool:
        return await self._expect_match_or_none(["pkill", "-f", pattern])

    async def terminate_by_name(self, name: str) -> bool:
        return await self._expect_match_or_none(["killall", name])

    async def signal_by_name(self, name: str, sig: signal.Signals = signal.SIGHUP) -> bool:
        return await self._expect_match_or_none(["killall", f"-{sig.name[3:]}", name])

    async def _expect_match_or_none(self, argv: Sequence[str]) -> bool:
        code, _, stderr = await _run(argv)
        if code == 0:
            self._logger.debug("%s matched", " ".join(argv))
            return True
        if code == _NO_MATCH:
            return False
        raise ProcessError(f"{argv[0]} failed ({code}): {stderr.strip()}")


__all__ = ["ProcessControl", "ProcessError"]
