"""Whole-document JSON persistence for the appliance's state files."""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping


class PersistenceError(Exception):
    """Raised when a state document cannot be written."""


class JsonDocument:
    """A JSON object kept in memory and rewritten whole on every change.

    Writes go to a sibling ``.tmp`` file that is then renamed over the target,
    so readers never observe a half-written document. The in-memory copy is
    only replaced after the rename succeeds; a failed write leaves both the
    file and memory at the previous contents.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        data: Mapping[str, Any] | None = None,
        *,
        read_only: bool = False,
    ) -> None:
        self.path = Path(path)
        self.read_only = read_only
        self._data: dict[str, Any] = dict(data or {})

    @classmethod
    def load(
        cls,
        path: str | os.PathLike[str],
        *,
        read_only: bool = False,
        logger: logging.Logger | None = None,
    ) -> "JsonDocument":
        log = logger or logging.getLogger("castdeck.state")
        candidate = Path(path)
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            log.info("%s not found; starting empty", candidate)
            payload = {}
        except (json.JSONDecodeError, OSError) as exc:
            log.warning("Unable to read %s: %s; starting empty", candidate, exc)
            payload = {}
        if not isinstance(payload, dict):
            log.warning("%s does not hold a JSON object; starting empty", candidate)
            payload = {}
        return cls(candidate, payload, read_only=read_only)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._data.get(key, default))

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data)

    def replace(self, payload: Mapping[str, Any]) -> None:
        """Persist ``payload`` as the complete document."""

        if self.read_only:
            raise PersistenceError(f"{self.path} is read-only")
        new_data = copy.deepcopy(dict(payload))
        self._write(new_data)
        self._data = new_data

    def update(
        self,
        changes: Mapping[str, Any],
        *,
        remove: Iterable[str] = (),
    ) -> None:
        merged = dict(self._data)
        for key in remove:
            merged.pop(key, None)
        merged.update(changes)
        self.replace(merged)

    def _write(self, payload: dict[str, Any]) -> None:
        target = self.path
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except (OSError, TypeError, ValueError) as exc:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise PersistenceError(f"Unable to write {target}: {exc}") from exc


__all__ = ["JsonDocument", "PersistenceError"]
