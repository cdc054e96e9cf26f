"""Discovery of the encoder pipeline files shipped with the appliance."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

PIPELINE_SUBDIR = "pipeline"
GENERIC_PIPELINE_DIR = "generic"
JETSON_PIPELINE_DIR = "jetson"


@dataclass(frozen=True, slots=True)
class Pipeline:
    id: str
    name: str
    path: str


def pipeline_id(namespaced_name: str) -> str:
    """Stable identifier for ``"<dir>/<file>"``; the same across restarts."""

    return hashlib.sha1(namespaced_name.encode("utf-8")).hexdigest()


def _scan_directory(directory: Path, logger: logging.Logger) -> dict[str, Pipeline]:
    try:
        entries = sorted(os.listdir(directory))
    except OSError as exc:
        logger.warning("Unable to list pipeline directory %s: %s", directory, exc)
        return {}

    pipelines: dict[str, Pipeline] = {}
    for entry in entries:
        name = f"{directory.name}/{entry}"
        pid = pipeline_id(name)
        pipelines[pid] = Pipeline(pid, name, str(directory / entry))
    return pipelines


class PipelineCatalog:
    """Lists pipelines from the encoder's install tree.

    Nothing is cached: every call re-scans the directories so files added or
    removed on the device show up without a restart.
    """

    def __init__(
        self,
        setup: Mapping[str, Any],
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._setup = dict(setup)
        self._logger = logger or logging.getLogger("castdeck.pipelines")

    def directories(self) -> list[Path]:
        root_raw = self._setup.get("belacoder_path")
        if not isinstance(root_raw, str) or not root_raw:
            self._logger.warning("Device setup has no belacoder_path; no pipelines available")
            return []
        root = Path(root_raw) / PIPELINE_SUBDIR
        dirs: list[Path] = []
        if self._setup.get("hw") == "jetson":
            dirs.append(root / JETSON_PIPELINE_DIR)
        dirs.append(root / GENERIC_PIPELINE_DIR)
        return dirs

    def list(self) -> dict[str, Pipeline]:
        pipelines: dict[str, Pipeline] = {}
        for directory in self.directories():
            pipelines.update(_scan_directory(directory, self._logger))
        return pipelines

    def lookup(self, pid: str) -> Pipeline | None:
        if not isinstance(pid, str) or not pid:
            return None
        return self.list().get(pid)

    def display_list(self) -> dict[str, str]:
        """``{id: name}`` as sent to clients."""

        return {pid: pipeline.name for pid, pipeline in self.list().items()}


__all__ = ["Pipeline", "PipelineCatalog", "pipeline_id"]
