from __future__ import annotations

import signal
from pathlib import Path

import pytest

from castdeck.json_store import JsonDocument
from castdeck.pipelines import PipelineCatalog, pipeline_id
from castdeck.processes import ProcessError
from castdeck.stream_config import ConfigStore


class FakeProcessControl:
    def __init__(self) -> None:
        self.spawned: list[list[str]] = []
        self.terminated_patterns: list[str] = []
        self.terminated_names: list[str] = []
        self.signalled: list[tuple[str, signal.Signals]] = []
        self.alive = False
        self.liveness_error: Exception | None = None
        self.spawn_error: ProcessError | None = None
        self.signal_error: ProcessError | None = None

    async def spawn(self, argv, *, detached=True):
        if self.spawn_error is not None:
            raise self.spawn_error
        self.spawned.append([str(arg) for arg in argv])
        return 4242

    async def is_alive(self, pattern):
        if self.liveness_error is not None:
            raise self.liveness_error
        return self.alive

    async def terminate_by_pattern(self, pattern):
        self.terminated_patterns.append(pattern)
        return True

    async def terminate_by_name(self, name):
        self.terminated_names.append(name)
        return True

    async def signal_by_name(self, name, sig=signal.SIGHUP):
        if self.signal_error is not None:
            raise self.signal_error
        self.signalled.append((name, sig))
        return True


class FakeMetricsSource:
    def __init__(self, *results) -> None:
        self.results = list(results)

    async def poll(self):
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


async def accept_any_host(host):
    return [host]


@pytest.fixture
def process_control() -> FakeProcessControl:
    return FakeProcessControl()


@pytest.fixture
def belacoder_root(tmp_path: Path) -> Path:
    root = tmp_path / "belacoder"
    generic = root / "pipeline" / "generic"
    generic.mkdir(parents=True)
    (generic / "h264_camlink_1080p").write_text("videotestsrc ! fakesink\n")
    (generic / "h265_camlink_1080p").write_text("videotestsrc ! fakesink\n")
    return root


@pytest.fixture
def setup_data(tmp_path: Path, belacoder_root: Path) -> dict:
    return {
        "hw": "rk3588",
        "belacoder_path": str(belacoder_root),
        "bitrate_file": str(tmp_path / "bitrate"),
    }


@pytest.fixture
def pipelines(setup_data) -> PipelineCatalog:
    return PipelineCatalog(setup_data)


@pytest.fixture
def h264_id() -> str:
    return pipeline_id("generic/h264_camlink_1080p")


@pytest.fixture
def stream_params(h264_id) -> dict:
    return {
        "delay": 0,
        "pipeline": h264_id,
        "min_br": 500,
        "max_br": 6000,
        "srt_latency": 2000,
        "srt_streamid": "live/cam",
        "srtla_addr": "ingest.example.net",
        "srtla_port": 5000,
    }


@pytest.fixture
def config_document(tmp_path: Path) -> JsonDocument:
    return JsonDocument.load(tmp_path / "config.json")


@pytest.fixture
def config_store(config_document, pipelines, setup_data) -> ConfigStore:
    return ConfigStore(
        config_document,
        pipelines,
        bitrate_file=setup_data["bitrate_file"],
        resolver=accept_any_host,
    )


@pytest.fixture
def metrics_source_cls():
    return FakeMetricsSource
