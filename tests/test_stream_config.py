"""Streaming configuration validation and commit ordering."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from castdeck.json_store import JsonDocument
from castdeck.stream_config import (
    ConfigStore,
    ResolutionError,
    StaleConfigError,
    ValidationError,
    resolve_host,
)


def _with(params: dict, **changes) -> dict:
    updated = dict(params)
    updated.update(changes)
    return updated


async def test_apply_commits_and_persists(config_store, config_document, stream_params) -> None:
    applied = await config_store.apply(stream_params)

    assert applied.pipeline.name == "generic/h264_camlink_1080p"
    assert config_store.snapshot() == stream_params
    assert json.loads(config_document.path.read_text()) == stream_params


@pytest.mark.parametrize(
    "changes",
    [
        {"min_br": 500, "max_br": 12000},
        {"min_br": 6000, "max_br": 6000},
        {"delay": -2000},
        {"delay": 2000},
        {"srt_latency": 100},
        {"srt_latency": 10000},
        {"srtla_port": 65535},
        {"srt_streamid": ""},
    ],
)
async def test_boundary_values_accepted(config_store, stream_params, changes) -> None:
    applied = await config_store.apply(_with(stream_params, **changes))

    for key, value in changes.items():
        assert getattr(applied.config, key) == value


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"delay": None}, "audio delay not specified"),
        ({"delay": 2001}, "invalid delay 2001"),
        ({"delay": -2001}, "invalid delay -2001"),
        ({"delay": "0"}, "invalid delay 0"),
        ({"pipeline": None}, "pipeline not specified"),
        ({"pipeline": "0" * 40}, "pipeline not found"),
        ({"min_br": 499}, "invalid bitrate range"),
        ({"max_br": 12001}, "invalid bitrate range"),
        ({"min_br": 600, "max_br": 500}, "invalid bitrate range"),
        ({"max_br": None}, "invalid bitrate range"),
        ({"srt_latency": None}, "SRT latency not specified"),
        ({"srt_latency": 99}, "invalid SRT latency 99 ms"),
        ({"srt_latency": 10001}, "invalid SRT latency 10001 ms"),
        ({"srt_streamid": None}, "SRT streamid not specified"),
        ({"srtla_addr": ""}, "SRTLA address not specified"),
        ({"srtla_port": None}, "SRTLA port not specified"),
        ({"srtla_port": 0}, "invalid SRTLA port 0"),
        ({"srtla_port": 65536}, "invalid SRTLA port 65536"),
    ],
)
async def test_invalid_values_rejected(config_store, stream_params, changes, message) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await config_store.apply(_with(stream_params, **changes))

    assert str(excinfo.value) == message


async def test_first_failing_check_is_reported(config_store, stream_params) -> None:
    bad = _with(stream_params, delay=5000, min_br=1, srtla_port=0)

    with pytest.raises(ValidationError, match="invalid delay 5000"):
        await config_store.apply(bad)


async def test_rejected_apply_changes_nothing(config_store, config_document, stream_params) -> None:
    await config_store.apply(stream_params)
    before = config_document.path.read_text()

    with pytest.raises(ValidationError):
        await config_store.apply(_with(stream_params, delay=100, min_br=500, max_br=400))

    assert config_store.snapshot() == stream_params
    assert config_document.path.read_text() == before


async def test_resolution_failure_changes_nothing(config_document, pipelines, stream_params) -> None:
    async def unresolvable(host):
        raise ResolutionError(f"failed to resolve SRTLA addr {host}")

    store = ConfigStore(config_document, pipelines, resolver=unresolvable)

    with pytest.raises(ResolutionError, match="failed to resolve SRTLA addr ingest.example.net"):
        await store.apply(stream_params)

    assert store.snapshot() == {}
    assert not config_document.path.exists()


async def test_resolve_host_wraps_lookup_failure() -> None:
    with pytest.raises(ResolutionError, match="failed to resolve SRTLA addr"):
        await resolve_host("no-such-host.invalid")


async def test_older_apply_finishing_late_is_discarded(config_document, pipelines, stream_params) -> None:
    gate = asyncio.Event()

    async def resolver(host):
        if host == "slow.example.net":
            await gate.wait()
        return [host]

    store = ConfigStore(config_document, pipelines, resolver=resolver)
    older = asyncio.create_task(store.apply(_with(stream_params, srtla_addr="slow.example.net", delay=100)))
    await asyncio.sleep(0)

    newer = await store.apply(_with(stream_params, delay=200))
    gate.set()

    with pytest.raises(StaleConfigError):
        await older
    assert store.current == newer.config
    assert store.snapshot()["delay"] == 200
    assert json.loads(config_document.path.read_text())["delay"] == 200


async def test_newer_apply_finishing_late_still_wins(config_document, pipelines, stream_params) -> None:
    gate = asyncio.Event()

    async def resolver(host):
        if host == "slow.example.net":
            await gate.wait()
        return [host]

    store = ConfigStore(config_document, pipelines, resolver=resolver)
    first = await store.apply(_with(stream_params, delay=100))
    newer = asyncio.create_task(store.apply(_with(stream_params, srtla_addr="slow.example.net", delay=300)))
    await asyncio.sleep(0)
    gate.set()

    applied = await newer
    assert first.config.delay == 100
    assert store.current == applied.config
    assert store.snapshot()["srtla_addr"] == "slow.example.net"


async def test_bitrate_only_update_writes_sentinel(config_store, config_document, setup_data, stream_params) -> None:
    await config_store.apply(stream_params)

    assert config_store.apply_bitrate_only({"min_br": 1000, "max_br": 3000}) == (1000, 3000)

    assert Path(setup_data["bitrate_file"]).read_text() == "1000000\n3000000\n"
    saved = json.loads(config_document.path.read_text())
    assert (saved["min_br"], saved["max_br"]) == (1000, 3000)
    assert saved["srtla_addr"] == "ingest.example.net"


async def test_bitrate_only_update_rejects_bad_range(config_store, setup_data, stream_params) -> None:
    await config_store.apply(stream_params)

    with pytest.raises(ValidationError, match="invalid bitrate range"):
        config_store.apply_bitrate_only({"min_br": 4000, "max_br": 3000})

    assert config_store.snapshot()["max_br"] == 6000
    assert not Path(setup_data["bitrate_file"]).exists()


def test_store_loads_previous_config(tmp_path: Path, pipelines, stream_params) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(dict(stream_params, password_hash="$2b$04$abc")))

    store = ConfigStore(JsonDocument.load(path), pipelines)

    assert store.snapshot() == stream_params
