"""Interface metrics relay."""

from __future__ import annotations

import pytest

from castdeck.ifconfig import MetricsSourceError
from castdeck.network_monitor import NetworkMonitor


def _sample(**tx_bytes):
    return {name: {"address": f"10.0.0.{i}", "tx_bytes": txb} for i, (name, txb) in enumerate(tx_bytes.items(), 1)}


async def test_throughput_is_delta_since_previous_tick(metrics_source_cls) -> None:
    source = metrics_source_cls(
        _sample(eth0=1000),
        _sample(eth0=4000, usb0=50),
        _sample(usb0=80),
    )
    monitor = NetworkMonitor(source)
    published = []
    monitor.add_listener(published.append)

    await monitor.poll_once()
    await monitor.poll_once()
    await monitor.poll_once()

    assert published == [
        {"eth0": {"ip": "10.0.0.1", "txb": 1000, "tp": 0}},
        {
            "eth0": {"ip": "10.0.0.1", "txb": 4000, "tp": 3000},
            "usb0": {"ip": "10.0.0.2", "txb": 50, "tp": 0},
        },
        {"usb0": {"ip": "10.0.0.1", "txb": 80, "tp": 30}},
    ]
    assert monitor.snapshot() == published[-1]


async def test_unchanged_metrics_still_publish(metrics_source_cls) -> None:
    monitor = NetworkMonitor(metrics_source_cls(_sample(eth0=10)))
    published = []
    monitor.add_listener(published.append)

    await monitor.poll_once()
    await monitor.poll_once()

    assert len(published) == 2
    assert published[1]["eth0"]["tp"] == 0


async def test_source_failure_keeps_last_snapshot(metrics_source_cls, caplog) -> None:
    source = metrics_source_cls(_sample(eth0=10), MetricsSourceError("ifconfig failed (1): nope"), _sample(eth0=30))
    monitor = NetworkMonitor(source)
    published = []
    monitor.add_listener(published.append)

    await monitor.poll_once()
    await monitor.poll_once()

    assert len(published) == 1
    assert monitor.snapshot()["eth0"]["txb"] == 10
    assert "ifconfig failed" in caplog.text

    await monitor.poll_once()
    assert monitor.snapshot()["eth0"]["tp"] == 20


def test_poll_interval_must_be_positive(metrics_source_cls) -> None:
    with pytest.raises(ValueError):
        NetworkMonitor(metrics_source_cls({}), poll_interval=0)


async def test_start_polls_immediately(metrics_source_cls) -> None:
    monitor = NetworkMonitor(metrics_source_cls(_sample(eth0=5)), poll_interval=60)

    await monitor.start()
    try:
        assert monitor.snapshot() == {"eth0": {"ip": "10.0.0.1", "txb": 5, "tp": 0}}
    finally:
        await monitor.stop()
