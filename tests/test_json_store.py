"""State document persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from castdeck.json_store import JsonDocument, PersistenceError


def test_update_writes_whole_document(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    doc = JsonDocument.load(path)
    assert doc.snapshot() == {}

    doc.update({"delay": 0, "password": "bootstrap"})
    doc.update({"min_br": 500}, remove=("password",))

    assert json.loads(path.read_text()) == {"delay": 0, "min_br": 500}
    assert not (tmp_path / "config.json.tmp").exists()

    reloaded = JsonDocument.load(path)
    assert reloaded.snapshot() == {"delay": 0, "min_br": 500}
    assert "delay" in reloaded
    assert reloaded.get("missing", 7) == 7


@pytest.mark.parametrize("contents", ["{not json", "[1, 2, 3]", ""])
def test_unreadable_document_loads_empty(tmp_path: Path, contents: str) -> None:
    path = tmp_path / "setup.json"
    path.write_text(contents)

    assert JsonDocument.load(path).snapshot() == {}


def test_read_only_document_refuses_writes(tmp_path: Path) -> None:
    path = tmp_path / "setup.json"
    path.write_text('{"hw": "jetson"}')
    doc = JsonDocument.load(path, read_only=True)

    with pytest.raises(PersistenceError):
        doc.update({"hw": "rk3588"})

    assert doc.get("hw") == "jetson"
    assert json.loads(path.read_text()) == {"hw": "jetson"}


def test_failed_write_keeps_previous_contents(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    doc = JsonDocument(blocker / "config.json", {"delay": 0})

    with pytest.raises(PersistenceError):
        doc.update({"delay": 500})

    assert doc.snapshot() == {"delay": 0}


def test_snapshot_is_a_copy(tmp_path: Path) -> None:
    doc = JsonDocument(tmp_path / "config.json", {"nested": {"a": 1}})
    snap = doc.snapshot()
    snap["nested"]["a"] = 2

    assert doc.get("nested") == {"a": 1}
