from __future__ import annotations

from pathlib import Path

import pytest

from gemdesk.shared.services.durable_write import replacing, unlink_durable


def test_replacing_swaps_in_new_content(tmp_path: Path) -> None:
    target = tmp_path / "record.json"
    target.write_text("old", encoding="utf-8")

    with replacing(target) as f:
        f.write("new")

    assert target.read_text(encoding="utf-8") == "new"
    assert [p.name for p in tmp_path.iterdir()] == ["record.json"]


def test_replacing_keeps_old_file_when_block_fails(tmp_path: Path) -> None:
    target = tmp_path / "record.json"
    target.write_text("old", encoding="utf-8")

    with pytest.raises(RuntimeError):
        with replacing(target) as f:
            f.write("half")
            raise RuntimeError("serializer blew up")

    assert target.read_text(encoding="utf-8") == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["record.json"]


def test_replacing_creates_parent_directory(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dir" / "record.json"
    with replacing(target) as f:
        f.write("{}")
    assert target.read_text(encoding="utf-8") == "{}"


def test_unlink_durable_reports_whether_file_existed(tmp_path: Path) -> None:
    target = tmp_path / "record.json"
    target.write_text("x", encoding="utf-8")
    assert unlink_durable(target) is True
    assert not target.exists()
    assert unlink_durable(target) is False
