"""Tests for agenthub._fileio — atomic JSON writes, tolerant reads, JSONL appends."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from agenthub._fileio import (
    append_jsonl,
    iso_from_ms,
    ms_from_iso,
    read_json,
    write_json_atomic,
)


class TestReadJson:

    def test_missing_returns_default(self, tmp_path: Path):
        assert read_json(tmp_path / "nope.json", {"a": 1}) == {"a": 1}

    def test_corrupt_returns_default(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text('{"a": ')
        assert read_json(path, {}) == {}

    def test_directory_returns_default(self, tmp_path: Path):
        assert read_json(tmp_path, None) is None


class TestWriteJsonAtomic:

    def test_writes_and_replaces(self, tmp_path: Path):
        path = tmp_path / "sub" / "state.json"
        write_json_atomic(path, {"v": 1})
        write_json_atomic(path, {"v": 2})
        assert json.loads(path.read_text()) == {"v": 2}
        assert path.read_text().endswith("\n")
        assert os.listdir(path.parent) == ["state.json"]

    def test_failure_leaves_target_and_no_temp(self, tmp_path: Path):
        path = tmp_path / "state.json"
        write_json_atomic(path, {"v": 1})
        with pytest.raises(TypeError):
            write_json_atomic(path, {"v": object()})
        assert json.loads(path.read_text()) == {"v": 1}
        assert os.listdir(tmp_path) == ["state.json"]


class TestAppendJsonl:

    def test_one_line_per_record(self, tmp_path: Path):
        path = tmp_path / "history.jsonl"
        append_jsonl(path, {"type": "a"})
        append_jsonl(path, {"type": "b", "text": "ünïcode"})
        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["a", "b"]
        assert "ünïcode" in lines[1]


class TestTimestamps:

    def test_iso_round_trip(self):
        assert iso_from_ms(1767881965394) == "2026-01-08T14:19:25.394Z"
        assert ms_from_iso("2026-01-08T14:19:25.394Z") == 1767881965394

    def test_unparseable(self):
        assert ms_from_iso("") is None
        assert ms_from_iso("yesterday") is None
