"""Tests for persisted per-room state (volumes)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from utils.response import display_title, escape_markdown, truncate_for_display
from utils.state import StateManager


class TestStateManager:
    @pytest.mark.asyncio
    async def test_volume_round_trip(self, tmp_path: Path) -> None:
        state = StateManager(tmp_path)
        await state.load()
        state.set_volume(123, 80)
        await state.save()

        reloaded = StateManager(tmp_path)
        await reloaded.load()
        assert reloaded.get_volume(123, 100) == 80
        assert reloaded.get_volume(456, 100) == 100

    @pytest.mark.asyncio
    async def test_bad_values_fall_back(self, tmp_path: Path) -> None:
        (tmp_path / "state.json").write_text(
            json.dumps({"volumes": {"1": 999, "2": "loud"}, "unknown": True}), encoding="utf-8",
        )
        state = StateManager(tmp_path)
        await state.load()

        assert state.get_volume(1, 100) == 150
        assert state.get_volume(2, 100) == 100

    @pytest.mark.asyncio
    async def test_corrupt_file_backed_up(self, tmp_path: Path) -> None:
        (tmp_path / "state.json").write_text("[1, 2", encoding="utf-8")
        state = StateManager(tmp_path)
        await state.load()

        assert state.get("volumes") == {}
        assert (tmp_path / "state.json.bak").exists()

    @pytest.mark.asyncio
    async def test_unknown_keys_not_saved(self, tmp_path: Path) -> None:
        state = StateManager(tmp_path)
        state.state["stray"] = 1
        await state.save()

        saved = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
        assert saved == {"volumes": {}}


class TestDisplayHelpers:
    def test_truncate(self) -> None:
        assert truncate_for_display("abcdef", 10) == "abcdef"
        assert truncate_for_display("abcdefghijkl", 10) == "abcdefg..."

    def test_escape(self) -> None:
        assert escape_markdown("a*b_c`") == "a\\*b\\_c\\`"

    def test_display_title_truncates_before_escaping(self) -> None:
        title = display_title("*" * 20, 10)
        assert title == "\\*" * 7 + "..."
