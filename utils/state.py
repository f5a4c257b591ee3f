# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Persistent state management."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


class StateManager:
    """Manages runtime state that persists across bot restarts.

    Unlike config (read-only settings), state changes during bot operation
    and must survive restarts. Stored in state.json with atomic writes.

    Persisted values:
    - volumes: Per-room volume percentage (0-150), keyed by guild ID string

    Usage:
        state_manager.get_volume(guild_id, 100)   # Read with default
        state_manager.set_volume(guild_id, 80)    # Update in memory
        await state_manager.save()                # Persist to disk

    File safety:
    - Uses atomic temp-file-then-rename pattern
    - Exceptions logged but not raised (fire-and-forget)
    - Unknown keys in state.json are logged and dropped on save
    """

    DEFAULT_STATE = {
        "volumes": {},
    }

    def __init__(self, data_path: Path) -> None:
        self.data_path = data_path
        self.state_file = data_path / "state.json"
        self.state: dict = {"volumes": {}}
        self._save_lock = asyncio.Lock()

    async def load(self) -> dict:
        """Load state from state.json on startup.

        If file is corrupt, backs up to .bak and uses defaults.
        If file is missing, uses defaults.
        """
        if self.state_file.exists():
            try:
                content = await asyncio.to_thread(self.state_file.read_text, encoding='utf-8')
                loaded = json.loads(content)
                if not isinstance(loaded, dict):
                    raise ValueError("state root is not a mapping")

                unknown = set(loaded.keys()) - set(self.DEFAULT_STATE.keys())
                if unknown:
                    logger.warning(f"ignoring unknown state keys: {', '.join(unknown)}")

                volumes = loaded.get("volumes")
                self.state = {"volumes": volumes if isinstance(volumes, dict) else {}}
                logger.info(f"restored state: {len(self.state['volumes'])} room volumes")
            except (json.JSONDecodeError, ValueError, OSError):
                # Preserve corrupted file for debugging
                backup = self.state_file.with_suffix('.json.bak')
                try:
                    self.state_file.rename(backup)
                    logger.warning(f"state file corrupt, backed up to {backup.name}")
                except OSError:
                    logger.warning("state file corrupt, using defaults")
                self.state = {"volumes": {}}
        else:
            logger.info("state file not found, using defaults")
            self.state = {"volumes": {}}
        return self.state

    async def save(self) -> None:
        """Persist current state to state.json. Exceptions are logged, not raised."""
        async with self._save_lock:
            temp_path = None
            try:
                self.data_path.mkdir(parents=True, exist_ok=True)
                temp_fd, temp_path = tempfile.mkstemp(dir=self.data_path, suffix='.tmp')
                clean_state = {k: v for k, v in self.state.items() if k in self.DEFAULT_STATE}
                await asyncio.to_thread(self._write_atomic, temp_fd, temp_path, clean_state)
                logger.debug("state saved")
            except Exception:
                if temp_path:
                    Path(temp_path).unlink(missing_ok=True)
                logger.opt(exception=True).warning("failed to save state.json")

    def _write_atomic(self, temp_fd: int, temp_path: str, data: dict) -> None:
        """Synchronous helper for atomic JSON write."""
        # fdopen can fail after mkstemp - close fd manually to prevent leak
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            json.dump(data, f, indent=2)
        Path(temp_path).replace(self.state_file)

    def get(self, key: str, default=None) -> Any:
        return self.state.get(key, default)

    def get_volume(self, room_id: int, default: int) -> int:
        """Saved volume for a room, or default if never set or unreadable."""
        value = self.state["volumes"].get(str(room_id), default)
        try:
            return max(0, min(150, int(value)))
        except (TypeError, ValueError):
            return default

    def set_volume(self, room_id: int, level: int) -> None:
        """Update a room's volume in memory. Call save() to persist to disk."""
        self.state["volumes"][str(room_id)] = level
