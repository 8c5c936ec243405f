"""
Durable checkpoint storage for story workflows.

The StateManager persists one JSON document per key in a configurable
directory. Data integrity relies on:

- Atomic file writes using temporary files and rename operations
- Per-key asyncio locks so a key is never written by two coroutines at once

Unlike a database, nothing is created implicitly: loading a key that was
never saved returns ``None``, which the orchestrator reads as "start fresh".

File Layout:
    ``<state_dir>/<key>.json`` for live checkpoints and
    ``<state_dir>/archive/<key>.json`` for runs that completed successfully.
    Orchestrator keys look like ``story-workflow-<story_id>``; the control
    surface stores project pointers under ``project-<project_id>``.

Example:
    >>> manager = StateManager(".storysmith/state")
    >>> await manager.save_state("story-workflow-1-2", state)
    >>> restored = await manager.load_state("story-workflow-1-2")
"""

import asyncio
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from storysmith.exceptions import CheckpointError

log = structlog.get_logger(__name__)

ARCHIVE_DIR = "archive"


class StateManager:
    """Load and save JSON state documents with atomic file operations.

    Attributes:
        state_dir: Directory where state files are stored.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each key has its own
        lock; lock creation is guarded by a meta-lock.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the state manager with a storage directory.

        Args:
            state_dir: Directory for state files. Created, including parents,
                if it does not exist.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create the lock dedicated to ``key``."""
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def _get_state_path(self, key: str) -> Path:
        """Compute the filesystem path for a key.

        Raises:
            CheckpointError: If the key could escape the state directory.
        """
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise CheckpointError(f"Invalid state key: {key!r}", key=key)
        return self.state_dir / f"{key}.json"

    def _get_archive_path(self, key: str) -> Path:
        return self.state_dir / ARCHIVE_DIR / self._get_state_path(key).name

    async def load_state(self, key: str) -> Any | None:
        """Load the document stored under ``key``.

        Args:
            key: State key, e.g. ``story-workflow-1-2``.

        Returns:
            The decoded document, or None if nothing was saved under the key.

        Raises:
            CheckpointError: If the file exists but cannot be read or decoded.
        """
        lock = await self._get_lock(key)
        async with lock:
            return await self._read(self._get_state_path(key), key)

    async def save_state(self, key: str, state: dict[str, Any]) -> None:
        """Atomically save a document under ``key``.

        ``updated_at`` is stamped on the document in place before writing.

        Raises:
            CheckpointError: If the document cannot be serialised or written.
        """
        lock = await self._get_lock(key)
        async with lock:
            state["updated_at"] = datetime.now(UTC).isoformat()
            await self._write_state(self._get_state_path(key), state, key)
        log.debug("state_saved", key=key)

    async def delete_state(self, key: str, include_archive: bool = False) -> bool:
        """Remove the live document for ``key``.

        Args:
            key: State key.
            include_archive: Also remove the archived copy, if any.

        Returns:
            True if a file was removed, False if there was nothing to remove.
        """
        lock = await self._get_lock(key)
        async with lock:
            paths = [self._get_state_path(key)]
            if include_archive:
                paths.append(self._get_archive_path(key))
            removed = False
            for path in paths:
                try:
                    path.unlink()
                    removed = True
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise CheckpointError(f"Cannot delete state {key}: {e}", key=key) from e
        if removed:
            log.info("state_deleted", key=key, include_archive=include_archive)
        return removed

    async def archive_state(self, key: str) -> Path | None:
        """Move the live document into the archive directory.

        Used when a run completes successfully: the checkpoint no longer
        drives anything but stays available for inspection.

        Returns:
            The archive path, or None if there was no live document.
        """
        lock = await self._get_lock(key)
        async with lock:
            source = self._get_state_path(key)
            if not source.exists():
                return None
            target = self._get_archive_path(key)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(source, target)
            except OSError as e:
                raise CheckpointError(f"Cannot archive state {key}: {e}", key=key) from e
        log.info("state_archived", key=key, path=str(target))
        return target

    async def load_archived_state(self, key: str) -> Any | None:
        """Load a document previously moved by ``archive_state``."""
        lock = await self._get_lock(key)
        async with lock:
            return await self._read(self._get_archive_path(key), key)

    def list_states(self, prefix: str = "") -> list[str]:
        """List live keys, optionally restricted to a prefix."""
        return sorted(p.stem for p in self.state_dir.glob(f"{prefix}*.json"))

    async def _read(self, path: Path, key: str) -> Any | None:
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise CheckpointError(f"Corrupt state file for {key}: {e}", key=key) from e
        except OSError as e:
            raise CheckpointError(f"Cannot read state file for {key}: {e}", key=key) from e

    async def _write_state(self, path: Path, state: dict[str, Any], key: str) -> None:
        """Write to a sibling temp file, then rename over the target.

        A crash mid-write leaves the previous checkpoint intact.
        """
        tmp_path = path.with_suffix(".tmp")
        try:
            payload = json.dumps(state, indent=2)
        except (TypeError, ValueError) as e:
            raise CheckpointError(f"State for {key} is not JSON serialisable: {e}", key=key) from e

        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(payload)
            tmp_path.replace(path)
        except OSError as e:
            raise CheckpointError(f"Cannot write state file for {key}: {e}", key=key) from e
