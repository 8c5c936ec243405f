"""Sprint tracker stored as a YAML file.

File shape::

    development_status:
      1-1-project-setup: done
      1-2-user-login: in-progress
"""

import asyncio
from pathlib import Path
from typing import Any

import aiofiles
import structlog
import yaml

from storysmith.enums import SprintStatus
from storysmith.exceptions import SprintTrackerError
from storysmith.providers.base import SprintTracker

log = structlog.get_logger(__name__)


class YamlSprintTracker(SprintTracker):
    """Reads and atomically rewrites ``development_status`` in a YAML file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(await f.read())
        except (OSError, yaml.YAMLError) as e:
            raise SprintTrackerError(f"Cannot read sprint status file {self.path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise SprintTrackerError(f"Sprint status file {self.path} must contain a YAML mapping")
        return data

    async def get_status(self, story_id: str) -> str | None:
        data = await self._load()
        status = (data.get("development_status") or {}).get(story_id)
        return str(status) if status is not None else None

    async def update_status(self, story_id: str, status: SprintStatus) -> None:
        async with self._lock:
            data = await self._load()
            development = data.get("development_status") or {}
            previous = development.get(story_id)
            development[story_id] = str(status)
            data["development_status"] = development

            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(yaml.safe_dump(data, sort_keys=False))
                tmp_path.replace(self.path)
            except OSError as e:
                raise SprintTrackerError(f"Cannot write sprint status file {self.path}: {e}") from e

        log.info("sprint_status_updated", story_id=story_id, previous=previous, status=str(status))
