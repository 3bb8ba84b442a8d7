"""Project discovery: one directory per project, bound to a Discord channel.

A project is any immediate subdirectory of the projects root that contains a
``discord.json`` file::

    {
      "channelId": "123456789012345678",
      "model": "claude-sonnet-4-5-20250929",
      "permissionMode": "acceptEdits",
      "maxBudgetUsd": 5,
      "allowedTools": ["Read", "Grep"],
      "disallowedTools": null
    }

Only ``channelId`` is required.
"""

import json
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ValidationError

from cordbridge.config.loader import convert_keys
from cordbridge.errors import ProjectsRootError

PROJECT_FILE = "discord.json"


class PermissionMode(str, Enum):
    """How the agent asks before running side-effecting tools."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


class ProjectConfig(BaseModel):
    """Per-project settings, read-only at runtime."""
    name: str
    path: str
    channel_id: str
    model: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    max_budget_usd: float | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None


def parse_permission_mode(value: str | None) -> PermissionMode | None:
    """Return the matching mode, or None for unknown values."""
    for mode in PermissionMode:
        if mode.value == value:
            return mode
    return None


class ProjectRegistry:
    """Maps channel ids to projects found under a root directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()
        self._by_channel: dict[str, ProjectConfig] = {}

    def discover(self) -> dict[str, ProjectConfig]:
        """Rescan the root. Raises ProjectsRootError if it does not exist."""
        if not self.root.is_dir():
            raise ProjectsRootError(f"Projects root does not exist: {self.root}")

        found: dict[str, ProjectConfig] = {}
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            config_file = entry / PROJECT_FILE
            if not config_file.exists():
                continue

            project = self._load_project(entry, config_file)
            if project is None:
                continue
            if project.channel_id in found:
                logger.error(
                    f"Duplicate channelId {project.channel_id} in {entry.name}, skipping"
                )
                continue
            found[project.channel_id] = project
            logger.info(f"Registered project: {project.name} → channel {project.channel_id}")

        self._by_channel = found
        return dict(found)

    def _load_project(self, directory: Path, config_file: Path) -> ProjectConfig | None:
        try:
            raw = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse {config_file}: {e}")
            return None
        if not isinstance(raw, dict):
            logger.error(f"Expected a JSON object in {config_file}")
            return None

        data = convert_keys(raw)
        channel_id = data.get("channel_id")
        if not channel_id:
            logger.error(f"Missing channelId in {config_file}")
            return None

        mode = data.get("permission_mode")
        if mode is not None and parse_permission_mode(mode) is None:
            logger.warning(f"Unknown permissionMode {mode!r} in {config_file}, using default")
            data["permission_mode"] = PermissionMode.DEFAULT
        elif mode is None:
            data.pop("permission_mode", None)

        data.update(name=directory.name, path=str(directory), channel_id=str(channel_id))
        try:
            return ProjectConfig.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid project config {config_file}: {e}")
            return None

    def get_by_channel_id(self, channel_id: str) -> ProjectConfig | None:
        return self._by_channel.get(channel_id)

    def get_all(self) -> list[ProjectConfig]:
        return list(self._by_channel.values())

    def count(self) -> int:
        return len(self._by_channel)


def write_project_file(
    directory: Path,
    channel_id: str,
    model: str | None = None,
    permission_mode: PermissionMode = PermissionMode.DEFAULT,
) -> Path:
    """Create (or overwrite) ``discord.json`` inside ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    payload: dict[str, object] = {"channelId": channel_id, "permissionMode": permission_mode.value}
    if model:
        payload["model"] = model
    path = directory / PROJECT_FILE
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return path
