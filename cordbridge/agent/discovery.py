"""Discover the slash commands and models the agent CLI supports."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from loguru import logger


@dataclass(frozen=True)
class NativeCommand:
    name: str
    description: str = ""
    argument_hint: str = ""


@dataclass
class Capabilities:
    commands: list[NativeCommand] = field(default_factory=list)
    models: list[dict[str, Any]] = field(default_factory=list)


def parse_server_info(info: dict[str, Any] | None) -> Capabilities:
    """Pick commands and models out of the CLI's initialize response."""
    info = info or {}
    commands = []
    for raw in info.get("commands") or []:
        if isinstance(raw, str):
            raw = {"name": raw}
        name = str(raw.get("name", "")).lstrip("/")
        if not name:
            continue
        commands.append(
            NativeCommand(
                name=name,
                description=str(raw.get("description") or ""),
                argument_hint=str(raw.get("argumentHint") or raw.get("argument_hint") or ""),
            )
        )
    models = [m for m in info.get("models") or [] if isinstance(m, dict)]
    return Capabilities(commands=commands, models=models)


async def discover_capabilities(project_path: Path | str) -> Capabilities:
    """Connect once in plan mode and read the server's capability list."""
    options = ClaudeAgentOptions(
        cwd=str(project_path),
        system_prompt={"type": "preset", "preset": "claude_code"},
        permission_mode="plan",
        max_turns=1,
    )
    async with ClaudeSDKClient(options=options) as client:
        info = await client.get_server_info()
    capabilities = parse_server_info(info)
    logger.info(
        f"Discovered {len(capabilities.commands)} native commands and "
        f"{len(capabilities.models)} models"
    )
    return capabilities
