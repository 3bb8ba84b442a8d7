"""Wires the transport, orchestrator, command router and stores together."""

import asyncio
from pathlib import Path

from claude_agent_sdk import ClaudeSDKError
from loguru import logger

from cordbridge.agent.backend import AgentBackend, ClaudeBackend
from cordbridge.agent.discovery import discover_capabilities
from cordbridge.agent.orchestrator import QueryOrchestrator, SubmitOutcome
from cordbridge.channels.base import ChatTransport, CommandIntent, InboundMessage
from cordbridge.channels.discord import UPLOADS_DIR, DiscordChannel
from cordbridge.commands.router import CommandRouter
from cordbridge.config.schema import Config
from cordbridge.projects.registry import ProjectRegistry
from cordbridge.sessions.store import SessionStore
from cordbridge.utils.helpers import best_effort

QUEUED_REACTION = "🕐"
REJECTED_REACTION = "⛔"
QUEUE_FULL_MESSAGE = "Too many queued messages in this channel. Wait for the current ones to finish."

_DISCOVERY_TIMEOUT = 60.0


class Bridge:
    """The running bot: one transport, one orchestrator, shared stores."""

    def __init__(
        self,
        config: Config,
        backend: AgentBackend | None = None,
        transport: ChatTransport | None = None,
        sessions: SessionStore | None = None,
    ):
        self.config = config
        self.projects = ProjectRegistry(config.projects_root)
        self.sessions = sessions or SessionStore(config.sessions_db_path)
        self.backend = backend or ClaudeBackend()
        self.transport = transport or DiscordChannel(
            config.discord,
            on_message=self.handle_message,
            on_command=self.handle_command,
            upload_dir_for=self.upload_dir_for,
        )
        self.orchestrator = QueryOrchestrator(
            self.transport,
            self.backend,
            self.sessions,
            self.projects,
            streaming=config.streaming,
            approval=config.approval,
        )
        self.router = CommandRouter(self.orchestrator, self.projects, self.sessions)

    def upload_dir_for(self, channel_id: str) -> Path | None:
        project = self.projects.get_by_channel_id(channel_id)
        if project is None:
            return None
        return Path(project.path) / UPLOADS_DIR

    async def handle_message(self, message: InboundMessage) -> SubmitOutcome:
        outcome = self.orchestrator.submit(message.channel_id, message.content, message.attachments)
        if outcome == SubmitOutcome.QUEUED and message.message:
            await best_effort(self.transport.add_reaction(message.message, QUEUED_REACTION), "Queued reaction")
        elif outcome == SubmitOutcome.REJECTED:
            if message.message:
                await best_effort(self.transport.add_reaction(message.message, REJECTED_REACTION), "Rejected reaction")
            await best_effort(self.transport.send(message.channel_id, QUEUE_FULL_MESSAGE), "Queue full notice")
        return outcome

    async def handle_command(self, intent: CommandIntent) -> str:
        return await self.router.handle(intent)

    async def discover_native_commands(self) -> None:
        """Ask the agent CLI which slash commands it supports."""
        projects = self.projects.get_all()
        if not projects:
            return
        try:
            capabilities = await asyncio.wait_for(
                discover_capabilities(projects[0].path), timeout=_DISCOVERY_TIMEOUT
            )
        except (ClaudeSDKError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not discover Claude Code commands: {e}")
            return
        self.router.set_native_commands(capabilities.commands)
        if isinstance(self.transport, DiscordChannel):
            self.transport.set_native_commands(list(self.router.native_commands.values()))

    async def run(self) -> None:
        """Discover projects, then serve until the transport stops."""
        self.projects.discover()
        if self.projects.count() == 0:
            logger.warning(f"No projects found under {self.projects.root}. Use `cordbridge add-project` to add one.")

        await self.discover_native_commands()
        logger.info(f"Watching {self.projects.count()} project(s)")
        if isinstance(self.transport, DiscordChannel):
            await self.transport.start()

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        if isinstance(self.transport, DiscordChannel):
            await self.transport.stop()
        self.sessions.close()
