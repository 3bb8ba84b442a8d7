"""Discord transport implemented with discord.py.

Implements :class:`ChatTransport` for the orchestrator and approval mediator,
delivers inbound messages (with attachments downloaded into the project's
``.discord-uploads`` directory) and registers the slash commands.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

import discord
from discord import app_commands
from loguru import logger

from cordbridge.agent.discovery import NativeCommand
from cordbridge.channels.base import (
    ChatTransport,
    CommandIntent,
    InboundMessage,
    InteractivePrompt,
    PromptKind,
    PromptOutcome,
    SentMessage,
)
from cordbridge.channels.errors import PermanentDeliveryError, TemporaryDeliveryError
from cordbridge.commands.router import (
    BUILTIN_COMMANDS,
    MODEL_CHOICES,
    PERMISSION_MODE_CHOICES,
    BuiltinCommand,
)
from cordbridge.config.schema import DiscordConfig
from cordbridge.formatter import MAX_MESSAGE_LENGTH, chunk_response
from cordbridge.utils.helpers import ensure_dir, safe_filename, truncate_string

UPLOADS_DIR = ".discord-uploads"

# Discord caps
_MAX_COMPONENTS = 25
_MAX_GLOBAL_COMMANDS = 100
_BUTTON_LABEL_LIMIT = 80
_SELECT_TEXT_LIMIT = 100

InboundHandler = Callable[[InboundMessage], Awaitable[None]]
CommandHandler = Callable[[CommandIntent], Awaitable[str]]
UploadDirResolver = Callable[[str], Optional[Path]]


def _classify(e: Exception) -> Exception:
    """Map discord.py errors to delivery errors."""
    if isinstance(e, (PermanentDeliveryError, TemporaryDeliveryError)):
        return e
    if isinstance(e, discord.Forbidden):
        return PermanentDeliveryError(f"Discord forbidden: {e}")
    if isinstance(e, discord.NotFound):
        return PermanentDeliveryError(f"Discord not found: {e}")
    if isinstance(e, discord.HTTPException):
        return TemporaryDeliveryError(f"Discord HTTP error: {e}")
    return TemporaryDeliveryError(f"Discord request failed: {e}")


class _ChoiceView(discord.ui.View):
    """Buttons (or a select menu) for one interactive prompt."""

    def __init__(self, prompt: InteractivePrompt, timeout: float, allow_from: list[str]):
        super().__init__(timeout=timeout)
        self.selected: list[int] | None = None
        self._allow_from = allow_from

        if prompt.kind == PromptKind.APPROVAL:
            self._add_button("approve", "Approve", discord.ButtonStyle.success, [0], row=0)
            self._add_button("deny", "Deny", discord.ButtonStyle.danger, [1], row=0)
        elif prompt.multi_select:
            self._add_select(prompt)
        else:
            for i, choice in enumerate(prompt.choices[:_MAX_COMPONENTS]):
                style = discord.ButtonStyle.primary if i == 0 else discord.ButtonStyle.secondary
                label = truncate_string(choice.label, _BUTTON_LABEL_LIMIT) or str(i + 1)
                self._add_button(f"opt_{i}", label, style, [i], row=i // 5)

    def _add_button(self, custom_id: str, label: str, style: discord.ButtonStyle, indexes: list[int], row: int) -> None:
        button = discord.ui.Button(label=label, style=style, custom_id=custom_id, row=row)

        async def callback(interaction: discord.Interaction) -> None:
            await self._choose(interaction, indexes)

        button.callback = callback
        self.add_item(button)

    def _add_select(self, prompt: InteractivePrompt) -> None:
        choices = prompt.choices[:_MAX_COMPONENTS]
        select = discord.ui.Select(
            custom_id="opt_select",
            placeholder="Choose one or more",
            min_values=1,
            max_values=max(1, len(choices)),
            options=[
                discord.SelectOption(
                    label=truncate_string(choice.label, _SELECT_TEXT_LIMIT) or str(i + 1),
                    value=str(i),
                    description=truncate_string(choice.description, _SELECT_TEXT_LIMIT) or None,
                )
                for i, choice in enumerate(choices)
            ],
        )

        async def callback(interaction: discord.Interaction) -> None:
            await self._choose(interaction, sorted(int(v) for v in select.values))

        select.callback = callback
        self.add_item(select)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if not self._allow_from or str(interaction.user.id) in self._allow_from:
            return True
        await interaction.response.send_message("You are not allowed to answer this.", ephemeral=True)
        return False

    async def _choose(self, interaction: discord.Interaction, indexes: list[int]) -> None:
        if self.selected is not None:
            return
        self.selected = indexes
        await interaction.response.defer()
        self.stop()


class _BridgeClient(discord.Client):
    def __init__(self, *, intents: discord.Intents, application_id: int | None):
        super().__init__(intents=intents, application_id=application_id)
        self.tree = app_commands.CommandTree(self)

    async def setup_hook(self) -> None:
        synced = await self.tree.sync()
        logger.info(f"Registered {len(synced)} slash commands")


class DiscordChannel(ChatTransport):
    """
    Discord transport.

    ``upload_dir_for`` maps a channel id to the directory attachments are
    saved in; returning ``None`` means the channel is not linked and its
    messages are ignored.
    """

    name = "discord"

    def __init__(
        self,
        config: DiscordConfig,
        on_message: InboundHandler,
        on_command: CommandHandler,
        upload_dir_for: UploadDirResolver,
    ):
        self.config = config
        self.on_message = on_message
        self.on_command = on_command
        self.upload_dir_for = upload_dir_for
        self._client: _BridgeClient | None = None
        self._ready = asyncio.Event()
        self._native_commands: list[NativeCommand] = []
        # Held across attachment download and handoff so submits keep arrival order
        self._inbound_locks: dict[str, asyncio.Lock] = {}

    def set_native_commands(self, commands: list[NativeCommand]) -> None:
        """Register backend commands as slash commands on next start."""
        self._native_commands = list(commands)

    async def start(self) -> None:
        """Connect and run until :meth:`stop` is called."""
        if not self.config.token:
            raise PermanentDeliveryError("Discord bot token not configured")

        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        intents.message_content = True

        app_id = int(self.config.application_id) if self.config.application_id else None
        self._client = _BridgeClient(intents=intents, application_id=app_id)
        self._register_commands(self._client.tree)

        @self._client.event
        async def on_ready():
            self._ready.set()
            logger.info(f"Discord bot connected as {self._client.user}")

        @self._client.event
        async def on_message(message: discord.Message):
            await self._on_message(message)

        await self._client.start(self.config.token)

    async def stop(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
        self._ready.clear()

    # ── ChatTransport ──

    async def send(self, channel_id: str, content: str) -> SentMessage:
        channel = await self._resolve_channel(channel_id)
        try:
            message = await channel.send(content, allowed_mentions=discord.AllowedMentions.none())
        except Exception as e:
            raise _classify(e) from e
        return SentMessage(channel_id=channel_id, message_id=str(message.id), native=message)

    async def edit(self, message: SentMessage, content: str) -> None:
        try:
            await message.native.edit(content=content)
        except Exception as e:
            raise _classify(e) from e

    async def trigger_typing(self, channel_id: str) -> None:
        channel = await self._resolve_channel(channel_id)
        await channel.typing()

    async def add_reaction(self, message: SentMessage, emoji: str) -> None:
        try:
            await message.native.add_reaction(emoji)
        except Exception as e:
            raise _classify(e) from e

    async def ask(self, channel_id: str, prompt: InteractivePrompt, timeout: float) -> PromptOutcome:
        channel = await self._resolve_channel(channel_id)
        view = _ChoiceView(prompt, timeout, self.config.allow_from)
        try:
            message = await channel.send(embed=self._embed(prompt), view=view)
        except Exception as e:
            raise _classify(e) from e

        sent = SentMessage(channel_id=channel_id, message_id=str(message.id), native=message)
        timed_out = await view.wait()
        if timed_out or view.selected is None:
            return PromptOutcome(selected=None, message=sent)
        return PromptOutcome(selected=view.selected, message=sent)

    async def update_prompt(self, message: SentMessage, prompt: InteractivePrompt) -> None:
        try:
            await message.native.edit(embed=self._embed(prompt), view=None)
        except Exception as e:
            raise _classify(e) from e

    # ── Inbound ──

    async def _on_message(self, message: discord.Message) -> None:
        if not message.author or message.author.bot:
            return
        if self.config.allow_from and str(message.author.id) not in self.config.allow_from:
            return
        if not message.content and not message.attachments:
            return

        channel_id = str(message.channel.id)
        upload_dir = self.upload_dir_for(channel_id)
        if upload_dir is None:
            return

        lock = self._inbound_locks.setdefault(channel_id, asyncio.Lock())
        async with lock:
            attachments: list[str] = []
            for attachment in message.attachments:
                path = await self._download_attachment(attachment, upload_dir)
                if path:
                    attachments.append(str(path))

            await self.on_message(
                InboundMessage(
                    channel_id=channel_id,
                    author_id=str(message.author.id),
                    content=message.content or "",
                    attachments=attachments,
                    message=SentMessage(channel_id=channel_id, message_id=str(message.id), native=message),
                )
            )

    async def _download_attachment(self, attachment: discord.Attachment, upload_dir: Path) -> Path | None:
        """Download an attachment with size limits."""
        max_bytes = max(0, self.config.max_attachment_mb) * 1024 * 1024
        if attachment.size and attachment.size > max_bytes:
            logger.info(
                f"Skipping attachment {attachment.filename} ({attachment.size} bytes) "
                f"over limit {max_bytes} bytes"
            )
            return None
        try:
            dest = ensure_dir(upload_dir) / safe_filename(attachment.filename)
            await attachment.save(dest)
            return dest
        except (discord.HTTPException, OSError) as e:
            logger.error(f"Failed to download attachment {attachment.filename}: {e}")
            return None

    # ── Slash commands ──

    def _register_commands(self, tree: app_commands.CommandTree) -> None:
        for spec in BUILTIN_COMMANDS:
            tree.add_command(self._builtin_command(spec))

        room = _MAX_GLOBAL_COMMANDS - len(BUILTIN_COMMANDS)
        for native in self._native_commands[:room]:
            command = self._native_command(native)
            if command is not None:
                tree.add_command(command)

    def _builtin_command(self, spec: BuiltinCommand) -> app_commands.Command:
        name = spec.name

        if spec.option is None:
            async def callback(interaction: discord.Interaction):
                await self._run_command(interaction, name, {})
        elif spec.option_required:
            async def callback(interaction: discord.Interaction, value: str):
                await self._run_command(interaction, name, {spec.option: value})
        else:
            async def callback(interaction: discord.Interaction, value: Optional[str] = None):
                await self._run_command(interaction, name, {spec.option: value or ""})

        if spec.option is not None:
            callback = app_commands.rename(value=spec.option)(callback)
            callback = app_commands.describe(value=spec.option_description or spec.option)(callback)
            choices = _option_choices(spec.name)
            if choices:
                callback = app_commands.choices(value=choices)(callback)

        return app_commands.Command(name=name, description=spec.description, callback=callback)

    def _native_command(self, native: NativeCommand) -> app_commands.Command | None:
        name = native.name.lower()
        if not name.replace("-", "").replace("_", "").isalnum() or len(name) > 32:
            logger.debug(f"Skipping native command with unsupported name: {native.name}")
            return None

        async def callback(interaction: discord.Interaction, args: Optional[str] = None):
            await self._run_command(interaction, name, {"args": args or ""})

        callback = app_commands.describe(args=truncate_string(native.argument_hint or "Arguments", 100))(callback)
        description = truncate_string(native.description or f"Claude Code /{name}", 100)
        return app_commands.Command(name=name, description=description, callback=callback)

    async def _run_command(self, interaction: discord.Interaction, name: str, args: dict[str, str]) -> None:
        if self.config.allow_from and str(interaction.user.id) not in self.config.allow_from:
            await interaction.response.send_message("You are not allowed to use this bot.", ephemeral=True)
            return

        await interaction.response.defer(thinking=True)
        intent = CommandIntent(channel_id=str(interaction.channel_id), name=name, args=args)
        try:
            reply = await self.on_command(intent)
        except Exception as e:
            logger.exception(f"Command /{name} failed: {e}")
            reply = f"Error: {e}"

        for chunk in chunk_response(reply, MAX_MESSAGE_LENGTH):
            await interaction.followup.send(chunk, allowed_mentions=discord.AllowedMentions.none())

    # ── Helpers ──

    async def _resolve_channel(self, channel_id: str) -> "discord.abc.Messageable":
        if not self._client:
            raise TemporaryDeliveryError("Discord client not initialized")
        try:
            snowflake = int(channel_id)
        except ValueError:
            raise PermanentDeliveryError(f"Invalid Discord channel id: {channel_id}")

        channel = self._client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self._client.fetch_channel(snowflake)
            except Exception as e:
                raise _classify(e) from e
        return channel

    @staticmethod
    def _embed(prompt: InteractivePrompt) -> discord.Embed:
        return discord.Embed(
            title=truncate_string(prompt.title, 256),
            description=truncate_string(prompt.description, 4096),
            color=prompt.color,
        )


def _option_choices(command: str) -> list[app_commands.Choice[str]]:
    if command == "model":
        return [app_commands.Choice(name=name, value=value) for name, value in MODEL_CHOICES.items()]
    if command == "permission-mode":
        return [app_commands.Choice(name=name, value=value) for name, value in PERMISSION_MODE_CHOICES.items()]
    return []
