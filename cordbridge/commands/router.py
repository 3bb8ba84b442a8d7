"""Slash command handling.

The Discord channel turns interactions into :class:`CommandIntent` values; the
router maps each to an orchestrator or store operation and returns the reply
text. Commands the agent CLI itself understands (``/compact``, ``/init``, ...)
are forwarded to the channel's queue as literal prompts.
"""

from dataclasses import dataclass

from loguru import logger

from cordbridge.agent.discovery import NativeCommand
from cordbridge.agent.orchestrator import ChannelState, QueryOrchestrator, SubmitOutcome
from cordbridge.channels.base import CommandIntent
from cordbridge.errors import ProjectsRootError
from cordbridge.formatter import format_cost, format_duration, format_turns
from cordbridge.projects.registry import ProjectRegistry, parse_permission_mode
from cordbridge.sessions.store import SessionStore

# Display name -> model id
MODEL_CHOICES: dict[str, str] = {
    "Sonnet": "claude-sonnet-4-5-20250929",
    "Opus": "claude-opus-4-6",
    "Haiku": "claude-haiku-4-5-20251001",
}

# Display name -> permission mode value
PERMISSION_MODE_CHOICES: dict[str, str] = {
    "Default": "default",
    "Accept Edits": "acceptEdits",
    "Bypass Permissions": "bypassPermissions",
    "Plan Only": "plan",
}

NOT_LINKED = "This channel is not linked to a project."
UNKNOWN_COMMAND = "Unknown command."


@dataclass(frozen=True)
class BuiltinCommand:
    name: str
    description: str
    option: str | None = None  # Name of the single string option, if any
    option_description: str = ""
    option_required: bool = False


BUILTIN_COMMANDS: list[BuiltinCommand] = [
    BuiltinCommand(
        "new",
        "Start a fresh conversation (optionally save current with a label)",
        "save_as",
        "Save current session with this label before clearing",
    ),
    BuiltinCommand("resume", "List saved sessions or resume one by label", "label", "Label of the session to resume"),
    BuiltinCommand("status", "Show project and session info"),
    BuiltinCommand("cost", "Show session cost (from last response)"),
    BuiltinCommand("config", "Show full project configuration and active overrides"),
    BuiltinCommand("projects", "List all registered projects"),
    BuiltinCommand("rescan", "Re-scan project folders"),
    BuiltinCommand("model", "Switch Claude model for this channel", "name", "Model to use", True),
    BuiltinCommand("permission-mode", "Switch permission mode for this channel", "mode", "Permission mode", True),
    BuiltinCommand("abort", "Cancel the currently running query"),
    BuiltinCommand("help", "List all available commands"),
]

HELP_LINES = [
    "**Claude Discord Bridge — Commands**",
    "",
    "`/new [save_as]` — Start fresh. Optionally save current session with a label.",
    "`/resume [label]` — List saved sessions, or resume one by label.",
    "`/status` — Show project and session info.",
    "`/cost` — Show cost of last query.",
    "`/config` — Show full project config and active overrides.",
    "`/model <name>` — Switch model (Sonnet/Opus/Haiku).",
    "`/permission-mode <mode>` — Switch permission mode.",
    "`/abort` — Cancel the running query.",
    "`/projects` — List all registered projects.",
    "`/rescan` — Re-scan for new projects.",
    "`/help` — Show this message.",
]


def model_display_name(model: str) -> str:
    for display, value in MODEL_CHOICES.items():
        if value == model or display.lower() in model.lower():
            return display
    return model


def resolve_model(value: str) -> str:
    """Accept either a display name (``opus``) or a model id."""
    for display, model in MODEL_CHOICES.items():
        if value.strip().lower() == display.lower():
            return model
    return value.strip()


class CommandRouter:
    """Turns command intents into reply text."""

    def __init__(
        self,
        orchestrator: QueryOrchestrator,
        projects: ProjectRegistry,
        sessions: SessionStore,
        native_commands: list[NativeCommand] | None = None,
    ):
        self.orchestrator = orchestrator
        self.projects = projects
        self.sessions = sessions
        self.native_commands: dict[str, NativeCommand] = {}
        self.set_native_commands(native_commands or [])
        self._handlers = {
            "new": self._new,
            "resume": self._resume,
            "status": self._status,
            "cost": self._cost,
            "config": self._config,
            "projects": self._projects,
            "rescan": self._rescan,
            "model": self._model,
            "permission-mode": self._permission_mode,
            "abort": self._abort,
            "help": self._help,
        }

    def set_native_commands(self, commands: list[NativeCommand]) -> None:
        """Register discovered backend commands, skipping names we handle ourselves."""
        builtin = {c.name for c in BUILTIN_COMMANDS}
        self.native_commands = {c.name: c for c in commands if c.name not in builtin}

    async def handle(self, intent: CommandIntent) -> str:
        handler = self._handlers.get(intent.name)
        if handler is not None:
            logger.debug(f"Command /{intent.name} in channel {intent.channel_id}")
            return await handler(intent)
        if intent.name in self.native_commands:
            return self._passthrough(intent)
        return UNKNOWN_COMMAND

    # ── Session commands ──

    async def _new(self, intent: CommandIntent) -> str:
        label = (intent.args.get("save_as") or "").strip()
        saved = await self.orchestrator.start_fresh(intent.channel_id, save_as=label or None)
        if not label:
            return "Session cleared. Next message starts fresh."
        if saved:
            return f"Session saved as **{label}**. Starting fresh."
        return "No active session to save. Starting fresh."

    async def _resume(self, intent: CommandIntent) -> str:
        label = (intent.args.get("label") or "").strip()
        if not label:
            saved = self.sessions.list_saved(intent.channel_id)
            if not saved:
                return "No saved sessions. Use `/new save_as:<label>` to save before clearing."
            return "\n".join(f"**{s.label}** — saved {s.saved_at}" for s in saved)

        if self.orchestrator.resume_saved(intent.channel_id, label):
            return f"Resumed session **{label}**."
        return f'No saved session named "{label}".'

    async def _abort(self, intent: CommandIntent) -> str:
        if await self.orchestrator.abort(intent.channel_id):
            return "Query aborted."
        return "No query is running in this channel."

    # ── Info commands ──

    async def _status(self, intent: CommandIntent) -> str:
        project = self.orchestrator.effective_config(intent.channel_id)
        if project is None:
            return NOT_LINKED

        session = self.sessions.get(intent.channel_id)
        state = self.orchestrator.state(intent.channel_id)
        queued = self.orchestrator.queued(intent.channel_id)
        lines = [
            f"**Project:** {project.name}",
            f"**Path:** `{project.path}`",
            f"**Model:** {project.model or 'default'}",
            f"**Permission Mode:** {project.permission_mode.value}",
            f"**Session:** {f'`{session[:8]}...`' if session else 'none'}",
        ]
        if state != ChannelState.IDLE:
            lines.append(f"**Query:** {state.value}" + (f" ({queued} queued)" if queued else ""))
        return "\n".join(lines)

    async def _cost(self, intent: CommandIntent) -> str:
        usage = self.orchestrator.last_usage(intent.channel_id)
        if usage is None:
            return "No cost data available. Send a message first."
        return (
            f"Last query: {format_cost(usage.cost_usd)} · "
            f"{format_duration(usage.duration_ms)} · {format_turns(usage.num_turns)}"
        )

    async def _config(self, intent: CommandIntent) -> str:
        project = self.projects.get_by_channel_id(intent.channel_id)
        if project is None:
            return NOT_LINKED

        model_override, mode_override = self.orchestrator.overrides(intent.channel_id)
        model = model_override or project.model or "default"
        mode = (mode_override or project.permission_mode).value
        lines = [
            f"**Project:** {project.name}",
            f"**Path:** `{project.path}`",
            f"**Model:** {model}{' *(override)*' if model_override else ''}",
            f"**Permission Mode:** {mode}{' *(override)*' if mode_override else ''}",
        ]
        if project.max_budget_usd:
            lines.append(f"**Budget:** ${project.max_budget_usd:g}")
        if project.allowed_tools:
            lines.append(f"**Allowed Tools:** {', '.join(project.allowed_tools)}")
        if project.disallowed_tools:
            lines.append(f"**Disallowed Tools:** {', '.join(project.disallowed_tools)}")
        return "\n".join(lines)

    async def _projects(self, intent: CommandIntent) -> str:
        projects = self.projects.get_all()
        if not projects:
            return "No projects registered."
        return "\n".join(f"**{p.name}** → <#{p.channel_id}>" for p in projects)

    async def _rescan(self, intent: CommandIntent) -> str:
        try:
            self.projects.discover()
        except ProjectsRootError as e:
            logger.error(f"Rescan failed: {e}")
            return f"Rescan failed: {e}"
        return f"Rescanned. {self.projects.count()} projects found."

    async def _help(self, intent: CommandIntent) -> str:
        lines = list(HELP_LINES)
        if self.native_commands:
            names = ", ".join(f"`/{name}`" for name in sorted(self.native_commands))
            lines += ["", f"Claude Code commands: {names}"]
        return "\n".join(lines)

    # ── Overrides ──

    async def _model(self, intent: CommandIntent) -> str:
        value = intent.args.get("name") or ""
        if not value.strip():
            return "Choose a model: " + ", ".join(MODEL_CHOICES)
        model = resolve_model(value)
        self.orchestrator.set_model_override(intent.channel_id, model)
        return f"Model switched to **{model_display_name(model)}** for this channel."

    async def _permission_mode(self, intent: CommandIntent) -> str:
        value = (intent.args.get("mode") or "").strip()
        mode = parse_permission_mode(value) or parse_permission_mode(PERMISSION_MODE_CHOICES.get(value))
        if mode is None:
            return f"Unknown permission mode. Choose one of: {', '.join(PERMISSION_MODE_CHOICES.values())}"
        self.orchestrator.set_permission_mode_override(intent.channel_id, mode)
        return f"Permission mode set to **{mode.value}** for this channel."

    # ── Native commands ──

    def _passthrough(self, intent: CommandIntent) -> str:
        prompt = f"/{intent.name} {intent.args.get('args', '')}".strip()
        outcome = self.orchestrator.submit(intent.channel_id, prompt)
        if outcome == SubmitOutcome.NOT_LINKED:
            return NOT_LINKED
        if outcome == SubmitOutcome.REJECTED:
            return "Too many queued messages in this channel. Try again later."
        if outcome == SubmitOutcome.QUEUED:
            return f"Queued `{prompt}`."
        return f"Running `{prompt}`."
