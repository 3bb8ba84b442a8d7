"""
Agent backend built on the Claude Agent SDK.

``ClaudeBackend.start`` returns an invocation handle. Iterating
``handle.events()`` runs the query and yields :mod:`cordbridge.agent.events`
values, always ending with exactly one ``Completed``. ``handle.interrupt()``
may be called at any time, including before the SDK client has connected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ProcessError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, StreamEvent
from loguru import logger

from cordbridge.agent.events import (
    NO_RESPONSE,
    AgentEvent,
    Completed,
    QueryResult,
    SessionStarted,
    TextDelta,
    ToolActivity,
)
from cordbridge.agent.permissions import Allow, Decision
from cordbridge.errors import BackendError, FailureKind
from cordbridge.projects.registry import ProjectConfig
from cordbridge.utils.helpers import truncate_string

Approver = Callable[[str, dict[str, Any]], Awaitable[Decision]]

DEFAULT_ATTACHMENT_PROMPT = "Analyze the uploaded file(s)."


@dataclass
class InvocationRequest:
    """Everything needed to run one query for a channel."""
    prompt: str
    project: ProjectConfig  # With channel overrides already applied
    resume: str | None = None
    attachments: list[str] = field(default_factory=list)
    approver: Approver | None = None


class AgentInvocation(ABC):
    """A single running query."""

    @abstractmethod
    def events(self) -> AsyncIterator[AgentEvent]:
        """Run the query, yielding events. The last event is ``Completed``."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Ask the backend to stop. The event stream still ends with ``Completed``."""


class AgentBackend(ABC):
    @abstractmethod
    def start(self, request: InvocationRequest) -> AgentInvocation:
        pass


def build_prompt(prompt: str, attachments: list[str]) -> str:
    """Prefix the prompt with the list of uploaded files, if any."""
    if not attachments:
        return prompt
    file_list = "\n".join(f"  - {path}" for path in attachments)
    body = prompt if prompt.strip() else DEFAULT_ATTACHMENT_PROMPT
    return f"[User uploaded files:\n{file_list}\n]\n\n{body}"


def describe_tool_use(name: str, tool_input: dict[str, Any]) -> str:
    """One-line summary for the progress indicator, e.g. ``Bash: npm test``."""
    hint = ""
    for key in ("command", "file_path", "path", "pattern"):
        value = tool_input.get(key)
        if value is not None:
            hint = str(value)
            break
    short = truncate_string(hint, 80)
    return f"{name}: {short}" if short else name


def _permission_callback(approver: Approver):
    async def can_use_tool(tool_name: str, tool_input: dict[str, Any], _context: Any):
        decision = await approver(tool_name, tool_input)
        if isinstance(decision, Allow):
            return PermissionResultAllow(updated_input=decision.updated_input)
        return PermissionResultDeny(message=decision.message)

    return can_use_tool


def build_options(request: InvocationRequest) -> ClaudeAgentOptions:
    project = request.project
    options_kwargs: dict[str, Any] = {
        "cwd": project.path,
        "setting_sources": ["project", "user"],
        "system_prompt": {"type": "preset", "preset": "claude_code"},
        "permission_mode": project.permission_mode.value,
        "include_partial_messages": True,
    }
    if request.approver is not None:
        options_kwargs["can_use_tool"] = _permission_callback(request.approver)
    if request.resume:
        options_kwargs["resume"] = request.resume
    if project.model:
        options_kwargs["model"] = project.model
    if project.max_budget_usd:
        options_kwargs["max_budget_usd"] = project.max_budget_usd
    if project.allowed_tools:
        options_kwargs["allowed_tools"] = list(project.allowed_tools)
    if project.disallowed_tools:
        options_kwargs["disallowed_tools"] = list(project.disallowed_tools)
    return ClaudeAgentOptions(**options_kwargs)


class _ResultBuilder:
    """Folds SDK messages into events and the final ``QueryResult``."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self.stream_text = ""
        self.text = ""
        self.result = QueryResult(session_id=session_id)
        self.finished = False

    def consume(self, message: Any) -> list[AgentEvent]:
        if isinstance(message, SystemMessage):
            return self._on_system(message)
        if isinstance(message, StreamEvent):
            return self._on_stream_event(message.event)
        if isinstance(message, AssistantMessage):
            return self._on_assistant(message)
        if isinstance(message, ResultMessage):
            self._on_result(message)
        return []

    def _on_system(self, message: SystemMessage) -> list[AgentEvent]:
        data = message.data or {}
        if message.subtype == "init" and data.get("session_id"):
            self.session_id = data["session_id"]
            return [SessionStarted(self.session_id)]
        if message.subtype == "status" and data.get("status") == "compacting":
            return [ToolActivity("Compacting conversation...")]
        return []

    def _on_stream_event(self, event: dict[str, Any]) -> list[AgentEvent]:
        if event.get("type") != "content_block_delta":
            return []
        delta = event.get("delta") or {}
        if delta.get("type") != "text_delta" or not isinstance(delta.get("text"), str):
            return []
        self.stream_text += delta["text"]
        return [TextDelta(delta["text"], self.stream_text)]

    def _on_assistant(self, message: AssistantMessage) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                self.text += block.text
            elif isinstance(block, ToolUseBlock):
                events.append(ToolActivity(describe_tool_use(block.name, block.input or {})))
        usage = getattr(message, "usage", None)
        if isinstance(usage, dict):
            self.result.context_used = _context_tokens(usage)
        return events

    def _on_result(self, message: ResultMessage) -> None:
        result = self.result
        self.session_id = message.session_id or self.session_id
        result.cost_usd = message.total_cost_usd or 0.0
        result.duration_ms = message.duration_ms or 0
        result.num_turns = message.num_turns or 0
        result.is_error = bool(message.is_error)

        errors = list(getattr(message, "errors", None) or [])
        if message.subtype != "success" and not errors and message.result:
            errors = [message.result]
        if result.is_error and not errors:
            errors = [message.subtype]
        result.errors = errors

        if not self.text and message.result:
            self.text = message.result
        if not result.context_used and isinstance(message.usage, dict):
            result.context_used = _context_tokens(message.usage)

        model_usage = getattr(message, "model_usage", None) or {}
        for usage in model_usage.values():
            window = usage.get("contextWindow") or usage.get("context_window")
            if window:
                result.context_window = int(window)
                break
        self.finished = True

    def build(self, interrupted: bool) -> QueryResult:
        result = self.result
        result.session_id = self.session_id
        result.text = self.text or NO_RESPONSE
        result.interrupted = interrupted
        return result


def _context_tokens(usage: dict[str, Any]) -> int:
    return (
        int(usage.get("input_tokens") or 0)
        + int(usage.get("cache_read_input_tokens") or 0)
        + int(usage.get("cache_creation_input_tokens") or 0)
    )


class ClaudeInvocation(AgentInvocation):
    def __init__(self, request: InvocationRequest):
        self.request = request
        self._client: ClaudeSDKClient | None = None
        self._interrupt_requested = False

    async def events(self) -> AsyncIterator[AgentEvent]:
        request = self.request
        builder = _ResultBuilder(session_id=request.resume or "")
        options = build_options(request)
        try:
            async with ClaudeSDKClient(options=options) as client:
                self._client = client
                if not self._interrupt_requested:
                    await client.query(build_prompt(request.prompt, request.attachments))
                    async for message in client.receive_response():
                        for event in builder.consume(message):
                            yield event
        except ClaudeSDKError as e:
            # A CLI exit while resuming means the stored session is unusable
            kind = FailureKind.SESSION if request.resume and isinstance(e, ProcessError) else FailureKind.BACKEND
            raise BackendError(str(e), kind=kind) from e
        finally:
            self._client = None

        yield Completed(builder.build(interrupted=self._interrupt_requested))

    async def interrupt(self) -> None:
        self._interrupt_requested = True
        client = self._client
        if client is not None:
            logger.debug("Sending interrupt to agent backend")
            await client.interrupt()


class ClaudeBackend(AgentBackend):
    """Runs queries through ``ClaudeSDKClient``."""

    def start(self, request: InvocationRequest) -> AgentInvocation:
        return ClaudeInvocation(request)
