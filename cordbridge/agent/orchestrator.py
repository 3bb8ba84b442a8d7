"""
Per-channel query orchestration.

Each channel has a :class:`ChannelContext` owned by the orchestrator. A channel
is IDLE, INVOKING or ABORTING. ``submit`` either dispatches immediately or
appends to the channel's FIFO queue; a single drain task per busy channel runs
queued work one item at a time, so at most one agent invocation exists per
channel.

While an invocation runs, the orchestrator:

- edits a placeholder message with the streamed text (throttled),
- keeps one ``-# ⏵ ...`` progress message for tool activity,
- re-sends the typing indicator on a fixed cadence,
- routes tool permission callbacks through an :class:`ApprovalMediator`.

On completion the session id is persisted, the usage summary replaced, and
the final text chunked and delivered (the first fragment replaces the
placeholder, the footer goes under the last fragment).
"""

import asyncio
import contextlib
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger

from cordbridge.agent.backend import AgentBackend, AgentInvocation, InvocationRequest
from cordbridge.agent.events import (
    NO_RESPONSE,
    AgentEvent,
    Completed,
    QueryResult,
    SessionStarted,
    TextDelta,
    ToolActivity,
    UsageSummary,
)
from cordbridge.agent.permissions import ApprovalMediator
from cordbridge.channels.base import ChatTransport, SentMessage
from cordbridge.config.schema import ApprovalConfig, StreamingConfig
from cordbridge.errors import BackendError, FailureKind, classify_failure
from cordbridge.formatter import chunk_response, format_usage_footer
from cordbridge.projects.registry import PermissionMode, ProjectConfig, ProjectRegistry
from cordbridge.sessions.store import SessionStore
from cordbridge.utils.helpers import best_effort, truncate_string

PLACEHOLDER = "-# ⏳"
PROGRESS_PREFIX = "-# ⏵ "
INTERRUPTED_NOTE = "-# ⏹ Interrupted"
ABORTED_MESSAGE = "Query aborted."
SESSION_EXPIRED_MESSAGE = (
    "Session expired or corrupted. Starting fresh — please resend your message."
)
UNLINKED_MESSAGE = "This channel is no longer linked to a project."


class ChannelState(str, Enum):
    IDLE = "idle"
    INVOKING = "invoking"
    ABORTING = "aborting"


class SubmitOutcome(str, Enum):
    DISPATCHED = "dispatched"
    QUEUED = "queued"
    REJECTED = "rejected"  # queue is at its soft limit
    NOT_LINKED = "not_linked"


@dataclass
class PendingQuery:
    channel_id: str
    prompt: str
    attachments: list[str] = field(default_factory=list)


@dataclass
class ActiveInvocation:
    channel_id: str
    handle: AgentInvocation
    started_at: float


@dataclass
class ChannelContext:
    """Mutable state for one channel. Only the orchestrator touches it."""
    channel_id: str
    state: ChannelState = ChannelState.IDLE
    queue: deque[PendingQuery] = field(default_factory=deque)
    active: ActiveInvocation | None = None
    model_override: str | None = None
    permission_mode_override: PermissionMode | None = None
    last_usage: UsageSummary | None = None
    # Bumped whenever the stored session is replaced or cleared by the user
    session_epoch: int = 0
    task: asyncio.Task | None = None


class StreamRenderer:
    """Edits the placeholder with streamed text, at most once per interval."""

    def __init__(
        self,
        transport: ChatTransport,
        message: SentMessage,
        throttle_seconds: float,
        max_length: int,
        clock: Callable[[], float],
    ):
        self.transport = transport
        self.message = message
        self.throttle_seconds = throttle_seconds
        self.max_length = max_length
        self.clock = clock
        self.text = ""
        self._last_edit: float | None = None

    async def update(self, text: str) -> None:
        self.text = text
        now = self.clock()
        if self._last_edit is not None and now - self._last_edit < self.throttle_seconds:
            return
        self._last_edit = now
        await best_effort(
            self.transport.edit(self.message, truncate_string(text, self.max_length)),
            "Streaming edit",
        )


class ProgressIndicator:
    """A single tool-activity message, created lazily and edited in place."""

    def __init__(self, transport: ChatTransport, channel_id: str):
        self.transport = transport
        self.channel_id = channel_id
        self.message: SentMessage | None = None
        self._lock = asyncio.Lock()

    async def show(self, text: str) -> None:
        content = f"{PROGRESS_PREFIX}{text}"
        async with self._lock:
            if self.message is None:
                self.message = await best_effort(
                    self.transport.send(self.channel_id, content), "Sending progress message"
                )
            else:
                await best_effort(self.transport.edit(self.message, content), "Editing progress message")


class QueryOrchestrator:
    """Runs agent queries, one at a time per channel."""

    def __init__(
        self,
        transport: ChatTransport,
        backend: AgentBackend,
        sessions: SessionStore,
        projects: ProjectRegistry,
        streaming: StreamingConfig | None = None,
        approval: ApprovalConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.backend = backend
        self.sessions = sessions
        self.projects = projects
        self.streaming = streaming or StreamingConfig()
        self.approval = approval or ApprovalConfig()
        self.clock = clock
        self._channels: dict[str, ChannelContext] = {}

    # ── Public API ──────────────────────────────────────────────────

    def context(self, channel_id: str) -> ChannelContext:
        ctx = self._channels.get(channel_id)
        if ctx is None:
            ctx = ChannelContext(channel_id=channel_id)
            self._channels[channel_id] = ctx
        return ctx

    def state(self, channel_id: str) -> ChannelState:
        ctx = self._channels.get(channel_id)
        return ctx.state if ctx else ChannelState.IDLE

    def queued(self, channel_id: str) -> int:
        ctx = self._channels.get(channel_id)
        return len(ctx.queue) if ctx else 0

    def overrides(self, channel_id: str) -> tuple[str | None, PermissionMode | None]:
        """The channel's (model, permission mode) overrides, without creating state."""
        ctx = self._channels.get(channel_id)
        if ctx is None:
            return None, None
        return ctx.model_override, ctx.permission_mode_override

    def submit(
        self,
        channel_id: str,
        prompt: str,
        attachments: list[str] | None = None,
    ) -> SubmitOutcome:
        """Dispatch ``prompt`` now if the channel is idle, otherwise queue it.

        Must be called from the event loop. The state change to INVOKING
        happens before this returns, so a second submit in the same tick is
        queued.
        """
        if self.projects.get_by_channel_id(channel_id) is None:
            return SubmitOutcome.NOT_LINKED

        ctx = self.context(channel_id)
        query = PendingQuery(channel_id=channel_id, prompt=prompt, attachments=list(attachments or []))

        if ctx.state == ChannelState.IDLE:
            ctx.state = ChannelState.INVOKING
            ctx.task = asyncio.create_task(self._drain(ctx, query), name=f"channel-{channel_id}")
            ctx.task.add_done_callback(self._on_drain_done)
            return SubmitOutcome.DISPATCHED

        if len(ctx.queue) >= self.streaming.max_queue_per_channel:
            logger.warning(f"Queue full for channel {channel_id}, rejecting message")
            return SubmitOutcome.REJECTED

        ctx.queue.append(query)
        logger.debug(f"Queued message for channel {channel_id} ({len(ctx.queue)} waiting)")
        return SubmitOutcome.QUEUED

    async def abort(self, channel_id: str) -> bool:
        """Interrupt the running query. False when nothing is running."""
        ctx = self._channels.get(channel_id)
        if ctx is None or ctx.state == ChannelState.IDLE:
            return False
        if ctx.state == ChannelState.ABORTING:
            return True

        ctx.state = ChannelState.ABORTING
        logger.info(f"Aborting query in channel {channel_id}")
        if ctx.active is not None:
            await best_effort(ctx.active.handle.interrupt(), "Interrupting agent")
        return True

    async def start_fresh(self, channel_id: str, save_as: str | None = None) -> bool | None:
        """Abort, optionally save, then clear the channel's session.

        Returns whether the save succeeded, or ``None`` if no label was given.
        """
        await self.abort(channel_id)
        saved = self.sessions.save(channel_id, save_as) if save_as else None
        self.sessions.clear(channel_id)
        self.context(channel_id).session_epoch += 1
        return saved

    def resume_saved(self, channel_id: str, label: str) -> bool:
        restored = self.sessions.restore(channel_id, label)
        if restored:
            self.context(channel_id).session_epoch += 1
        return restored

    def set_model_override(self, channel_id: str, model: str | None) -> None:
        self.context(channel_id).model_override = model

    def set_permission_mode_override(self, channel_id: str, mode: PermissionMode | None) -> None:
        self.context(channel_id).permission_mode_override = mode

    def last_usage(self, channel_id: str) -> UsageSummary | None:
        ctx = self._channels.get(channel_id)
        return ctx.last_usage if ctx else None

    def effective_config(self, channel_id: str, project: ProjectConfig | None = None) -> ProjectConfig | None:
        """Project settings with this channel's runtime overrides applied."""
        project = project or self.projects.get_by_channel_id(channel_id)
        if project is None:
            return None
        ctx = self._channels.get(channel_id)
        if ctx is None:
            return project
        update: dict[str, Any] = {}
        if ctx.model_override:
            update["model"] = ctx.model_override
        if ctx.permission_mode_override:
            update["permission_mode"] = ctx.permission_mode_override
        return project.model_copy(update=update) if update else project

    def snapshot(self) -> list[dict[str, Any]]:
        """Per-channel state for diagnostics."""
        rows = []
        for ctx in self._channels.values():
            rows.append(
                {
                    "channel_id": ctx.channel_id,
                    "state": ctx.state.value,
                    "queued": len(ctx.queue),
                    "active": ctx.active is not None,
                    "model_override": ctx.model_override,
                    "permission_mode_override": (
                        ctx.permission_mode_override.value if ctx.permission_mode_override else None
                    ),
                    "last_usage": asdict(ctx.last_usage) if ctx.last_usage else None,
                }
            )
        return rows

    async def wait_idle(self, channel_id: str) -> None:
        """Wait until the channel has no running or queued work."""
        ctx = self._channels.get(channel_id)
        while ctx is not None and ctx.task is not None and not ctx.task.done():
            await asyncio.wait({ctx.task})

    async def shutdown(self) -> None:
        """Drop queued work, interrupt running queries and wait for them."""
        tasks = []
        for ctx in self._channels.values():
            ctx.queue.clear()
            if ctx.state != ChannelState.IDLE:
                await self.abort(ctx.channel_id)
            if ctx.task is not None:
                tasks.append(ctx.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Drain loop ──────────────────────────────────────────────────

    async def _drain(self, ctx: ChannelContext, query: PendingQuery | None) -> None:
        # Every record logged by this channel's work carries extra["channel_id"]
        try:
            with logger.contextualize(channel_id=ctx.channel_id):
                while query is not None:
                    ctx.state = ChannelState.INVOKING
                    try:
                        await self._run(ctx, query)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        logger.exception(f"Unhandled error running query in channel {ctx.channel_id}: {e}")
                    query = ctx.queue.popleft() if ctx.queue else None
        finally:
            ctx.state = ChannelState.IDLE
            ctx.active = None
            ctx.task = None

    def _on_drain_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            channel_id = task.get_name().removeprefix("channel-")
            logger.bind(channel_id=channel_id).error(f"Channel worker crashed: {exc}")

    async def _run(self, ctx: ChannelContext, query: PendingQuery) -> None:
        channel_id = ctx.channel_id
        # Overrides are read now, not when the query was queued
        project = self.effective_config(channel_id)
        if project is None:
            await best_effort(self.transport.send(channel_id, UNLINKED_MESSAGE), "Sending unlinked notice")
            return

        resume = self.sessions.get(channel_id)
        epoch = ctx.session_epoch
        logger.info(
            f"Query [{project.name}] session={resume[:8] if resume else 'new'} "
            f"prompt={query.prompt[:60]!r}"
        )

        await best_effort(self.transport.trigger_typing(channel_id), "Typing indicator")
        placeholder = await best_effort(self.transport.send(channel_id, PLACEHOLDER), "Sending placeholder")
        if placeholder is None:
            logger.error(f"Could not post to channel {channel_id}; dropping query")
            return

        renderer = StreamRenderer(
            self.transport,
            placeholder,
            self.streaming.edit_throttle_seconds,
            self.streaming.max_message_length,
            self.clock,
        )
        progress = ProgressIndicator(self.transport, channel_id)
        mediator = ApprovalMediator(
            self.transport,
            channel_id,
            tool_timeout=self.approval.tool_timeout_seconds,
            question_timeout=self.approval.question_timeout_seconds,
            preview_length=self.approval.preview_length,
        )
        request = InvocationRequest(
            prompt=query.prompt,
            project=project,
            resume=resume,
            attachments=query.attachments,
            approver=mediator.request,
        )

        keepalive = asyncio.create_task(self._keep_alive(channel_id))
        handle = self.backend.start(request)
        ctx.active = ActiveInvocation(channel_id=channel_id, handle=handle, started_at=self.clock())
        try:
            if ctx.state == ChannelState.ABORTING:
                await best_effort(handle.interrupt(), "Interrupting agent")

            result: QueryResult | None = None
            async for event in handle.events():
                completed = await self._handle_event(event, renderer, progress)
                if completed is not None:
                    result = completed
            if result is None:
                raise BackendError("Agent stream ended without a result")

            await self._complete(ctx, project, result, renderer, placeholder, resume, epoch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(ctx, project, e, placeholder, resume, epoch)
        finally:
            ctx.active = None
            keepalive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keepalive

    async def _handle_event(
        self,
        event: AgentEvent,
        renderer: StreamRenderer,
        progress: ProgressIndicator,
    ) -> QueryResult | None:
        if isinstance(event, TextDelta):
            await renderer.update(event.text)
        elif isinstance(event, ToolActivity):
            await progress.show(event.text)
        elif isinstance(event, SessionStarted):
            logger.debug(f"Agent session {event.session_id}")
        elif isinstance(event, Completed):
            return event.result
        else:
            raise TypeError(f"Unknown agent event: {event!r}")
        return None

    async def _keep_alive(self, channel_id: str) -> None:
        while True:
            await asyncio.sleep(self.streaming.keepalive_interval_seconds)
            await best_effort(self.transport.trigger_typing(channel_id), "Typing indicator")

    # ── Completion ──────────────────────────────────────────────────

    async def _complete(
        self,
        ctx: ChannelContext,
        project: ProjectConfig,
        result: QueryResult,
        renderer: StreamRenderer,
        placeholder: SentMessage,
        resume: str | None,
        epoch: int,
    ) -> None:
        channel_id = ctx.channel_id
        aborted = result.interrupted or ctx.state == ChannelState.ABORTING

        # The backend may rotate ids across a resume; always take the latest
        if result.session_id and ctx.session_epoch == epoch:
            self.sessions.set(channel_id, result.session_id, project.name)
        ctx.last_usage = UsageSummary.from_result(result)

        footer = format_usage_footer(
            result.cost_usd,
            result.duration_ms,
            result.num_turns,
            result.context_used,
            result.context_window,
        )

        if aborted:
            text = result.text if result.text != NO_RESPONSE else renderer.text
            if not text.strip():
                await self._edit(placeholder, ABORTED_MESSAGE)
                return
            await self._deliver(channel_id, placeholder, text, f"{INTERRUPTED_NOTE}\n{footer}")
            return

        if result.is_error and result.errors:
            kind = classify_failure(result.error_text, resumed=bool(resume))
            logger.warning(f"Query [{project.name}] returned error ({kind.value}): {result.error_text}")
            if kind == FailureKind.SESSION:
                self._drop_session(ctx, epoch)
                await self._edit(placeholder, SESSION_EXPIRED_MESSAGE)
            else:
                await self._edit(placeholder, f"Error: {result.error_text}")
            return

        await self._deliver(channel_id, placeholder, result.text, footer)

    async def _fail(
        self,
        ctx: ChannelContext,
        project: ProjectConfig,
        error: Exception,
        placeholder: SentMessage,
        resume: str | None,
        epoch: int,
    ) -> None:
        if ctx.state == ChannelState.ABORTING:
            logger.info(f"Query [{project.name}] ended during abort: {error}")
            await self._edit(placeholder, ABORTED_MESSAGE)
            return

        kind = classify_failure(error, resumed=bool(resume))
        logger.error(f"Query error [{project.name}] session={resume or 'none'} ({kind.value}): {error}")
        if kind == FailureKind.SESSION:
            self._drop_session(ctx, epoch)
            await self._edit(placeholder, SESSION_EXPIRED_MESSAGE)
        else:
            await self._edit(placeholder, f"Error: {error}")

    def _drop_session(self, ctx: ChannelContext, epoch: int) -> None:
        # A session the user set meanwhile is not the one that failed
        if ctx.session_epoch == epoch:
            self.sessions.clear(ctx.channel_id)

    async def _deliver(self, channel_id: str, placeholder: SentMessage, text: str, footer: str) -> None:
        chunks = chunk_response(text, self.streaming.max_message_length)
        last = len(chunks) - 1
        for i, chunk in enumerate(chunks):
            # The footer rides in the headroom left under the platform limit
            content = f"{chunk}\n\n{footer}" if i == last else chunk
            if i == 0:
                await best_effort(self.transport.edit(placeholder, content), "Editing response")
            else:
                await best_effort(self.transport.send(channel_id, content), "Sending response fragment")

    async def _edit(self, message: SentMessage, content: str) -> None:
        await best_effort(
            self.transport.edit(message, truncate_string(content, self.streaming.max_message_length)),
            "Editing response",
        )
