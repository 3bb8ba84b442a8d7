"""
Interactive approval of agent tool calls.

Every side-effecting tool call the agent wants to make is rendered in the
channel as an embed with Approve / Deny buttons. ``AskUserQuestion`` calls are
split into one prompt per question and answered with option buttons (or a
select menu for multi-select questions).

Both paths are fail-closed: a timeout or an undeliverable prompt resolves to
a denial, which the agent sees as an ordinary refused tool call.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from cordbridge.channels.base import (
    ChatTransport,
    InteractivePrompt,
    PromptChoice,
    PromptKind,
    PromptOutcome,
)
from cordbridge.utils.helpers import best_effort, truncate_string

ASK_USER_QUESTION = "AskUserQuestion"

DENIED_MESSAGE = "User denied via Discord"
TIMEOUT_MESSAGE = "Permission request timed out"
QUESTION_TIMEOUT_MESSAGE = "Question timed out"
UNDELIVERABLE_MESSAGE = "Permission request could not be delivered"

COLOR_PENDING = 0xFFA500
COLOR_APPROVED = 0x00FF00
COLOR_DENIED = 0xFF0000
COLOR_TIMED_OUT = 0x808080
COLOR_QUESTION = 0x5865F2


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Allow:
    updated_input: dict[str, Any]


@dataclass(frozen=True)
class Deny:
    message: str


Decision = Allow | Deny


@dataclass
class ApprovalRequest:
    """One pending tool call. Terminal once it leaves PENDING."""
    tool_name: str
    input: dict[str, Any]
    channel_id: str
    state: ApprovalState = ApprovalState.PENDING
    answers: dict[str, str] = field(default_factory=dict)

    def resolve(self, state: ApprovalState) -> None:
        if self.state != ApprovalState.PENDING:
            raise RuntimeError(f"Approval for {self.tool_name} already {self.state.value}")
        if state == ApprovalState.PENDING:
            raise ValueError("Cannot resolve an approval back to pending")
        self.state = state


def describe_tool(tool_name: str, tool_input: dict[str, Any], preview_length: int = 500) -> str:
    """Human-readable summary of a tool call for the approval embed."""
    if tool_name == "Bash":
        command = str(tool_input.get("command", ""))
        return f"Run command:\n```bash\n{truncate_string(command, preview_length)}\n```"
    if tool_name == "Write":
        path = str(tool_input.get("file_path", ""))
        content = str(tool_input.get("content", ""))
        return f"Create file: `{path}`\n{len(content)} characters"
    if tool_name == "Edit":
        path = str(tool_input.get("file_path", ""))
        old = truncate_string(str(tool_input.get("old_string", "")), 100)
        new = truncate_string(str(tool_input.get("new_string", "")), 100)
        return f"Edit file: `{path}`\nReplace: `{old}`\nWith: `{new}`"
    if tool_name == "Task":
        agent_type = str(tool_input.get("subagent_type", ""))
        description = truncate_string(str(tool_input.get("description", "")), 200)
        return f"Launch subagent: {agent_type}\nTask: {description}"

    payload = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    return f"Tool: {tool_name}\n```json\n{truncate_string(payload, preview_length)}\n```"


class ApprovalMediator:
    """Resolves the agent's permission callbacks for one channel."""

    def __init__(
        self,
        transport: ChatTransport,
        channel_id: str,
        tool_timeout: float = 600.0,
        question_timeout: float = 120.0,
        preview_length: int = 500,
    ):
        self.transport = transport
        self.channel_id = channel_id
        self.tool_timeout = tool_timeout
        self.question_timeout = question_timeout
        self.preview_length = preview_length
        self.history: list[ApprovalRequest] = []

    async def request(self, tool_name: str, tool_input: dict[str, Any]) -> Decision:
        """Ask the channel whether ``tool_name`` may run with ``tool_input``."""
        approval = ApprovalRequest(tool_name=tool_name, input=tool_input, channel_id=self.channel_id)
        self.history.append(approval)
        if tool_name == ASK_USER_QUESTION:
            return await self._ask_questions(approval)
        return await self._ask_approval(approval)

    async def _ask_approval(self, approval: ApprovalRequest) -> Decision:
        tool_name = approval.tool_name
        prompt = InteractivePrompt(
            title=f"Permission Request: {tool_name}",
            description=describe_tool(tool_name, approval.input, self.preview_length),
            color=COLOR_PENDING,
            kind=PromptKind.APPROVAL,
            choices=[PromptChoice("Approve"), PromptChoice("Deny")],
        )
        outcome = await self._ask(prompt, self.tool_timeout)
        if outcome is None:
            approval.resolve(ApprovalState.DENIED)
            return Deny(UNDELIVERABLE_MESSAGE)

        if outcome.timed_out:
            approval.resolve(ApprovalState.TIMED_OUT)
            logger.info(f"Approval for {tool_name} timed out in channel {self.channel_id}")
            await self._finish(outcome, prompt, f"Timed Out: {tool_name}", COLOR_TIMED_OUT)
            return Deny(TIMEOUT_MESSAGE)

        if outcome.selected and outcome.selected[0] == 0:
            approval.resolve(ApprovalState.APPROVED)
            await self._finish(outcome, prompt, f"Approved: {tool_name}", COLOR_APPROVED)
            return Allow(approval.input)

        approval.resolve(ApprovalState.DENIED)
        await self._finish(outcome, prompt, f"Denied: {tool_name}", COLOR_DENIED)
        return Deny(DENIED_MESSAGE)

    async def _ask_questions(self, approval: ApprovalRequest) -> Decision:
        questions = approval.input.get("questions") or []
        if not questions:
            approval.resolve(ApprovalState.APPROVED)
            return Allow(approval.input)

        answers: dict[str, str] = {}
        for index, question in enumerate(questions):
            options = question.get("options") or []
            header = str(question.get("header") or "Question")
            text = str(question.get("question") or "")
            option_lines = "\n".join(
                f"**{o.get('label', '')}** — {o.get('description', '')}" for o in options
            )
            prompt = InteractivePrompt(
                title=header,
                description=f"{text}\n\n{option_lines}",
                color=COLOR_QUESTION,
                kind=PromptKind.QUESTION,
                choices=[
                    PromptChoice(str(o.get("label", "")), str(o.get("description", "")))
                    for o in options
                ],
                multi_select=bool(question.get("multiSelect")),
            )

            outcome = await self._ask(prompt, self.question_timeout)
            if outcome is None:
                approval.resolve(ApprovalState.DENIED)
                return Deny(UNDELIVERABLE_MESSAGE)
            if outcome.timed_out or not outcome.selected:
                # Earlier answers are discarded
                approval.resolve(ApprovalState.TIMED_OUT)
                await self._finish(outcome, prompt, f"Timed Out: {header}", COLOR_TIMED_OUT)
                return Deny(QUESTION_TIMEOUT_MESSAGE)

            answer = ", ".join(prompt.choices[i].label for i in outcome.selected)
            answers[str(index)] = answer
            await self._finish(
                outcome,
                prompt,
                header,
                COLOR_APPROVED,
                description=f"{text}\n\nSelected: **{answer}**",
            )

        approval.answers = answers
        approval.resolve(ApprovalState.APPROVED)
        return Allow({**approval.input, "answers": answers})

    async def _ask(self, prompt: InteractivePrompt, timeout: float) -> PromptOutcome | None:
        """Round-trip one prompt; ``None`` when it could not be posted."""
        try:
            return await self.transport.ask(self.channel_id, prompt, timeout)
        except Exception as e:
            logger.warning(f"Could not post approval prompt in channel {self.channel_id}: {e}")
            return None

    async def _finish(
        self,
        outcome: PromptOutcome,
        prompt: InteractivePrompt,
        title: str,
        color: int,
        description: str | None = None,
    ) -> None:
        if outcome.message is None:
            return
        resolved = InteractivePrompt(
            title=title,
            description=prompt.description if description is None else description,
            color=color,
            kind=prompt.kind,
        )
        await best_effort(
            self.transport.update_prompt(outcome.message, resolved),
            "Updating approval prompt",
        )
