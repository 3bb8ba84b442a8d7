from __future__ import annotations

import asyncio

import pytest

from cordbridge.agent.permissions import (
    COLOR_APPROVED,
    COLOR_TIMED_OUT,
    DENIED_MESSAGE,
    QUESTION_TIMEOUT_MESSAGE,
    TIMEOUT_MESSAGE,
    UNDELIVERABLE_MESSAGE,
    Allow,
    ApprovalMediator,
    ApprovalRequest,
    ApprovalState,
    Deny,
    describe_tool,
)
from cordbridge.channels.base import (
    ChatTransport,
    InteractivePrompt,
    PromptKind,
    PromptOutcome,
    SentMessage,
)


class _ScriptedTransport(ChatTransport):
    """Answers each prompt with the next scripted outcome (or raises it)."""

    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.asked: list[tuple[InteractivePrompt, float]] = []
        self.updated: list[InteractivePrompt] = []

    async def send(self, channel_id: str, content: str) -> SentMessage:
        return SentMessage(channel_id, "m")

    async def edit(self, message: SentMessage, content: str) -> None:
        return None

    async def trigger_typing(self, channel_id: str) -> None:
        return None

    async def add_reaction(self, message: SentMessage, emoji: str) -> None:
        return None

    async def ask(self, channel_id: str, prompt: InteractivePrompt, timeout: float) -> PromptOutcome:
        self.asked.append((prompt, timeout))
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def update_prompt(self, message: SentMessage, prompt: InteractivePrompt) -> None:
        self.updated.append(prompt)


def _clicked(*indexes: int) -> PromptOutcome:
    return PromptOutcome(selected=list(indexes), message=SentMessage("c1", "prompt"))


def _timed_out() -> PromptOutcome:
    return PromptOutcome(selected=None, message=SentMessage("c1", "prompt"))


def test_approve_allows_with_original_input() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([_clicked(0)])
        mediator = ApprovalMediator(transport, "c1", tool_timeout=30)

        decision = await mediator.request("Bash", {"command": "npm test"})

        assert decision == Allow({"command": "npm test"})
        prompt, timeout = transport.asked[0]
        assert prompt.kind == PromptKind.APPROVAL
        assert prompt.title == "Permission Request: Bash"
        assert timeout == 30
        assert transport.updated[0].title == "Approved: Bash"
        assert transport.updated[0].color == COLOR_APPROVED
        assert mediator.history[0].state == ApprovalState.APPROVED

    asyncio.run(_run())


def test_deny_button_denies() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([_clicked(1)])
        mediator = ApprovalMediator(transport, "c1")

        decision = await mediator.request("Write", {"file_path": "a.txt", "content": "hi"})

        assert decision == Deny(DENIED_MESSAGE)
        assert transport.updated[0].title == "Denied: Write"

    asyncio.run(_run())


def test_timeout_fails_closed() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([_timed_out()])
        mediator = ApprovalMediator(transport, "c1")

        decision = await mediator.request("Bash", {"command": "rm -rf build"})

        assert decision == Deny(TIMEOUT_MESSAGE)
        assert transport.updated[0].title == "Timed Out: Bash"
        assert transport.updated[0].color == COLOR_TIMED_OUT
        assert mediator.history[0].state == ApprovalState.TIMED_OUT

    asyncio.run(_run())


def test_undeliverable_prompt_fails_closed() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([RuntimeError("missing permissions")])
        mediator = ApprovalMediator(transport, "c1")

        decision = await mediator.request("Bash", {"command": "ls"})

        assert decision == Deny(UNDELIVERABLE_MESSAGE)
        assert transport.updated == []
        assert mediator.history[0].state == ApprovalState.DENIED

    asyncio.run(_run())


def test_questions_are_asked_one_at_a_time_and_collected() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([_clicked(1), _clicked(0, 2)])
        mediator = ApprovalMediator(transport, "c1", question_timeout=45)
        tool_input = {
            "questions": [
                {
                    "question": "Which database?",
                    "header": "Storage",
                    "options": [{"label": "SQLite"}, {"label": "Postgres"}],
                },
                {
                    "question": "Which features?",
                    "header": "Scope",
                    "multiSelect": True,
                    "options": [{"label": "Auth"}, {"label": "Billing"}, {"label": "Search"}],
                },
            ]
        }

        decision = await mediator.request("AskUserQuestion", tool_input)

        assert isinstance(decision, Allow)
        assert decision.updated_input["answers"] == {"0": "Postgres", "1": "Auth, Search"}
        assert decision.updated_input["questions"] == tool_input["questions"]
        assert [p.title for p, _ in transport.asked] == ["Storage", "Scope"]
        assert [t for _, t in transport.asked] == [45, 45]
        assert transport.asked[1][0].multi_select is True
        assert "Selected: **Postgres**" in transport.updated[0].description

    asyncio.run(_run())


def test_question_timeout_discards_partial_answers() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([_clicked(0), _timed_out()])
        mediator = ApprovalMediator(transport, "c1")
        tool_input = {
            "questions": [
                {"question": "A?", "header": "First", "options": [{"label": "yes"}]},
                {"question": "B?", "header": "Second", "options": [{"label": "no"}]},
            ]
        }

        decision = await mediator.request("AskUserQuestion", tool_input)

        assert decision == Deny(QUESTION_TIMEOUT_MESSAGE)
        assert mediator.history[0].state == ApprovalState.TIMED_OUT
        assert mediator.history[0].answers == {}
        assert transport.updated[-1].title == "Timed Out: Second"

    asyncio.run(_run())


def test_empty_question_list_is_allowed_without_prompting() -> None:
    async def _run() -> None:
        transport = _ScriptedTransport([])
        mediator = ApprovalMediator(transport, "c1")
        decision = await mediator.request("AskUserQuestion", {"questions": []})
        assert decision == Allow({"questions": []})
        assert transport.asked == []

    asyncio.run(_run())


def test_request_cannot_leave_a_terminal_state() -> None:
    request = ApprovalRequest(tool_name="Bash", input={}, channel_id="c1")
    request.resolve(ApprovalState.DENIED)
    with pytest.raises(RuntimeError):
        request.resolve(ApprovalState.APPROVED)


def test_describe_tool_by_kind() -> None:
    assert describe_tool("Bash", {"command": "ls -la"}) == "Run command:\n```bash\nls -la\n```"
    assert "5 characters" in describe_tool("Write", {"file_path": "a.py", "content": "hello"})

    edit = describe_tool("Edit", {"file_path": "a.py", "old_string": "x" * 300, "new_string": "y"})
    assert "Edit file: `a.py`" in edit
    assert ("x" * 97 + "...") in edit

    task = describe_tool("Task", {"subagent_type": "explorer", "description": "map the repo"})
    assert task == "Launch subagent: explorer\nTask: map the repo"

    other = describe_tool("WebFetch", {"url": "https://example.com"})
    assert other.startswith("Tool: WebFetch\n```json\n")
    assert '"url": "https://example.com"' in other


def test_describe_tool_truncates_long_previews() -> None:
    out = describe_tool("Bash", {"command": "a" * 1000}, preview_length=50)
    assert out == "Run command:\n```bash\n" + "a" * 47 + "...\n```"
