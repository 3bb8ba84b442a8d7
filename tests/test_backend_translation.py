from __future__ import annotations

import asyncio

from claude_agent_sdk import AssistantMessage, ResultMessage, SystemMessage, TextBlock, ToolUseBlock
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, StreamEvent

from cordbridge.agent.backend import (
    DEFAULT_ATTACHMENT_PROMPT,
    InvocationRequest,
    _permission_callback,
    _ResultBuilder,
    build_options,
    build_prompt,
    describe_tool_use,
)
from cordbridge.agent.discovery import parse_server_info
from cordbridge.agent.events import NO_RESPONSE, SessionStarted, TextDelta, ToolActivity
from cordbridge.agent.permissions import Allow, Deny
from cordbridge.projects.registry import PermissionMode, ProjectConfig


def _project(**overrides) -> ProjectConfig:
    data = {"name": "app", "path": "/work/app", "channel_id": "c1"}
    data.update(overrides)
    return ProjectConfig(**data)


def _result(**overrides) -> ResultMessage:
    data = dict(
        subtype="success",
        duration_ms=2500,
        duration_api_ms=2000,
        is_error=False,
        num_turns=3,
        session_id="sess-new",
        total_cost_usd=0.42,
        usage={"input_tokens": 1000, "cache_read_input_tokens": 24000},
        result="final text",
    )
    data.update(overrides)
    return ResultMessage(**data)


def _delta(text: str) -> StreamEvent:
    return StreamEvent(
        uuid="u",
        session_id="sess-new",
        event={"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    )


def test_build_prompt_lists_uploaded_files() -> None:
    assert build_prompt("hi", []) == "hi"
    out = build_prompt("", ["/p/.discord-uploads/a.png", "/p/.discord-uploads/b.txt"])
    assert out == (
        "[User uploaded files:\n  - /p/.discord-uploads/a.png\n  - /p/.discord-uploads/b.txt\n]\n\n"
        + DEFAULT_ATTACHMENT_PROMPT
    )


def test_describe_tool_use_picks_the_most_useful_field() -> None:
    assert describe_tool_use("Bash", {"command": "npm test"}) == "Bash: npm test"
    assert describe_tool_use("Read", {"file_path": "/src/main.py"}) == "Read: /src/main.py"
    assert describe_tool_use("TodoWrite", {"todos": []}) == "TodoWrite"
    long = describe_tool_use("Grep", {"pattern": "x" * 200})
    assert len(long) == len("Grep: ") + 80
    assert long.endswith("...")


def test_builder_turns_sdk_messages_into_events() -> None:
    builder = _ResultBuilder()

    events = builder.consume(SystemMessage(subtype="init", data={"session_id": "sess-new"}))
    assert events == [SessionStarted("sess-new")]

    assert builder.consume(_delta("Hel")) == [TextDelta("Hel", "Hel")]
    assert builder.consume(_delta("lo")) == [TextDelta("lo", "Hello")]

    assistant = AssistantMessage(
        content=[
            TextBlock(text="Hello"),
            ToolUseBlock(id="t1", name="Read", input={"file_path": "/a.py"}),
        ],
        model="claude-sonnet-4-5-20250929",
    )
    assert builder.consume(assistant) == [ToolActivity("Read: /a.py")]

    message = _result()
    message.model_usage = {"claude-sonnet-4-5-20250929": {"contextWindow": 200000}}
    assert builder.consume(message) == []

    result = builder.build(interrupted=False)
    assert builder.finished
    assert result.text == "Hello"
    assert result.session_id == "sess-new"
    assert result.cost_usd == 0.42
    assert result.duration_ms == 2500
    assert result.num_turns == 3
    assert result.context_used == 25000
    assert result.context_window == 200000
    assert result.is_error is False


def test_builder_reports_compaction_as_activity() -> None:
    builder = _ResultBuilder()
    events = builder.consume(SystemMessage(subtype="status", data={"status": "compacting"}))
    assert events == [ToolActivity("Compacting conversation...")]


def test_result_text_is_used_when_no_text_blocks_arrived() -> None:
    builder = _ResultBuilder(session_id="resumed")
    builder.consume(_result(session_id="", result="only in result"))
    result = builder.build(interrupted=False)
    assert result.text == "only in result"
    assert result.session_id == "resumed"


def test_error_result_carries_its_subtype() -> None:
    builder = _ResultBuilder()
    builder.consume(_result(subtype="error_during_execution", is_error=True, result=None))
    result = builder.build(interrupted=False)
    assert result.is_error
    assert result.errors == ["error_during_execution"]
    assert result.text == NO_RESPONSE


def test_interrupted_flag_is_recorded() -> None:
    builder = _ResultBuilder()
    assert builder.build(interrupted=True).interrupted is True


def test_build_options_applies_project_settings() -> None:
    project = _project(
        model="claude-opus-4-6",
        permission_mode=PermissionMode.ACCEPT_EDITS,
        allowed_tools=["Read"],
        disallowed_tools=["WebFetch"],
    )

    async def _approver(tool_name, tool_input):
        return Allow(tool_input)

    options = build_options(InvocationRequest(prompt="hi", project=project, resume="sess-1", approver=_approver))

    assert str(options.cwd) == "/work/app"
    assert options.model == "claude-opus-4-6"
    assert options.permission_mode == "acceptEdits"
    assert options.resume == "sess-1"
    assert options.allowed_tools == ["Read"]
    assert options.disallowed_tools == ["WebFetch"]
    assert options.include_partial_messages is True
    assert options.can_use_tool is not None


def test_new_session_has_no_resume_or_callback() -> None:
    options = build_options(InvocationRequest(prompt="hi", project=_project()))
    assert options.resume is None
    assert options.can_use_tool is None
    assert options.permission_mode == "default"


def test_permission_callback_maps_decisions() -> None:
    async def _run() -> None:
        async def _approver(tool_name, tool_input):
            if tool_name == "Bash":
                return Deny("User denied via Discord")
            return Allow({**tool_input, "checked": True})

        callback = _permission_callback(_approver)

        denied = await callback("Bash", {"command": "rm -rf /"}, None)
        assert isinstance(denied, PermissionResultDeny)
        assert denied.message == "User denied via Discord"

        allowed = await callback("Write", {"file_path": "a"}, None)
        assert isinstance(allowed, PermissionResultAllow)
        assert allowed.updated_input == {"file_path": "a", "checked": True}

    asyncio.run(_run())


def test_parse_server_info_normalizes_commands() -> None:
    caps = parse_server_info(
        {
            "commands": [
                {"name": "/compact", "description": "Compact history", "argumentHint": "<notes>"},
                "init",
                {"name": ""},
            ],
            "models": [{"value": "opus"}, "bogus"],
        }
    )
    assert [c.name for c in caps.commands] == ["compact", "init"]
    assert caps.commands[0].argument_hint == "<notes>"
    assert caps.models == [{"value": "opus"}]
    assert parse_server_info(None).commands == []
