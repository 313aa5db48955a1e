import json
from types import SimpleNamespace

import pytest

from conftest import FakeChannel, ScriptedOperator
from adminshell.config import DEFAULT_PLANNER, AppConfig
from adminshell.context import ContextStore
from adminshell.orchestrator import Connection, ExecutionOrchestrator
from adminshell.planner import AnthropicPlanner, build_system_prompt, create_planner, to_api_messages
from adminshell.tools import tool_definitions


class FakeMessages:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(content=self.responses.pop(0), stop_reason="end_turn")


def _text(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="text", text=text)


def _tool_use(block_id: str, command: str) -> SimpleNamespace:
    return SimpleNamespace(
        type="tool_use", id=block_id, name="execute_command",
        input={"command": command, "explanation": "check"},
    )


def _planner(*responses) -> AnthropicPlanner:
    client = SimpleNamespace(messages=FakeMessages(responses))
    return AnthropicPlanner(tool_definitions(), client=client, model="test-model")


def test_plan_turns_response_blocks_into_reply() -> None:
    planner = _planner([_text("Checking disk."), _tool_use("toolu_1", "df -h")])

    reply = planner.plan([{"role": "user", "content": "disk?"}], "Debian 12 file server")

    assert reply.text == "Checking disk."
    assert [(c.id, c.name, c.arguments["command"]) for c in reply.tool_calls] == [
        ("toolu_1", "execute_command", "df -h")
    ]
    assert reply.content[1] == {
        "type": "tool_use", "id": "toolu_1", "name": "execute_command",
        "input": {"command": "df -h", "explanation": "check"},
    }
    request = planner.client.messages.requests[0]
    assert request["model"] == "test-model"
    assert request["tools"] == tool_definitions()
    assert "Debian 12 file server" in request["system"]
    assert request["messages"] == [{"role": "user", "content": "disk?"}]


def test_system_prompt_without_description() -> None:
    assert "Ask the operator to describe the system" in build_system_prompt("")


def test_api_messages_merge_and_start_at_user_turn() -> None:
    results = [{"type": "tool_result", "tool_use_id": "t0", "content": "{}"}]
    stored = [
        {"role": "tool", "content": results},
        {"role": "assistant", "content": "orphan"},
        {"role": "user", "content": "restart nginx"},
        {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "execute_command", "input": {}}]},
        {"role": "tool", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "{}"}]},
        {"role": "user", "content": "and now?"},
        {"role": "assistant", "content": ""},
    ]

    converted = to_api_messages(stored)

    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert converted[0]["content"] == "restart nginx"
    assert converted[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "t1", "content": "{}"},
        {"type": "text", "text": "and now?"},
    ]
    assert stored[4]["content"] == [{"type": "tool_result", "tool_use_id": "t1", "content": "{}"}]


def test_planner_drives_a_full_turn(hub, session, tmp_path) -> None:
    hub.add(FakeChannel(stdout=[b"/dev/sda1 40%\n"]))
    planner = _planner([_tool_use("toolu_1", "df -h")], [_text("Disk is at 40%.")])
    operator = ScriptedOperator(answers=[True])
    orchestrator = ExecutionOrchestrator(
        context=ContextStore(log_dir=str(tmp_path)),
        operator=operator,
        planner=planner,
        connection=Connection(session=session),
    )

    orchestrator.run_turn("how full is the disk?")

    assert operator.replies == ["Disk is at 40%."]
    second = planner.client.messages.requests[1]["messages"]
    assert [m["role"] for m in second] == ["user", "assistant", "user"]
    assert second[1]["content"][0]["id"] == "toolu_1"
    tool_result = second[2]["content"][0]
    assert tool_result["tool_use_id"] == "toolu_1"
    assert json.loads(tool_result["content"])["stdout"] == "/dev/sda1 40%"


def test_create_planner_without_api_key(monkeypatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)

    with pytest.raises(ValueError):
        create_planner(tool_definitions())


def test_api_key_selects_default_planner(monkeypatch) -> None:
    monkeypatch.delenv("ADMINSHELL_PLANNER", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("ADMINSHELL_MODEL", "claude-haiku-4-5")
    app_config = AppConfig()

    app_config.load_from_env()

    assert app_config.PLANNER == DEFAULT_PLANNER
    assert app_config.MODEL == "claude-haiku-4-5"


def test_explicit_planner_wins_over_default(monkeypatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.setenv("ADMINSHELL_PLANNER", "mypkg.planners:build")
    app_config = AppConfig()

    app_config.load_from_env()

    assert app_config.PLANNER == "mypkg.planners:build"


def test_no_planner_without_api_key(monkeypatch) -> None:
    monkeypatch.delenv("ADMINSHELL_PLANNER", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    app_config = AppConfig()

    app_config.load_from_env()

    assert app_config.PLANNER is None
