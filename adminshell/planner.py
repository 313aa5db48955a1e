from typing import Any, Dict, List, Optional

import anthropic

from adminshell.config import PLANNER_MAX_TOKENS, config
from adminshell.models import PlannerReply, ToolCall

SYSTEM_PROMPT = """You are an assistant for Unix/Linux system administrators. You manage a remote server by running bash commands over SSH.

## System being managed
{system}

## How to work
- Explain what you are about to do before calling a tool.
- Every command is shown to the operator, who confirms or declines it.
- If a command fails, stop and tell the operator what went wrong.
- Give an extra warning before destructive operations (rm, dd, mkfs, ...).
- Set requires_elevation when a command needs sudo; the shell supplies the password.
- Set is_streaming to true for commands that never terminate on their own
  (tail -f, journalctl -f, pm2 logs, watch, top, less). The operator stops them.
  Set it to false for one-shot variants such as `top -b -n 1`.

## Session
The conversation history and previous command results are included. Use them to
keep track of what has already been done."""

NO_SYSTEM_DESCRIPTION = "No system description provided. Ask the operator to describe the system."


def build_system_prompt(system_description: str) -> str:
    return SYSTEM_PROMPT.format(system=system_description or NO_SYSTEM_DESCRIPTION)


def _as_blocks(content: Any) -> List[Any]:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": str(content)}]


def _is_tool_results(content: Any) -> bool:
    return isinstance(content, list) and any(
        isinstance(block, dict) and block.get("type") == "tool_result" for block in content
    )


def to_api_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Rewrite stored messages into the Messages API shape.

    Tool results go back as user turns, consecutive turns of one role are
    merged, and the list starts at the first plain user turn.
    """
    converted: List[Dict[str, Any]] = []
    for message in messages:
        role = "assistant" if message["role"] == "assistant" else "user"
        content = message["content"]
        if not content:
            continue
        if not converted and (role != "user" or _is_tool_results(content)):
            continue
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"] = _as_blocks(converted[-1]["content"]) + _as_blocks(content)
            continue
        converted.append({"role": role, "content": content})
    return converted


class AnthropicPlanner:
    """Planner backed by the Anthropic Messages API with tool use."""

    def __init__(
        self,
        tools: List[Dict[str, Any]],
        client: Optional[Any] = None,
        model: Optional[str] = None,
        max_tokens: int = PLANNER_MAX_TOKENS,
    ):
        self.tools = tools
        self.client = client or anthropic.Anthropic()
        self.model = model or config.MODEL
        self.max_tokens = max_tokens

    def plan(self, messages: List[Dict[str, Any]], goal: str) -> PlannerReply:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=build_system_prompt(goal),
            tools=self.tools,
            messages=to_api_messages(messages),
        )

        texts: List[str] = []
        calls: List[ToolCall] = []
        content: List[Dict[str, Any]] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
                content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))
                content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
        return PlannerReply(text="\n".join(texts), tool_calls=calls, content=content or None)


def create_planner(tools: List[Dict[str, Any]]) -> AnthropicPlanner:
    try:
        return AnthropicPlanner(tools)
    except anthropic.AnthropicError as exc:
        raise ValueError(str(exc)) from exc
