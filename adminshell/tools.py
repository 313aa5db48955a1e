import json
from typing import Any, Dict, List

from adminshell.errors import MalformedRequestError
from adminshell.models import CommandOutcome, CommandRequest, CommandSequence, OutcomeStatus, PlannedRequest, ToolCall

EXECUTE_COMMAND = "execute_command"
EXECUTE_COMMAND_SEQUENCE = "execute_command_sequence"


def _command_properties() -> Dict[str, Any]:
    return {
        "command": {"type": "string", "description": "The bash command to execute"},
        "explanation": {"type": "string", "description": "Brief explanation of what this command does"},
        "requires_elevation": {
            "type": "boolean",
            "description": "Whether this command needs sudo privileges",
            "default": False,
        },
        "is_streaming": {
            "type": "boolean",
            "description": (
                "Set to true for commands that produce continuous output and never terminate on their own "
                "(tail -f, journalctl -f, pm2 logs, watch, top, less, tcpdump). They run until the operator stops them."
            ),
        },
    }


def tool_definitions() -> List[Dict[str, Any]]:
    return [
        {
            "name": EXECUTE_COMMAND,
            "description": (
                "Execute a bash command on the remote server over SSH. "
                "The operator confirms every command before it runs."
            ),
            "input_schema": {
                "type": "object",
                "properties": _command_properties(),
                "required": ["command", "explanation"],
            },
        },
        {
            "name": EXECUTE_COMMAND_SEQUENCE,
            "description": (
                "Execute a sequence of bash commands in order. "
                "A failing command stops the sequence unless the operator chooses to continue."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "commands": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": _command_properties(),
                            "required": ["command", "explanation"],
                        },
                        "description": "Commands to execute in sequence",
                    },
                },
                "required": ["commands"],
            },
        },
    ]


def decode_tool_call(call: ToolCall) -> PlannedRequest:
    if call.name == EXECUTE_COMMAND:
        return CommandRequest.from_payload(call.arguments)
    if call.name == EXECUTE_COMMAND_SEQUENCE:
        return CommandSequence.from_payload(call.arguments)
    raise MalformedRequestError(f"Unknown tool: {call.name}")


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def make_tool_result(call_id: str, content: str, is_error: bool = False) -> Dict[str, Any]:
    result = {"type": "tool_result", "tool_use_id": call_id, "content": content}
    if is_error:
        result["is_error"] = True
    return result


def command_tool_result(call_id: str, outcome: CommandOutcome) -> Dict[str, Any]:
    if outcome.status == OutcomeStatus.DECLINED:
        return make_tool_result(call_id, "User declined to execute this command.")
    return make_tool_result(call_id, _dump(outcome.to_payload()))


def sequence_tool_result(call_id: str, outcomes: List[CommandOutcome]) -> Dict[str, Any]:
    return make_tool_result(call_id, _dump([outcome.to_payload() for outcome in outcomes]))


def skipped_tool_result(call_id: str) -> Dict[str, Any]:
    return make_tool_result(call_id, "Not executed: the operator aborted this turn.")


def error_tool_result(call_id: str, message: str) -> Dict[str, Any]:
    return make_tool_result(call_id, message, is_error=True)


def summarize_tool_results(results: List[Dict[str, Any]]) -> str:
    return "\n".join(f"[{result['tool_use_id']}] {result['content']}" for result in results)
