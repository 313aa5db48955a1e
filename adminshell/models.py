import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from adminshell.errors import MalformedRequestError


@dataclass
class SessionConfig:
    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[bytes] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    verify_host_key: bool = True

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host is required")
        if not self.username:
            raise ValueError("username is required")
        if bool(self.password) == bool(self.private_key):
            raise ValueError("exactly one of password or private_key must be set")
        if self.passphrase and not self.private_key:
            raise ValueError("passphrase is only valid with private_key")

    @property
    def credential_mode(self) -> str:
        return "password" if self.password else "private_key"

    @classmethod
    def from_app_config(cls, app_config) -> "SessionConfig":
        private_key = None
        if app_config.SSH_KEY_PATH:
            key_path = os.path.expanduser(os.path.expandvars(app_config.SSH_KEY_PATH))
            with open(key_path, "rb") as handle:
                private_key = handle.read()
        return cls(
            host=app_config.SSH_HOST or "",
            username=app_config.SSH_USER or "",
            port=app_config.SSH_PORT,
            password=None if private_key else app_config.SSH_PASSWORD,
            private_key=private_key,
            passphrase=app_config.SSH_KEY_PASSPHRASE if private_key else None,
            verify_host_key=app_config.SSH_VERIFY_HOST_KEY,
        )


class ElevationCredential:
    """In-memory sudo secret. Never serialized, never part of a repr."""

    __slots__ = ("_secret",)

    def __init__(self, secret: str):
        self._secret = secret

    def reveal(self) -> str:
        return self._secret

    def __repr__(self) -> str:
        return "ElevationCredential(****)"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("ElevationCredential cannot be serialized")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class StateChange:
    state: SessionState
    reason: str = ""
    host: str = ""


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    aborted: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.stderr:
            return self.stdout + "\n" + self.stderr
        return self.stdout

    def to_payload(self) -> Dict[str, Any]:
        return {
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "success": self.success,
            "aborted": self.aborted,
        }


@dataclass
class CommandRequest:
    command: str
    explanation: str = ""
    requires_elevation: bool = False
    # None means the planner left it to the command heuristic.
    is_streaming: Optional[bool] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "CommandRequest":
        if not isinstance(payload, dict):
            raise MalformedRequestError("command request must be an object")
        command = payload.get("command")
        if not isinstance(command, str) or not command.strip():
            raise MalformedRequestError("command request needs a non-empty 'command' string")
        explanation = payload.get("explanation", "")
        if not isinstance(explanation, str):
            raise MalformedRequestError("'explanation' must be a string")
        return cls(
            command=command,
            explanation=explanation,
            requires_elevation=_strict_bool(payload, "requires_elevation", False),
            is_streaming=_strict_bool(payload, "is_streaming", None),
        )


@dataclass
class CommandSequence:
    commands: List[CommandRequest]

    @classmethod
    def from_payload(cls, payload: Any) -> "CommandSequence":
        if not isinstance(payload, dict) or not isinstance(payload.get("commands"), list):
            raise MalformedRequestError("command sequence needs a 'commands' array")
        if not payload["commands"]:
            raise MalformedRequestError("command sequence is empty")
        return cls(commands=[CommandRequest.from_payload(item) for item in payload["commands"]])


PlannedRequest = Union[CommandRequest, CommandSequence]


def _strict_bool(payload: Dict[str, Any], key: str, default: Any) -> Optional[bool]:
    if key not in payload:
        return default
    value = payload[key]
    if not isinstance(value, bool):
        raise MalformedRequestError(f"'{key}' must be a boolean")
    return value


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlannerReply:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    content: Any = None


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DECLINED = "declined"
    SKIPPED = "skipped"
    ABORTED_BY_OPERATOR = "aborted_by_operator"


@dataclass
class CommandOutcome:
    request: CommandRequest
    status: OutcomeStatus
    result: Optional[ExecutionResult] = None

    @property
    def executed(self) -> bool:
        return self.result is not None

    def to_payload(self) -> Dict[str, Any]:
        if self.status == OutcomeStatus.DECLINED:
            return {"command": self.request.command, "skipped": True, "reason": "User declined"}
        if self.status == OutcomeStatus.SKIPPED:
            return {"command": self.request.command, "skipped": True, "reason": "Not run after operator abort"}
        payload: Dict[str, Any] = {"command": self.request.command}
        if self.result is not None:
            payload.update(self.result.to_payload())
        if self.status == OutcomeStatus.ABORTED_BY_OPERATOR:
            payload["abortedByOperator"] = True
        return payload


@dataclass
class TurnReport:
    outcomes: List[CommandOutcome] = field(default_factory=list)
    aborted_by_operator: bool = False
    error: Optional[str] = None


@dataclass
class DialogueEntry:
    timestamp: str
    role: str
    text: str

    def render(self) -> str:
        return f"[{self.timestamp}] {self.role}:\n{self.text}"


@dataclass
class CommandLogEntry:
    timestamp: str
    command: str
    output: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        status = "✓" if self.success else "✗"
        return f"[{self.timestamp}] {status} $ {self.command}\nExit: {self.exit_code}\n{self.output}"


@dataclass
class ContextStats:
    dialogue_tokens: int
    command_tokens: int
    total_tokens: int
    budget_tokens: int
    limit_tokens: int
    usage_percent: float
