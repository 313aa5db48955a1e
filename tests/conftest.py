import threading
from typing import Callable, List, Optional

import paramiko
import pytest

from adminshell.models import CommandRequest, ElevationCredential, ExecutionResult, PlannerReply, SessionConfig
from adminshell.ssh import RemoteSession


class FakeChannel:
    def __init__(
        self,
        stdout: Optional[List[bytes]] = None,
        stderr: Optional[List[bytes]] = None,
        exit_status: int = 0,
        finishes: bool = True,
        exit_on_signal: bool = False,
    ):
        self.stdout = list(stdout or [])
        self.stderr = list(stderr or [])
        self.exit_status = exit_status
        self.finishes = finishes
        self.exit_on_signal = exit_on_signal
        self.remote_chanid = 7
        self.transport = self
        self.exec_commands: List[str] = []
        self.sent = b""
        self.write_shut = False
        self.closed = False
        self.signal_messages: List[bytes] = []
        self.lock = threading.Lock()

    def push(self, data: bytes) -> None:
        with self.lock:
            self.stdout.append(data)

    def exec_command(self, command: str) -> None:
        self.exec_commands.append(command)

    def sendall(self, data: bytes) -> None:
        self.sent += data

    def shutdown_write(self) -> None:
        self.write_shut = True

    def recv_ready(self) -> bool:
        with self.lock:
            return bool(self.stdout)

    def recv(self, size: int) -> bytes:
        with self.lock:
            return self.stdout.pop(0) if self.stdout else b""

    def recv_stderr_ready(self) -> bool:
        with self.lock:
            return bool(self.stderr)

    def recv_stderr(self, size: int) -> bytes:
        with self.lock:
            return self.stderr.pop(0) if self.stderr else b""

    def exit_status_ready(self) -> bool:
        return self.finishes or self.closed or (self.exit_on_signal and bool(self.signal_messages))

    def recv_exit_status(self) -> int:
        return self.exit_status

    def close(self) -> None:
        self.closed = True

    # Stands in for Transport._send_user_message.
    def _send_user_message(self, message: paramiko.Message) -> None:
        self.signal_messages.append(message.asbytes())


class FakeTransport:
    def __init__(self, hub: "FakeHub"):
        self.hub = hub
        self.active = True
        self.keepalive = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self, timeout=None) -> FakeChannel:
        if self.hub.open_error is not None:
            raise self.hub.open_error
        if not self.hub.channels:
            raise AssertionError("no scripted channel left")
        channel = self.hub.channels.pop(0)
        self.hub.opened.append(channel)
        return channel


class FakeHub:
    """Scripted channels and the fake clients created while a test runs."""

    def __init__(self):
        self.channels: List[FakeChannel] = []
        self.opened: List[FakeChannel] = []
        self.clients: List["FakeSSHClient"] = []
        self.connect_error: Optional[Exception] = None
        self.open_error: Optional[Exception] = None

    def add(self, *channels: FakeChannel) -> None:
        self.channels.extend(channels)

    @property
    def transport(self) -> FakeTransport:
        return self.clients[-1].transport


@pytest.fixture
def hub(monkeypatch: pytest.MonkeyPatch) -> FakeHub:
    fake_hub = FakeHub()

    class FakeSSHClient:
        def __init__(self):
            self.policy = None
            self.system_keys_loaded = False
            self.connect_kwargs = None
            self.closed = False
            self.transport = FakeTransport(fake_hub)
            fake_hub.clients.append(self)

        def load_system_host_keys(self) -> None:
            self.system_keys_loaded = True

        def set_missing_host_key_policy(self, policy) -> None:
            self.policy = policy

        def connect(self, **kwargs) -> None:
            self.connect_kwargs = kwargs
            if fake_hub.connect_error is not None:
                raise fake_hub.connect_error

        def get_transport(self) -> FakeTransport:
            return self.transport

        def close(self) -> None:
            self.closed = True
            self.transport.active = False

    monkeypatch.setattr(paramiko, "SSHClient", FakeSSHClient)
    return fake_hub


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(host="10.0.0.5", username="ops", password="x")


@pytest.fixture
def session(hub: FakeHub, session_config: SessionConfig) -> RemoteSession:
    remote = RemoteSession()
    remote.connect(session_config)
    return remote


class ScriptedOperator:
    def __init__(self, answers: Optional[List[bool]] = None, cancel_after_chunks: Optional[int] = None):
        self.answers = list(answers or [])
        self.questions: List[str] = []
        self.presented: List[CommandRequest] = []
        self.results: List[ExecutionResult] = []
        self.notices: List[tuple] = []
        self.replies: List[str] = []
        self.chunks: List[str] = []
        self.cancel_after_chunks = cancel_after_chunks
        self._cancel: Optional[Callable[[], None]] = None
        self.watch_stopped = False

    def present_command(self, request: CommandRequest) -> None:
        self.presented.append(request)

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        if not self.answers:
            raise AssertionError(f"unexpected question: {question}")
        return self.answers.pop(0)

    def show_result(self, request: CommandRequest, result: ExecutionResult) -> None:
        self.results.append(result)

    def show_reply(self, text: str) -> None:
        self.replies.append(text)

    def notify(self, message: str, level: str = "info") -> None:
        self.notices.append((level, message))

    def stream_chunk(self, text: str, is_error: bool = False) -> None:
        self.chunks.append(text)
        if self.cancel_after_chunks is not None and len(self.chunks) >= self.cancel_after_chunks and self._cancel:
            self._cancel()

    def watch_for_cancel(self, cancel: Callable[[], None]) -> Callable[[], None]:
        self._cancel = cancel
        if self.cancel_after_chunks is not None and len(self.chunks) >= self.cancel_after_chunks:
            cancel()

        def stop() -> None:
            self.watch_stopped = True

        return stop


class ScriptedPlanner:
    def __init__(self, replies: List[PlannerReply]):
        self.replies = list(replies)
        self.calls: List[tuple] = []

    def plan(self, messages, goal):
        self.calls.append((list(messages), goal))
        if not self.replies:
            return PlannerReply(text="Done.")
        return self.replies.pop(0)


@pytest.fixture
def credential() -> ElevationCredential:
    return ElevationCredential("s3cr'et")
