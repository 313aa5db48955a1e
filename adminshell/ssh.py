import codecs
import io
import os
import queue
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST

from adminshell.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, POLL_INTERVAL,
    DEFAULT_COMMAND_TIMEOUT, MAX_COMMAND_TIMEOUT, STREAM_CANCEL_GRACE,
    TIMEOUT_EXIT_CODE, INTERRUPT_EXIT_CODE, ELEVATION_PROMPT, ELEVATION_SHELL,
    STREAMING_PATTERNS,
)
from adminshell.errors import NotConnectedError, SessionConnectError
from adminshell.models import (
    ElevationCredential, ExecutionResult, SessionConfig, SessionState, StateChange,
)
from adminshell.utils import (
    clamp_float, iso_now, json_line, log_error, quote_credential, safe_name,
)

ELEVATION_MISSING_MESSAGE = (
    "This command requires elevated privileges but no sudo password is configured. "
    "Reconnect and supply a sudo password to run it."
)

# Exit status reported when the server closes the channel without one.
NO_EXIT_STATUS = 255

OutputCallback = Callable[[str], None]


def is_streaming_command(command: str) -> bool:
    text = (command or "").strip()
    if not text:
        return False
    return any(pattern.search(text) for pattern in STREAMING_PATTERNS)


def build_elevation_script(command: str, credential: ElevationCredential) -> str:
    """Shell script fed on stdin of ``ELEVATION_SHELL``.

    ``printf`` is a shell builtin, so the secret never shows up in a process
    argument list on the remote host.
    """
    secret = quote_credential(credential.reveal())
    prompt = quote_credential(ELEVATION_PROMPT)
    return f"printf '%s\\n' {secret} | sudo -S -p {prompt} {command}\n"


def send_interrupt(channel: paramiko.Channel) -> None:
    # RFC 4254 6.9 "signal" request; paramiko has no public helper for it.
    message = paramiko.Message()
    message.add_byte(cMSG_CHANNEL_REQUEST)
    message.add_int(channel.remote_chanid)
    message.add_string("signal")
    message.add_boolean(False)
    message.add_string("INT")
    channel.transport._send_user_message(message)


def load_private_key(material: bytes, passphrase: Optional[str]) -> paramiko.PKey:
    try:
        text = material.decode("utf-8") if isinstance(material, bytes) else str(material)
    except UnicodeDecodeError as exc:
        raise SessionConnectError("private key is not PEM/OpenSSH text") from exc
    errors = []
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase or None)
        except paramiko.PasswordRequiredException as exc:
            raise SessionConnectError("private key is encrypted; a passphrase is required") from exc
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise SessionConnectError("unable to load private key (" + "; ".join(errors) + ")")


class _ChannelReader:
    """Drains one exec channel, decoding stdout and stderr incrementally."""

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel
        self._out_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._err_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.stdout_parts: List[str] = []
        self.stderr_parts: List[str] = []

    def drain(
        self,
        on_output: Optional[OutputCallback] = None,
        on_error: Optional[OutputCallback] = None,
    ) -> bool:
        progressed = False
        while self.channel.recv_ready():
            data = self.channel.recv(BUFFER_SIZE)
            if not data:
                break
            progressed = True
            text = self._out_decoder.decode(data)
            if text:
                self.stdout_parts.append(text)
                if on_output:
                    on_output(text)
        while self.channel.recv_stderr_ready():
            data = self.channel.recv_stderr(BUFFER_SIZE)
            if not data:
                break
            progressed = True
            text = self._err_decoder.decode(data)
            if text:
                self.stderr_parts.append(text)
                if on_error:
                    on_error(text)
        return progressed

    def finished(self) -> bool:
        return (
            self.channel.exit_status_ready()
            and not self.channel.recv_ready()
            and not self.channel.recv_stderr_ready()
        )

    def exit_code(self) -> int:
        status = self.channel.recv_exit_status()
        return NO_EXIT_STATUS if status < 0 else status

    @property
    def stdout(self) -> str:
        return ("".join(self.stdout_parts) + self._out_decoder.decode(b"", final=True)).strip()

    @property
    def stderr(self) -> str:
        return ("".join(self.stderr_parts) + self._err_decoder.decode(b"", final=True)).strip()


class StreamHandle:
    """Cancellation handle plus completion future for a streaming command."""

    def __init__(self, command: str, completion: Optional[Future] = None):
        self.command = command
        self.completion: Future = completion or Future()
        self._cancel_event = threading.Event()
        self._delivery_lock = threading.RLock()

    def cancel(self) -> None:
        with self._delivery_lock:
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def wait_cancel(self, timeout: float) -> bool:
        return self._cancel_event.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> ExecutionResult:
        return self.completion.result(timeout)

    def guard(self, callback: Optional[OutputCallback]) -> Optional[OutputCallback]:
        if callback is None:
            return None

        def deliver(text: str) -> None:
            with self._delivery_lock:
                if not self._cancel_event.is_set():
                    callback(text)

        return deliver


class RemoteSession:
    """One authenticated SSH connection to one administered host."""

    def __init__(self, cache_dirs: Optional[Dict[str, str]] = None, name: str = "default"):
        self.name = name
        self.cache_dirs = cache_dirs or {}

        self.client: Optional[paramiko.SSHClient] = None
        self.config: Optional[SessionConfig] = None

        self._state = SessionState.DISCONNECTED
        self.state_reason = ""
        self.state_changes: "queue.Queue[StateChange]" = queue.Queue()
        self.connected_at: Optional[datetime] = None

        self.last_command = ""
        self.last_command_time: Optional[datetime] = None
        self.stream_threads: List[threading.Thread] = []

        self.lock = threading.Lock()
        self.session_log_path = self._build_session_log_path()

    def _build_session_log_path(self) -> Optional[str]:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return None
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(sessions_dir, f"{safe_name(self.name)}__{stamp}.log")

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session": self.name}
        data.update(payload)
        json_line(self.session_log_path, data)

    # ----- state -----

    def _set_state(self, state: SessionState, reason: str = "") -> None:
        with self.lock:
            if state == self._state and reason == self.state_reason:
                return
            self._state = state
            self.state_reason = reason
        host = self.config.host if self.config else ""
        self.state_changes.put(StateChange(state=state, reason=reason, host=host))
        self._log_session("SYS", {"event": f"state_{state.value}", "reason": reason, "host": host})

    def _refresh_state(self) -> None:
        if self._state != SessionState.CONNECTED:
            return
        try:
            transport = self.client.get_transport() if self.client else None
            alive = bool(transport and transport.is_active())
        except (paramiko.SSHException, OSError) as exc:
            alive = False
            log_error(f"transport check failed: {exc}")
        if not alive:
            self._drop_client()
            self._set_state(SessionState.FAILED, "connection closed by remote host")

    @property
    def state(self) -> SessionState:
        self._refresh_state()
        return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def drain_state_changes(self) -> List[StateChange]:
        changes = []
        while True:
            try:
                changes.append(self.state_changes.get_nowait())
            except queue.Empty:
                return changes

    # ----- connection lifecycle -----

    def connect(self, config: SessionConfig) -> None:
        # Reconnecting replaces the transport.
        self._drop_client()
        self.config = config

        client = paramiko.SSHClient()
        if config.verify_host_key:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: Dict[str, Any] = {
            "hostname": config.host,
            "port": config.port,
            "username": config.username,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        try:
            if config.password:
                connect_kwargs["password"] = config.password
            else:
                connect_kwargs["pkey"] = load_private_key(config.private_key, config.passphrase)
            client.connect(**connect_kwargs)
        except SessionConnectError as exc:
            client.close()
            self._set_state(SessionState.DISCONNECTED, str(exc))
            raise
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            self._set_state(SessionState.DISCONNECTED, f"connect failed: {exc}")
            raise SessionConnectError(f"Connection to {config.host}:{config.port} failed: {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

        self.client = client
        self.connected_at = datetime.now()
        self._set_state(SessionState.CONNECTED)
        self._log_session(
            "SYS",
            {"event": "connected", "host": config.host, "port": config.port, "mode": config.credential_mode},
        )

    def _drop_client(self) -> None:
        client = self.client
        self.client = None
        if client is None:
            return
        try:
            client.close()
        except (paramiko.SSHException, OSError) as exc:
            log_error(f"close failed: {exc}")

    def disconnect(self) -> None:
        was_open = self.client is not None
        self._drop_client()
        if was_open or self._state != SessionState.DISCONNECTED:
            self._set_state(SessionState.DISCONNECTED, "closed by operator")

    # ----- execution -----

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise NotConnectedError()

    def _open_channel(
        self,
        command: str,
        elevate: bool,
        credential: Optional[ElevationCredential],
    ) -> paramiko.Channel:
        transport = self.client.get_transport() if self.client else None
        if transport is None:
            raise paramiko.SSHException("no transport")
        channel = transport.open_session(timeout=CONNECT_TIMEOUT)
        if elevate:
            channel.exec_command(ELEVATION_SHELL)
            channel.sendall(build_elevation_script(command, credential).encode("utf-8"))
            channel.shutdown_write()
        else:
            channel.exec_command(command)
        return channel

    def _note_command(self, command: str, elevate: bool, streaming: bool) -> None:
        self.last_command = command
        self.last_command_time = datetime.now()
        self._log_session("IN", {"event": "exec", "command": command, "elevate": elevate, "streaming": streaming})

    def _terminate(self, channel: paramiko.Channel) -> None:
        try:
            send_interrupt(channel)
        except (paramiko.SSHException, OSError, AttributeError) as exc:
            self._log_session("SYS", {"event": "interrupt_failed", "error": str(exc)})
        channel.close()

    def execute(
        self,
        command: str,
        elevate: bool = False,
        credential: Optional[ElevationCredential] = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> ExecutionResult:
        self._require_connected()
        if elevate and credential is None:
            return ExecutionResult(stdout="", stderr=ELEVATION_MISSING_MESSAGE, exit_code=1)

        timeout = clamp_float(timeout, DEFAULT_COMMAND_TIMEOUT, 0.1, MAX_COMMAND_TIMEOUT)
        self._note_command(command, elevate, streaming=False)

        channel = None
        try:
            channel = self._open_channel(command, elevate, credential)
            reader = _ChannelReader(channel)
            deadline = time.time() + timeout
            while not reader.finished():
                if time.time() >= deadline:
                    self._terminate(channel)
                    reader.drain()
                    message = f"Command timed out after {timeout:g}s"
                    stderr = f"{reader.stderr}\n{message}" if reader.stderr else message
                    self._log_session("SYS", {"event": "timeout", "command": command, "seconds": timeout})
                    return ExecutionResult(stdout=reader.stdout, stderr=stderr, exit_code=TIMEOUT_EXIT_CODE)
                if not reader.drain():
                    time.sleep(POLL_INTERVAL)
            reader.drain()
            result = ExecutionResult(stdout=reader.stdout, stderr=reader.stderr, exit_code=reader.exit_code())
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._log_session("SYS", {"event": "exec_error", "command": command, "error": str(exc)})
            self._refresh_state()
            return ExecutionResult(stdout="", stderr=str(exc) or exc.__class__.__name__, exit_code=1)
        finally:
            if channel is not None:
                channel.close()

        self._log_session("OUT", {"event": "exit", "command": command, "exit_code": result.exit_code})
        return result

    def execute_streaming(
        self,
        command: str,
        elevate: bool = False,
        credential: Optional[ElevationCredential] = None,
        on_output: Optional[OutputCallback] = None,
        on_error: Optional[OutputCallback] = None,
        grace: float = STREAM_CANCEL_GRACE,
    ) -> StreamHandle:
        self._require_connected()
        handle = StreamHandle(command)
        if elevate and credential is None:
            handle.completion.set_result(ExecutionResult(stdout="", stderr=ELEVATION_MISSING_MESSAGE, exit_code=1))
            return handle

        self._note_command(command, elevate, streaming=True)
        try:
            channel = self._open_channel(command, elevate, credential)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._log_session("SYS", {"event": "exec_error", "command": command, "error": str(exc)})
            self._refresh_state()
            handle.completion.set_result(ExecutionResult(stdout="", stderr=str(exc) or exc.__class__.__name__, exit_code=1))
            return handle

        thread = threading.Thread(
            target=self._stream_loop,
            args=(channel, handle, handle.guard(on_output), handle.guard(on_error), grace),
            daemon=True,
        )
        self.stream_threads = [t for t in self.stream_threads if t.is_alive()]
        self.stream_threads.append(thread)
        thread.start()
        return handle

    def _stream_loop(
        self,
        channel: paramiko.Channel,
        handle: StreamHandle,
        on_output: Optional[OutputCallback],
        on_error: Optional[OutputCallback],
        grace: float,
    ) -> None:
        reader = _ChannelReader(channel)
        result: Optional[ExecutionResult] = None
        try:
            cancel_deadline: Optional[float] = None
            while True:
                if handle.cancelled and cancel_deadline is None:
                    cancel_deadline = time.time() + grace
                    try:
                        send_interrupt(channel)
                    except (paramiko.SSHException, OSError, AttributeError) as exc:
                        self._log_session("SYS", {"event": "interrupt_failed", "error": str(exc)})
                    self._log_session("IN", {"event": "stream_cancel", "command": handle.command})
                if reader.finished():
                    break
                if cancel_deadline is not None and time.time() >= cancel_deadline:
                    break
                if reader.drain(on_output, on_error):
                    continue
                if cancel_deadline is None:
                    handle.wait_cancel(POLL_INTERVAL)
                else:
                    time.sleep(POLL_INTERVAL)
            reader.drain(on_output, on_error)
            if handle.cancelled:
                result = ExecutionResult(
                    stdout=reader.stdout, stderr=reader.stderr, exit_code=INTERRUPT_EXIT_CODE, aborted=True,
                )
            else:
                result = ExecutionResult(stdout=reader.stdout, stderr=reader.stderr, exit_code=reader.exit_code())
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._log_session("SYS", {"event": "stream_error", "command": handle.command, "error": str(exc)})
            if handle.cancelled:
                result = ExecutionResult(
                    stdout=reader.stdout, stderr=reader.stderr, exit_code=INTERRUPT_EXIT_CODE, aborted=True,
                )
            else:
                result = ExecutionResult(stdout=reader.stdout, stderr=str(exc) or exc.__class__.__name__, exit_code=1)
        finally:
            channel.close()
            if result is None:
                result = ExecutionResult(
                    stdout="", stderr="stream reader stopped unexpectedly", exit_code=1, aborted=handle.cancelled,
                )
            if not handle.completion.done():
                handle.completion.set_result(result)
            self._log_session(
                "OUT",
                {"event": "stream_exit", "command": handle.command, "exit_code": result.exit_code, "aborted": result.aborted},
            )

    def execute_many(
        self,
        commands: List[str],
        elevate: bool = False,
        credential: Optional[ElevationCredential] = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> List[ExecutionResult]:
        results = []
        for command in commands:
            result = self.execute(command, elevate=elevate, credential=credential, timeout=timeout)
            results.append(result)
            if result.exit_code != 0:
                break
        return results

    def test_connection(self) -> Dict[str, Any]:
        try:
            result = self.execute('echo "Connection OK" && whoami && hostname')
        except NotConnectedError as exc:
            return {"success": False, "error": str(exc)}
        if result.exit_code != 0:
            return {"success": False, "error": result.stderr or f"exit code {result.exit_code}"}
        return {"success": True, "output": result.stdout}

    def info(self) -> Dict[str, Any]:
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "reason": self.state_reason,
            "host": self.config.host if self.config else None,
            "port": self.config.port if self.config else None,
            "username": self.config.username if self.config else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "session_log_path": self.session_log_path,
        }
