import getpass
import importlib
import os
import select
import sys
import threading
from typing import Callable, List, Optional

from adminshell.models import CommandRequest, ExecutionResult
from adminshell.tools import tool_definitions

STOP_KEYS = {b"q", b"Q", b"\x03"}
MAX_STDOUT_LINES = 50
MAX_STDERR_LINES = 20


def load_planner(target: str):
    """Build a planner from ``module:factory``; the factory gets the tool schemas."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"planner must look like 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory(tool_definitions())


class ConsoleOperator:
    def __init__(self, stdin=None, stdout=None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

    def _write(self, text: str) -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    def prompt(self, label: str = "You") -> str:
        self.stdout.write(f"{label}> ")
        self.stdout.flush()
        line = self.stdin.readline()
        if not line:
            raise EOFError
        return line.strip()

    def prompt_secret(self, label: str) -> str:
        return getpass.getpass(f"{label}: ")

    def confirm(self, question: str) -> bool:
        return self.prompt(f"{question} (y/n)").lower().startswith("y")

    def notify(self, message: str, level: str = "info") -> None:
        prefix = {"error": "✗ ", "warning": "⚠ ", "success": "✓ "}.get(level, "")
        self._write(prefix + message)

    def show_reply(self, text: str) -> None:
        self._write("")
        for line in text.split("\n"):
            self._write("│  " + line)
        self._write("")

    def present_command(self, request: CommandRequest) -> None:
        self._write("")
        if request.explanation:
            self._write("│  " + request.explanation)
        marker = " (sudo)" if request.requires_elevation else ""
        self._write(f"│  $ {request.command}{marker}")

    def show_result(self, request: CommandRequest, result: ExecutionResult) -> None:
        icon = "✓" if result.success else "✗"
        self._write(f"── Output ({icon} exit: {result.exit_code}) ──")
        if result.aborted:
            self._write("│  Streaming stopped by operator")
            return
        if result.stdout:
            lines = result.stdout.split("\n")
            for line in lines[:MAX_STDOUT_LINES]:
                self._write("│  " + line)
            if len(lines) > MAX_STDOUT_LINES:
                self._write("│  ... (output truncated)")
        if result.stderr:
            self._write("│  STDERR:")
            for line in result.stderr.split("\n")[:MAX_STDERR_LINES]:
                self._write("│  " + line)

    def stream_chunk(self, text: str, is_error: bool = False) -> None:
        self.stdout.write(text)
        self.stdout.flush()

    def watch_for_cancel(self, cancel: Callable[[], None]) -> Callable[[], None]:
        self._write("── Streaming output, press 'q' to stop ──")
        return KeyWatcher(self.stdin, cancel).start()


class KeyWatcher:
    """Reads stop keys from the terminal on a side thread while a stream runs."""

    def __init__(self, stream, on_stop: Callable[[], None]):
        self.stream = stream
        self.on_stop = on_stop
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self._saved_attrs: Optional[List] = None

    def _enter_cbreak(self, fd: int) -> None:
        if not os.isatty(fd):
            return
        import termios
        self._saved_attrs = termios.tcgetattr(fd)
        attrs = termios.tcgetattr(fd)
        # Ctrl-C must arrive as a byte, not as SIGINT.
        attrs[3] &= ~(termios.ICANON | termios.ECHO | termios.ISIG)
        termios.tcsetattr(fd, termios.TCSANOW, attrs)

    def _restore(self, fd: int) -> None:
        if self._saved_attrs is None:
            return
        import termios
        termios.tcsetattr(fd, termios.TCSADRAIN, self._saved_attrs)
        self._saved_attrs = None

    def _loop(self, fd: int) -> None:
        while not self.stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], 0.1)
            if not ready:
                continue
            key = os.read(fd, 1)
            if not key:
                return
            if key in STOP_KEYS:
                self.on_stop()
                return

    def start(self) -> Callable[[], None]:
        try:
            fd = self.stream.fileno()
        except (AttributeError, OSError, ValueError):
            return lambda: None
        self._enter_cbreak(fd)
        self.thread = threading.Thread(target=self._loop, args=(fd,), daemon=True)
        self.thread.start()

        def stop() -> None:
            self.stop_event.set()
            if self.thread is not None:
                self.thread.join(timeout=1.0)
            self._restore(fd)

        return stop
