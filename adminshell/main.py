import argparse
import os
from typing import Optional

from adminshell.cli import ConsoleOperator, load_planner
from adminshell.config import config
from adminshell.context import ContextStore
from adminshell.errors import SessionConnectError
from adminshell.models import ElevationCredential, SessionConfig, SessionState
from adminshell.orchestrator import Connection, ExecutionOrchestrator
from adminshell.ssh import RemoteSession
from adminshell.utils import log_error, make_cache_dirs

HELP_TEXT = """Commands:
  /connect  - Connect to a server
  /system   - Set system description
  /status   - Show connection status
  /clear    - Clear conversation
  /help     - Show this help
  /quit     - Exit"""


class AdminShell:
    def __init__(self, operator: ConsoleOperator, session: RemoteSession, context: ContextStore, planner=None):
        self.operator = operator
        self.session = session
        self.context = context
        self.orchestrator = ExecutionOrchestrator(context=context, operator=operator, planner=planner)
        self.running = True

    def _prompt_default(self, label: str, default: Optional[str]) -> str:
        if default:
            return self.operator.prompt(f"{label} ({default})") or default
        return self.operator.prompt(label)

    def connect(self) -> None:
        op = self.operator
        op.notify("--- SSH Connection Setup ---")
        host = self._prompt_default("Host", config.SSH_HOST)
        port = self._prompt_default("Port", str(config.SSH_PORT or 22))
        username = self._prompt_default("Username", config.SSH_USER)

        password = private_key = passphrase = None
        key_path = self._prompt_default("Private key path (Enter for password auth)", config.SSH_KEY_PATH)
        if key_path:
            try:
                with open(os.path.expanduser(os.path.expandvars(key_path)), "rb") as handle:
                    private_key = handle.read()
            except OSError as exc:
                op.notify(f"Error reading key file: {exc}", "error")
                return
            passphrase = config.SSH_KEY_PASSPHRASE or op.prompt_secret("Key passphrase (Enter for none)") or None
        else:
            password = config.SSH_PASSWORD or op.prompt_secret("Password")

        sudo_secret = op.prompt_secret("Sudo password (Enter to skip)")
        try:
            session_config = SessionConfig(
                host=host,
                port=int(port),
                username=username,
                password=password,
                private_key=private_key,
                passphrase=passphrase,
                verify_host_key=config.SSH_VERIFY_HOST_KEY,
            )
        except ValueError as exc:
            op.notify(f"Invalid connection settings: {exc}", "error")
            return

        self._open(session_config, sudo_secret)

    def connect_from_config(self) -> None:
        try:
            session_config = SessionConfig.from_app_config(config)
        except (OSError, ValueError) as exc:
            self.operator.notify(f"Invalid connection settings: {exc}", "error")
            return
        self._open(session_config, self.operator.prompt_secret("Sudo password (Enter to skip)"))

    def _open(self, session_config: SessionConfig, sudo_secret: str) -> None:
        op = self.operator
        self.orchestrator.connection = None
        try:
            self.session.connect(session_config)
        except SessionConnectError as exc:
            op.notify(f"Connection failed: {exc}", "error")
            return

        credential = ElevationCredential(sudo_secret) if sudo_secret else None
        self.orchestrator.connection = Connection(session=self.session, credential=credential)
        test = self.session.test_connection()
        if test["success"]:
            op.notify(test["output"], "success")
        else:
            op.notify(f"Connection test failed: {test['error']}", "warning")

    def set_system_description(self) -> None:
        self.operator.notify("Describe the system you are managing:")
        self.orchestrator.system_description = self.operator.prompt("System")
        self.operator.notify("System description saved", "success")

    def show_status(self) -> None:
        info = self.session.info()
        if info["state"] == SessionState.CONNECTED.value:
            self.operator.notify(f"Connected to {info['username']}@{info['host']}", "success")
        else:
            self.operator.notify("Not connected to any server", "warning")
        description = self.orchestrator.system_description or "Not set (use /system to set)"
        self.operator.notify(f"System: {description}")
        stats = self.context.stats()
        self.operator.notify(
            f"Context usage: {stats.usage_percent}% ({stats.total_tokens}/{stats.limit_tokens} tokens, "
            f"{len(self.context.messages)} messages)"
        )

    def handle_command(self, text: str) -> None:
        cmd = text[1:].split(" ", 1)[0].lower()
        if cmd == "connect":
            self.connect()
        elif cmd == "system":
            self.set_system_description()
        elif cmd == "status":
            self.show_status()
        elif cmd == "clear":
            self.context.clear()
            self.operator.notify("Conversation cleared", "success")
        elif cmd == "help":
            self.operator.notify(HELP_TEXT)
        elif cmd in {"quit", "exit"}:
            self.running = False
        else:
            self.operator.notify(f"Unknown command: {cmd}", "error")

    def report_state_changes(self) -> None:
        for change in self.session.drain_state_changes():
            if change.state == SessionState.CONNECTED:
                self.operator.notify(f"Connected to {change.host}", "success")
            elif change.state == SessionState.FAILED:
                self.orchestrator.connection = None
                self.operator.notify(f"SSH Error: {change.reason}", "error")
            else:
                self.operator.notify("Disconnected from server", "warning")

    def run(self) -> None:
        self.operator.notify("Welcome! Use /connect to connect to a server, or /help for commands.")
        if config.SSH_HOST and config.SSH_USER and (config.SSH_PASSWORD or config.SSH_KEY_PATH):
            self.connect_from_config()
        while self.running:
            try:
                text = self.operator.prompt("You")
            except (EOFError, KeyboardInterrupt):
                break
            if text.startswith("/"):
                self.handle_command(text)
            elif text:
                self.orchestrator.run_turn(text)
            self.report_state_changes()
            self.context.flush()
        self.shutdown()

    def shutdown(self) -> None:
        self.operator.notify("Shutting down...")
        self.context.flush()
        self.orchestrator.connection = None
        self.session.disconnect()


def main() -> None:
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="Natural-language administration shell over SSH (operator-confirmed commands)"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--context-tokens", type=int, help="Planner context budget in tokens")
    parser.add_argument("--log-dir", help="Directory for communication.log and commands.log")
    parser.add_argument("--cache-dir", help="Directory for session event logs")
    parser.add_argument("--planner", help="Planner factory as module:attribute (overrides ADMINSHELL_PLANNER env)")
    parser.add_argument("--model", help="Model name for the default planner (overrides ADMINSHELL_MODEL env)")

    args = parser.parse_args()

    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.context_tokens: config.CONTEXT_TOKENS = args.context_tokens
    if args.log_dir: config.LOG_DIR = args.log_dir
    if args.planner: config.PLANNER = args.planner
    if args.model: config.MODEL = args.model
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False

    planner = None
    if config.PLANNER:
        try:
            planner = load_planner(config.PLANNER)
        except (ImportError, AttributeError, ValueError) as exc:
            parser.error(f"cannot load planner {config.PLANNER!r}: {exc}")
    else:
        log_error("no planner configured; set ANTHROPIC_API_KEY, --planner or ADMINSHELL_PLANNER")

    cache_root = args.cache_dir or os.path.join(config.LOG_DIR, ".ssh-cache")
    cache_dirs = make_cache_dirs(cache_root)

    shell = AdminShell(
        operator=ConsoleOperator(),
        session=RemoteSession(cache_dirs=cache_dirs, name=config.SSH_HOST or "session"),
        context=ContextStore(max_context_tokens=config.CONTEXT_TOKENS, log_dir=config.LOG_DIR),
        planner=planner,
    )
    shell.run()


if __name__ == "__main__":
    main()
