import math
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from adminshell.config import (
    DEFAULT_CONTEXT_TOKENS, TOKENS_PER_CHAR, DIALOGUE_FLOOR, COMMAND_LOG_FLOOR,
    DIALOGUE_SHARE, LOG_DELIMITER, DIALOGUE_LOG_NAME, COMMAND_LOG_NAME,
)
from adminshell.errors import CompactionWriteError
from adminshell.models import CommandLogEntry, ContextStats, DialogueEntry
from adminshell.utils import estimate_tokens, log_error, utc_iso

ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "tool": "Tool",
}


def _rendered_length(rendered: Sequence[str]) -> int:
    if not rendered:
        return 0
    return sum(len(text) for text in rendered) + len(LOG_DELIMITER) * (len(rendered) - 1)


def _tokens_for_length(length: int) -> int:
    return math.ceil(length * TOKENS_PER_CHAR)


class ContextStore:
    """Dialogue and command logs kept inside a token budget.

    Both logs only ever grow at the tail and shrink at the head. Every planner
    message has exactly one dialogue entry, so ``messages`` and ``dialogue``
    always have the same length.
    """

    def __init__(
        self,
        max_context_tokens: int = DEFAULT_CONTEXT_TOKENS,
        log_dir: str = "./logs",
        dialogue_floor: int = DIALOGUE_FLOOR,
    ):
        if max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        self.max_context_tokens = max_context_tokens
        self.half_context = max_context_tokens / 2
        self.dialogue_floor = dialogue_floor

        self.messages: List[Dict[str, Any]] = []
        self.dialogue: List[DialogueEntry] = []
        self.command_log: List[CommandLogEntry] = []
        self.compactions = 0

        self.log_dir = log_dir
        self.dialogue_log_path = os.path.join(log_dir, DIALOGUE_LOG_NAME)
        self.command_log_path = os.path.join(log_dir, COMMAND_LOG_NAME)

        self.lock = threading.RLock()

    # ----- appends -----

    def append_dialogue(self, role: str, text: str, content: Any = None) -> DialogueEntry:
        with self.lock:
            entry = DialogueEntry(
                timestamp=utc_iso(),
                role=ROLE_LABELS.get(role, role.title()),
                text=text,
            )
            self.dialogue.append(entry)
            self.messages.append({"role": role, "content": text if content is None else content})
            self.check_and_compact()
            return entry

    def append_command_result(
        self,
        command: str,
        output: str,
        exit_code: int,
        executed_at: Optional[datetime] = None,
    ) -> CommandLogEntry:
        with self.lock:
            entry = CommandLogEntry(
                timestamp=utc_iso(executed_at),
                command=command,
                output=output,
                exit_code=exit_code,
            )
            self.command_log.append(entry)
            self.check_and_compact()
            return entry

    def get_messages(self) -> List[Dict[str, Any]]:
        with self.lock:
            return list(self.messages)

    # ----- rendering and estimates -----

    def render_dialogue(self) -> str:
        with self.lock:
            return LOG_DELIMITER.join(entry.render() for entry in self.dialogue)

    def render_commands(self) -> str:
        with self.lock:
            return LOG_DELIMITER.join(entry.render() for entry in self.command_log)

    def dialogue_tokens(self) -> int:
        return estimate_tokens(self.render_dialogue())

    def command_tokens(self) -> int:
        return estimate_tokens(self.render_commands())

    def stats(self) -> ContextStats:
        with self.lock:
            dialogue_tokens = self.dialogue_tokens()
            command_tokens = self.command_tokens()
        total = dialogue_tokens + command_tokens
        return ContextStats(
            dialogue_tokens=dialogue_tokens,
            command_tokens=command_tokens,
            total_tokens=total,
            budget_tokens=self.max_context_tokens,
            limit_tokens=int(self.half_context),
            usage_percent=round(total / self.half_context * 100, 1),
        )

    # ----- compaction -----

    def check_and_compact(self) -> bool:
        with self.lock:
            dialogue_tokens = self.dialogue_tokens()
            command_tokens = self.command_tokens()
            if dialogue_tokens + command_tokens <= self.half_context:
                return False

            log_error(
                f"compacting context ({dialogue_tokens + command_tokens} tokens, "
                f"limit {int(self.half_context)})"
            )
            self.compactions += 1
            if command_tokens > 0:
                self.compact_command_log(command_tokens / 2)

            if self.dialogue_tokens() > self.max_context_tokens * DIALOGUE_SHARE:
                self.compact_dialogue()
            return True

    def compact_command_log(self, target_tokens: float) -> int:
        with self.lock:
            rendered = [entry.render() for entry in self.command_log]
            length = _rendered_length(rendered)
            dropped = 0
            while len(rendered) > COMMAND_LOG_FLOOR and _tokens_for_length(length) > target_tokens:
                length -= len(rendered.pop(0))
                length -= len(LOG_DELIMITER) if rendered else 0
                dropped += 1
            if dropped:
                del self.command_log[:dropped]
            return dropped

    def compact_dialogue(self) -> int:
        with self.lock:
            dropped = max(0, len(self.dialogue) - self.dialogue_floor)
            if dropped:
                del self.dialogue[:dropped]
            excess_messages = max(0, len(self.messages) - self.dialogue_floor)
            if excess_messages:
                del self.messages[:excess_messages]
            return dropped

    def clear(self) -> None:
        with self.lock:
            self.messages = []
            self.dialogue = []
            self.command_log = []

    # ----- durable flush -----

    def _write_logs(self) -> None:
        with self.lock:
            dialogue_text = self.render_dialogue()
            command_text = self.render_commands()
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(self.dialogue_log_path, "w", encoding="utf-8") as handle:
                handle.write(dialogue_text)
            with open(self.command_log_path, "w", encoding="utf-8") as handle:
                handle.write(command_text)
        except OSError as exc:
            raise CompactionWriteError(f"failed to save logs to {self.log_dir}: {exc}") from exc

    def flush(self) -> bool:
        try:
            self._write_logs()
        except CompactionWriteError as exc:
            log_error(str(exc))
            return False
        return True
