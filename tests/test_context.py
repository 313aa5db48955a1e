from adminshell.context import ContextStore
from adminshell.models import CommandLogEntry, DialogueEntry
from adminshell.utils import estimate_tokens

STAMP = "2026-01-01T00:00:00.000Z"


def _fill(store: ContextStore, dialogue_entries: int, dialogue_chars: int, command_entries: int, output_chars: int) -> None:
    for index in range(dialogue_entries):
        store.dialogue.append(DialogueEntry(timestamp=STAMP, role="User", text=f"{index:03d}" + "d" * dialogue_chars))
        store.messages.append({"role": "user", "content": f"m{index}"})
    for index in range(command_entries):
        store.command_log.append(
            CommandLogEntry(timestamp=STAMP, command=f"cmd{index}", output="o" * output_chars, exit_code=0)
        )


def test_estimate_tokens_is_proportional_to_length() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens({"a": 1}) == estimate_tokens('{"a": 1}')


def test_tiered_compaction_against_small_budget() -> None:
    store = ContextStore(max_context_tokens=1000)
    _fill(store, dialogue_entries=30, dialogue_chars=77, command_entries=10, output_chars=160)
    dialogue_before = store.dialogue_tokens()
    command_before = store.command_tokens()
    assert dialogue_before >= 600
    assert command_before >= 500
    commands_before = list(store.command_log)

    assert store.check_and_compact() is True

    assert store.command_tokens() <= command_before / 2
    assert 1 <= len(store.command_log) < 10
    assert store.command_log == commands_before[-len(store.command_log):]
    assert len(store.dialogue) == 20
    assert len(store.messages) == 20
    assert store.dialogue[0].text.startswith("010")
    assert store.messages[0]["content"] == "m10"


def test_no_compaction_under_half_budget() -> None:
    store = ContextStore(max_context_tokens=100_000)
    store.append_dialogue("user", "restart nginx please")
    store.append_command_result("systemctl restart nginx", "", 0)

    assert store.check_and_compact() is False
    assert len(store.dialogue) == 1
    assert len(store.command_log) == 1


def test_command_log_keeps_at_least_one_entry() -> None:
    store = ContextStore(max_context_tokens=100)
    store.append_command_result("journalctl -n 5000", "x" * 5000, 0)
    store.append_command_result("dmesg", "y" * 5000, 1)

    assert len(store.command_log) == 1
    assert store.command_log[0].command == "dmesg"
    assert store.command_log[0].output == "y" * 5000


def test_dialogue_never_trimmed_below_floor() -> None:
    store = ContextStore(max_context_tokens=100)
    for index in range(15):
        store.append_dialogue("user", f"{index} " + "z" * 400)

    assert len(store.dialogue) == 15
    assert len(store.messages) == 15


def test_messages_track_dialogue_on_every_append() -> None:
    store = ContextStore(max_context_tokens=200)
    for index in range(100):
        store.append_dialogue("user" if index % 2 else "assistant", f"turn {index} " + "w" * 40)
        assert len(store.messages) == len(store.dialogue)
        assert len(store.dialogue) >= min(index + 1, 20)
    assert store.dialogue[-1].text.startswith("turn 99 ")
    assert store.messages[-1]["content"].startswith("turn 99 ")


def test_command_compaction_never_grows_the_log() -> None:
    store = ContextStore(max_context_tokens=400)
    for index in range(40):
        store.append_command_result(f"step {index}", "out " * (index % 7 * 10), index % 3)
        entries = [entry.command for entry in store.command_log]
        assert entries == [f"step {n}" for n in range(index + 1 - len(entries), index + 1)]

    _fill(store, dialogue_entries=0, dialogue_chars=0, command_entries=6, output_chars=300)
    before = store.command_tokens()
    store.compact_command_log(before / 2)
    assert 1 <= store.command_tokens() <= before
    store.compact_command_log(0)
    assert len(store.command_log) == 1


def test_structured_message_content_is_preserved() -> None:
    store = ContextStore()
    blocks = [{"type": "tool_result", "tool_use_id": "t1", "content": "{}"}]
    store.append_dialogue("tool", "[t1] {}", content=blocks)

    assert store.get_messages() == [{"role": "tool", "content": blocks}]
    assert store.dialogue[0].role == "Tool"


def test_stats_are_recomputed_from_contents() -> None:
    store = ContextStore(max_context_tokens=10_000)
    store.append_dialogue("user", "check disk usage")
    store.append_command_result("df -h", "/dev/sda1 40%", 0)

    stats = store.stats()

    assert stats.dialogue_tokens == estimate_tokens(store.render_dialogue())
    assert stats.command_tokens == estimate_tokens(store.render_commands())
    assert stats.total_tokens == stats.dialogue_tokens + stats.command_tokens
    assert stats.budget_tokens == 10_000
    assert stats.limit_tokens == 5_000
    assert stats.usage_percent == round(stats.total_tokens / 5_000 * 100, 1)

    store.clear()
    assert store.stats().total_tokens == 0
    assert store.messages == [] and store.dialogue == [] and store.command_log == []


def test_flush_writes_both_logs(tmp_path) -> None:
    store = ContextStore(log_dir=str(tmp_path / "logs"))
    store.append_dialogue("user", "hello")
    store.append_dialogue("assistant", "hi there")
    store.append_command_result("echo ok", "ok", 0)
    store.append_command_result("false", "", 1)

    assert store.flush() is True

    dialogue = (tmp_path / "logs" / "communication.log").read_text(encoding="utf-8")
    blocks = dialogue.split("\n\n---\n\n")
    assert len(blocks) == 2
    assert blocks[0].startswith("[") and blocks[0].endswith("] User:\nhello")
    assert blocks[1].endswith("] Assistant:\nhi there")

    commands = (tmp_path / "logs" / "commands.log").read_text(encoding="utf-8").split("\n\n---\n\n")
    assert commands[0].endswith("✓ $ echo ok\nExit: 0\nok")
    assert commands[1].endswith("✗ $ false\nExit: 1\n")


def test_flush_rewrites_after_compaction(tmp_path) -> None:
    store = ContextStore(max_context_tokens=100, log_dir=str(tmp_path))
    store.append_command_result("first", "a" * 400, 0)
    store.flush()
    store.append_command_result("second", "b" * 400, 0)
    store.flush()

    text = (tmp_path / "commands.log").read_text(encoding="utf-8")
    assert "$ first" not in text
    assert "$ second" in text


def test_flush_failure_is_not_fatal(tmp_path, capsys) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = ContextStore(log_dir=str(blocker / "logs"))
    store.append_dialogue("user", "hello")

    assert store.flush() is False
    assert "[adminshell] failed to save logs" in capsys.readouterr().err
