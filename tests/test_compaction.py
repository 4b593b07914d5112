"""Tests for the compaction core."""

from __future__ import annotations

import asyncio
import logging
import math
from types import SimpleNamespace

import pytest

from condense.ai.types import (
    AssistantMessage,
    ImageContent,
    Model,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    Usage,
    UserMessage,
)
from condense.context.compaction import (
    DEFAULT_COMPACTION_SETTINGS,
    AlreadyCompactedError,
    CompactionAbortedError,
    CompactionSettings,
    NothingToCompactError,
    SummarizationError,
    calculate_context_tokens,
    compact,
    compute_file_lists,
    create_file_ops,
    estimate_entry_tokens,
    estimate_tokens,
    extract_file_operations,
    extract_file_ops_from_message,
    find_cut_point,
    find_valid_cut_points,
    format_file_operations,
    get_last_assistant_usage,
    prepare_compaction,
    serialize_conversation,
    should_compact,
)
from condense.context.messages import BashExecutionMessage, CompactionSummaryMessage
from condense.context.sessions import (
    CompactionEntry,
    CustomMessageEntry,
    ModelChangeEntry,
    SessionManager,
    SessionMessageEntry,
)


def _make_model(reasoning: bool = False) -> Model:
    return Model(
        id="test-model",
        name="test-model",
        api="fake-api",
        provider="test",
        reasoning=reasoning,
        context_window=100000,
        max_tokens=4096,
    )


def _user(text: str) -> UserMessage:
    return UserMessage(content=text, timestamp=1000)


def _assistant(
    text: str = "",
    tool_calls: list[ToolCall] | None = None,
    usage: Usage | None = None,
    stop_reason: str = "stop",
) -> AssistantMessage:
    content: list = [TextContent(text=text)] if text else []
    content.extend(tool_calls or [])
    return AssistantMessage(content=content, usage=usage or Usage(), stop_reason=stop_reason, timestamp=1000)


def _call(name: str, path: str, call_id: str = "call-1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments={"path": path})


def _tool_result(name: str, text: str = "ok", call_id: str = "call-1", is_error: bool = False) -> ToolResultMessage:
    return ToolResultMessage(
        tool_call_id=call_id,
        tool_name=name,
        content=[TextContent(text=text)],
        is_error=is_error,
    )


def _history(*messages) -> SessionManager:
    sm = SessionManager.in_memory()
    for message in messages:
        sm.append_message(message)
    return sm


# --- Token estimation ---


def test_estimate_tokens_user_text():
    assert estimate_tokens(_user("Hello, world!")) == math.ceil(len("Hello, world!") / 4)


def test_estimate_tokens_assistant_text_and_thinking():
    msg = AssistantMessage(
        content=[
            TextContent(text="This is a response."),
            ThinkingContent(thinking="Let me think about this."),
        ]
    )
    expected = math.ceil((len("This is a response.") + len("Let me think about this.")) / 4)
    assert estimate_tokens(msg) == expected


def test_estimate_tokens_tool_call_counts_name_and_arguments():
    call = ToolCall(id="1", name="write", arguments={"path": "a.txt", "content": "hello"})
    arguments_text = '{"path":"a.txt","content":"hello"}'
    expected = math.ceil((len("write") + len(arguments_text)) / 4)
    assert estimate_tokens(_assistant(tool_calls=[call])) == expected


def test_estimate_tokens_tool_call_counts_non_ascii_once():
    call = ToolCall(id="1", name="read", arguments={"path": "é.txt"})
    # "read" plus '{"path":"é.txt"}' is 20 characters
    assert estimate_tokens(_assistant(tool_calls=[call])) == 5


def test_estimate_tokens_image_is_flat():
    small = UserMessage(content=[ImageContent(data="AAAA")])
    large = UserMessage(content=[ImageContent(data="A" * 100000)])
    assert estimate_tokens(small) == 1200
    assert estimate_tokens(large) == 1200


def test_estimate_tokens_tool_result():
    assert estimate_tokens(_tool_result("read", "x" * 40)) == 10


def test_estimate_tokens_bash_and_summaries():
    bash = BashExecutionMessage(command="ls", output="a\nb")
    assert estimate_tokens(bash) == math.ceil(5 / 4)
    assert estimate_tokens(CompactionSummaryMessage(summary="s" * 40)) == 10


def test_estimate_tokens_empty():
    assert estimate_tokens(_user("")) == 0
    assert estimate_tokens(AssistantMessage()) == 0


def test_estimate_tokens_is_pure():
    msg = _assistant("some reply", tool_calls=[_call("read", "src/app.py")])
    assert estimate_tokens(msg) == estimate_tokens(msg)


def test_estimate_tokens_unknown_kind_logs_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="condense.context.compaction.tokens"):
        assert estimate_tokens(SimpleNamespace(role="hologram")) == 0
    assert "hologram" in caplog.text


def test_estimate_entry_tokens():
    message_entry = SessionMessageEntry(id="m1", message=_user("test message"))
    assert estimate_entry_tokens(message_entry) == math.ceil(len("test message") / 4)

    marker = CompactionEntry(id="c1", summary="12345678", first_kept_entry_id="m1")
    assert estimate_entry_tokens(marker) == 2

    custom = CustomMessageEntry(id="x1", custom_type="note", content="abcd")
    assert estimate_entry_tokens(custom) == 1

    assert estimate_entry_tokens(ModelChangeEntry(id="e1", model_id="m", provider="p")) == 0


def test_calculate_context_tokens_prefers_total():
    assert calculate_context_tokens(Usage(input=10, output=10, total_tokens=500)) == 500


def test_calculate_context_tokens_sums_parts():
    usage = Usage(input=100, output=50, cache_read=20, cache_write=5)
    assert calculate_context_tokens(usage) == 175


def test_get_last_assistant_usage_skips_failed_responses():
    sm = _history(
        _user("hi"),
        _assistant("first", usage=Usage(total_tokens=111)),
        _assistant("", usage=Usage(total_tokens=999), stop_reason="error"),
        _assistant("", usage=Usage(total_tokens=888), stop_reason="aborted"),
    )
    usage = get_last_assistant_usage(sm.entries)
    assert usage is not None
    assert usage.total_tokens == 111


def test_get_last_assistant_usage_none():
    assert get_last_assistant_usage(_history(_user("hi")).entries) is None


# --- Threshold ---


def test_should_compact_threshold():
    settings = CompactionSettings(reserve_tokens=100)
    assert should_compact(899, 1000, settings) is False
    assert should_compact(900, 1000, settings) is False
    assert should_compact(901, 1000, settings) is True


def test_should_compact_disabled():
    settings = CompactionSettings(enabled=False, reserve_tokens=100)
    assert should_compact(10**6, 1000, settings) is False


def test_default_settings():
    assert DEFAULT_COMPACTION_SETTINGS.enabled is True
    assert DEFAULT_COMPACTION_SETTINGS.reserve_tokens == 16384
    assert DEFAULT_COMPACTION_SETTINGS.keep_recent_tokens == 20000


# --- Cut points ---


def _tool_heavy_history() -> list:
    messages = []
    for i in range(4):
        messages.append(_user(f"task {i}: " + "u" * 60))
        messages.append(_assistant("working", tool_calls=[_call("read", f"f{i}.py", f"c{i}")]))
        messages.append(_tool_result("read", "r" * 400, f"c{i}"))
        messages.append(_assistant("done " + "a" * 40))
    return _history(*messages).entries


def test_find_valid_cut_points_excludes_tool_results():
    entries = _tool_heavy_history()
    points = find_valid_cut_points(entries, 0, len(entries))
    assert points
    for i in points:
        assert not isinstance(entries[i].message, ToolResultMessage)


def test_cut_point_never_lands_on_tool_result():
    entries = _tool_heavy_history()
    for keep in (0, 1, 10, 50, 100, 101, 150, 250, 400, 1000):
        result = find_cut_point(entries, 0, len(entries), keep)
        kept = entries[result.first_kept_entry_index]
        assert not (isinstance(kept, SessionMessageEntry) and isinstance(kept.message, ToolResultMessage))


def test_cut_point_keeps_whole_turns_when_not_split():
    entries = _tool_heavy_history()
    for keep in (0, 1, 10, 50, 100, 101, 150, 250, 400, 1000):
        result = find_cut_point(entries, 0, len(entries), keep)
        if not result.is_split_turn:
            kept = entries[result.first_kept_entry_index]
            assert isinstance(kept.message, UserMessage)


def test_cut_point_keep_everything():
    entries = _tool_heavy_history()
    result = find_cut_point(entries, 0, len(entries), 10**6)
    assert result.first_kept_entry_index == find_valid_cut_points(entries, 0, len(entries))[0]
    assert result.is_split_turn is False


def test_cut_point_no_valid_points():
    entries = _history(_tool_result("read"), _tool_result("read")).entries
    result = find_cut_point(entries, 0, len(entries), 0)
    assert result.first_kept_entry_index == 0
    assert result.turn_start_index == -1
    assert result.is_split_turn is False


def test_cut_point_splits_oversized_turn():
    entries = _history(
        _user("do it"),
        _assistant(tool_calls=[_call("read", "a.py", "c1")]),
        _tool_result("read", "x" * 4000, "c1"),
        _assistant(tool_calls=[_call("read", "b.py", "c2")]),
        _tool_result("read", "y" * 4000, "c2"),
        _assistant("done"),
    ).entries
    result = find_cut_point(entries, 0, len(entries), 10)
    assert result.first_kept_entry_index == 5
    assert result.is_split_turn is True
    assert result.turn_start_index == 0


def test_cut_point_keeps_setting_changes_with_their_turn():
    sm = SessionManager.in_memory()
    sm.append_message(_user("first"))
    sm.append_message(_assistant("reply"))
    sm.append_thinking_level_change("high")
    sm.append_model_change("other-model", "test")
    sm.append_message(_user("x" * 40))
    sm.append_message(_assistant("y" * 40))
    entries = sm.entries

    result = find_cut_point(entries, 0, len(entries), 20)
    assert result.first_kept_entry_index == 2
    assert result.is_split_turn is False


def test_write_scenario_keeps_assistant_and_tracks_file():
    entries = _history(
        _user("u" * 100),
        _assistant(tool_calls=[ToolCall(id="w1", name="write", arguments={"path": "a.txt"})]),
    ).entries

    result = find_cut_point(entries, 0, len(entries), 0)
    assert result.first_kept_entry_index >= 1

    preparation = prepare_compaction(entries, CompactionSettings(keep_recent_tokens=0))
    assert preparation is not None
    assert compute_file_lists(preparation.file_ops) == ([], ["a.txt"])


# --- File operations ---


def test_extract_file_ops_from_message():
    ops = create_file_ops()
    msg = _assistant(
        tool_calls=[
            ToolCall(id="1", name="read", arguments={"path": "src/a.py"}),
            ToolCall(id="2", name="write", arguments={"file_path": "src/b.py"}),
            ToolCall(id="3", name="edit", arguments={"path": "src/c.py"}),
            ToolCall(id="4", name="bash", arguments={"command": "ls"}),
        ]
    )
    extract_file_ops_from_message(msg, ops)
    assert ops.read == {"src/a.py"}
    assert ops.written == {"src/b.py"}
    assert ops.edited == {"src/c.py"}


def test_extract_file_ops_ignores_non_assistant():
    ops = create_file_ops()
    extract_file_ops_from_message(_user("read src/a.py"), ops)
    assert ops.read == set()


def test_compute_file_lists_modified_wins():
    ops = create_file_ops()
    ops.read.update({"b.py", "a.py"})
    ops.edited.add("b.py")
    ops.written.add("c.py")
    assert compute_file_lists(ops) == (["a.py"], ["b.py", "c.py"])


def test_format_file_operations():
    assert format_file_operations([], []) == ""
    assert format_file_operations(["a.py"], []) == "<read-files>\na.py\n</read-files>"
    text = format_file_operations(["a.py"], ["b.py", "c.py"])
    assert text == "<read-files>\na.py\n</read-files>\n\n<modified-files>\nb.py\nc.py\n</modified-files>"


def test_extract_file_operations_carries_forward_previous_marker():
    marker = CompactionEntry(
        id="c1",
        summary="s",
        first_kept_entry_id="m1",
        details={"readFiles": ["r.txt"], "modifiedFiles": ["m.txt"]},
    )
    ops = extract_file_operations([_assistant(tool_calls=[_call("write", "new.txt")])], [marker], 0)
    assert ops.read == {"r.txt"}
    assert ops.edited == {"m.txt"}
    assert ops.written == {"new.txt"}


def test_extract_file_operations_ignores_hook_marker_details():
    marker = CompactionEntry(
        id="c1",
        summary="s",
        first_kept_entry_id="m1",
        details={"readFiles": ["r.txt"], "modifiedFiles": ["m.txt"]},
        from_hook=True,
    )
    ops = extract_file_operations([], [marker], 0)
    assert ops.read == set()
    assert ops.edited == set()


# --- Serialization ---


def test_serialize_conversation():
    text = serialize_conversation(
        [
            _user("hi"),
            _assistant("reading", tool_calls=[_call("read", "a.py")]),
            _tool_result("read", "boom", is_error=True),
        ]
    )
    assert "[user]\nhi" in text
    assert "[assistant]\nreading\n<tool_call name='read'>" in text
    assert "[tool_result read error]\nboom" in text


# --- Preparation ---


def _two_turns() -> SessionManager:
    return _history(
        _user("first task please"),
        _assistant("first done"),
        _user("second task"),
        _assistant("second done", usage=Usage(total_tokens=1234)),
    )


def test_prepare_compaction_without_model_calls():
    entries = _two_turns().entries
    preparation = prepare_compaction(entries, CompactionSettings(keep_recent_tokens=4))
    assert preparation is not None
    assert preparation.first_kept_entry_id == entries[2].id
    assert [m.role for m in preparation.messages_to_summarize] == ["user", "assistant"]
    assert preparation.turn_prefix_messages == []
    assert [m.role for m in preparation.messages_to_keep] == ["user", "assistant"]
    assert preparation.tokens_before == 1234
    assert preparation.previous_summary is None


def test_prepare_compaction_none_when_last_entry_is_marker():
    sm = _two_turns()
    sm.append_compaction("summary", first_kept_entry_id=sm.entries[2].id)
    assert prepare_compaction(sm.entries) is None


def test_prepare_compaction_none_when_empty():
    assert prepare_compaction([]) is None


def test_prepare_compaction_none_when_everything_is_kept():
    assert prepare_compaction(_two_turns().entries) is None


# --- Compaction ---


async def test_compact_already_compacted_does_no_io(provider):
    sm = _two_turns()
    sm.append_compaction("summary", first_kept_entry_id=sm.entries[2].id)
    with pytest.raises(AlreadyCompactedError):
        await compact(sm.entries, _make_model())
    assert provider.requests == []


async def test_compact_nothing_to_compact(provider):
    with pytest.raises(NothingToCompactError):
        await compact([], _make_model())
    with pytest.raises(NothingToCompactError):
        await compact(_two_turns().entries, _make_model())
    assert provider.requests == []


async def test_compact_generates_summary(provider):
    provider.reply("## Goal\nShip it")
    entries = _two_turns().entries

    result = await compact(entries, _make_model(), CompactionSettings(keep_recent_tokens=4))

    assert result.summary == "## Goal\nShip it"
    assert result.first_kept_entry_id == entries[2].id
    assert result.tokens_before == 1234
    assert result.details.read_files == []
    assert result.details.modified_files == []

    context, options = provider.requests[0]
    assert "first task please" in provider.prompts[0]
    assert "second task" not in provider.prompts[0]
    assert context.system_prompt is not None
    assert options.max_tokens == int(16384 * 0.8)


async def test_compact_appends_file_lists(provider):
    entries = _history(
        _user("edit things"),
        _assistant(tool_calls=[_call("read", "README.md", "c1")]),
        _tool_result("read", "contents", "c1"),
        _assistant(tool_calls=[_call("edit", "src/app.py", "c2")]),
        _tool_result("edit", "ok", "c2"),
        _assistant("edited"),
        _user("next"),
        _assistant("ok"),
    ).entries

    result = await compact(entries, _make_model(), CompactionSettings(keep_recent_tokens=2))

    assert result.details.read_files == ["README.md"]
    assert result.details.modified_files == ["src/app.py"]
    assert result.summary.endswith(
        "\n\n<read-files>\nREADME.md\n</read-files>\n\n<modified-files>\nsrc/app.py\n</modified-files>"
    )
    assert result.details.to_dict() == {"readFiles": ["README.md"], "modifiedFiles": ["src/app.py"]}


async def test_compact_custom_instructions_and_reasoning(provider):
    await compact(
        _two_turns().entries,
        _make_model(reasoning=True),
        CompactionSettings(keep_recent_tokens=4),
        custom_instructions="keep the API notes",
    )
    _, options = provider.requests[0]
    assert "Additional focus: keep the API notes" in provider.prompts[0]
    assert options.reasoning == "high"


async def test_compact_file_sets_grow_across_compactions(provider):
    sm = _history(
        _user("write a"),
        _assistant(tool_calls=[_call("write", "a.txt", "c1")]),
        _tool_result("write", "ok", "c1"),
        _assistant("done"),
        _user("next"),
        _assistant("ok"),
    )
    settings = CompactionSettings(keep_recent_tokens=2)

    first = await compact(sm.entries, _make_model(), settings)
    sm.append_compaction(
        first.summary,
        first_kept_entry_id=first.first_kept_entry_id,
        tokens_before=first.tokens_before,
        details=first.details.to_dict(),
    )

    sm.append_message(_user("write b"))
    sm.append_message(_assistant(tool_calls=[_call("write", "b.txt", "c2")]))
    sm.append_message(_tool_result("write", "ok", "c2"))
    sm.append_message(_assistant("done"))
    sm.append_message(_user("more"))
    sm.append_message(_assistant("ok"))

    second = await compact(sm.entries, _make_model(), settings)

    assert first.details.modified_files == ["a.txt"]
    assert set(second.details.modified_files) >= set(first.details.modified_files)
    assert second.details.modified_files == ["a.txt", "b.txt"]
    assert "<previous-summary>" in provider.prompts[-1]


async def test_compact_write_scenario(provider):
    provider.reply("prefix summary")
    entries = _history(
        _user("u" * 100),
        _assistant(tool_calls=[ToolCall(id="w1", name="write", arguments={"path": "a.txt"})]),
    ).entries

    result = await compact(entries, _make_model(), CompactionSettings(keep_recent_tokens=0))

    assert len(provider.requests) == 1
    assert "PREFIX of a turn" in provider.prompts[0]
    assert result.first_kept_entry_id == entries[1].id
    assert result.details.modified_files == ["a.txt"]
    assert result.summary == (
        "No prior history.\n\n---\n\n**Turn Context (split turn):**\n\nprefix summary"
        "\n\n<modified-files>\na.txt\n</modified-files>"
    )


def _split_turn_history() -> list:
    return _history(
        _user("start"),
        _assistant("ok"),
        _user("refactor"),
        _assistant(tool_calls=[_call("edit", "b.txt", "c1")]),
        _tool_result("edit", "x" * 400, "c1"),
        _assistant("finished"),
    ).entries


async def test_compact_split_turn_requests_both_summaries_concurrently(provider, until):
    provider.gate = asyncio.Event()
    provider.responder = lambda prompt: "prefix summary" if "PREFIX of a turn" in prompt else "history summary"
    entries = _split_turn_history()

    task = asyncio.ensure_future(compact(entries, _make_model(), CompactionSettings(keep_recent_tokens=50)))
    await until(lambda: len(provider.requests) == 2)
    provider.gate.set()
    result = await task

    assert result.first_kept_entry_id == entries[5].id
    assert result.summary == (
        "history summary\n\n---\n\n**Turn Context (split turn):**\n\nprefix summary"
        "\n\n<modified-files>\nb.txt\n</modified-files>"
    )
    budgets = sorted(options.max_tokens for _, options in provider.requests)
    assert budgets == [int(16384 * 0.5), int(16384 * 0.8)]


async def test_compact_split_turn_failure_propagates(provider):
    provider.fail("upstream exploded")
    with pytest.raises(SummarizationError, match="upstream exploded"):
        await compact(_split_turn_history(), _make_model(), CompactionSettings(keep_recent_tokens=50))


async def test_compact_summarization_error(provider):
    provider.fail("model unavailable")
    with pytest.raises(SummarizationError, match="model unavailable"):
        await compact(_two_turns().entries, _make_model(), CompactionSettings(keep_recent_tokens=4))


async def test_compact_length_stop_is_success(provider):
    provider.responses.append(AssistantMessage(content=[TextContent(text="cut short")], stop_reason="length"))
    result = await compact(_two_turns().entries, _make_model(), CompactionSettings(keep_recent_tokens=4))
    assert result.summary == "cut short"


async def test_compact_abort_during_request(provider, until):
    provider.gate = asyncio.Event()
    abort_event = asyncio.Event()
    task = asyncio.ensure_future(
        compact(
            _two_turns().entries,
            _make_model(),
            CompactionSettings(keep_recent_tokens=4),
            abort_event=abort_event,
        )
    )
    await until(lambda: len(provider.requests) == 1)
    abort_event.set()
    with pytest.raises(CompactionAbortedError):
        await task


async def test_compact_abort_before_request(provider):
    abort_event = asyncio.Event()
    abort_event.set()
    with pytest.raises(CompactionAbortedError):
        await compact(
            _two_turns().entries,
            _make_model(),
            CompactionSettings(keep_recent_tokens=4),
            abort_event=abort_event,
        )
    assert provider.requests == []
