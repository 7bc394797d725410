"""Tests for history curation."""

from chat_harness.core.history import curate_history, turn_summary_lines
from chat_harness.types import Role, TextPart, ToolCall, ToolResult, Turn


def _call_turn(name: str = "lookup") -> Turn:
    return Turn(Role.MODEL, (ToolCall(name, {"q": 1}, "c1"),))


def _result_turn(name: str = "lookup") -> Turn:
    return Turn.tool([ToolResult(name, {"ok": True}, "c1")])


class TestCurateHistory:
    def test_valid_history_unchanged(self):
        history = (
            Turn.user("hi"),
            _call_turn(),
            _result_turn(),
            Turn.model("done"),
        )
        assert curate_history(history) == history

    def test_drops_empty_user_turns(self):
        history = (Turn.user("   "), Turn(Role.USER, ()), Turn.user("real"))
        assert curate_history(history) == (history[2],)

    def test_drops_whole_model_run_with_one_invalid_turn(self):
        history = (
            Turn.user("a"),
            Turn.model("fine"),
            Turn(Role.MODEL, (TextPart(""),)),
            Turn.user("b"),
        )
        assert curate_history(history) == (history[0], history[3])

    def test_keeps_other_model_runs(self):
        history = (
            Turn.user("a"),
            Turn.model(" "),
            Turn.user("b"),
            Turn.model("ok"),
        )
        assert curate_history(history) == (history[0], history[2], history[3])

    def test_tool_turn_after_dropped_run_is_dropped(self):
        bad_call = Turn(Role.MODEL, (TextPart(""), ToolCall("lookup", {}, "c1")))
        history = (Turn.user("a"), bad_call, _result_turn(), Turn.user("b"))
        assert curate_history(history) == (history[0], history[3])

    def test_drops_run_whose_calls_have_no_results(self):
        history = (Turn.user("a"), _call_turn(), Turn.user("b"))
        assert curate_history(history) == (history[0], history[2])

    def test_drops_trailing_unanswered_call(self):
        history = (Turn.user("a"), _call_turn())
        assert curate_history(history) == (history[0],)

    def test_drops_run_with_partial_results(self):
        two_calls = Turn(Role.MODEL, (
            ToolCall("lookup", {}, "c1"),
            ToolCall("lookup", {}, "c2"),
        ))
        history = (Turn.user("a"), two_calls, _result_turn(), Turn.user("b"))
        assert curate_history(history) == (history[0], history[3])

    def test_results_without_ids_match_by_name(self):
        history = (
            Turn.user("a"),
            Turn(Role.MODEL, (ToolCall("grep", {}),)),
            Turn.tool([ToolResult("grep", "hit")]),
        )
        assert curate_history(history) == history

    def test_returns_tuple(self):
        assert curate_history(()) == ()


class TestSummaryLines:
    def test_user_text_truncated(self):
        lines = turn_summary_lines(Turn.user("x" * 200), 150)
        assert lines == ["User: " + "x" * 150 + "..."]

    def test_model_with_text_and_tools(self):
        turn = Turn(Role.MODEL, (TextPart("checking"), ToolCall("a"), ToolCall("b")))
        assert turn_summary_lines(turn, 150) == [
            "Assistant: checking",
            "Assistant used tools: a, b",
        ]

    def test_tool_turn(self):
        assert turn_summary_lines(_result_turn("grep"), 150) == ["Tool results: grep"]
