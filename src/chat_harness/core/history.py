"""History curation: decide which turns are safe to send to a backend."""

from __future__ import annotations

from chat_harness.types import History, Role, ToolCall, ToolResult, Turn


def _call_key(part: ToolCall | ToolResult) -> str:
    return part.call_id or part.name


def _calls_answered(run: History, following: Turn | None) -> bool:
    """True if every tool call in *run* has a result in *following*."""
    wanted = {_call_key(c) for turn in run for c in turn.tool_calls}
    if not wanted:
        return True
    if following is None or following.role is not Role.TOOL:
        return False
    return wanted <= {_call_key(r) for r in following.tool_results}


def curate_history(history: History) -> History:
    """Return the sendable subset of *history*.

    - A user turn is kept only if it is valid on its own.
    - A maximal run of consecutive model turns is kept only if every turn
      in the run is valid and the tool turn right after it answers every
      call the run makes; otherwise the whole run is dropped.
    - A tool turn is kept only if it is valid and the model run right
      before it survived, so no result refers to a dropped call.
    """
    curated: list[Turn] = []
    last_run_kept = False
    i = 0
    n = len(history)
    while i < n:
        turn = history[i]
        if turn.role is Role.MODEL:
            j = i
            while j < n and history[j].role is Role.MODEL:
                j += 1
            run = history[i:j]
            following = history[j] if j < n else None
            last_run_kept = (
                all(t.is_valid() for t in run) and _calls_answered(run, following)
            )
            if last_run_kept:
                curated.extend(run)
            i = j
            continue
        if turn.role is Role.TOOL:
            if last_run_kept and turn.is_valid():
                curated.append(turn)
        elif turn.is_valid():
            curated.append(turn)
            last_run_kept = False
        i += 1
    return tuple(curated)


def turn_summary_lines(turn: Turn, max_chars: int) -> list[str]:
    """Describe a turn in at most two lines for the compression summary."""
    if turn.role is Role.TOOL:
        names = ", ".join(r.name for r in turn.tool_results)
        return [f"Tool results: {names}"] if names else []
    lines = []
    speaker = "User" if turn.role is Role.USER else "Assistant"
    text = turn.text
    if text:
        if len(text) > max_chars:
            text = text[:max_chars] + "..."
        lines.append(f"{speaker}: {text}")
    calls = turn.tool_calls
    if calls:
        lines.append(f"Assistant used tools: {', '.join(c.name for c in calls)}")
    return lines
