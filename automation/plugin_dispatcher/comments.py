"""Markdown bodies for the comments the dispatcher posts back to issues."""

from __future__ import annotations

from automation.plugin_dispatcher.commands import Command
from automation.plugin_dispatcher.invoker import InvocationOutcome


def _break_long_string(text: str, max_len: int = 24) -> str:
    parts: list[str] = []
    space_index = text.find(" ", max_len)
    while len(text) > max_len and space_index != -1:
        parts.append(text[:space_index])
        text = text[space_index + 1 :]
        space_index = text.find(" ", max_len)
    parts.append(text)
    return "<br>".join(parts)


def _break_sentences(text: str) -> str:
    sentences = (text[:-1] if text.endswith(".") else text).split(". ")
    if len(sentences) <= 1:
        return text
    return ".<br><br>".join(sentences)


def render_help_menu(commands: list[Command]) -> str:
    lines = [
        "### Available Commands",
        "",
        "| Command | Description | Example |",
        "| --- | --- | --- |",
    ]
    for cmd in commands:
        if not cmd.enabled:
            continue
        example = _break_long_string(cmd.example_usage) if cmd.example_usage else ""
        lines.append(f"| `{cmd.id}` | {_break_sentences(cmd.description)} | {example} |")
    return "\n".join(lines) + "\n"


def render_outcome(outcome: InvocationOutcome) -> str | None:
    """Comment body for an outcome, or None when nothing should be posted.

    Failure text stays generic; ``outcome.detail`` is for logs only.
    """
    if outcome.ok:
        if not outcome.outputs:
            return None
        if set(outcome.outputs) == {"answer"}:
            return outcome.outputs["answer"]
        rows = "\n".join(f"| `{k}` | {v} |" for k, v in sorted(outcome.outputs.items()))
        return f"| Output | Value |\n| --- | --- |\n{rows}\n"
    if outcome.failed:
        return f"⚠️ `{outcome.command_id or 'command'}` could not be completed (`{outcome.kind}`)."
    return None
