"""
Console input and output for the interactive shell.

LineReader hands back raw lines (EOF reads as ``q``); Console prints
progress notices and renders outcomes as one short block of text each.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional, TextIO, Union

import structlog

from sockshell.exceptions import SockShellError
from sockshell.models import Outcome, OutcomeKind, StateChange

try:
    import readline
except ImportError:  # readline is not built on every platform
    readline = None

logger = structlog.get_logger()

_PREVIEW_BYTES = 64


class LineReader:
    """Prompted line input with readline history, consecutive duplicates skipped."""

    def __init__(self, prompt: str = "> ", history_file: Optional[Path] = None):
        self.prompt = prompt
        self.history_file = history_file
        self._last_line: Optional[str] = None
        if readline is not None:
            readline.set_auto_history(False)
            if history_file is not None and history_file.exists():
                try:
                    readline.read_history_file(str(history_file))
                except OSError as exc:
                    logger.warning("history_load_failed", path=str(history_file), error=str(exc))

    def read(self) -> str:
        try:
            line = input(self.prompt)
        except EOFError:
            return "q"
        stripped = line.strip()
        if stripped and stripped != self._last_line:
            self._last_line = stripped
            if readline is not None:
                readline.add_history(stripped)
        return line

    def save(self) -> None:
        if readline is None or self.history_file is None:
            return
        try:
            readline.write_history_file(str(self.history_file))
        except OSError as exc:
            logger.warning("history_save_failed", path=str(self.history_file), error=str(exc))


def _error_suffix(outcome: Outcome) -> str:
    if outcome.errno is None:
        return f", {outcome.message}" if outcome.message else ""
    return f", {outcome.errno} - {outcome.message}"


def _preview(data: Optional[bytes]) -> str:
    if not data:
        return ""
    shown = data[:_PREVIEW_BYTES]
    more = "..." if len(data) > _PREVIEW_BYTES else ""
    return f": {shown!r}{more}"


def _render_details(details: dict) -> List[str]:
    width = max((len(key) for key in details), default=0)
    return [f"  {key:<{width}} = {value}" for key, value in details.items()]


def render(result: Union[Outcome, StateChange]) -> str:
    """Text for one dispatch result; empty string means print nothing."""
    if isinstance(result, StateChange):
        text = render(result.outcome)
        if result.changed:
            text += f"\n  [{result.previous.value} -> {result.current.value}]"
        return text

    outcome = result
    op = outcome.operation
    kind = outcome.kind

    if kind == OutcomeKind.UNRECOGNIZED:
        return outcome.message or ""
    if kind == OutcomeKind.INTERRUPTED:
        return f"{op} interrupted"
    if kind == OutcomeKind.TIMEOUT:
        return "time out"
    if kind == OutcomeKind.NO_RESULT:
        return f"no result for {outcome.details.get('host')}{_error_suffix(outcome)}"

    if op in ("noop", "quit"):
        return ""
    if op == "help":
        return outcome.message or ""
    if op == "history":
        return "\n".join(f" {i:>3}  {line}" for i, line in enumerate(outcome.details["history"], 1))

    if op in ("read", "read_exact"):
        text = f"read {outcome.count} bytes"
        if op == "read_exact" and kind == OutcomeKind.ERROR:
            text = f"read {outcome.count} of {outcome.requested} bytes"
        return text + _error_suffix(outcome) if kind == OutcomeKind.ERROR else text + _preview(outcome.data)
    if op == "write":
        if kind == OutcomeKind.PARTIAL:
            return f"wrote {outcome.count} of {outcome.requested} bytes"
        return f"wrote {outcome.count} bytes" + (_error_suffix(outcome) if kind == OutcomeKind.ERROR else "")

    if kind == OutcomeKind.ERROR:
        text = f"{op} error{_error_suffix(outcome)}"
        if outcome.details:
            text += "\n" + "\n".join(_render_details(outcome.details))
        return text

    if op == "poll":
        return f"{outcome.count} events: {', '.join(outcome.events) or 'none'}"
    if op == "connect":
        return "connected"
    if op == "accept":
        return f"accepted {outcome.details.get('peer')}"
    if op == "endpoints":
        lines = []
        for side in ("local", "peer"):
            entry = outcome.details[side]
            if "address" in entry:
                lines.append(f"  {side:<5} {entry['address']}")
            else:
                lines.append(f"  {side:<5} error {entry['errno']} - {entry['message']}")
        return "\n".join(lines)
    if op == "resolve":
        details = outcome.details
        lines = [
            f"resolved {details['host']} in {outcome.elapsed_sec * 1000:.3f} ms",
            f"  canonical {details['canonical']}",
        ]
        lines.extend(f"  alias     {alias}" for alias in details["aliases"])
        lines.extend(f"  address   {address}" for address in details["addresses"])
        return "\n".join(lines)
    if outcome.details and op.startswith("status"):
        return "\n".join(_render_details(outcome.details))
    return "ok"


class Console:
    """Writes progress notices and rendered results to a stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    def progress(self, message: str) -> None:
        self.stream.write(message + " ")
        self.stream.flush()

    def show(self, result: Union[Outcome, StateChange]) -> None:
        text = render(result)
        if text:
            self.stream.write(text + "\n")
        self.stream.flush()

    def notice(self, message: str) -> None:
        self.stream.write(message)
        self.stream.flush()

    def fatal(self, exc: SockShellError) -> None:
        sys.stderr.write(f"{exc.message}\n")
        sys.stderr.flush()
