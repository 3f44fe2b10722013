"""
Command Dispatcher - maps operator tokens to session transitions and
transport operations.

The dispatcher validates arguments, applies defaults and delegates; it
never touches the socket itself. Every dispatch returns either an Outcome
or a StateChange for the renderer.
"""
from __future__ import annotations

import errno
import math
import socket
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import structlog

from sockshell.config import Settings
from sockshell.engine import transport
from sockshell.engine.session import ProgressCallback, Session
from sockshell.exceptions import CommandArgumentError, SessionStateError
from sockshell.models import (
    Command,
    DetailLevel,
    Outcome,
    OutcomeKind,
    ReadMode,
    StateChange,
)

logger = structlog.get_logger()

DispatchResult = Union[Outcome, StateChange]


@dataclass(frozen=True)
class CommandSpec:
    """Registry entry for one command token."""

    token: str
    usage: str
    summary: str
    handler: Callable[["Dispatcher", Command], DispatchResult]
    needs_descriptor: bool = True
    repeatable: bool = True


# poll(2) takes an int millisecond timeout
MAX_POLL_SECONDS = (2 ** 31 - 1) / 1000


def _count_argument(command: Command, default: Optional[int], limit: int) -> int:
    """Non-negative byte count from the first argument, or the default."""
    raw = command.argument(0)
    if raw is None:
        if default is None:
            raise CommandArgumentError(f"{command.name}: byte count required")
        return default
    if not (raw.isascii() and raw.isdigit()):
        raise CommandArgumentError(
            f"{command.name}: invalid byte count {raw!r}", details={"argument": raw}
        )
    count = int(raw)
    if count > limit:
        raise CommandArgumentError(
            f"{command.name}: byte count {count} exceeds limit {limit}",
            details={"argument": raw, "limit": limit},
        )
    return count


def _seconds_argument(command: Command) -> float:
    """Poll timeout in seconds; negative waits forever."""
    raw = command.argument(0)
    if raw is None:
        return 0.0
    try:
        seconds = float(raw)
    except ValueError:
        raise CommandArgumentError(
            f"{command.name}: invalid timeout {raw!r}", details={"argument": raw}
        )
    if not math.isfinite(seconds):
        raise CommandArgumentError(
            f"{command.name}: timeout must be finite, got {raw!r}", details={"argument": raw}
        )
    if seconds > MAX_POLL_SECONDS:
        raise CommandArgumentError(
            f"{command.name}: timeout {raw} exceeds {MAX_POLL_SECONDS} seconds",
            details={"argument": raw, "limit": MAX_POLL_SECONDS},
        )
    return seconds


class Dispatcher:
    """
    Lookup + validate + delegate for operator commands.

    Keeps the last repeatable non-empty command so an empty line can
    re-issue it, and a history list with consecutive duplicates collapsed.
    """

    def __init__(
        self,
        session: Session,
        config: Optional[Settings] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.session = session
        self.config = config or session.config
        self.last_command: Optional[Command] = None
        self.history: List[Command] = []
        self.finished = False
        self._progress = progress or (lambda message: None)

    def dispatch(self, command: Command) -> DispatchResult:
        if command.is_empty:
            if self.last_command is None:
                return Outcome.success("noop")
            command = self.last_command

        spec = COMMANDS.get(command.name)
        if spec is None:
            logger.debug("unrecognized_command", token=command.name)
            return Outcome(
                kind=OutcomeKind.UNRECOGNIZED,
                operation=command.name,
                message=f"unrecognized command {command.name!r}, type ? for help",
            )

        try:
            if spec.needs_descriptor:
                self.session.require_descriptor(spec.token)
            result = spec.handler(self, command)
        except CommandArgumentError as exc:
            return Outcome.error(command.name, errno.EINVAL, exc.message, details=exc.details)
        except SessionStateError as exc:
            result = Outcome.error(command.name, errno.EBADF, exc.message, details=exc.details)

        self._remember(command, spec)
        return result

    def _remember(self, command: Command, spec: CommandSpec) -> None:
        command = command.model_copy(update={"repeatable": spec.repeatable})
        if not self.history or self.history[-1] != command:
            self.history.append(command)
        if spec.repeatable:
            self.last_command = command

    # Handlers

    def _help(self, command: Command) -> Outcome:
        return Outcome.success("help", message=help_text())

    def _quit(self, command: Command) -> Outcome:
        self.finished = True
        return Outcome.success("quit")

    def _history(self, command: Command) -> Outcome:
        return Outcome.success("history", details={"history": [str(c) for c in self.history]})

    def _close(self, command: Command) -> StateChange:
        return self.session.close()

    def _reconnect(self, command: Command) -> StateChange:
        return self.session.reconnect()

    def _read(self, command: Command) -> Outcome:
        size = _count_argument(command, self.config.default_read_size, self.config.max_transfer_bytes)
        self._progress(f"reading {size} bytes ...")
        return transport.read(self.session.handle, size, ReadMode.BEST_EFFORT)

    def _read_exact(self, command: Command) -> Outcome:
        size = _count_argument(command, None, self.config.max_transfer_bytes)
        self._progress(f"reading exactly {size} bytes ...")
        return transport.read(self.session.handle, size, ReadMode.EXACT)

    def _write(self, command: Command) -> Outcome:
        raw = command.argument(0)
        if raw is not None and raw.isascii() and raw.isdigit():
            _count_argument(command, None, self.config.max_transfer_bytes)
        payload = transport.build_payload(raw, self.config.fill)
        self._progress(f"writing {len(payload)} bytes ...")
        return transport.write(self.session.handle, payload)

    def _poll(self, command: Command, include_writable: bool = False) -> Outcome:
        timeout = _seconds_argument(command)
        label = "forever" if timeout < 0 else f"{int(timeout * 1000)} ms"
        self._progress(f"polling {label} ...")
        return transport.poll(self.session.handle, timeout, include_writable)

    def _poll_writable(self, command: Command) -> Outcome:
        return self._poll(command, include_writable=True)

    def _endpoints(self, command: Command) -> Outcome:
        return transport.show_endpoints(self.session.handle)

    def _status(self, command: Command) -> Outcome:
        return transport.introspect(self.session.handle, DetailLevel.BASIC)

    def _status_full(self, command: Command) -> Outcome:
        return transport.introspect(self.session.handle, DetailLevel.FULL)

    def _shutdown_read(self, command: Command) -> StateChange:
        return self.session.shutdown(socket.SHUT_RD)

    def _shutdown_write(self, command: Command) -> StateChange:
        return self.session.shutdown(socket.SHUT_WR)

    def _shutdown_both(self, command: Command) -> StateChange:
        return self.session.shutdown(socket.SHUT_RDWR)

    def _blocking(self, command: Command) -> Outcome:
        return transport.set_blocking(self.session.handle, True)

    def _nonblocking(self, command: Command) -> Outcome:
        return transport.set_blocking(self.session.handle, False)

    def _delay(self, command: Command) -> Outcome:
        return transport.set_no_delay(self.session.handle, False)

    def _nodelay(self, command: Command) -> Outcome:
        return transport.set_no_delay(self.session.handle, True)

    def _debug(self, command: Command) -> Outcome:
        return transport.set_debug(self.session.handle, True)

    def _nodebug(self, command: Command) -> Outcome:
        return transport.set_debug(self.session.handle, False)

    def _resolve(self, command: Command) -> Outcome:
        host = command.argument(0) or self.config.resolve_default_host
        self._progress(f"resolving {host} ...")
        return transport.resolve(host)


def _spec(token: str, usage: str, summary: str, handler, **kwargs) -> CommandSpec:
    return CommandSpec(token=token, usage=usage, summary=summary, handler=handler, **kwargs)


COMMANDS: Dict[str, CommandSpec] = {
    spec.token: spec
    for spec in (
        _spec("?", "?", "help", Dispatcher._help, needs_descriptor=False),
        _spec("q", "q", "quit", Dispatcher._quit, needs_descriptor=False, repeatable=False),
        _spec("h", "h", "command history", Dispatcher._history, needs_descriptor=False),
        _spec("c", "c", "close", Dispatcher._close, needs_descriptor=False),
        _spec("rc", "rc", "re-connect/re-accept", Dispatcher._reconnect, needs_descriptor=False),
        _spec("r", "r [N]", "read up to N bytes (default 1024)", Dispatcher._read),
        _spec("rn", "rn N", "read exactly N bytes", Dispatcher._read_exact),
        _spec("w", "w [N|str]", "write N bytes (default 1) or string str", Dispatcher._write),
        _spec("p", "p [secs]", "poll for reading", Dispatcher._poll),
        _spec("pw", "pw [secs]", "poll for reading and writing", Dispatcher._poll_writable),
        _spec("n", "n", "show local/peer endpoint", Dispatcher._endpoints),
        _spec("st", "st", "status", Dispatcher._status),
        _spec("sta", "sta", "detailed status", Dispatcher._status_full),
        _spec("str", "str", "shutdown read", Dispatcher._shutdown_read),
        _spec("stw", "stw", "shutdown write", Dispatcher._shutdown_write),
        _spec("strw", "strw", "shutdown read and write", Dispatcher._shutdown_both),
        _spec("b", "b", "set blocking", Dispatcher._blocking),
        _spec("nb", "nb", "set non-blocking", Dispatcher._nonblocking),
        _spec("d", "d", "set delay (Nagle on)", Dispatcher._delay),
        _spec("nd", "nd", "set no-delay (Nagle off)", Dispatcher._nodelay),
        _spec("dbg", "dbg", "set SO_DEBUG", Dispatcher._debug),
        _spec("ndbg", "ndbg", "clear SO_DEBUG", Dispatcher._nodebug),
        _spec("res", "res [host]", "resolve a domain name", Dispatcher._resolve, needs_descriptor=False),
    )
}


def help_text() -> str:
    width = max(len(spec.usage) for spec in COMMANDS.values())
    lines = [f" {spec.usage:<{width}} - {spec.summary}" for spec in COMMANDS.values()]
    lines.append(f" {'':<{width}}   (empty line repeats the last command)")
    return "\n".join(lines)
