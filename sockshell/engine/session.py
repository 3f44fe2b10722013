"""
Session State Machine - lifecycle of the one socket a session drives.

Startup:
    client  UNINITIALIZED -> ESTABLISHED (connect; failure stays UNINITIALIZED)
    server  UNINITIALIZED -> LISTENING -> ESTABLISHED (bind+listen, blocking accept)

Commands:
    reconnect       any state; client connects again, server accepts a new peer
    shutdown_read   ESTABLISHED -> HALF_CLOSED_READ
    shutdown_write  ESTABLISHED -> HALF_CLOSED_WRITE
    shutdown_both   ESTABLISHED -> CLOSED (descriptor still held until close)
    close           any state -> CLOSED, descriptor released

Only setup failures raise (SessionSetupError subclasses). An interrupted
accept comes back as an INTERRUPTED outcome and the caller decides to abort.
"""
from __future__ import annotations

import socket
import threading
from typing import Callable, Dict, Optional

import structlog

from sockshell.config import Settings, settings as default_settings
from sockshell.engine import transport
from sockshell.engine.socket_handle import SocketHandle
from sockshell.exceptions import (
    AddressParseError,
    BindError,
    ListenError,
    SessionStateError,
    SocketCreateError,
)
from sockshell.models import LifecycleState, Outcome, Role, StateChange

logger = structlog.get_logger()

ProgressCallback = Callable[[str], None]

_SHUTDOWN_TRANSITIONS: Dict[int, Dict[LifecycleState, LifecycleState]] = {
    socket.SHUT_RD: {
        LifecycleState.ESTABLISHED: LifecycleState.HALF_CLOSED_READ,
        LifecycleState.HALF_CLOSED_WRITE: LifecycleState.CLOSED,
    },
    socket.SHUT_WR: {
        LifecycleState.ESTABLISHED: LifecycleState.HALF_CLOSED_WRITE,
        LifecycleState.HALF_CLOSED_READ: LifecycleState.CLOSED,
    },
    socket.SHUT_RDWR: {
        LifecycleState.ESTABLISHED: LifecycleState.CLOSED,
        LifecycleState.HALF_CLOSED_READ: LifecycleState.CLOSED,
        LifecycleState.HALF_CLOSED_WRITE: LifecycleState.CLOSED,
    },
}


def _new_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_STREAM)


class Session:
    """
    Owns the SocketHandle (and, in server mode, the listening socket) and
    sequences every lifecycle transition.

    Args:
        role: CLIENT connects to ``host``; SERVER listens on the fixed port
        host: IPv4 address to connect to (client only)
        config: Settings instance, defaults to the process settings
        progress: Called with a short notice before each blocking step
    """

    def __init__(
        self,
        role: Role,
        host: Optional[str] = None,
        config: Optional[Settings] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.config = config or default_settings
        self.role = role
        self.host = host
        self.port = self.config.port
        self.handle = SocketHandle(role)
        self.listener: Optional[socket.socket] = None
        self.cancel = threading.Event()
        self.accepting = False
        self._progress = progress or (lambda message: None)

    @property
    def state(self) -> LifecycleState:
        return self.handle.state

    @property
    def listen_port(self) -> Optional[int]:
        """Port actually bound by the listener (differs from config when it is 0)."""
        if self.listener is None or self.listener.fileno() < 0:
            return None
        return self.listener.getsockname()[1]

    # Startup

    def start(self) -> StateChange:
        """
        Establish the session for the configured role.

        Raises:
            AddressParseError, SocketCreateError, BindError, ListenError
        """
        previous = self.state
        if self.role == Role.SERVER:
            self._listen()
            outcome = self._accept()
        else:
            self._check_address()
            self.handle.adopt(self._create_socket())
            outcome = self._connect()
        return self._change("start", previous, outcome)

    def _check_address(self) -> None:
        try:
            socket.inet_pton(socket.AF_INET, self.host or "")
        except (OSError, ValueError) as exc:
            raise AddressParseError(
                f"inet_pton error: invalid IPv4 address {self.host!r}",
                details={"host": self.host, "error": str(exc)},
            )

    def _create_socket(self) -> socket.socket:
        try:
            return _new_socket()
        except OSError as exc:
            raise SocketCreateError(f"socket error: {exc.strerror}", errno=exc.errno)

    def _listen(self) -> None:
        listener = self._create_socket()
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as exc:
            logger.warning("reuseaddr_failed", error=exc.strerror)
        try:
            listener.bind((self.config.bind_address, self.port))
        except OSError as exc:
            listener.close()
            raise BindError(
                f"bind error: {exc.strerror}",
                errno=exc.errno,
                details={"address": self.config.bind_address, "port": self.port},
            )
        try:
            listener.listen(self.config.listen_backlog)
        except OSError as exc:
            listener.close()
            raise ListenError(f"listen error: {exc.strerror}", errno=exc.errno)

        self.listener = listener
        self.handle.state = LifecycleState.LISTENING
        logger.info("listening", address=self.config.bind_address, port=self.listen_port)

    # Blocking steps

    def _connect(self) -> Outcome:
        self._progress("connecting ...")
        outcome = transport.connect(self.handle, self.host, self.port)
        if outcome.ok:
            self.handle.mark_connected((self.host, self.port))
        return outcome

    def _accept(self) -> Outcome:
        self._progress("accepting ...")
        self.cancel.clear()
        self.accepting = True
        try:
            outcome, conn = transport.accept(
                self.listener,
                self.cancel,
                poll_interval_ms=self.config.accept_poll_interval_ms,
                retry_delay_sec=self.config.accept_retry_delay_sec,
                on_retry=self._report_retry,
            )
        finally:
            self.accepting = False
        if conn is not None:
            self.handle.replace(conn)
        return outcome

    def _report_retry(self, outcome: Outcome) -> None:
        self._progress(f"accept error {outcome.errno} - {outcome.message}, retrying ...")

    def interrupt(self) -> bool:
        """
        Cancel a blocked accept. Returns False (and does nothing) when no
        accept is in progress.
        """
        if not self.accepting:
            return False
        self.cancel.set()
        return True

    # Commands

    def reconnect(self) -> StateChange:
        """
        Client: connect again on the held descriptor, arming a fresh one
        first if it was closed or fully shut down. Server: accept a new peer and replace the
        held descriptor.
        """
        previous = self.state
        if self.role == Role.SERVER:
            if self.listener is None:
                raise SessionStateError(
                    "no listening socket", current_state=previous.value,
                    expected_state=LifecycleState.LISTENING.value,
                )
            outcome = self._accept()
            return self._change("reconnect", previous, outcome)

        if not self.handle.has_descriptor or self.state == LifecycleState.CLOSED:
            try:
                self.handle.adopt(_new_socket())
            except OSError as exc:
                return self._change("reconnect", previous, Outcome.from_os_error("socket", exc))
        outcome = self._connect()
        return self._change("reconnect", previous, outcome)

    def shutdown(self, how: int) -> StateChange:
        previous = self.state
        outcome = transport.shutdown(self.handle, how)
        if outcome.ok:
            self.handle.state = _SHUTDOWN_TRANSITIONS[how].get(previous, previous)
        return self._change(outcome.operation, previous, outcome)

    def close(self) -> StateChange:
        previous = self.state
        outcome = self.handle.release()
        return self._change("close", previous, outcome)

    def require_descriptor(self, operation: str) -> None:
        """Raise SessionStateError if there is no descriptor to operate on."""
        if not self.handle.has_descriptor:
            raise SessionStateError(
                f"{operation}: no open descriptor",
                current_state=self.state.value,
                expected_state=LifecycleState.ESTABLISHED.value,
            )

    def teardown(self) -> None:
        """Release everything at process exit."""
        if self.handle.has_descriptor:
            self.handle.release()
        if self.listener is not None:
            self.listener.close()
            self.listener = None

    def _change(self, operation: str, previous: LifecycleState, outcome: Outcome) -> StateChange:
        change = StateChange(
            operation=operation, previous=previous, current=self.state, outcome=outcome
        )
        if change.changed:
            logger.info(
                "state_changed",
                operation=operation,
                previous=previous.value,
                current=self.state.value,
            )
        return change
