"""
Transport Operations - one socket syscall per function.

Every function takes the session's SocketHandle, performs a single
request/response against the descriptor it holds and returns exactly one
Outcome. OS failures are normalized into ERROR outcomes carrying errno and
strerror; nothing here raises for a per-command failure, and nothing here
changes lifecycle state (the session does that from the outcome).
"""
from __future__ import annotations

import errno
import math
import os
import select
import socket
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from sockshell.engine import introspection
from sockshell.engine.socket_handle import SocketHandle
from sockshell.models import DetailLevel, Outcome, OutcomeKind, ReadMode

logger = structlog.get_logger()

_POLLRDHUP = getattr(select, "POLLRDHUP", 0)

# Readiness flags in display order
POLL_FLAGS: Tuple[Tuple[int, str], ...] = (
    (select.POLLIN, "readable"),
    (select.POLLPRI, "urgent"),
    (select.POLLOUT, "writable"),
    (_POLLRDHUP, "peer_closed"),
    (select.POLLHUP, "hung_up"),
    (select.POLLERR, "error"),
    (select.POLLNVAL, "invalid"),
)

SHUTDOWN_OPERATIONS: Dict[int, str] = {
    socket.SHUT_RD: "shutdown_read",
    socket.SHUT_WR: "shutdown_write",
    socket.SHUT_RDWR: "shutdown_both",
}


def _no_descriptor(operation: str, **kwargs) -> Outcome:
    return Outcome.error(operation, errno.EBADF, os.strerror(errno.EBADF), **kwargs)


def _resource_error(operation: str, exc: Exception, **kwargs) -> Outcome:
    """Outcome for a request the interpreter could not size or allocate."""
    code = errno.ENOMEM if isinstance(exc, MemoryError) else errno.EINVAL
    logger.warning("request_rejected", operation=operation, error=repr(exc))
    return Outcome.error(operation, code, str(exc) or os.strerror(code), **kwargs)


def build_payload(argument: Optional[str], fill: bytes = b"H") -> bytes:
    """
    Turn a write argument into bytes.

    A decimal count yields that many fill bytes; any other text is sent
    as its own UTF-8 bytes. No argument means one fill byte.
    """
    if argument is None:
        return fill
    if argument.isascii() and argument.isdigit():
        return fill * int(argument)
    return argument.encode("utf-8")


def connect(handle: SocketHandle, address: str, port: int) -> Outcome:
    """Blocking connect on the descriptor already held."""
    sock = handle.sock
    peer = f"{address}:{port}"
    if sock is None:
        return _no_descriptor("connect", details={"peer": peer})

    started = time.monotonic()
    try:
        sock.connect((address, port))
    except OSError as exc:
        logger.info("connect_failed", peer=peer, errno=exc.errno, error=exc.strerror)
        return Outcome.from_os_error(
            "connect", exc, details={"peer": peer}, elapsed_sec=time.monotonic() - started
        )

    logger.info("connected", peer=peer, fd=sock.fileno())
    return Outcome.success("connect", details={"peer": peer}, elapsed_sec=time.monotonic() - started)


def accept(
    listener: socket.socket,
    cancel: threading.Event,
    poll_interval_ms: int = 200,
    retry_delay_sec: float = 0.1,
    on_retry: Optional[Callable[[Outcome], None]] = None,
) -> Tuple[Outcome, Optional[socket.socket]]:
    """
    Block until one connection is accepted or the wait is cancelled.

    Failed accepts are reported through on_retry and retried. Setting
    ``cancel`` returns an INTERRUPTED outcome and no socket.
    """
    poller = select.poll()
    poller.register(listener.fileno(), select.POLLIN)
    attempts = 0

    while True:
        if cancel.is_set():
            logger.warning("accept_interrupted", attempts=attempts)
            return Outcome(
                kind=OutcomeKind.INTERRUPTED,
                operation="accept",
                errno=errno.EINTR,
                message="interrupted while waiting for a connection",
            ), None

        if not poller.poll(poll_interval_ms):
            continue

        attempts += 1
        try:
            conn, peer = listener.accept()
        except (BlockingIOError, InterruptedError):
            continue
        except OSError as exc:
            logger.warning("accept_failed", errno=exc.errno, error=exc.strerror, attempt=attempts)
            if on_retry is not None:
                on_retry(Outcome.from_os_error("accept", exc, details={"attempt": attempts}))
            cancel.wait(retry_delay_sec)
            continue

        label = f"{peer[0]}:{peer[1]}"
        logger.info("accepted", peer=label, fd=conn.fileno(), attempts=attempts)
        return Outcome.success("accept", details={"peer": label, "fd": conn.fileno()}), conn


def read(handle: SocketHandle, max_bytes: int, mode: ReadMode = ReadMode.BEST_EFFORT) -> Outcome:
    """
    Read from the socket.

    BEST_EFFORT issues one recv and reports whatever it returned, a
    zero-byte EOF included. EXACT keeps receiving with MSG_WAITALL until
    ``max_bytes`` arrived; a shortfall is an ERROR carrying what did arrive.
    """
    sock = handle.sock
    if sock is None:
        return _no_descriptor("read", requested=max_bytes, count=0)

    if mode == ReadMode.BEST_EFFORT:
        try:
            data = sock.recv(max_bytes)
        except OSError as exc:
            return Outcome.from_os_error("read", exc, requested=max_bytes, count=0)
        except (OverflowError, MemoryError) as exc:
            return _resource_error("read", exc, requested=max_bytes, count=0)
        return Outcome.success("read", data=data, requested=max_bytes, count=len(data))

    flags = getattr(socket, "MSG_WAITALL", 0)
    chunks: List[bytes] = []
    received = 0
    try:
        while received < max_bytes:
            chunk = sock.recv(max_bytes - received, flags)
            if not chunk:
                break
            chunks.append(chunk)
            received += len(chunk)
    except OSError as exc:
        return Outcome.from_os_error(
            "read_exact", exc, data=b"".join(chunks), requested=max_bytes, count=received
        )
    except (OverflowError, MemoryError) as exc:
        return _resource_error(
            "read_exact", exc, data=b"".join(chunks), requested=max_bytes, count=received
        )

    data = b"".join(chunks)
    if received < max_bytes:
        return Outcome.error(
            "read_exact",
            None,
            f"connection closed after {received} of {max_bytes} bytes",
            data=data,
            requested=max_bytes,
            count=received,
        )
    return Outcome.success("read_exact", data=data, requested=max_bytes, count=received)


def write(handle: SocketHandle, payload: bytes) -> Outcome:
    """Single send; a short write is PARTIAL, not an error."""
    sock = handle.sock
    if sock is None:
        return _no_descriptor("write", requested=len(payload), count=0)

    try:
        sent = sock.send(payload)
    except OSError as exc:
        if exc.errno == errno.EPIPE:
            logger.info("write_broken_pipe", fd=sock.fileno(), size=len(payload))
        return Outcome.from_os_error("write", exc, requested=len(payload), count=0)

    kind = OutcomeKind.SUCCESS if sent == len(payload) else OutcomeKind.PARTIAL
    return Outcome(kind=kind, operation="write", requested=len(payload), count=sent)


def decode_events(revents: int, include_writable: bool = True) -> List[str]:
    names = []
    for flag, name in POLL_FLAGS:
        if not flag or not revents & flag:
            continue
        if flag == select.POLLOUT and not include_writable:
            continue
        names.append(name)
    return names


def poll(handle: SocketHandle, timeout_sec: float = 0, include_writable: bool = False) -> Outcome:
    """
    Wait for readiness on the socket.

    A negative timeout waits forever. The wait is never cut short: an
    early wakeup without events polls again for the remaining time.
    """
    sock = handle.sock
    if sock is None:
        return _no_descriptor("poll")

    mask = select.POLLIN | select.POLLPRI | _POLLRDHUP
    if include_writable:
        mask |= select.POLLOUT
    poller = select.poll()
    poller.register(sock.fileno(), mask)

    started = time.monotonic()
    try:
        while True:
            if timeout_sec < 0:
                ready = poller.poll()
                break
            remaining = timeout_sec - (time.monotonic() - started)
            ready = poller.poll(max(0, math.ceil(remaining * 1000)))
            if ready or time.monotonic() - started >= timeout_sec:
                break
    except OSError as exc:
        return Outcome.from_os_error("poll", exc, elapsed_sec=time.monotonic() - started)
    except (OverflowError, ValueError) as exc:
        return _resource_error("poll", exc, elapsed_sec=time.monotonic() - started)

    elapsed = time.monotonic() - started
    if not ready:
        return Outcome(kind=OutcomeKind.TIMEOUT, operation="poll", elapsed_sec=elapsed)

    revents = 0
    for _, bits in ready:
        revents |= bits
    return Outcome.success(
        "poll",
        count=len(ready),
        events=decode_events(revents, include_writable),
        details={"revents": revents},
        elapsed_sec=elapsed,
    )


def shutdown(handle: SocketHandle, how: int) -> Outcome:
    operation = SHUTDOWN_OPERATIONS[how]
    sock = handle.sock
    if sock is None:
        return _no_descriptor(operation)
    try:
        sock.shutdown(how)
    except OSError as exc:
        return Outcome.from_os_error(operation, exc)
    return Outcome.success(operation)


def _toggle(handle: SocketHandle, operation: str, apply: Callable[[socket.socket], None]) -> Outcome:
    sock = handle.sock
    if sock is None:
        return _no_descriptor(operation)
    try:
        apply(sock)
    except OSError as exc:
        logger.info("toggle_failed", operation=operation, errno=exc.errno, error=exc.strerror)
        return Outcome.from_os_error(operation, exc)
    return Outcome.success(operation)


def set_blocking(handle: SocketHandle, blocking: bool) -> Outcome:
    operation = "set_blocking" if blocking else "set_nonblocking"
    return _toggle(handle, operation, lambda sock: sock.setblocking(blocking))


def set_no_delay(handle: SocketHandle, enabled: bool) -> Outcome:
    """TCP_NODELAY on disables Nagle's algorithm."""
    operation = "set_nodelay" if enabled else "set_delay"
    return _toggle(
        handle,
        operation,
        lambda sock: sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(enabled)),
    )


def set_debug(handle: SocketHandle, enabled: bool) -> Outcome:
    operation = "set_debug" if enabled else "clear_debug"
    return _toggle(
        handle,
        operation,
        lambda sock: sock.setsockopt(socket.SOL_SOCKET, socket.SO_DEBUG, int(enabled)),
    )


def introspect(handle: SocketHandle, detail: DetailLevel = DetailLevel.BASIC) -> Outcome:
    operation = "status" if detail == DetailLevel.BASIC else "status_full"
    sock = handle.sock
    if sock is None:
        return _no_descriptor(operation, details={"state": handle.state.value})

    try:
        report = introspection.collect(sock, detail)
    except OSError as exc:
        return Outcome.from_os_error(operation, exc)

    details = {
        "fd": sock.fileno(),
        "role": handle.role.value,
        "state": handle.state.value,
        **report,
    }
    return Outcome.success(operation, details=details)


def _endpoint(getter: Callable[[], Tuple]) -> Dict[str, object]:
    try:
        address = getter()
    except OSError as exc:
        return {"errno": exc.errno, "message": exc.strerror or str(exc)}
    return {"address": f"{address[0]}:{address[1]}"}


def show_endpoints(handle: SocketHandle) -> Outcome:
    """
    Report local and peer address. The two lookups are independent; the
    outcome is an error only when both fail.
    """
    sock = handle.sock
    if sock is None:
        return _no_descriptor("endpoints")

    local = _endpoint(sock.getsockname)
    peer = _endpoint(sock.getpeername)
    details = {"local": local, "peer": peer}
    if "address" in local or "address" in peer:
        return Outcome.success("endpoints", details=details)
    return Outcome.error("endpoints", local.get("errno"), local.get("message"), details=details)


def resolve(hostname: str) -> Outcome:
    """
    Resolve a name outside the session socket.

    A lookup failure is a NO_RESULT outcome, not an error.
    """
    started = time.perf_counter()
    try:
        canonical, aliases, addresses = socket.gethostbyname_ex(hostname)
    except (OSError, UnicodeError) as exc:
        elapsed = time.perf_counter() - started
        logger.info("resolve_no_result", host=hostname, error=str(exc))
        return Outcome(
            kind=OutcomeKind.NO_RESULT,
            operation="resolve",
            errno=getattr(exc, "errno", None),
            message=str(exc),
            details={"host": hostname},
            elapsed_sec=elapsed,
        )

    elapsed = time.perf_counter() - started
    return Outcome.success(
        "resolve",
        count=len(addresses),
        details={
            "host": hostname,
            "canonical": canonical,
            "aliases": aliases,
            "addresses": addresses,
        },
        elapsed_sec=elapsed,
    )
