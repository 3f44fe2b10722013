"""
Socket Handle - owns the one active socket descriptor of a session.

The handle is the only place a descriptor is installed or released, and
every install/release updates the lifecycle state in the same call, so
callers never see a descriptor/state pair that disagrees.
"""
from __future__ import annotations

import errno
import os
import socket
from typing import Optional, Tuple

import structlog

from sockshell.models import LifecycleState, Outcome, Role

logger = structlog.get_logger()

Address = Tuple[str, int]


class SocketHandle:
    """
    Holder for a single OS socket plus its lifecycle bookkeeping.

    Args:
        role: CLIENT or SERVER, fixed for the life of the process
        sock: Optional socket to adopt immediately (state stays UNINITIALIZED)
    """

    def __init__(self, role: Role, sock: Optional[socket.socket] = None):
        self.role = role
        self.state = LifecycleState.UNINITIALIZED
        self._sock: Optional[socket.socket] = sock
        self.peer_address: Optional[str] = None
        self.peer_port: Optional[int] = None
        self.local_address: Optional[str] = None
        self.local_port: Optional[int] = None
        self.abandoned_count = 0

    @property
    def sock(self) -> Optional[socket.socket]:
        """The live socket object, or None once released."""
        if self._sock is None or self._sock.fileno() < 0:
            return None
        return self._sock

    @property
    def has_descriptor(self) -> bool:
        return self.sock is not None

    def current_descriptor(self) -> int:
        """Descriptor number, -1 when none is held."""
        sock = self.sock
        return sock.fileno() if sock is not None else -1

    def adopt(self, sock: socket.socket) -> None:
        """Install a fresh, unconnected socket (client startup or re-arm)."""
        self._discard_previous()
        self._sock = sock
        self._set_endpoints(None, None)
        self.state = LifecycleState.UNINITIALIZED
        logger.debug("descriptor_adopted", fd=sock.fileno(), role=self.role.value)

    def replace(
        self,
        new_sock: socket.socket,
        role: Optional[Role] = None,
    ) -> None:
        """
        Install a connected socket, releasing whatever was held before.

        A previous descriptor still open is closed here; one the operator
        already closed is only counted as abandoned. Either way no
        descriptor outlives its replacement.
        """
        previous_fd = self.current_descriptor()
        self._discard_previous()
        self._sock = new_sock
        if role is not None:
            self.role = role
        self._set_endpoints(_safe_name(new_sock.getpeername), _safe_name(new_sock.getsockname))
        self.state = LifecycleState.ESTABLISHED

        logger.info(
            "descriptor_replaced",
            previous_fd=previous_fd,
            fd=new_sock.fileno(),
            peer=self.peer_label,
        )

    def mark_connected(self, peer: Address) -> None:
        """Record a successful connect on the socket already held."""
        sock = self.sock
        self._set_endpoints(peer, _safe_name(sock.getsockname) if sock else None)
        self.state = LifecycleState.ESTABLISHED

    def release(self) -> Outcome:
        """
        Close the held descriptor.

        Releasing twice reports EBADF the way close(2) would instead of
        raising.
        """
        sock = self.sock
        if sock is None:
            self.state = LifecycleState.CLOSED
            return Outcome.error("close", errno.EBADF, os.strerror(errno.EBADF))

        fd = sock.fileno()
        # The closed object stays so a later replace can count it as abandoned
        self.state = LifecycleState.CLOSED
        try:
            sock.close()
        except OSError as exc:
            logger.warning("close_failed", fd=fd, error=str(exc))
            return Outcome.from_os_error("close", exc, details={"fd": fd})

        logger.info("descriptor_released", fd=fd)
        return Outcome.success("close", details={"fd": fd})

    @property
    def peer_label(self) -> Optional[str]:
        if self.peer_address is None:
            return None
        return f"{self.peer_address}:{self.peer_port}"

    def _discard_previous(self) -> None:
        if self._sock is None:
            return
        if self._sock.fileno() < 0:
            self.abandoned_count += 1
        else:
            try:
                self._sock.close()
            except OSError as exc:
                logger.warning("previous_descriptor_close_failed", error=str(exc))
        self._sock = None

    def _set_endpoints(self, peer: Optional[Address], local: Optional[Address]) -> None:
        self.peer_address, self.peer_port = peer[:2] if peer else (None, None)
        self.local_address, self.local_port = local[:2] if local else (None, None)


def _safe_name(getter) -> Optional[Address]:
    try:
        return getter()
    except OSError:
        return None
