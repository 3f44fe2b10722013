"""
Socket and TCP counter readers.

Each reader fetches one value and returns None when the platform or the
socket cannot supply it, so a status report simply omits what is missing.
"""
from __future__ import annotations

import array
import fcntl
import os
import socket
import struct
import termios
from typing import Any, Callable, Dict, Optional

import psutil
import structlog

from sockshell.models import DetailLevel

logger = structlog.get_logger()

# Linux struct tcp_info up to tcpi_total_retrans
_TCP_INFO_FORMAT = "=8B24I"
_TCP_INFO_SIZE = struct.calcsize(_TCP_INFO_FORMAT)
_TCP_INFO_FIELDS = (
    "state", "ca_state", "retransmits", "probes", "backoff", "options",
    "wscale", "app_limited",
    "rto", "ato", "snd_mss", "rcv_mss",
    "unacked", "sacked", "lost", "retrans", "fackets",
    "last_data_sent", "last_ack_sent", "last_data_recv", "last_ack_recv",
    "pmtu", "rcv_ssthresh", "rtt", "rttvar", "snd_ssthresh", "snd_cwnd",
    "advmss", "reordering", "rcv_rtt", "rcv_space", "total_retrans",
)

TCP_STATES = {
    1: "ESTABLISHED",
    2: "SYN_SENT",
    3: "SYN_RECV",
    4: "FIN_WAIT1",
    5: "FIN_WAIT2",
    6: "TIME_WAIT",
    7: "CLOSE",
    8: "CLOSE_WAIT",
    9: "LAST_ACK",
    10: "LISTEN",
    11: "CLOSING",
}

# Counters shown by the basic status, in display order
_BASIC_TCP_FIELDS = ("retransmits", "lost", "rtt", "rttvar", "snd_cwnd", "total_retrans")

# TIOCOUTQ and SIOCOUTQ share a value on Linux
_OUTQ_REQUEST = getattr(termios, "TIOCOUTQ", None)


def _ioctl_int(sock: socket.socket, request: Optional[int]) -> Optional[int]:
    if request is None:
        return None
    buf = array.array("i", [0])
    try:
        fcntl.ioctl(sock.fileno(), request, buf, True)
    except OSError as exc:
        logger.debug("ioctl_unavailable", request=request, error=str(exc))
        return None
    return buf[0]


def pending_read_bytes(sock: socket.socket) -> Optional[int]:
    """Bytes waiting in the receive queue (FIONREAD)."""
    return _ioctl_int(sock, termios.FIONREAD)


def pending_send_bytes(sock: socket.socket) -> Optional[int]:
    """Bytes not yet acknowledged by the peer (SIOCOUTQ)."""
    return _ioctl_int(sock, _OUTQ_REQUEST)


def _sockopt(sock: socket.socket, level: int, name: Optional[int]) -> Optional[int]:
    if name is None:
        return None
    try:
        return sock.getsockopt(level, name)
    except OSError as exc:
        logger.debug("sockopt_unavailable", level=level, name=name, error=str(exc))
        return None


def _linger(sock: socket.socket) -> Optional[str]:
    try:
        raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.calcsize("ii"))
    except OSError:
        return None
    onoff, seconds = struct.unpack("ii", raw)
    return f"{seconds}s" if onoff else "off"


def tcp_info(sock: socket.socket) -> Dict[str, int]:
    """
    Decode TCP_INFO into a field dict.

    Returns an empty dict where TCP_INFO does not exist or the kernel
    hands back a shorter structure than expected.
    """
    option = getattr(socket, "TCP_INFO", None)
    if option is None:
        return {}
    try:
        raw = sock.getsockopt(socket.IPPROTO_TCP, option, _TCP_INFO_SIZE)
    except OSError as exc:
        logger.debug("tcp_info_unavailable", error=str(exc))
        return {}
    if len(raw) < _TCP_INFO_SIZE:
        return {}
    return dict(zip(_TCP_INFO_FIELDS, struct.unpack(_TCP_INFO_FORMAT, raw)))


def open_descriptor_count() -> Optional[int]:
    try:
        return psutil.Process().num_fds()
    except (AttributeError, psutil.Error):
        return None


def collect(sock: socket.socket, detail: DetailLevel) -> Dict[str, Any]:
    """
    Gather the status report for one socket.

    Raises OSError only if the descriptor itself is unusable; individual
    unsupported counters are left out.
    """
    # Fails fast with EBADF on a dead descriptor
    os.fstat(sock.fileno())

    readers: Dict[str, Callable[[], Any]] = {
        "blocking": lambda: os.get_blocking(sock.fileno()),
        "rcvbuf": lambda: _sockopt(sock, socket.SOL_SOCKET, socket.SO_RCVBUF),
        "sndbuf": lambda: _sockopt(sock, socket.SOL_SOCKET, socket.SO_SNDBUF),
        "pending_read": lambda: pending_read_bytes(sock),
        "pending_send": lambda: pending_send_bytes(sock),
        "so_error": lambda: _sockopt(sock, socket.SOL_SOCKET, socket.SO_ERROR),
        "nodelay": lambda: _sockopt(sock, socket.IPPROTO_TCP, socket.TCP_NODELAY),
    }
    if detail == DetailLevel.FULL:
        readers.update({
            "keepalive": lambda: _sockopt(sock, socket.SOL_SOCKET, socket.SO_KEEPALIVE),
            "rcvlowat": lambda: _sockopt(sock, socket.SOL_SOCKET, getattr(socket, "SO_RCVLOWAT", None)),
            "sndlowat": lambda: _sockopt(sock, socket.SOL_SOCKET, getattr(socket, "SO_SNDLOWAT", None)),
            "linger": lambda: _linger(sock),
            "debug": lambda: _sockopt(sock, socket.SOL_SOCKET, socket.SO_DEBUG),
            "process_fds": open_descriptor_count,
        })

    report: Dict[str, Any] = {}
    for key, reader in readers.items():
        value = reader()
        if value is not None:
            report[key] = value

    info = tcp_info(sock)
    if info:
        report["tcp_state"] = TCP_STATES.get(info["state"], str(info["state"]))
        fields = _TCP_INFO_FIELDS[1:] if detail == DetailLevel.FULL else _BASIC_TCP_FIELDS
        for name in fields:
            report[f"tcpi_{name}"] = info[name]

    return report
