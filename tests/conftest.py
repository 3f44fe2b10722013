"""Shared fixtures: fast settings and real loopback connections."""
import select
import socket
import threading
import time

import pytest

from sockshell.config import Settings
from sockshell.engine.session import Session
from sockshell.engine.socket_handle import SocketHandle
from sockshell.models import Role


@pytest.fixture
def config(tmp_path):
    return Settings(
        port=0,
        bind_address="127.0.0.1",
        accept_poll_interval_ms=20,
        accept_retry_delay_sec=0.01,
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(5)
    yield sock
    sock.close()


@pytest.fixture
def connected(listener):
    """(handle owning the accepted side, peer socket)"""
    peer = socket.create_connection(listener.getsockname())
    conn, _ = listener.accept()
    handle = SocketHandle(Role.SERVER)
    handle.replace(conn)
    yield handle, peer
    peer.close()
    if handle.has_descriptor:
        handle.release()


def wait_readable(sock: socket.socket, timeout: float = 2.0) -> None:
    """Block until the kernel reports data queued on ``sock``."""
    select.select([sock], [], [], timeout)


def start_server(config: Settings):
    """
    Start a server session while a helper thread connects to it.

    Returns (session, peer socket, start StateChange).
    """
    session = Session(Role.SERVER, config=config)
    peers = []

    def connect_when_listening():
        deadline = time.monotonic() + 5
        while session.listen_port is None and time.monotonic() < deadline:
            time.sleep(0.005)
        peers.append(socket.create_connection(("127.0.0.1", session.listen_port)))

    thread = threading.Thread(target=connect_when_listening, daemon=True)
    thread.start()
    change = session.start()
    thread.join(5)
    return session, peers[0], change
