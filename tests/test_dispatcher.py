"""
Tests for the command Dispatcher.

Tests cover:
- Command lookup, unrecognized tokens, help
- Empty-line repeat semantics and history deduplication
- Argument validation and defaults
- End-to-end scenarios over real loopback sessions
"""
import errno
import socket
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import wait_readable
from sockshell.config import Settings
from sockshell.engine.dispatcher import COMMANDS, Dispatcher, help_text
from sockshell.engine.session import Session
from sockshell.exceptions import SessionStateError
from sockshell.models import Command, DetailLevel, OutcomeKind, ReadMode, Role, StateChange


def _cmd(line: str) -> Command:
    return Command.from_line(line)


class TestCommandParsing:
    """Tests for Command.from_line."""

    def test_tokens_split_on_whitespace(self):
        command = _cmd("  w   5  ")

        assert command.name == "w"
        assert command.arguments == ["5"]

    def test_blank_line_is_empty(self):
        assert _cmd("").is_empty
        assert _cmd("   ").is_empty
        assert Command.from_line(None).is_empty


class TestDispatchLookup:
    """Tests for dispatch routing with a mocked transport."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.config = Settings()
        return session

    @pytest.fixture
    def dispatcher(self, session):
        return Dispatcher(session, Settings())

    def test_unrecognized_command(self, dispatcher):
        outcome = dispatcher.dispatch(_cmd("bogus 1 2"))

        assert outcome.kind == OutcomeKind.UNRECOGNIZED
        assert "?" in outcome.message
        assert dispatcher.last_command is None

    def test_help_lists_every_command(self, dispatcher):
        outcome = dispatcher.dispatch(_cmd("?"))

        assert outcome.kind == OutcomeKind.SUCCESS
        for token in ("?", "q", "c", "rc", "r [N]", "rn N", "w [N|str]", "p [secs]", "pw [secs]",
                      "n", "st", "sta", "str", "stw", "strw", "b", "nb", "d", "nd", "res [host]"):
            assert f" {token} " in outcome.message
        assert outcome.message == help_text()

    def test_quit_finishes(self, dispatcher):
        dispatcher.dispatch(_cmd("q"))

        assert dispatcher.finished is True
        assert dispatcher.last_command is None

    def test_read_defaults_to_configured_size(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("r"))

        mock_transport.read.assert_called_once_with(session.handle, 1024, ReadMode.BEST_EFFORT)

    def test_read_exact_requires_count(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            outcome = dispatcher.dispatch(_cmd("rn"))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.errno == errno.EINVAL
        mock_transport.read.assert_not_called()

    def test_read_exact_passes_count(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("rn 7"))

        mock_transport.read.assert_called_once_with(session.handle, 7, ReadMode.EXACT)

    @pytest.mark.parametrize("line", ["r abc", "r -1", "rn 1.5"])
    def test_invalid_count_is_einval_and_not_remembered(self, dispatcher, line):
        with patch("sockshell.engine.dispatcher.transport"):
            outcome = dispatcher.dispatch(_cmd(line))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.errno == errno.EINVAL
        assert dispatcher.last_command is None

    def test_write_builds_fill_payload(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            mock_transport.build_payload.return_value = b"HHHHH"
            dispatcher.dispatch(_cmd("w 5"))

        mock_transport.build_payload.assert_called_once_with("5", b"H")
        mock_transport.write.assert_called_once_with(session.handle, b"HHHHH")

    def test_poll_variants(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("p"))
            dispatcher.dispatch(_cmd("pw 2.5"))

        assert mock_transport.poll.call_args_list[0].args == (session.handle, 0.0, False)
        assert mock_transport.poll.call_args_list[1].args == (session.handle, 2.5, True)

    def test_invalid_poll_timeout(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport"):
            outcome = dispatcher.dispatch(_cmd("p soon"))

        assert outcome.errno == errno.EINVAL

    def test_count_at_limit_is_accepted(self, session):
        dispatcher = Dispatcher(session, Settings(max_transfer_bytes=16))

        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("r 16"))
            outcome = dispatcher.dispatch(_cmd("r 17"))

        mock_transport.read.assert_called_once_with(session.handle, 16, ReadMode.BEST_EFFORT)
        assert outcome.errno == errno.EINVAL
        assert outcome.details["limit"] == 16

    def test_negative_poll_timeout_waits_forever(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("p -1"))

        assert mock_transport.poll.call_args.args == (session.handle, -1.0, False)

    def test_status_levels(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("st"))
            dispatcher.dispatch(_cmd("sta"))

        assert mock_transport.introspect.call_args_list[0].args == (session.handle, DetailLevel.BASIC)
        assert mock_transport.introspect.call_args_list[1].args == (session.handle, DetailLevel.FULL)

    def test_toggles(self, dispatcher, session):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            for line in ("b", "nb", "d", "nd", "dbg", "ndbg"):
                dispatcher.dispatch(_cmd(line))

        assert [c.args[1] for c in mock_transport.set_blocking.call_args_list] == [True, False]
        assert [c.args[1] for c in mock_transport.set_no_delay.call_args_list] == [False, True]
        assert [c.args[1] for c in mock_transport.set_debug.call_args_list] == [True, False]

    def test_shutdown_commands(self, dispatcher, session):
        dispatcher.dispatch(_cmd("str"))
        dispatcher.dispatch(_cmd("stw"))
        dispatcher.dispatch(_cmd("strw"))

        assert [c.args[0] for c in session.shutdown.call_args_list] == [
            socket.SHUT_RD, socket.SHUT_WR, socket.SHUT_RDWR,
        ]

    def test_lifecycle_commands_skip_descriptor_check(self, dispatcher, session):
        session.require_descriptor.side_effect = SessionStateError("no descriptor", "closed")

        dispatcher.dispatch(_cmd("c"))
        dispatcher.dispatch(_cmd("rc"))

        session.close.assert_called_once()
        session.reconnect.assert_called_once()

    def test_missing_descriptor_is_ebadf(self, dispatcher, session):
        session.require_descriptor.side_effect = SessionStateError("r: no open descriptor", "closed")

        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            outcome = dispatcher.dispatch(_cmd("r"))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.errno == errno.EBADF
        assert outcome.details["current_state"] == "closed"
        mock_transport.read.assert_not_called()

    def test_resolve_default_host(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            dispatcher.dispatch(_cmd("res"))
            dispatcher.dispatch(_cmd("res example.test"))

        assert [c.args[0] for c in mock_transport.resolve.call_args_list] == ["localhost", "example.test"]

    def test_progress_precedes_operation(self, session):
        notices = []
        dispatcher = Dispatcher(session, Settings(), progress=notices.append)

        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            mock_transport.build_payload.return_value = b"HHH"
            dispatcher.dispatch(_cmd("r 16"))
            dispatcher.dispatch(_cmd("w 3"))

        assert notices == ["reading 16 bytes ...", "writing 3 bytes ..."]

    def test_every_registered_command_dispatches(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            mock_transport.build_payload.return_value = b"H"
            for token in COMMANDS:
                line = "rn 1" if token == "rn" else token
                result = dispatcher.dispatch(_cmd(line))
                assert result is not None
                assert getattr(result, "kind", None) != OutcomeKind.UNRECOGNIZED


class TestRepeat:
    """Tests for empty-line repeat and history."""

    @pytest.fixture
    def dispatcher(self):
        session = MagicMock()
        session.config = Settings()
        return Dispatcher(session, Settings())

    def test_empty_line_without_history_is_noop(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            outcome = dispatcher.dispatch(_cmd(""))

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.operation == "noop"
        assert mock_transport.method_calls == []

    def test_empty_line_repeats_last_write(self, dispatcher):
        """Test that an empty line after 'w 5' writes 5 more fill bytes."""
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            mock_transport.build_payload.side_effect = lambda arg, fill: fill * int(arg)
            dispatcher.dispatch(_cmd("w 5"))
            dispatcher.dispatch(_cmd(""))

        payloads = [c.args[1] for c in mock_transport.write.call_args_list]
        assert payloads == [b"HHHHH", b"HHHHH"]

    def test_unrecognized_does_not_replace_last(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport") as mock_transport:
            mock_transport.build_payload.return_value = b"HH"
            dispatcher.dispatch(_cmd("w 2"))
            dispatcher.dispatch(_cmd("nonsense"))
            dispatcher.dispatch(_cmd(""))

        assert mock_transport.write.call_count == 2
        assert str(dispatcher.last_command) == "w 2"

    def test_history_collapses_consecutive_duplicates(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport"):
            for line in ("st", "st", "n", "", "st"):
                dispatcher.dispatch(_cmd(line))

        assert [str(c) for c in dispatcher.history] == ["st", "n", "st"]

    def test_history_command(self, dispatcher):
        with patch("sockshell.engine.dispatcher.transport"):
            dispatcher.dispatch(_cmd("st"))
            outcome = dispatcher.dispatch(_cmd("h"))

        assert outcome.details["history"] == ["st"]
        assert [str(c) for c in dispatcher.history] == ["st", "h"]


class TestScenarios:
    """End-to-end scenarios over real sockets."""

    @pytest.fixture
    def pair(self, config):
        """Server and client sessions connected to each other."""
        server = Session(Role.SERVER, config=config)
        result = {}
        thread = threading.Thread(target=lambda: result.setdefault("change", server.start()), daemon=True)
        thread.start()

        deadline = time.monotonic() + 5
        while server.listen_port is None and time.monotonic() < deadline:
            time.sleep(0.005)
        client_config = config.model_copy(update={"port": server.listen_port})
        client = Session(Role.CLIENT, host="127.0.0.1", config=client_config)
        client_change = client.start()
        thread.join(5)

        assert client_change.outcome.kind == OutcomeKind.SUCCESS
        assert result["change"].outcome.kind == OutcomeKind.SUCCESS
        yield Dispatcher(server), Dispatcher(client)
        client.teardown()
        server.teardown()

    def test_client_write_server_read(self, pair):
        server, client = pair

        written = client.dispatch(_cmd("w 3"))
        wait_readable(server.session.handle.sock)
        read = server.dispatch(_cmd("r"))

        assert written.kind == OutcomeKind.SUCCESS
        assert written.count == 3
        assert read.kind == OutcomeKind.SUCCESS
        assert read.data == b"HHH"

    def test_repeat_writes_again(self, pair):
        server, client = pair

        client.dispatch(_cmd("w 5"))
        client.dispatch(_cmd(""))
        read = server.dispatch(_cmd("rn 10"))

        assert read.kind == OutcomeKind.SUCCESS
        assert read.data == b"H" * 10

    def test_literal_text_write(self, pair):
        server, client = pair

        client.dispatch(_cmd("w hello"))
        read = server.dispatch(_cmd("rn 5"))

        assert read.data == b"hello"

    def test_poll_one_second_timeout(self, pair):
        _, client = pair

        started = time.monotonic()
        outcome = client.dispatch(_cmd("p 1"))

        assert outcome.kind == OutcomeKind.TIMEOUT
        assert time.monotonic() - started >= 1.0

    def test_close_twice(self, pair):
        server, _ = pair

        first = server.dispatch(_cmd("c"))
        second = server.dispatch(_cmd("c"))

        assert isinstance(first, StateChange)
        assert first.outcome.kind == OutcomeKind.SUCCESS
        assert second.outcome.kind == OutcomeKind.ERROR
        assert second.outcome.errno == errno.EBADF

    def test_read_after_close_is_ebadf(self, pair):
        server, _ = pair
        server.dispatch(_cmd("c"))

        outcome = server.dispatch(_cmd("r"))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.errno == errno.EBADF

    def test_peer_half_close_reads_zero(self, pair):
        server, client = pair

        change = client.dispatch(_cmd("stw"))
        read = server.dispatch(_cmd("r"))

        assert change.current.value == "half_closed_write"
        assert read.kind == OutcomeKind.SUCCESS
        assert read.count == 0

    @pytest.mark.parametrize("line", [
        "p 1e400",
        "p nan",
        "pw 1e12",
        "r 99999999999999",
        "rn 99999999999999",
        "w 99999999999999",
    ])
    def test_out_of_range_argument_keeps_session_interactive(self, pair, line):
        """Test that huge or non-finite arguments are rejected, not raised."""
        server, client = pair

        outcome = client.dispatch(_cmd(line))

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.errno == errno.EINVAL
        assert client.last_command is None
        assert client.dispatch(_cmd("w 2")).count == 2
        assert server.dispatch(_cmd("rn 2")).data == b"HH"

    def test_unresolvable_name_keeps_session_interactive(self, pair):
        _, client = pair

        with patch(
            "sockshell.engine.transport.socket.gethostbyname_ex",
            side_effect=socket.gaierror(socket.EAI_NONAME, "Name or service not known"),
        ):
            outcome = client.dispatch(_cmd("res nonexistent.invalid."))

        assert outcome.kind == OutcomeKind.NO_RESULT
        assert client.dispatch(_cmd("n")).kind == OutcomeKind.SUCCESS
