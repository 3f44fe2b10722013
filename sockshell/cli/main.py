"""
Interactive socket shell entry point

Usage:
    sockshell -s            listen on the fixed port and accept one peer
    sockshell 127.0.0.1     connect to the fixed port on an IPv4 address

Then issue one socket operation per line; ``?`` lists the commands.
"""
import argparse
import os
import signal
import sys
from typing import List, Optional, Union

import structlog

from sockshell.cli.console import Console, LineReader
from sockshell.config import settings
from sockshell.engine.dispatcher import Dispatcher
from sockshell.engine.session import Session
from sockshell.exceptions import SessionAbortedError, SessionSetupError
from sockshell.logging import setup_logging
from sockshell.models import Command, Outcome, OutcomeKind, Role, StateChange

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FATAL = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sockshell",
        description="Drive a single TCP socket one syscall at a time",
    )
    parser.add_argument(
        "-s",
        "--server",
        action="store_true",
        help="Server mode: bind the fixed port and accept one connection",
    )
    parser.add_argument(
        "host",
        nargs="?",
        help="IPv4 address to connect to (client mode)",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help=f"Port to connect to or listen on (default {settings.port})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level for the console and log file (default {settings.log_level})",
    )
    return parser


def _check_interrupted(result: Union[Outcome, StateChange]) -> None:
    outcome = result.outcome if isinstance(result, StateChange) else result
    if outcome.kind == OutcomeKind.INTERRUPTED:
        raise SessionAbortedError("interrupted while accepting, session aborted", errno=outcome.errno)


def install_signal_handlers(session: Session) -> None:
    """
    SIGINT prints a newline and cancels a blocked accept; every other
    blocking call simply resumes. SIGPIPE stays ignored (Python's default)
    so writes to a closed peer come back as EPIPE outcomes.
    """

    def on_interrupt(signum, frame):
        os.write(sys.stdout.fileno(), b"\n")
        session.interrupt()

    signal.signal(signal.SIGINT, on_interrupt)


def run(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.server and not args.host:
        print(f"Usage: {parser.prog} [-s] [host_ip]")
        return EXIT_OK

    setup_logging("sockshell", args.log_level)

    config = settings
    if args.port is not None:
        config = settings.model_copy(update={"port": args.port})

    role = Role.SERVER if args.server else Role.CLIENT
    console = Console()
    session = Session(role, host=args.host, config=config, progress=console.progress)
    install_signal_handlers(session)
    reader = LineReader(config.prompt, config.history_file)

    logger.info("session_starting", role=role.value, host=args.host, port=config.port)
    try:
        started = session.start()
        console.show(started)
        _check_interrupted(started)

        dispatcher = Dispatcher(session, config, progress=console.progress)
        while not dispatcher.finished:
            result = dispatcher.dispatch(Command.from_line(reader.read()))
            console.show(result)
            _check_interrupted(result)
    except SessionSetupError as exc:
        logger.error("session_fatal", error=exc.message, errno=exc.errno, details=exc.details)
        console.fatal(exc)
        return EXIT_FATAL
    finally:
        session.teardown()
        reader.save()

    console.notice("\n")
    return EXIT_OK


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
