"""
Custom Exception Hierarchy for the socket shell

Only one-time session setup uses exceptions as a fatal path. Per-command
socket failures never raise; they come back as ERROR outcomes.
All custom exceptions inherit from SockShellError base class.
"""
from typing import Optional


class SockShellError(Exception):
    """
    Base exception for all socket shell errors.

    All custom exceptions should inherit from this class to allow
    catching all shell errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Session Setup Errors (fatal)

class SessionSetupError(SockShellError):
    """
    One-time session setup failed and left no usable descriptor.

    Base class for every fatal condition. The process top level reports
    these and exits with a non-zero status.
    """
    def __init__(self, message: str, errno: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.errno = errno


class SocketCreateError(SessionSetupError):
    """socket() failed."""
    pass


class AddressParseError(SessionSetupError):
    """The host argument is not a valid IPv4 address."""
    pass


class BindError(SessionSetupError):
    """bind() on the listening socket failed."""
    pass


class ListenError(SessionSetupError):
    """listen() on the bound socket failed."""
    pass


class SessionAbortedError(SessionSetupError):
    """Interrupted while blocked in accept; the whole session ends."""
    pass


# Command Errors (reported, never fatal)

class CommandError(SockShellError):
    """
    Operator command could not be executed as given.

    The dispatcher turns these into ERROR outcomes.
    """
    pass


class CommandArgumentError(CommandError):
    """Missing or malformed command argument."""
    pass


class SessionStateError(CommandError):
    """Invalid operation for current session state."""
    def __init__(self, message: str, current_state: str, expected_state: Optional[str] = None):
        super().__init__(message, {"current_state": current_state, "expected_state": expected_state})
        self.current_state = current_state
        self.expected_state = expected_state
