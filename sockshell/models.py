"""
Core data models
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Which side of the connection this process plays"""

    CLIENT = "client"
    SERVER = "server"


class LifecycleState(str, Enum):
    """Session lifecycle state"""

    UNINITIALIZED = "uninitialized"
    LISTENING = "listening"
    ESTABLISHED = "established"
    HALF_CLOSED_READ = "half_closed_read"
    HALF_CLOSED_WRITE = "half_closed_write"
    CLOSED = "closed"


class OutcomeKind(str, Enum):
    """Normalized result of one operation"""

    SUCCESS = "success"
    PARTIAL = "partial"
    TIMEOUT = "timeout"
    ERROR = "error"
    # Informational, never errors
    NO_RESULT = "no_result"
    UNRECOGNIZED = "unrecognized"
    # Blocking accept observed the cancellation token
    INTERRUPTED = "interrupted"


class ReadMode(str, Enum):
    BEST_EFFORT = "best_effort"
    EXACT = "exact"


class DetailLevel(str, Enum):
    BASIC = "basic"
    FULL = "full"


class Command(BaseModel):
    """One parsed operator input line"""

    name: str = ""
    arguments: List[str] = Field(default_factory=list)
    repeatable: bool = True

    @classmethod
    def from_line(cls, line: Optional[str]) -> "Command":
        """Split an input line on whitespace; first token is the command."""
        tokens = (line or "").split()
        if not tokens:
            return cls()
        return cls(name=tokens[0], arguments=tokens[1:])

    @property
    def is_empty(self) -> bool:
        return not self.name

    def argument(self, index: int = 0) -> Optional[str]:
        if index < len(self.arguments):
            return self.arguments[index]
        return None

    def __str__(self) -> str:
        return " ".join([self.name, *self.arguments])


class Outcome(BaseModel):
    """Result of exactly one socket operation or command"""

    kind: OutcomeKind
    operation: str
    data: Optional[bytes] = None
    requested: Optional[int] = None
    count: Optional[int] = None
    errno: Optional[int] = None
    message: Optional[str] = None
    events: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
    elapsed_sec: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.PARTIAL)

    @classmethod
    def success(cls, operation: str, **kwargs: Any) -> "Outcome":
        return cls(kind=OutcomeKind.SUCCESS, operation=operation, **kwargs)

    @classmethod
    def error(
        cls,
        operation: str,
        errno: Optional[int],
        message: Optional[str],
        **kwargs: Any,
    ) -> "Outcome":
        return cls(kind=OutcomeKind.ERROR, operation=operation, errno=errno, message=message, **kwargs)

    @classmethod
    def from_os_error(cls, operation: str, exc: OSError, **kwargs: Any) -> "Outcome":
        """Normalize an OSError into an ERROR outcome."""
        return cls.error(operation, exc.errno, exc.strerror or str(exc), **kwargs)


class StateChange(BaseModel):
    """Lifecycle transition caused by a command, with the outcome that caused it"""

    operation: str
    previous: LifecycleState
    current: LifecycleState
    outcome: Outcome

    @property
    def changed(self) -> bool:
        return self.previous != self.current
