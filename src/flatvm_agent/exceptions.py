"""Exception hierarchy for flatvm-agent.

All exceptions inherit from AgentError.

Hierarchy:
    AgentError (base)
    ├── TransportError            ← connect/read/write failure on the byte stream
    │   └── ConnectTimeoutError   ← peer never started listening
    ├── ProtocolError             ← undecodable frame or unexpected message kind
    ├── PeerClosedError           ← connection ended while a call needed it
    ├── AgentTimeoutError         ← handshake/ack deadline expired
    └── CommandFailedError        ← non-zero ack status (opt-in, see ensure_success)

ProtocolError and TransportError leave the channel FAULTED. A closed peer is
normally reported as a ClosedMessage value by poll_event(); PeerClosedError is
only raised to calls that were waiting for a specific reply.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base exception for all agent channel errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class TransportError(AgentError):
    """Byte-stream level failure.

    Raised when the transport endpoint cannot be opened, or when reading from
    or writing to an established connection fails (broken pipe, reset).
    Not retried past the initial connection budget.
    """


class ConnectTimeoutError(TransportError):
    """Connection retry budget exhausted.

    Raised when the peer endpoint did not accept a connection within
    the configured number of attempts.

    Attributes:
        attempts: Number of connection attempts made
    """

    def __init__(self, message: str, attempts: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["attempts"] = attempts
        super().__init__(message, ctx)
        self.attempts = attempts


class ProtocolError(AgentError):
    """Frame could not be decoded or is not valid in the current context.

    Fatal to the channel: no recovery is attempted and the channel is
    FAULTED. The owner should treat the guest agent as misbehaving.
    """


class PeerClosedError(AgentError):
    """The connection was closed while a call was waiting on it.

    Raised to pending handshake and request calls when the peer closes the
    stream, and to any call made on a channel that is already closed.
    """


class AgentTimeoutError(AgentError):
    """A handshake or command round trip exceeded its deadline.

    Distinct from ProtocolError: the channel is not faulted, a late ack for
    the abandoned request is discarded when it arrives.
    """


class CommandFailedError(AgentError):
    """Guest acknowledged a command with a non-zero status.

    The protocol layer returns statuses unmodified; this is raised only by
    callers that opt in through ensure_success().

    Attributes:
        command: Command name (e.g. "mount", "run")
        status: Status code from the guest's ack
    """

    def __init__(self, message: str, command: str, status: int):
        super().__init__(message, context={"command": command, "status": status})
        self.command = command
        self.status = status


def ensure_success(status: int, command: str) -> int:
    """Raise CommandFailedError for a non-zero ack status, else return it."""
    if status != 0:
        raise CommandFailedError(f"Guest rejected {command} request with status {status}", command, status)
    return status
