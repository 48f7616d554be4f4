"""Agent protocol messages and frame codec.

Protocol: one JSON object per line over a single duplex stream.
Every frame carries a ``type`` tag; field names on the wire are camelCase.

    host -> guest:  MountRequest, RunRequest, Ack (handshake), ClipboardEvent
    guest -> host:  Ready, Ack, AppExitCode, ClipboardEvent, DesktopNotification

Commands and their acks may carry a ``requestId``. Frames without one are
correlated positionally (the ack answers the oldest outstanding command).
"""

from __future__ import annotations

from typing import Annotated, Literal, TypeVar

from pydantic import Field, TypeAdapter, ValidationError

from flatvm_agent.constants import FRAME_DELIMITER
from flatvm_agent.exceptions import ProtocolError
from flatvm_agent.models import SharedDirDescriptor, WireModel

# ============================================================================
# Handshake / Control Messages
# ============================================================================


class ReadyMessage(WireModel):
    """Guest announces its protocol version at connection start.

    Response: AckMessage (status 0) from the host.
    """

    type: Literal["ready"] = "ready"
    version: str = Field(description="Guest agent protocol version")


class AckMessage(WireModel):
    """Result of the preceding command (or of the handshake)."""

    type: Literal["ack"] = "ack"
    status: int = Field(description="0 on success, otherwise a command specific failure code")
    request_id: int | None = Field(default=None, description="Echo of the answered command's requestId")


# ============================================================================
# Command Models (host -> guest, answered by AckMessage)
# ============================================================================


class MountRequest(WireModel):
    """Mount a shared directory inside the guest.

    Response: AckMessage.
    """

    type: Literal["mount_request"] = "mount_request"
    shared_dir: SharedDirDescriptor
    request_id: int | None = Field(default=None, description="Correlation id echoed by the ack")


class RunRequest(WireModel):
    """Launch an application inside the guest.

    Response: AckMessage, then AppExitCodeMessage once the application exits.
    """

    type: Literal["run_request"] = "run_request"
    app: str = Field(min_length=1, description="Application name or path")
    run_as_user: bool = Field(default=False, description="Run as the unprivileged guest user")
    start_desktop_session: bool = Field(default=False, description="Start a desktop session bus first")
    request_id: int | None = Field(default=None, description="Correlation id echoed by the ack")


# ============================================================================
# Event Models (unacknowledged)
# ============================================================================


class AppExitCodeMessage(WireModel):
    """The launched application terminated."""

    type: Literal["app_exit_code"] = "app_exit_code"
    code: int = Field(description="Application exit code")


class ClipboardEventMessage(WireModel):
    """Clipboard contents to mirror onto the peer's clipboard."""

    type: Literal["clipboard_event"] = "clipboard_event"
    data: str = Field(description="UTF-8 clipboard text")


class DesktopNotificationMessage(WireModel):
    """Desktop notification raised inside the guest.

    Mirrors the arguments of org.freedesktop.Notifications.Notify,
    without the hints map.
    """

    type: Literal["desktop_notification"] = "desktop_notification"
    app_name: str = ""
    replaces_id: int = Field(default=0, ge=0)
    app_icon: str = ""
    summary: str
    body: str = ""
    actions: list[str] = Field(default_factory=list, description="Alternating action keys and labels")
    expire_timeout: int = Field(default=-1, description="Milliseconds; -1 server default, 0 never")


class ClosedMessage(WireModel):
    """Sentinel: the peer closed the connection.

    Synthesized from a zero-byte read. Never encoded, never decoded.
    """

    type: Literal["closed"] = "closed"


# Discriminated union of everything that may appear on the wire
AgentMessage = Annotated[
    ReadyMessage
    | AckMessage
    | MountRequest
    | RunRequest
    | AppExitCodeMessage
    | ClipboardEventMessage
    | DesktopNotificationMessage,
    Field(discriminator="type"),
]

CommandMessage = MountRequest | RunRequest
HostEventMessage = AppExitCodeMessage | ClipboardEventMessage | DesktopNotificationMessage | ClosedMessage
GuestEventMessage = MountRequest | RunRequest | ClipboardEventMessage | AckMessage | ClosedMessage

# Accept-sets for poll_event() on each side
HOST_EVENT_KINDS: tuple[type[WireModel], ...] = (AppExitCodeMessage, ClipboardEventMessage, DesktopNotificationMessage)
GUEST_EVENT_KINDS: tuple[type[WireModel], ...] = (MountRequest, RunRequest, ClipboardEventMessage, AckMessage)
COMMAND_KINDS: tuple[type[WireModel], ...] = (MountRequest, RunRequest)

_M = TypeVar("_M", bound=WireModel)

# Built once: TypeAdapter construction is expensive
_AGENT_MESSAGE_ADAPTER: TypeAdapter[AgentMessage] = TypeAdapter(AgentMessage)


def encode_frame(message: WireModel) -> bytes:
    """Serialize a message to one newline-terminated frame.

    JSON escaping turns newlines inside strings into ``\\n``, so the only raw
    newline in the frame is the terminator.

    Raises:
        ProtocolError: For ClosedMessage, which exists only locally.
    """
    if isinstance(message, ClosedMessage):
        raise ProtocolError("ClosedMessage is a local sentinel and cannot be sent")
    return message.model_dump_json(by_alias=True, exclude_none=True).encode() + FRAME_DELIMITER


def decode_frame(data: bytes) -> AgentMessage | ClosedMessage:
    """Deserialize one frame.

    A zero-byte read (``b""``) is the end-of-stream signal and yields
    ClosedMessage. Everything else must be a complete wire message; a blank
    line is malformed.

    Raises:
        ProtocolError: Invalid JSON, unknown ``type``, or bad fields.
    """
    if not data:
        return ClosedMessage()
    if data.endswith(FRAME_DELIMITER):
        data = data[: -len(FRAME_DELIMITER)]
    try:
        return _AGENT_MESSAGE_ADAPTER.validate_json(data)
    except ValidationError as e:
        raise ProtocolError(
            "Malformed agent frame",
            {"raw": data[:200], "errors": e.error_count()},
        ) from e


def expect_message(message: WireModel, *kinds: type[_M], during: str) -> _M:
    """Narrow accept-set check for a frame read in a specific context.

    Args:
        message: Decoded frame
        kinds: Message classes valid at this point
        during: Operation name for the error message (e.g. "handshake")

    Raises:
        ProtocolError: The frame is a valid message of the wrong kind.
    """
    if isinstance(message, kinds):
        return message
    expected = ", ".join(k.__name__ for k in kinds)
    raise ProtocolError(
        f"Unexpected {type(message).__name__} during {during} (expected {expected})",
        {"during": during, "received": getattr(message, "type", None)},
    )
