"""Host and guest views of the agent channel.

Both sides talk JSON lines over one duplex stream (see agent_protocol.py).
Every handle is backed by a SharedConnection: one writer behind a lock, one
FrameDispatcher reading the stream, and a reference count. duplicate() hands
out another handle on the same connection, so a controller can issue
commands from one task and drain events from another:

    async with await HostChannel.connect(sock_path) as host:
        version = await host.initialize()
        events = host.duplicate()
        status = await host.request_run("org.gnome.gedit", as_user=True, start_desktop_session=True)
        async for event in events.events():
            ...

The transport is closed when the last handle is closed.
"""

from __future__ import annotations

import asyncio
import itertools
import types
from collections.abc import AsyncGenerator, Awaitable
from pathlib import Path
from typing import ClassVar, TypeVar

from flatvm_agent import constants
from flatvm_agent._logging import get_logger
from flatvm_agent.agent_protocol import (
    GUEST_EVENT_KINDS,
    HOST_EVENT_KINDS,
    AckMessage,
    AppExitCodeMessage,
    ClipboardEventMessage,
    ClosedMessage,
    CommandMessage,
    DesktopNotificationMessage,
    GuestEventMessage,
    HostEventMessage,
    MountRequest,
    ReadyMessage,
    RunRequest,
    encode_frame,
    expect_message,
)
from flatvm_agent.dispatcher import ChannelState, FrameDispatcher
from flatvm_agent.exceptions import AgentTimeoutError, PeerClosedError, TransportError
from flatvm_agent.models import SharedDirDescriptor, WireModel
from flatvm_agent.settings import AgentSettings
from flatvm_agent.transport import connect_host_socket, open_guest_port

logger = get_logger(__name__)

_T = TypeVar("_T")
_C = TypeVar("_C", bound="_AgentChannel")


class SharedConnection:
    """Shared ownership of one agent connection.

    Writes are serialized by a lock so frames from different handles never
    interleave. Reads belong to the dispatcher alone.
    """

    def __init__(self, writer: asyncio.StreamWriter, dispatcher: FrameDispatcher, *, name: str):
        self._writer = writer
        self.dispatcher = dispatcher
        self._name = name
        self._write_lock = asyncio.Lock()
        self._request_ids = itertools.count(1)
        self._refs = 0
        self._released = False
        self.handshake_lock = asyncio.Lock()
        self.handshake_version: str | None = None

    @property
    def refs(self) -> int:
        """Number of open handles."""
        return self._refs

    def acquire(self) -> SharedConnection:
        if self._released:
            raise PeerClosedError("Agent connection already released", {"channel": self._name})
        self._refs += 1
        return self

    async def release(self) -> None:
        """Drop one handle; the last one stops the dispatcher and closes the stream."""
        self._refs -= 1
        if self._refs > 0:
            return
        self._released = True
        await self.dispatcher.stop()
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            logger.debug("Agent connection close error (ignored)", extra={"channel": self._name}, exc_info=True)
        logger.debug("Agent connection released", extra={"channel": self._name})

    def next_request_id(self) -> int:
        return next(self._request_ids)

    async def send(self, message: WireModel, timeout: float | None = None) -> None:
        """Write one frame.

        Raises:
            TransportError: The write failed; the connection is faulted.
            AgentTimeoutError: The peer did not drain the stream in time.
        """
        self.dispatcher.ensure_open()
        frame = encode_frame(message)
        async with self._write_lock:
            try:
                self._writer.write(frame)
                await asyncio.wait_for(self._writer.drain(), timeout=timeout)
            except TimeoutError as e:
                raise AgentTimeoutError(
                    f"Agent peer not draining the connection after {timeout}s",
                    {"channel": self._name, "message": message.type},  # type: ignore[attr-defined]
                ) from e
            except OSError as e:
                error = TransportError(
                    f"Agent connection write failed: {e}",
                    {"channel": self._name, "error_type": type(e).__name__},
                )
                self.dispatcher.fault(error)
                raise error from e


class _AgentChannel:
    """Behaviour shared by the host and guest handles."""

    _side: ClassVar[str]
    _handshake_kind: ClassVar[type[WireModel]]
    _answers_handshake: ClassVar[bool] = False
    _event_kinds: ClassVar[tuple[type[WireModel], ...]]

    def __init__(self, connection: SharedConnection, settings: AgentSettings):
        self._conn = connection.acquire()
        self._settings = settings
        self._closed = False

    @classmethod
    def from_streams(
        cls: type[_C],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        settings: AgentSettings | None = None,
    ) -> _C:
        """Bind a new channel to an already open connection.

        Must be called from a running event loop: the dispatcher task starts
        immediately.
        """
        settings = settings or AgentSettings()
        dispatcher = FrameDispatcher(
            reader,
            handshake_kind=cls._handshake_kind,
            event_kinds=cls._event_kinds,
            queue_depth=settings.event_queue_depth,
            name=cls._side,
            answers_handshake=cls._answers_handshake,
        )
        dispatcher.start()
        return cls(SharedConnection(writer, dispatcher, name=cls._side), settings)

    @property
    def state(self) -> ChannelState:
        """State of the underlying connection (shared by duplicated handles)."""
        return self._conn.dispatcher.state

    @property
    def closed(self) -> bool:
        """Whether this handle was closed."""
        return self._closed

    def duplicate(self: _C) -> _C:
        """Independent handle on the same connection."""
        self._ensure_handle_open()
        return type(self)(self._conn, self._settings)

    async def close(self) -> None:
        """Close this handle. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._conn.release()

    async def __aenter__(self: _C) -> _C:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    def _ensure_handle_open(self) -> None:
        if self._closed:
            raise PeerClosedError("Agent channel handle is closed", {"channel": self._side})

    async def _send(self, message: WireModel) -> None:
        await self._conn.send(message, timeout=self._settings.request_timeout)

    async def _send_event(self, message: WireModel) -> None:
        """Fire-and-forget send, valid once the handshake is done."""
        self._ensure_handle_open()
        self._conn.dispatcher.ensure_ready()
        await self._send(message)

    async def _await_reply(self, reply: Awaitable[_T], *, during: str) -> _T:
        timeout = self._settings.request_timeout
        try:
            return await asyncio.wait_for(reply, timeout=timeout)
        except TimeoutError as e:
            raise AgentTimeoutError(
                f"No reply from agent peer during {during} after {timeout}s",
                {"channel": self._side, "during": during, "timeout": timeout},
            ) from e


class HostChannel(_AgentChannel):
    """Controller side: handshake, mount/run commands, guest event draining."""

    _side = "host"
    _handshake_kind = ReadyMessage
    _answers_handshake = True
    _event_kinds = HOST_EVENT_KINDS

    @classmethod
    async def connect(cls, path: str | Path | None = None, settings: AgentSettings | None = None) -> HostChannel:
        """Dial the VM's agent socket (retrying while it does not exist yet).

        Raises:
            ConnectTimeoutError: Socket never became available.
            TransportError: No path configured, or the socket cannot be opened.
        """
        settings = settings or AgentSettings()
        path = path or settings.host_socket_path
        if path is None:
            raise TransportError("No agent socket path given (set FLATVM_AGENT_HOST_SOCKET_PATH)")
        reader, writer = await connect_host_socket(path, settings=settings)
        return cls.from_streams(reader, writer, settings)

    async def initialize(self) -> str:
        """Wait for the guest's Ready frame, acknowledge it, return its version.

        The connection is READY only once the Ack is written. Handles sharing
        a connection send a single Ack; concurrent callers wait for it.

        Raises:
            ProtocolError: The first frame was not Ready (channel FAULTED).
            PeerClosedError: Guest closed before announcing itself.
            AgentTimeoutError: No Ready within request_timeout.
        """
        self._ensure_handle_open()
        async with self._conn.handshake_lock:
            if self._conn.handshake_version is not None:
                return self._conn.handshake_version

            dispatcher = self._conn.dispatcher
            frame = await self._await_reply(dispatcher.wait_handshake(), during="handshake")
            ready = expect_message(frame, ReadyMessage, during="handshake")
            await self._send(AckMessage(status=constants.HANDSHAKE_ACK_STATUS))
            dispatcher.complete_handshake()
            self._conn.handshake_version = ready.version

        logger.info("Guest agent ready", extra={"version": ready.version})
        return ready.version

    async def request_mount(self, shared_dir: SharedDirDescriptor) -> int:
        """Ask the guest to mount a shared directory. Returns the ack status."""
        return await self._round_trip(MountRequest(shared_dir=shared_dir), during="mount")

    async def request_run(self, app: str, as_user: bool, start_desktop_session: bool) -> int:
        """Ask the guest to launch an application. Returns the ack status.

        The application's exit code arrives later as an AppExitCodeMessage
        event.
        """
        request = RunRequest(app=app, run_as_user=as_user, start_desktop_session=start_desktop_session)
        return await self._round_trip(request, during="run")

    async def poll_event(self) -> HostEventMessage:
        """Next guest event: AppExitCode, ClipboardEvent, DesktopNotification or Closed.

        Raises:
            ProtocolError: The guest sent something that is not an event.
            TransportError: Reading the connection failed.
        """
        self._ensure_handle_open()
        return await self._conn.dispatcher.next_event()  # type: ignore[return-value]

    async def events(self) -> AsyncGenerator[HostEventMessage]:
        """Yield guest events until (and including) ClosedMessage."""
        while True:
            event = await self.poll_event()
            yield event
            if isinstance(event, ClosedMessage):
                break

    async def send_clipboard_event(self, data: str) -> None:
        """Push host clipboard contents to the guest. No ack."""
        await self._send_event(ClipboardEventMessage(data=data))

    async def _round_trip(self, command: CommandMessage, *, during: str) -> int:
        """Send a command tagged with a fresh requestId and wait for its ack.

        Never retried: commands are not idempotent.
        """
        self._ensure_handle_open()
        dispatcher = self._conn.dispatcher
        request_id = self._conn.next_request_id()
        reply = dispatcher.register_request(request_id)
        try:
            await self._send(command.model_copy(update={"request_id": request_id}))
            ack = await self._await_reply(reply, during=during)
        finally:
            dispatcher.unregister_request(request_id)

        logger.debug(
            "Agent command acknowledged",
            extra={"command": during, "request_id": request_id, "status": ack.status},
        )
        return ack.status


class GuestChannel(_AgentChannel):
    """In-VM agent side: handshake, acknowledgements, outbound events."""

    _side = "guest"
    _handshake_kind = AckMessage
    _event_kinds = GUEST_EVENT_KINDS

    @classmethod
    async def open(cls, path: str | Path | None = None, settings: AgentSettings | None = None) -> GuestChannel:
        """Open the virtio-serial port (retrying while it does not exist yet)."""
        settings = settings or AgentSettings()
        reader, writer = await open_guest_port(path or settings.guest_port_path, settings=settings)
        return cls.from_streams(reader, writer, settings)

    async def handshake(self, version: str | None = None) -> int:
        """Announce ``version`` to the host and return the status of its ack.

        Raises:
            ProtocolError: The host answered with something other than Ack.
            PeerClosedError: Host closed before acknowledging.
            AgentTimeoutError: No ack within request_timeout.
        """
        self._ensure_handle_open()
        version = version or self._settings.protocol_version
        await self._send(ReadyMessage(version=version))
        frame = await self._await_reply(self._conn.dispatcher.wait_handshake(), during="handshake")
        ack = expect_message(frame, AckMessage, during="handshake")
        logger.info("Agent handshake acknowledged", extra={"version": version, "status": ack.status})
        return ack.status

    async def acknowledge(self, status: int, *, request_id: int | None = None) -> None:
        """Answer a MountRequest or RunRequest received through poll_event().

        Without ``request_id`` the oldest unanswered command is acknowledged,
        echoing its requestId if it had one.
        """
        self._ensure_handle_open()
        dispatcher = self._conn.dispatcher
        dispatcher.ensure_ready()
        await self._send(AckMessage(status=status, request_id=dispatcher.pop_inbound_command(request_id)))

    async def report_exit_code(self, code: int) -> None:
        """Tell the host the launched application exited."""
        await self._send_event(AppExitCodeMessage(code=code))

    async def send_clipboard_event(self, data: str) -> None:
        """Push guest clipboard contents to the host. No ack."""
        await self._send_event(ClipboardEventMessage(data=data))

    async def send_desktop_notification(self, notification: DesktopNotificationMessage) -> None:
        """Forward a desktop notification to the host. No ack."""
        await self._send_event(notification)

    async def poll_event(self) -> GuestEventMessage:
        """Next host message: MountRequest, RunRequest, ClipboardEvent, Ack or Closed."""
        self._ensure_handle_open()
        return await self._conn.dispatcher.next_event()  # type: ignore[return-value]
