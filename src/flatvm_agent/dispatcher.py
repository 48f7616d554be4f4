"""Single reader per agent connection.

FrameDispatcher is the only coroutine that reads from a connection. It owns
the channel state machine and routes each decoded frame either to a pending
command (by requestId, or to the oldest pending command for ID-less acks) or
to the inbound event queue. Channel handles never read the stream
themselves, so a command round trip and an event-draining loop running in
different tasks cannot steal each other's frames.

    AWAITING_HANDSHAKE --handshake frame--> READY
    AWAITING_HANDSHAKE --Ready frame--> HANDSHAKE_RECEIVED   (host)
    HANDSHAKE_RECEIVED --complete_handshake(), Ack written--> READY
    READY --ack / event--> READY
    READY --zero-byte read--> CLOSED        (terminal)
    any   --bad frame / read error--> FAULTED (terminal)
"""

import asyncio
import contextlib
from collections import deque
from enum import Enum

from flatvm_agent._logging import get_logger
from flatvm_agent.agent_protocol import (
    COMMAND_KINDS,
    AckMessage,
    ClosedMessage,
    decode_frame,
    expect_message,
)
from flatvm_agent.exceptions import AgentError, PeerClosedError, ProtocolError, TransportError
from flatvm_agent.models import WireModel

logger = get_logger(__name__)


class ChannelState(str, Enum):
    """Lifecycle of an agent connection."""

    DISCONNECTED = "disconnected"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    HANDSHAKE_RECEIVED = "handshake_received"
    READY = "ready"
    CLOSED = "closed"
    FAULTED = "faulted"


TERMINAL_STATES = frozenset({ChannelState.CLOSED, ChannelState.FAULTED})

# Queued after the last event once the connection reaches a terminal state
_END_OF_STREAM = object()


class FrameDispatcher:
    """Reads frames from one connection and routes them.

    Args:
        reader: Read side of the connection
        handshake_kind: Message class that completes the handshake
            (ReadyMessage on the host, AckMessage on the guest)
        event_kinds: Message classes delivered through next_event()
        queue_depth: Bound of the inbound event queue
        name: "host" or "guest", for logs and errors
        answers_handshake: The handshake frame still needs our reply, so the
            connection stays HANDSHAKE_RECEIVED until complete_handshake()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        *,
        handshake_kind: type[WireModel],
        event_kinds: tuple[type[WireModel], ...],
        queue_depth: int,
        name: str,
        answers_handshake: bool = False,
    ):
        self._reader = reader
        self._handshake_kind = handshake_kind
        self._answers_handshake = answers_handshake
        self._event_kinds = event_kinds
        self._name = name
        self._state = ChannelState.AWAITING_HANDSHAKE
        self._error: AgentError | None = None
        self._handshake_message: WireModel | None = None
        self._handshake_done = asyncio.Event()
        # Insertion order is send order: the first entry is the oldest command
        self._pending: dict[int, asyncio.Future[AckMessage]] = {}
        self._inbound_commands: deque[int | None] = deque()
        self._events: asyncio.Queue[object] = asyncio.Queue(maxsize=queue_depth)
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def error(self) -> AgentError | None:
        """Error that faulted the connection, if any."""
        return self._error

    def start(self) -> None:
        """Start the dispatch loop as a background task."""
        self._task = asyncio.create_task(self._dispatch_loop(), name=f"flatvm-agent-{self._name}-dispatcher")

    async def stop(self) -> None:
        """Stop the dispatch loop. The connection ends up CLOSED unless already terminal."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._terminate(ChannelState.CLOSED, None):
            self._push_end_nowait()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    async def wait_handshake(self) -> WireModel:
        """Wait for the handshake frame.

        Raises:
            ProtocolError: The first frame was not the handshake kind.
            PeerClosedError: Connection closed before the handshake.
        """
        await self._handshake_done.wait()
        if self._handshake_message is None:
            raise self._terminal_error()
        return self._handshake_message

    def complete_handshake(self) -> None:
        """Mark our handshake reply as written: HANDSHAKE_RECEIVED -> READY."""
        if self._state is ChannelState.HANDSHAKE_RECEIVED:
            self._state = ChannelState.READY

    def register_request(self, request_id: int) -> asyncio.Future[AckMessage]:
        """Register an outgoing command and return the future of its ack."""
        self.ensure_ready()
        future: asyncio.Future[AckMessage] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return future

    def unregister_request(self, request_id: int) -> None:
        """Forget a command (after its ack, a timeout or a send failure)."""
        future = self._pending.pop(request_id, None)
        if future is not None and future.done() and not future.cancelled():
            future.exception()  # mark retrieved

    def pop_inbound_command(self, request_id: int | None = None) -> int | None:
        """Mark an inbound command as acknowledged and return its requestId.

        Without ``request_id`` this is the oldest unacknowledged command; None
        when that command carried no id or when nothing is outstanding.
        """
        if request_id is not None:
            with contextlib.suppress(ValueError):
                self._inbound_commands.remove(request_id)
            return request_id
        if self._inbound_commands:
            return self._inbound_commands.popleft()
        return None

    async def next_event(self) -> WireModel:
        """Next inbound event in arrival order.

        Returns ClosedMessage once the peer has closed and all earlier events
        were consumed (and on every call after that).

        Raises:
            ProtocolError: The connection faulted.
            TransportError: Reading the connection failed.
        """
        item = await self._events.get()
        if isinstance(item, WireModel):
            return item
        # End of stream: leave the marker for other handles draining the same queue
        self._events.put_nowait(_END_OF_STREAM)
        if self._state is ChannelState.FAULTED and self._error is not None:
            raise self._error
        return ClosedMessage()

    def ensure_open(self) -> None:
        """Raise if the connection reached a terminal state."""
        if self._state in TERMINAL_STATES:
            raise self._terminal_error()

    def ensure_ready(self) -> None:
        """Raise unless the handshake completed and the connection is open."""
        self.ensure_open()
        if self._state is not ChannelState.READY:
            raise ProtocolError(
                "Agent handshake not completed",
                {"channel": self._name, "state": self._state.value},
            )

    def fault(self, error: AgentError) -> None:
        """Fault the connection from outside the read loop (e.g. a failed write)."""
        if self._terminate(ChannelState.FAULTED, error):
            self._push_end_nowait()
            if self._task is not None and self._task is not asyncio.current_task():
                self._task.cancel()

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        try:
            error = await self._read_frames()
        except asyncio.CancelledError:
            if self._terminate(ChannelState.CLOSED, None):
                self._push_end_nowait()
            raise
        state = ChannelState.FAULTED if error else ChannelState.CLOSED
        if self._terminate(state, error):
            await self._events.put(_END_OF_STREAM)

    async def _read_frames(self) -> AgentError | None:
        """Route frames until the stream ends (None) or breaks (the error)."""
        while True:
            try:
                line = await self._reader.readline()
            except ValueError:
                # StreamReader limit exceeded: frame larger than the buffer
                return ProtocolError(
                    "Agent frame exceeds stream buffer limit",
                    {"channel": self._name},
                )
            except OSError as e:
                return TransportError(
                    f"Agent connection read failed: {e}",
                    {"channel": self._name, "error_type": type(e).__name__},
                )

            try:
                message = decode_frame(line)
                if isinstance(message, ClosedMessage):
                    return None
                await self._route(message)
            except ProtocolError as e:
                return e

    async def _route(self, message: WireModel) -> None:
        if self._state in TERMINAL_STATES:
            return

        if self._state is ChannelState.AWAITING_HANDSHAKE:
            self._handshake_message = expect_message(message, self._handshake_kind, during="handshake")
            self._state = ChannelState.HANDSHAKE_RECEIVED if self._answers_handshake else ChannelState.READY
            self._handshake_done.set()
            return

        if isinstance(message, AckMessage) and self._resolve_ack(message):
            return

        if isinstance(message, self._event_kinds):
            if isinstance(message, COMMAND_KINDS):
                self._inbound_commands.append(message.request_id)  # type: ignore[attr-defined]
            await self._events.put(message)
            return

        raise ProtocolError(
            f"Unexpected {type(message).__name__} on {self._name} channel",
            {"channel": self._name, "received": message.type},  # type: ignore[attr-defined]
        )

    def _resolve_ack(self, ack: AckMessage) -> bool:
        """Hand an ack to its command. False if no command is waiting for it."""
        if ack.request_id is not None:
            future = self._pending.pop(ack.request_id, None)
            if future is None:
                # Late ack for a command abandoned after a timeout
                logger.debug(
                    "Discarding ack for unregistered request",
                    extra={"channel": self._name, "request_id": ack.request_id, "status": ack.status},
                )
                return True
        elif self._pending:
            oldest = next(iter(self._pending))
            future = self._pending.pop(oldest)
        else:
            return False

        if not future.done():
            future.set_result(ack)
        return True

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _terminal_error(self) -> AgentError:
        if self._state is ChannelState.FAULTED and self._error is not None:
            return self._error
        return PeerClosedError("Agent channel is closed", {"channel": self._name})

    def _terminate(self, state: ChannelState, error: AgentError | None) -> bool:
        """Enter a terminal state and fail everything waiting. False if already terminal."""
        if self._state in TERMINAL_STATES:
            return False
        self._state = state
        self._error = error

        if error is not None:
            logger.warning(
                "Agent channel faulted",
                extra={"channel": self._name, "error": error.message, "error_type": type(error).__name__},
            )
        else:
            logger.debug("Agent channel closed", extra={"channel": self._name})

        waiting_error = error or PeerClosedError(
            "Agent channel closed while waiting for a reply",
            {"channel": self._name},
        )
        for future in self._pending.values():
            if not future.done():
                future.set_exception(waiting_error)
        self._handshake_done.set()
        return True

    def _push_end_nowait(self) -> None:
        """Queue the end marker without waiting; drops the oldest event if the queue is full."""
        try:
            self._events.put_nowait(_END_OF_STREAM)
        except asyncio.QueueFull:
            self._events.get_nowait()
            self._events.put_nowait(_END_OF_STREAM)
