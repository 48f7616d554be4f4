"""Transport endpoints for the agent channel.

Host side: Unix socket exposed by the VM's virtio-serial chardev.
Guest side: the matching virtio-serial character device (/dev/virtio-ports/*).

Both are opened with a bounded fixed-interval retry: the guest agent starts
some time after the VM boots, and the host may dial before the VM has created
its socket.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from flatvm_agent._logging import get_logger
from flatvm_agent.exceptions import ConnectTimeoutError, TransportError
from flatvm_agent.settings import AgentSettings

logger = get_logger(__name__)

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]
Opener = Callable[[str, int], Awaitable[StreamPair]]

# "Not created yet" and "created but not accepting" are both retried.
# Anything else (permissions, not a socket) fails on the first attempt.
RETRYABLE_OPEN_ERRORS: tuple[type[OSError], ...] = (FileNotFoundError, ConnectionRefusedError)


class _PortWriter(asyncio.StreamWriter):
    """StreamWriter for a character device opened as two pipe transports.

    Closing the writer also closes the read side, so the device is released
    the same way a socket would be.
    """

    def __init__(
        self,
        transport: asyncio.WriteTransport,
        protocol: asyncio.StreamReaderProtocol,
        reader: asyncio.StreamReader,
        loop: asyncio.AbstractEventLoop,
        read_transport: asyncio.ReadTransport,
    ):
        super().__init__(transport, protocol, reader, loop)
        self._read_transport = read_transport

    def close(self) -> None:
        self._read_transport.close()
        super().close()


async def _open_unix_socket(path: str, buffer_limit: int) -> StreamPair:
    return await asyncio.open_unix_connection(path, limit=buffer_limit)


async def _open_char_device(path: str, buffer_limit: int) -> StreamPair:
    """Open a virtio-serial port (or any other character device) read-write."""
    loop = asyncio.get_running_loop()
    fd = os.open(path, os.O_RDWR | os.O_NOCTTY | os.O_CLOEXEC)
    read_pipe = os.fdopen(fd, "rb", buffering=0)
    try:
        write_pipe = os.fdopen(os.dup(fd), "wb", buffering=0)
    except OSError:
        read_pipe.close()
        raise

    reader = asyncio.StreamReader(limit=buffer_limit, loop=loop)
    try:
        read_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader, loop=loop),
            read_pipe,
        )
    except ValueError as e:
        read_pipe.close()
        write_pipe.close()
        raise TransportError(f"Not a character device: {path}", {"path": path}) from e
    # Separate protocol for the write side: it only provides drain() flow
    # control and the close waiter, its reader is never fed.
    write_transport, write_protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader(loop=loop), loop=loop),
        write_pipe,
    )
    writer = _PortWriter(write_transport, write_protocol, reader, loop, read_transport)
    return reader, writer


async def retry_open(
    opener: Opener,
    path: str | Path,
    *,
    retries: int,
    interval: float,
    buffer_limit: int,
) -> StreamPair:
    """Open a transport endpoint, retrying while the peer is not there yet.

    Makes one attempt plus ``retries`` retries, ``interval`` seconds apart.

    Raises:
        ConnectTimeoutError: Every attempt failed with a retryable error.
        TransportError: Non-retryable OSError (e.g. permission denied).
    """
    path = str(path)
    attempts = retries + 1
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(RETRYABLE_OPEN_ERRORS),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        ):
            with attempt:
                streams = await opener(path, buffer_limit)
                logger.debug(
                    "Agent transport opened",
                    extra={"path": path, "attempt": attempt.retry_state.attempt_number},
                )
                return streams
        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")
    except RETRYABLE_OPEN_ERRORS as e:
        raise ConnectTimeoutError(
            f"Agent endpoint not available after {attempts} attempts: {path}",
            attempts,
            {"path": path, "error": str(e)},
        ) from e
    except OSError as e:
        raise TransportError(
            f"Cannot open agent endpoint {path}: {e}",
            {"path": path, "error_type": type(e).__name__},
        ) from e


async def connect_host_socket(path: str | Path, *, settings: AgentSettings | None = None) -> StreamPair:
    """Dial the host-side Unix socket of the agent channel."""
    settings = settings or AgentSettings()
    return await retry_open(
        _open_unix_socket,
        path,
        retries=settings.connect_retries,
        interval=settings.connect_retry_interval,
        buffer_limit=settings.stream_buffer_limit,
    )


async def open_guest_port(path: str | Path, *, settings: AgentSettings | None = None) -> StreamPair:
    """Open the guest-side virtio-serial port of the agent channel."""
    settings = settings or AgentSettings()
    return await retry_open(
        _open_char_device,
        path,
        retries=settings.connect_retries,
        interval=settings.connect_retry_interval,
        buffer_limit=settings.stream_buffer_limit,
    )
