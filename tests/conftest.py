"""Shared pytest fixtures for flatvm-agent tests.

Channels run over socket.socketpair() inside the test's event loop: one end
is a HostChannel, the other a GuestChannel or raw asyncio streams standing
in for a hand-driven peer.
"""

import asyncio
import contextlib
import socket
import sys
from collections.abc import AsyncGenerator

import pytest

from flatvm_agent.agent_channel import GuestChannel, HostChannel
from flatvm_agent.agent_protocol import encode_frame
from flatvm_agent.models import SharedDirDescriptor, SharedDirKind, WireModel
from flatvm_agent.settings import AgentSettings

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]

# ============================================================================
# Shared Skip Markers
# ============================================================================

skip_unless_linux = pytest.mark.skipif(
    sys.platform != "linux",
    reason="This test requires Linux (FIFO opened read-write)",
)


# ============================================================================
# Helpers
# ============================================================================


async def open_stream_pair() -> tuple[StreamPair, StreamPair]:
    """Two connected asyncio stream pairs over a Unix socketpair."""
    left, right = socket.socketpair()
    return (
        await asyncio.open_unix_connection(sock=left),
        await asyncio.open_unix_connection(sock=right),
    )


async def send_raw(writer: asyncio.StreamWriter, message: WireModel | bytes) -> None:
    """Write a frame (or raw bytes) as a hand-driven peer."""
    data = message if isinstance(message, bytes) else encode_frame(message)
    writer.write(data)
    await writer.drain()


async def close_raw(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> AgentSettings:
    """Fast settings: no retry delay, 5s safety net on every round trip."""
    return AgentSettings(connect_retry_interval=0, request_timeout=5.0)


@pytest.fixture
def documents_share() -> SharedDirDescriptor:
    return SharedDirDescriptor(
        kind=SharedDirKind.APP_DIR,
        owner_app="editor",
        source_path="/home/u/Documents",
        mount_tag="shareddir0",
        read_only=False,
    )


@pytest.fixture
async def channel_pair(settings: AgentSettings) -> AsyncGenerator[tuple[HostChannel, GuestChannel]]:
    """Host and guest channels connected to each other, handshake not done."""
    host_streams, guest_streams = await open_stream_pair()
    host = HostChannel.from_streams(*host_streams, settings)
    guest = GuestChannel.from_streams(*guest_streams, settings)
    yield host, guest
    await host.close()
    await guest.close()


@pytest.fixture
async def ready_pair(
    channel_pair: tuple[HostChannel, GuestChannel],
) -> tuple[HostChannel, GuestChannel]:
    """Host and guest channels after a successful handshake."""
    host, guest = channel_pair
    await asyncio.gather(host.initialize(), guest.handshake())
    return host, guest


@pytest.fixture
async def host_and_raw_guest(
    settings: AgentSettings,
) -> AsyncGenerator[tuple[HostChannel, asyncio.StreamReader, asyncio.StreamWriter]]:
    """HostChannel whose peer is driven frame by frame by the test."""
    host_streams, (reader, writer) = await open_stream_pair()
    host = HostChannel.from_streams(*host_streams, settings)
    yield host, reader, writer
    await host.close()
    await close_raw(writer)


@pytest.fixture
async def guest_and_raw_host(
    settings: AgentSettings,
) -> AsyncGenerator[tuple[GuestChannel, asyncio.StreamReader, asyncio.StreamWriter]]:
    """GuestChannel whose peer is driven frame by frame by the test."""
    guest_streams, (reader, writer) = await open_stream_pair()
    guest = GuestChannel.from_streams(*guest_streams, settings)
    yield guest, reader, writer
    await guest.close()
    await close_raw(writer)
