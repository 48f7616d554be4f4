"""flatvm-agent: control channel between a VM controller and its guest agent.

Host side (controller):
    ```python
    from flatvm_agent import HostChannel, SharedDirDescriptor, SharedDirKind

    async with await HostChannel.connect("/run/flatvm/editor/agent.sock") as host:
        version = await host.initialize()
        await host.request_mount(
            SharedDirDescriptor(
                kind=SharedDirKind.APP_DIR,
                owner_app="editor",
                source_path="/home/u/Documents",
                mount_tag="shareddir0",
            )
        )
        await host.request_run("editor", as_user=True, start_desktop_session=True)
        async for event in host.events():
            print(event)
    ```

Guest side (in-VM agent):
    ```python
    from flatvm_agent import GuestChannel, MountRequest

    async with await GuestChannel.open("/dev/virtio-ports/org.flatvm.agent") as guest:
        await guest.handshake()
        while True:
            message = await guest.poll_event()
            if isinstance(message, MountRequest):
                await guest.acknowledge(mount(message.shared_dir))
            ...
    ```
"""

from flatvm_agent.agent_channel import GuestChannel, HostChannel
from flatvm_agent.agent_protocol import (
    AckMessage,
    AppExitCodeMessage,
    ClipboardEventMessage,
    ClosedMessage,
    DesktopNotificationMessage,
    MountRequest,
    ReadyMessage,
    RunRequest,
    decode_frame,
    encode_frame,
)
from flatvm_agent.dispatcher import ChannelState
from flatvm_agent.exceptions import (
    AgentError,
    AgentTimeoutError,
    CommandFailedError,
    ConnectTimeoutError,
    PeerClosedError,
    ProtocolError,
    TransportError,
    ensure_success,
)
from flatvm_agent.models import SharedDirDescriptor, SharedDirKind
from flatvm_agent.settings import AgentSettings

__all__ = [
    "AckMessage",
    "AgentError",
    "AgentSettings",
    "AgentTimeoutError",
    "AppExitCodeMessage",
    "ChannelState",
    "ClipboardEventMessage",
    "ClosedMessage",
    "CommandFailedError",
    "ConnectTimeoutError",
    "DesktopNotificationMessage",
    "GuestChannel",
    "HostChannel",
    "MountRequest",
    "PeerClosedError",
    "ProtocolError",
    "ReadyMessage",
    "RunRequest",
    "SharedDirDescriptor",
    "SharedDirKind",
    "TransportError",
    "decode_frame",
    "encode_frame",
    "ensure_success",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("flatvm-agent")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
