"""Command-line host controller for the flatvm agent.

Usage:
    flatvm-agent /run/flatvm/editor/agent.sock --app org.gnome.gedit
    flatvm-agent agent.sock --app editor --share app_dir:shareddir0:/home/u/Documents
    flatvm-agent agent.sock --app editor --share-ro system_dir:shareddir1:/var/lib/flatpak

Connects to a running VM's agent socket, performs the handshake, mounts the
given shares, launches the application and prints guest events as JSON lines
until the application exits or the guest closes the channel.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from flatvm_agent import __version__
from flatvm_agent._logging import configure_logging
from flatvm_agent.agent_channel import HostChannel
from flatvm_agent.agent_protocol import AppExitCodeMessage, ClosedMessage
from flatvm_agent.exceptions import (
    AgentError,
    AgentTimeoutError,
    CommandFailedError,
    ConnectTimeoutError,
    ensure_success,
)
from flatvm_agent.models import SharedDirDescriptor, SharedDirKind
from flatvm_agent.settings import AgentSettings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_COMMAND_FAILED = 3
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_AGENT_ERROR = 125

# Short spellings accepted by --share / --share-ro
KIND_ALIASES: dict[str, SharedDirKind] = {
    "system": SharedDirKind.SYSTEM_DIR,
    "user": SharedDirKind.USER_DIR,
    "app": SharedDirKind.APP_DIR,
}


def parse_share(value: str, owner_app: str, *, read_only: bool) -> SharedDirDescriptor:
    """Parse a KIND:TAG:PATH share specification.

    The path is everything after the second colon, so it may contain colons.

    Raises:
        click.BadParameter: If the format or kind is invalid
    """
    param_hint = "'--share-ro'" if read_only else "'--share'"
    parts = value.split(":", 2)
    if len(parts) != 3 or not all(parts):
        raise click.BadParameter(
            f"Invalid share: '{value}'. Use KIND:TAG:PATH format.",
            param_hint=param_hint,
        )
    kind_name, tag, path = parts
    kind_name = kind_name.lower()
    try:
        kind = KIND_ALIASES.get(kind_name) or SharedDirKind(kind_name)
    except ValueError as exc:
        valid = ", ".join([k.value for k in SharedDirKind] + list(KIND_ALIASES))
        raise click.BadParameter(
            f"Unknown share kind '{kind_name}' (valid: {valid})",
            param_hint=param_hint,
        ) from exc
    return SharedDirDescriptor(
        kind=kind,
        owner_app=owner_app,
        source_path=path,
        mount_tag=tag,
        read_only=read_only,
    )


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


async def run_session(
    socket_path: Path,
    app: str,
    as_user: bool,
    desktop_session: bool,
    shares: list[SharedDirDescriptor],
    settings: AgentSettings,
) -> int:
    """Drive one controller session and return the CLI exit code.

    Exit code is the application's exit code when the guest reports one.
    """
    try:
        async with await HostChannel.connect(socket_path, settings) as host:
            version = await host.initialize()
            click.echo(click.style(f"Guest agent ready (protocol {version})", dim=True), err=True)

            for share in shares:
                ensure_success(await host.request_mount(share), "mount")

            ensure_success(await host.request_run(app, as_user, desktop_session), "run")

            async for event in host.events():
                if isinstance(event, ClosedMessage):
                    break
                click.echo(event.model_dump_json(by_alias=True))
                if isinstance(event, AppExitCodeMessage):
                    return event.code

        click.echo(
            format_error(
                "Guest agent disconnected",
                "The guest closed the channel before reporting an exit code.",
                ["Check the guest agent logs inside the VM"],
            ),
            err=True,
        )
        return EXIT_AGENT_ERROR

    except CommandFailedError as e:
        click.echo(
            format_error(
                "Command rejected by guest",
                f"{e.message}.",
                ["Check that the mount tag matches the VM's shared directory configuration"]
                if e.command == "mount"
                else ["Check that the application is installed in the guest"],
            ),
            err=True,
        )
        return EXIT_COMMAND_FAILED

    except ConnectTimeoutError as e:
        click.echo(
            format_error(
                "Cannot reach guest agent",
                e.message,
                ["Check that the VM is running", "Check the socket path"],
            ),
            err=True,
        )
        return EXIT_AGENT_ERROR

    except AgentTimeoutError as e:
        click.echo(
            format_error(
                "Guest agent timed out",
                e.message,
                ["Increase the timeout with -t/--timeout"],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except AgentError as e:
        click.echo(
            format_error(
                "Agent channel error",
                e.message,
                ["The guest agent exited or is misbehaving; restart the VM"],
            ),
            err=True,
        )
        return EXIT_AGENT_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("socket_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("-a", "--app", required=True, help="Application to launch in the guest")
@click.option("--user/--root", "as_user", default=True, show_default=True, help="Run as the unprivileged guest user")
@click.option(
    "--desktop-session/--no-desktop-session",
    default=True,
    show_default=True,
    help="Start a desktop session bus before the application",
)
@click.option("--owner", help="Owner application recorded in shares (default: --app)")
@click.option("--share", "shares", multiple=True, metavar="KIND:TAG:PATH", help="Read-write share (repeatable)")
@click.option("--share-ro", "ro_shares", multiple=True, metavar="KIND:TAG:PATH", help="Read-only share (repeatable)")
@click.option("-t", "--timeout", type=float, help="Handshake/command timeout in seconds (default: wait forever)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="flatvm-agent")
def main(
    socket_path: Path,
    app: str,
    as_user: bool,
    desktop_session: bool,
    owner: str | None,
    shares: tuple[str, ...],
    ro_shares: tuple[str, ...],
    timeout: float | None,
    verbose: bool,
    quiet: bool,
) -> NoReturn:
    """Launch an application inside a VM through its agent socket.

    SOCKET_PATH is the host end of the VM's agent virtio-serial channel.

    Share kinds: system_dir, user_dir, app_dir (or system, user, app).

    Examples:

    \b
      flatvm-agent agent.sock -a org.gnome.gedit
      flatvm-agent agent.sock -a editor --share app:shareddir0:/home/u/Documents
      flatvm-agent agent.sock -a editor --root --no-desktop-session
    """
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)

    if not app:
        raise click.UsageError("Application name must not be empty.")
    owner_app = owner or app
    try:
        descriptors = [parse_share(s, owner_app, read_only=False) for s in shares]
        descriptors += [parse_share(s, owner_app, read_only=True) for s in ro_shares]
    except click.BadParameter as exc:
        raise click.UsageError(str(exc)) from exc

    if timeout is not None and timeout <= 0:
        raise click.UsageError("Timeout must be positive.")
    settings = AgentSettings() if timeout is None else AgentSettings(request_timeout=timeout)

    exit_code = asyncio.run(
        run_session(
            socket_path=socket_path,
            app=app,
            as_user=as_user,
            desktop_session=desktop_session,
            shares=descriptors,
            settings=settings,
        )
    )

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
