"""Command-line interface for nest-vm.

Usage:
    nest-vm create test-vm --cpu 2 --memory 2048 --disk 10
    nest-vm create win11 --template windows10 --media Win11_23H2.iso
    nest-vm start test-vm
    nest-vm logs test-vm
    nest-vm list
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click

from nest_vm import __version__
from nest_vm._logging import configure_logging
from nest_vm.exceptions import (
    CommandTimeoutError,
    InvalidConfigError,
    MediaError,
    NestVmError,
    PrivilegeError,
    VmAlreadyExistsError,
    VmNotFoundError,
    VmSpecValidationError,
    VmStartError,
)
from nest_vm.models import GuestProfile, NetworkMode
from nest_vm.settings import Settings
from nest_vm.vm_manager import VmController

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_VM_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _report(exc: NestVmError) -> int:  # noqa: PLR0911
    """Print ``exc`` to stderr and return the matching exit code."""
    if isinstance(exc, VmSpecValidationError):
        details = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors]
        click.echo(format_error("Invalid VM definition", exc.message, details or None), err=True)
        return EXIT_CLI_ERROR
    if isinstance(exc, VmNotFoundError):
        click.echo(format_error("VM not found", exc.message, ["List existing VMs with: nest-vm list"]), err=True)
        return EXIT_CLI_ERROR
    if isinstance(exc, VmAlreadyExistsError):
        click.echo(
            format_error("VM already exists", exc.message, ["Pick another name", "Delete it first: nest-vm delete"]),
            err=True,
        )
        return EXIT_CLI_ERROR
    if isinstance(exc, InvalidConfigError):
        path = exc.context.get("path") or "config.json"
        click.echo(
            format_error("Invalid stored VM config", exc.message, [f"Fix or remove the offending keys in {path}"]),
            err=True,
        )
        return EXIT_CLI_ERROR
    if isinstance(exc, MediaError):
        click.echo(format_error("Media error", exc.message, ["List media with: nest-vm media"]), err=True)
        return EXIT_CLI_ERROR
    if isinstance(exc, PrivilegeError):
        click.echo(
            format_error("Insufficient privileges", exc.message, ["Run as root", "Or set NEST_VM_USE_SUDO=true"]),
            err=True,
        )
        return EXIT_CLI_ERROR
    if isinstance(exc, CommandTimeoutError):
        click.echo(format_error("Command timed out", exc.message), err=True)
        return EXIT_TIMEOUT
    if isinstance(exc, VmStartError):
        message = exc.message + (f"\n\n  Last log lines:\n{exc.log_tail}" if exc.log_tail else "")
        click.echo(
            format_error(
                "VM failed to start",
                message,
                ["Check that QEMU is installed: qemu-system-x86_64 --version", "Inspect the log: nest-vm logs NAME"],
            ),
            err=True,
        )
        return EXIT_VM_ERROR
    click.echo(format_error(type(exc).__name__, exc.message), err=True)
    return EXIT_VM_ERROR


def _emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _run(ctx: click.Context, operation: Callable[[VmController], Awaitable[Any]]) -> NoReturn:
    """Run ``operation`` against a controller and exit with its status."""
    settings: Settings = ctx.obj["settings"]

    async def runner() -> int:
        try:
            async with VmController(settings) as controller:
                result = await operation(controller)
        except NestVmError as e:
            return _report(e)
        if result is not None:
            _emit(result)
        return EXIT_SUCCESS

    sys.exit(asyncio.run(runner()))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="nest-vm")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Manage QEMU virtual machines.

    Configuration is read from NEST_VM_* environment variables
    (e.g. NEST_VM_VM_ROOT, NEST_VM_MEDIA_ROOT, NEST_VM_USE_SUDO).
    """
    configure_logging(level="DEBUG" if verbose else "INFO", quiet=quiet)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings()


@main.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> NoReturn:
    """List VMs with their status."""

    async def op(controller: VmController) -> list[dict[str, object]]:
        return [vm.to_dict() for vm in await controller.list_vms()]

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.option("--template", "template_id", help="Template id (see: nest-vm templates)")
@click.option("--cpu", "cpu_count", type=click.IntRange(min=1), help="vCPU count")
@click.option("--memory", "memory_mb", type=click.IntRange(min=1), help="Memory in MB")
@click.option("--disk", "disk_gb", type=click.IntRange(min=1), help="Disk size in GB")
@click.option("--media", "install_media", help="Install media file name in the media root")
@click.option("--profile", "guest_profile", type=click.Choice([p.value for p in GuestProfile]), help="Guest profile")
@click.option("--network", "network_mode", type=click.Choice([m.value for m in NetworkMode]), help="Network mode")
@click.option("--bridge", help="Bridge interface (with --network bridge)")
@click.option("--vnc/--no-vnc", "console_enabled", default=None, help="VNC console")
@click.option("--kvm/--no-kvm", "acceleration_requested", default=None, help="Request hardware acceleration")
@click.option("--cpu-model", "cpu_model_override", help="QEMU CPU model override")
@click.option("--introspection", is_flag=True, help="Attach shared memory + QMP for memory introspection")
@click.option(
    "--from-json",
    "json_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read the VM definition from a JSON file (options override it)",
)
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    network_mode: str | None,
    bridge: str | None,
    introspection: bool,
    json_file: Path | None,
    **fields: Any,
) -> NoReturn:
    """Create a VM and allocate its disk (does not start it)."""
    payload: dict[str, Any] = json.loads(json_file.read_text()) if json_file else {}
    payload["name"] = name
    payload.update({key: value for key, value in fields.items() if value is not None})
    if network_mode is not None:
        payload["network"] = {"mode": network_mode, "bridge": bridge}
    if introspection:
        payload["introspection"] = {"enabled": True}

    async def op(controller: VmController) -> dict[str, object]:
        return (await controller.create_vm(payload)).to_dict()

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.pass_context
def start(ctx: click.Context, name: str) -> NoReturn:
    """Start a VM."""

    async def op(controller: VmController) -> dict[str, object]:
        return (await controller.start_vm(name)).to_dict()

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> NoReturn:
    """Stop a VM (SIGTERM, then SIGKILL)."""

    async def op(controller: VmController) -> dict[str, object]:
        return (await controller.stop_vm(name)).to_dict()

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.pass_context
def restart(ctx: click.Context, name: str) -> NoReturn:
    """Stop then start a VM."""

    async def op(controller: VmController) -> dict[str, object]:
        return (await controller.restart_vm(name)).to_dict()

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.confirmation_option(prompt="Delete the VM, its disk and its log?")
@click.pass_context
def delete(ctx: click.Context, name: str) -> NoReturn:
    """Delete a VM directory without stopping it first."""

    async def op(controller: VmController) -> dict[str, object]:
        await controller.delete_vm(name)
        return {"name": name, "deleted": True}

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.pass_context
def status(ctx: click.Context, name: str) -> NoReturn:
    """Print a VM's status."""

    async def op(controller: VmController) -> dict[str, object]:
        return {"name": name, "status": (await controller.get_status(name)).value}

    _run(ctx, op)


@main.command()
@click.argument("name")
@click.pass_context
def logs(ctx: click.Context, name: str) -> NoReturn:
    """Print a VM's status and QEMU log."""

    async def op(controller: VmController) -> None:
        click.echo(await controller.get_logs(name))

    _run(ctx, op)


@main.command()
@click.pass_context
def templates(ctx: click.Context) -> NoReturn:
    """List built-in templates."""

    async def op(controller: VmController) -> list[dict[str, Any]]:
        return [t.model_dump(mode="json", by_alias=True) for t in controller.get_templates()]

    _run(ctx, op)


@main.command()
@click.option("--delete", "delete_name", metavar="NAME", help="Delete a media file")
@click.option("--check-macos", is_flag=True, help="Report missing macOS support files")
@click.pass_context
def media(ctx: click.Context, delete_name: str | None, check_macos: bool) -> NoReturn:
    """List, delete, or check install media."""

    async def op(controller: VmController) -> Any:
        if delete_name:
            await controller.delete_media(delete_name)
            return {"name": delete_name, "deleted": True}
        if check_macos:
            return (await controller.check_macos_media()).model_dump()
        return await controller.list_media()

    _run(ctx, op)


@main.command()
@click.pass_context
def host(ctx: click.Context) -> NoReturn:
    """Report host virtualization capabilities."""

    async def op(controller: VmController) -> dict[str, Any]:
        return (await controller.check_host()).model_dump()

    _run(ctx, op)


@main.command("install-toolkit")
@click.pass_context
def install_toolkit(ctx: click.Context) -> NoReturn:
    """Build and install the LeechCore / MemProcFS introspection toolkit."""

    async def op(controller: VmController) -> dict[str, str]:
        return {"outcome": (await controller.install_toolkit()).value}

    _run(ctx, op)


if __name__ == "__main__":
    main()
