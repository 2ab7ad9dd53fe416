#!/usr/bin/env python3
"""LuksVault command-line interface.

Usage:
    luksvault register /dev/sda2 --mount-point /srv/data --rotation-interval-days 90
    luksvault enroll /dev/sda2 --format --passphrase-file /root/vault.pass
    luksvault unlock /dev/sda2 --mount
    luksvault rotate /dev/sda2 --slot 0
    luksvault backup /dev/sda2
    luksvault restore /dev/sda2 /var/lib/luksvault/header-backups/dev_sda2/... --yes
    luksvault serve-remote --until-unlocked /dev/sda2
    luksvault remote-unlock 10.0.0.5 /dev/sda2 --identity ~/.ssh/id_ed25519
    luksvault daemon

Output is a JSON object on stdout: {"status": "ok", ...} or
{"status": "error", "kind": ..., "message": ...}. Logs go to stderr.
Passphrases are read from --passphrase-file or prompted for; they are
never accepted as arguments.

Exit Codes:
    0 - Success
    1 - Other failure (device or I/O error)
    2 - Configuration error
    3 - Invalid arguments
    4 - Authentication failed
    5 - Illegal state transition
    6 - Integrity check failed
    7 - Resource invariant would be violated
    8 - Not found
"""

import argparse
import asyncio
import getpass
import json
import os
import signal
import ssl
import sys
from typing import Any

from pydantic import ValidationError

from luksvault import __version__
from luksvault.config import Settings, get_settings
from luksvault.core.errors import LuksVaultError
from luksvault.core.logging import get_logger, setup_logging
from luksvault.core.metrics import start_metrics_server
from luksvault.core.policy import RotationPolicy
from luksvault.core.registry import CipherSpec
from luksvault.core.remote import RemoteUnlockClient, load_private_key
from luksvault.core.services import Services, build_services, read_passphrase_file
from luksvault.core.unlock_engine import VolumeState
from luksvault.core.vault import SlotPurpose

logger = get_logger("luksvault.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_ARGS = 3


# =============================================================================
# Terminal Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    @classmethod
    def disable(cls):
        """Disable colors."""
        for attr in ['RED', 'GREEN', 'YELLOW', 'CYAN', 'BOLD', 'RESET']:
            setattr(cls, attr, "")


def colored(text: str, color: str) -> str:
    return f"{color}{text}{Colors.RESET}"


# =============================================================================
# Output
# =============================================================================

def emit(result: dict[str, Any], fmt: str = "json") -> None:
    """Print a result object to stdout."""
    if fmt == "json":
        print(json.dumps(result, indent=2, default=str))
        return
    status = result.get("status")
    color = Colors.GREEN if status == "ok" else Colors.RED
    print(colored(f"{status}", color + Colors.BOLD))
    for key, value in result.items():
        if key == "status":
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        print(f"  {colored(key, Colors.CYAN)}: {value}")


def ok(**fields: Any) -> dict[str, Any]:
    return {"status": "ok", **fields}


def read_passphrase(path: str | None, prompt: str = "Vault passphrase: ", confirm: bool = False) -> str:
    """Passphrase from a file, or from the terminal."""
    if path:
        return read_passphrase_file(path)
    passphrase = getpass.getpass(prompt)
    if confirm and getpass.getpass("Repeat passphrase: ") != passphrase:
        raise ArgumentError("Passphrases do not match")
    if not passphrase:
        raise ArgumentError("Empty passphrase")
    return passphrase


def default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "operator"


class ArgumentError(Exception):
    """Invalid command-line arguments."""


class CLIParser(argparse.ArgumentParser):
    """Argument parser exiting with code 3 on usage errors."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        emit({"status": "error", "kind": "InvalidArguments", "message": message})
        sys.exit(EXIT_ARGS)


# =============================================================================
# Commands: registry
# =============================================================================

async def cmd_register(services: Services, args) -> dict:
    policy = None
    if args.rotation_interval_days is not None:
        policy = RotationPolicy(
            rotation_interval_days=args.rotation_interval_days,
            warning_days=args.warning_days,
            max_key_age_days=args.max_key_age_days,
            dual_approval_required=args.dual_approval,
            backup_before_rotate=not args.no_backup_before_rotate,
            notify_on_rotation=not args.no_notify,
            maintenance_hour=(
                args.maintenance_hour if args.maintenance_hour is not None
                else services.settings.default_maintenance_hour
            ),
        )
    volume = await services.registry.register(
        args.device,
        CipherSpec(
            algorithm=args.cipher,
            key_size=args.key_size,
            hash=args.hash,
            kdf_iterations=args.kdf_iterations,
        ),
        mount_point=args.mount_point,
        mapper_name=args.mapper_name,
        name=args.name,
        auto_unlock=args.auto_unlock,
        remote_unlock_eligible=args.remote_unlock,
        rotation_policy=policy,
    )
    await services.audit.record("register", "success", device_id=args.device, actor=args.actor)
    return ok(volume=volume.to_dict())


async def cmd_deregister(services: Services, args) -> dict:
    removed = await services.keyslots.deregister(
        args.device, actor=args.actor, decommission=args.decommission,
    )
    return ok(device_id=args.device, removed_slots=removed)


async def cmd_enroll(services: Services, args) -> dict:
    first = not await services.vault.list_slots(args.device)
    passphrase = read_passphrase(args.passphrase_file, confirm=first and not args.passphrase_file)
    authorize = None
    if args.authorize_passphrase_file:
        authorize = read_passphrase_file(args.authorize_passphrase_file)
    record = await services.keyslots.enroll(
        args.device,
        passphrase,
        purpose=args.purpose,
        creator=args.actor,
        slot=args.slot,
        format_device=args.format,
        authorize_passphrase=authorize,
    )
    return ok(slot=record.public_dict())


# =============================================================================
# Commands: unlock engine
# =============================================================================

async def cmd_unlock(services: Services, args) -> dict:
    passphrase = read_passphrase(args.passphrase_file)
    result = await services.engine.unlock(args.device, passphrase, actor=args.actor)
    state = result.state
    if args.mount:
        state = await services.engine.mount(args.device)
    return ok(**{**result.to_dict(), "state": state.value})


async def cmd_mount(services: Services, args) -> dict:
    return ok(device_id=args.device, state=(await services.engine.mount(args.device)).value)


async def cmd_unmount(services: Services, args) -> dict:
    state = await services.engine.unmount(args.device, force=args.force)
    return ok(device_id=args.device, state=state.value)


async def cmd_lock(services: Services, args) -> dict:
    if args.unmount and await services.engine.state(args.device) == VolumeState.MOUNTED:
        await services.engine.unmount(args.device, force=args.force)
    state = await services.engine.lock(args.device, actor=args.actor)
    return ok(device_id=args.device, state=state.value)


# =============================================================================
# Commands: rotation and backups
# =============================================================================

async def cmd_rotate(services: Services, args) -> dict:
    if args.passphrase_file:
        path = args.passphrase_file
        services.rotation.passphrase_provider = lambda: read_passphrase_file(path)
    elif services.rotation.passphrase_provider is None:
        passphrase = read_passphrase(None)
        services.rotation.passphrase_provider = lambda: passphrase

    if args.approve:
        result = await services.rotation.approve(args.device, args.slot, approver=args.actor)
    else:
        result = await services.rotation.rotate_now(args.device, args.slot, actor=args.actor)
    return ok(rotation=result.to_dict(), warnings=result.warnings)


async def cmd_check_rotation(services: Services, args) -> dict:
    report = await services.rotation.check_once()
    return ok(
        checked_slots=report.checked_slots,
        warned=report.warned,
        expired=report.expired,
        scheduled=report.scheduled,
        awaiting_approval=report.awaiting_approval,
        rotated=[r.to_dict() for r in report.rotated],
        errors=report.errors,
    )


async def cmd_backup(services: Services, args) -> dict:
    if args.all:
        backups = await services.backups.backup_all()
        return ok(backups=[b.to_dict() for b in backups])
    backup = await services.backups.backup(args.device, actor=args.actor)
    return ok(backup=backup.to_dict(), warnings=backup.warnings)


async def cmd_restore(services: Services, args) -> dict:
    backup = await services.backups.restore(args.device, args.backup, confirm=args.yes, actor=args.actor)
    return ok(restored=backup.to_dict(), warnings=backup.warnings)


async def cmd_status(services: Services, args) -> dict:
    volumes = [await services.registry.lookup(args.device)] if args.device else await services.registry.list()
    entries = []
    for volume in volumes:
        slots = await services.keyslots.active_slots(volume.device_id)
        backups = await services.backups.list_backups(volume.device_id)
        pending = await services.approvals.pending(volume.device_id)
        entries.append({
            **volume.to_dict(),
            "state": (await services.engine.state(volume.device_id)).value,
            "slots": [s.public_dict() for s in slots],
            "backups": [b.to_dict() for b in backups],
            "pending_approvals": [
                {"slot": p.slot, "initiator": p.initiator, "requested_at": p.requested_at}
                for p in pending
            ],
        })
    return ok(volumes=entries)


# =============================================================================
# Commands: remote unlock
# =============================================================================

async def cmd_serve_remote(services: Services, args) -> dict:
    bridge = services.build_bridge()
    try:
        if args.until_unlocked:
            await bridge.serve_until_unlocked(args.until_unlocked)
        else:
            await bridge.start()
            await wait_for_shutdown()
            await bridge.stop()
    finally:
        flushed = await bridge.audit_buffer.flush(services.audit)
    return ok(sessions=len(bridge.sessions), audit_events=flushed)


async def cmd_remote_unlock(args) -> dict:
    key = load_private_key(os.path.expanduser(args.identity))
    context = None
    if args.tls or args.ca_file:
        context = ssl.create_default_context(cafile=args.ca_file)
    async with RemoteUnlockClient(args.host, args.port, key, ssl_context=context) as client:
        if args.status:
            return ok(**(await client.status()))
        passphrase = read_passphrase(args.passphrase_file)
        response = await client.unlock(args.device, passphrase)
    if response.get("status") != "ok":
        return {"status": "error", "kind": "RemoteUnlockFailed", "message": "Remote unlock failed", **response}
    return ok(device_id=args.device)


# =============================================================================
# Command: daemon
# =============================================================================

async def wait_for_shutdown() -> None:
    """Block until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def auto_unlock(services: Services) -> list[str]:
    """Unlock and mount volumes flagged auto_unlock using the vault passphrase file."""
    provider = services.rotation.passphrase_provider
    unlocked = []
    if provider is None:
        return unlocked
    for volume in await services.registry.list():
        if not volume.auto_unlock:
            continue
        try:
            await services.engine.unlock(volume.device_id, provider(), channel="auto", actor="daemon")
            if volume.mount_point:
                await services.engine.mount(volume.device_id)
            unlocked.append(volume.device_id)
        except LuksVaultError as e:
            logger.error("Auto-unlock failed", device_id=volume.device_id, error=e.message, kind=e.kind)
    return unlocked


async def cmd_daemon(services: Services, args) -> dict:
    settings = services.settings
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port, __version__)
    unlocked = await auto_unlock(services)
    services.rotation.start(settings.rotation_check_interval_seconds)
    backup_task = services.backups.run_periodic(settings.backup_interval_seconds)
    logger.info("Daemon running", auto_unlocked=len(unlocked))
    try:
        await wait_for_shutdown()
    finally:
        await backup_task.stop()
        await services.rotation.stop()
    return ok(auto_unlocked=unlocked, backup_runs=backup_task.runs)


# =============================================================================
# Parser
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    parser = CLIParser(
        prog="luksvault",
        description="Disk encryption key lifecycle manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Register and enroll a new volume
  luksvault register /dev/sdb1 --mount-point /srv/data --rotation-interval-days 90
  luksvault enroll /dev/sdb1 --format

  # Unlock and mount
  luksvault unlock /dev/sdb1 --mount

  # Approve a rotation requested by another operator
  luksvault rotate /dev/sdb1 --slot 0 --approve
        """,
    )
    parser.add_argument("--version", action="version", version=f"luksvault {__version__}")
    parser.add_argument("--format", choices=["json", "text"], default="json", dest="output_format")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--actor", default=default_actor(), help="Operator name recorded in the audit log")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # register
    p = subparsers.add_parser("register", help="Register an encrypted volume")
    p.add_argument("device")
    p.add_argument("--name")
    p.add_argument("--cipher", default="aes-xts-plain64")
    p.add_argument("--key-size", type=int, default=512)
    p.add_argument("--hash", default="sha256")
    p.add_argument("--kdf-iterations", type=int, default=1_000_000)
    p.add_argument("--mount-point")
    p.add_argument("--mapper-name")
    p.add_argument("--auto-unlock", action="store_true")
    p.add_argument("--remote-unlock", action="store_true", help="Eligible for remote unlock")
    p.add_argument("--rotation-interval-days", type=int)
    p.add_argument("--warning-days", type=int, default=14)
    p.add_argument("--max-key-age-days", type=int, default=365)
    p.add_argument("--maintenance-hour", type=int)
    p.add_argument("--dual-approval", action="store_true")
    p.add_argument("--no-backup-before-rotate", action="store_true")
    p.add_argument("--no-notify", action="store_true")

    # deregister
    p = subparsers.add_parser("deregister", help="Remove a volume from the registry")
    p.add_argument("device")
    p.add_argument("--decommission", action="store_true", help="Remove all key slots first")

    # enroll
    p = subparsers.add_parser("enroll", help="Enroll a new key slot")
    p.add_argument("device")
    p.add_argument("--purpose", choices=[purpose.value for purpose in SlotPurpose], default=SlotPurpose.PRIMARY.value)
    p.add_argument("--slot", type=int)
    p.add_argument("--format", action="store_true", help="Initialize an empty device (destroys data)")
    p.add_argument("--passphrase-file")
    p.add_argument("--authorize-passphrase-file", help="Passphrase of an existing slot or LUKS header")

    # unlock / mount / unmount / lock
    p = subparsers.add_parser("unlock", help="Unlock a volume")
    p.add_argument("device")
    p.add_argument("--passphrase-file")
    p.add_argument("--mount", action="store_true")

    p = subparsers.add_parser("mount", help="Mount an unlocked volume")
    p.add_argument("device")

    p = subparsers.add_parser("unmount", help="Unmount a volume")
    p.add_argument("device")
    p.add_argument("--force", action="store_true")

    p = subparsers.add_parser("lock", help="Lock a volume")
    p.add_argument("device")
    p.add_argument("--unmount", action="store_true", help="Unmount first if mounted")
    p.add_argument("--force", action="store_true")

    # rotate
    p = subparsers.add_parser("rotate", help="Rotate a key slot")
    p.add_argument("device")
    p.add_argument("--slot", type=int, required=True)
    p.add_argument("--approve", action="store_true", help="Approve a pending rotation")
    p.add_argument("--passphrase-file")

    subparsers.add_parser("check-rotation", help="Run one rotation policy check")

    # backup / restore
    p = subparsers.add_parser("backup", help="Back up a volume header")
    p.add_argument("device", nargs="?")
    p.add_argument("--all", action="store_true")

    p = subparsers.add_parser("restore", help="Restore a volume header (destructive)")
    p.add_argument("device")
    p.add_argument("backup", help="Header backup or manifest path")
    p.add_argument("--yes", action="store_true", help="Confirm the destructive restore")

    # status
    p = subparsers.add_parser("status", help="Show volumes, slots and backups")
    p.add_argument("device", nargs="?")

    # remote
    p = subparsers.add_parser("serve-remote", help="Run the remote unlock bridge")
    p.add_argument("--until-unlocked", metavar="DEVICE")

    p = subparsers.add_parser("remote-unlock", help="Unlock a volume through a remote bridge")
    p.add_argument("host")
    p.add_argument("device", nargs="?")
    p.add_argument("--port", type=int, default=2222)
    p.add_argument("--identity", required=True, help="Ed25519 private key")
    p.add_argument("--passphrase-file")
    p.add_argument("--tls", action="store_true")
    p.add_argument("--ca-file")
    p.add_argument("--status", action="store_true", help="Query volume states (emergency keys)")

    subparsers.add_parser("daemon", help="Run rotation checks and periodic backups")

    return parser


COMMANDS = {
    "register": cmd_register,
    "deregister": cmd_deregister,
    "enroll": cmd_enroll,
    "unlock": cmd_unlock,
    "mount": cmd_mount,
    "unmount": cmd_unmount,
    "lock": cmd_lock,
    "rotate": cmd_rotate,
    "check-rotation": cmd_check_rotation,
    "backup": cmd_backup,
    "restore": cmd_restore,
    "status": cmd_status,
    "serve-remote": cmd_serve_remote,
    "daemon": cmd_daemon,
}


async def run(args, settings: Settings) -> dict:
    if args.command == "remote-unlock":
        if not args.status and not args.device:
            raise ArgumentError("remote-unlock needs a device unless --status is given")
        return await cmd_remote_unlock(args)
    if args.command == "backup" and not args.all and not args.device:
        raise ArgumentError("backup needs a device or --all")

    services = await build_services(settings)
    try:
        return await COMMANDS[args.command](services, args)
    finally:
        await services.close()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    if not args.command:
        parser.print_help()
        return EXIT_OK

    try:
        settings = get_settings()
    except ValidationError as e:
        emit({"status": "error", "kind": "ConfigurationError", "message": str(e)}, args.output_format)
        return EXIT_CONFIG

    setup_logging(json_output=settings.log_json, level=settings.log_level)

    try:
        result = asyncio.run(run(args, settings))
    except LuksVaultError as e:
        emit({"status": "error", **e.to_dict()}, args.output_format)
        return e.exit_code
    except ArgumentError as e:
        emit({"status": "error", "kind": "InvalidArguments", "message": str(e)}, args.output_format)
        return EXIT_ARGS
    except KeyboardInterrupt:
        emit({"status": "error", "kind": "Interrupted", "message": "Interrupted"}, args.output_format)
        return EXIT_ERROR

    emit(result, args.output_format)
    return EXIT_OK if result.get("status") == "ok" else EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
