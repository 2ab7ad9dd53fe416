"""Header Backup Manager.

Snapshots and restores LUKS header metadata for disaster recovery.

Layout:
    <backup_dir>/<volume>/<volume>-<timestamp>.hdr    header image (0400)
    <backup_dir>/<volume>/<volume>-<timestamp>.json   sidecar manifest (0400)

The manifest carries the format version, the SHA-256 checksum of the
header image, its size and the creation time. Backups are never modified
after they are written; retention pruning removes the oldest ones, and only
after a new backup has succeeded.

Restore is destructive and never triggered by automated policy:
- refused without explicit confirmation
- refused for unsupported format versions or another volume's backup
- refused on checksum mismatch
- refused unless the volume is LOCKED
"""

import asyncio
import hashlib
import json
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from luksvault.core.audit import AuditStore
from luksvault.core.devices import DeviceBackend
from luksvault.core.errors import (
    BackupIntegrityError,
    BackupNotFound,
    Busy,
    DeviceNotFound,
    IncompatibleBackup,
    LuksVaultError,
    RestoreNotConfirmed,
    VolumeNotFound,
)
from luksvault.core.locks import VolumeLocks
from luksvault.core.logging import get_logger, log_operation
from luksvault.core.metrics import HEADER_BACKUPS_TOTAL
from luksvault.core.notifications import EventKind, NotificationEvent, Notifier
from luksvault.core.registry import EncryptedVolume, VolumeRegistry
from luksvault.core.tasks import PeriodicTask
from luksvault.core.unlock_engine import UnlockEngine, VolumeState

logger = get_logger(__name__)

# Header backup format version
FORMAT_VERSION = 1
SUPPORTED_FORMAT_VERSIONS = frozenset({FORMAT_VERSION})

HEADER_SUFFIX = ".hdr"
MANIFEST_SUFFIX = ".json"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


@dataclass
class HeaderBackup:
    """A header snapshot and its manifest."""
    device_id: str
    created_at: datetime
    path: str
    format_version: int
    checksum: str
    size_bytes: int
    warnings: list[str] = field(default_factory=list, compare=False)

    @property
    def manifest_path(self) -> str:
        return manifest_path_for(self.path)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("warnings")
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HeaderBackup":
        return cls(
            device_id=data["device_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            path=data["path"],
            format_version=int(data["format_version"]),
            checksum=data["checksum"],
            size_bytes=int(data["size_bytes"]),
        )


def manifest_path_for(header_path: str) -> str:
    return str(Path(header_path).with_suffix(MANIFEST_SUFFIX))


def volume_slug(device_id: str) -> str:
    """File-system safe name for a device identity."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", device_id).strip("_")
    return slug or "volume"


def _sha256_file(path: str) -> tuple[str, int]:
    digest = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


class HeaderBackupManager:
    """Creates, lists, prunes and restores header backups.

    Usage:
        manager = HeaderBackupManager(registry, backend, locks, engine, "/var/lib/luksvault/header-backups")
        backup = await manager.backup("/dev/sda2")
        ...
        await manager.restore("/dev/sda2", backup, confirm=True)
    """

    def __init__(
        self,
        registry: VolumeRegistry,
        backend: DeviceBackend,
        locks: VolumeLocks,
        engine: UnlockEngine,
        backup_dir: str,
        retention: int = 5,
        notifier: Notifier | None = None,
        audit: AuditStore | None = None,
    ):
        if retention < 1:
            raise ValueError("retention must be >= 1")
        self.registry = registry
        self.backend = backend
        self.locks = locks
        self.engine = engine
        self.backup_dir = Path(backup_dir)
        self.retention = retention
        self.notifier = notifier or Notifier()
        self.audit = audit

    def _volume_dir(self, device_id: str) -> Path:
        return self.backup_dir / volume_slug(device_id)

    async def _volume(self, device_id: str) -> EncryptedVolume:
        try:
            return await self.registry.lookup(device_id)
        except VolumeNotFound:
            raise DeviceNotFound(f"Volume not registered: {device_id}")

    # ==================== Backup ====================

    async def backup(self, device_id: str, actor: str = "system") -> HeaderBackup:
        """Snapshot the header of a registered volume.

        Raises:
            DeviceNotFound: Volume not registered or block device missing
            Busy: Another operation holds the volume
        """
        volume = await self._volume(device_id)
        async with self.locks.hold(device_id, "header_backup"):
            return await self.snapshot(volume, actor=actor)

    async def snapshot(self, volume: EncryptedVolume, actor: str = "system") -> HeaderBackup:
        """Write a new backup. Caller holds the volume lock."""
        device_id = volume.device_id
        if not await self.backend.device_exists(device_id):
            raise DeviceNotFound(f"Block device not present: {device_id}")

        directory = self._volume_dir(device_id)
        await asyncio.to_thread(directory.mkdir, 0o700, True, True)
        created_at = datetime.now(timezone.utc)
        stem = f"{volume_slug(device_id)}-{created_at.strftime(TIMESTAMP_FORMAT)}"
        header_path = directory / f"{stem}{HEADER_SUFFIX}"

        try:
            await self.backend.header_backup(device_id, str(header_path))
            checksum, size = await asyncio.to_thread(_sha256_file, str(header_path))
            backup = HeaderBackup(
                device_id=device_id,
                created_at=created_at,
                path=str(header_path),
                format_version=FORMAT_VERSION,
                checksum=checksum,
                size_bytes=size,
            )
            await asyncio.to_thread(self._write_manifest, backup)
        except BaseException:
            HEADER_BACKUPS_TOTAL.labels(operation="backup", status="error").inc()
            await asyncio.to_thread(self._discard, header_path)
            raise

        HEADER_BACKUPS_TOTAL.labels(operation="backup", status="success").inc()
        logger.info("Header backed up", device_id=device_id, path=backup.path, checksum=checksum[:16])

        pruned = await self.prune(device_id)
        backup.warnings = await self.notifier.emit(NotificationEvent(
            EventKind.HEADER_BACKED_UP,
            device_id,
            actor=actor,
            details={"path": backup.path, "checksum": checksum, "pruned": len(pruned)},
        ))
        if self.audit:
            await self.audit.record(
                "header_backup", "success", device_id=device_id, actor=actor,
                details={"path": backup.path, "checksum": checksum},
            )
        return backup

    def _write_manifest(self, backup: HeaderBackup) -> None:
        os.chmod(backup.path, 0o400)
        manifest = backup.manifest_path
        fd = os.open(manifest, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o400)
        with os.fdopen(fd, "w") as f:
            json.dump(backup.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _discard(header_path: Path) -> None:
        for path in (header_path, Path(manifest_path_for(str(header_path)))):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    # ==================== Listing / retention ====================

    async def list_backups(self, device_id: str) -> list[HeaderBackup]:
        """Backups of a volume, newest first."""
        return await asyncio.to_thread(self._list, device_id)

    def _list(self, device_id: str) -> list[HeaderBackup]:
        directory = self._volume_dir(device_id)
        if not directory.exists():
            return []
        backups = []
        for manifest in directory.glob(f"*{MANIFEST_SUFFIX}"):
            try:
                backup = HeaderBackup.from_dict(json.loads(manifest.read_text()))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable backup manifest", path=str(manifest), error=str(e))
                continue
            if backup.device_id == device_id:
                backups.append(backup)
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    async def prune(self, device_id: str) -> list[HeaderBackup]:
        """Delete the oldest backups beyond the retention count."""
        backups = await self.list_backups(device_id)
        expired = backups[self.retention:]
        for backup in expired:
            await asyncio.to_thread(self._discard, Path(backup.path))
            logger.info("Pruned header backup", device_id=device_id, path=backup.path)
        return expired

    async def load_backup(self, path: str) -> HeaderBackup:
        """Read a backup's manifest given the header or manifest path.

        Raises:
            BackupNotFound: Missing header image or manifest
            IncompatibleBackup: Manifest cannot be parsed
        """
        header_path = str(Path(path).with_suffix(HEADER_SUFFIX))
        manifest = manifest_path_for(header_path)
        if not os.path.exists(header_path) or not os.path.exists(manifest):
            raise BackupNotFound(f"No header backup at {path}")
        try:
            data = json.loads(await asyncio.to_thread(Path(manifest).read_text))
            return HeaderBackup.from_dict(data)
        except (ValueError, KeyError) as e:
            raise IncompatibleBackup(f"Unreadable backup manifest {manifest}: {e}")

    # ==================== Restore ====================

    async def restore(
        self,
        device_id: str,
        backup: Union[HeaderBackup, str],
        confirm: bool = False,
        actor: str = "operator",
    ) -> HeaderBackup:
        """Overwrite the volume header from a backup.

        Raises:
            RestoreNotConfirmed: ``confirm`` not set
            DeviceNotFound: Volume not registered
            BackupNotFound: Backup files missing
            IncompatibleBackup: Unsupported format or another volume's backup
            BackupIntegrityError: Checksum mismatch
            Busy: Volume not LOCKED, or another operation holds it
        """
        if not confirm:
            raise RestoreNotConfirmed(
                f"Restoring the header of {device_id} overwrites all key slots; confirmation required"
            )
        volume = await self._volume(device_id)
        if isinstance(backup, str):
            backup = await self.load_backup(backup)

        try:
            await self._validate(volume, backup)
            async with self.locks.hold(device_id, "header_restore"):
                state = await self.engine.state(device_id)
                if state != VolumeState.LOCKED:
                    raise Busy(f"{device_id} must be locked before restoring its header (is {state.value})")
                await self.backend.header_restore(device_id, backup.path)
        except LuksVaultError as e:
            HEADER_BACKUPS_TOTAL.labels(operation="restore", status="error").inc()
            if self.audit:
                await self.audit.record(
                    "header_restore", "failure", device_id=device_id, actor=actor,
                    details={"path": backup.path, "error": e.kind},
                )
            raise

        HEADER_BACKUPS_TOTAL.labels(operation="restore", status="success").inc()
        logger.warning("Header restored", device_id=device_id, path=backup.path, actor=actor)
        backup.warnings = await self.notifier.emit(NotificationEvent(
            EventKind.HEADER_RESTORED,
            device_id,
            actor=actor,
            details={"path": backup.path, "backup_created_at": backup.created_at.isoformat()},
        ))
        if self.audit:
            await self.audit.record(
                "header_restore", "success", device_id=device_id, actor=actor,
                details={"path": backup.path, "checksum": backup.checksum},
            )
        return backup

    async def _validate(self, volume: EncryptedVolume, backup: HeaderBackup) -> None:
        if backup.format_version not in SUPPORTED_FORMAT_VERSIONS:
            raise IncompatibleBackup(
                f"Backup format version {backup.format_version} is not supported "
                f"(supported: {', '.join(str(v) for v in sorted(SUPPORTED_FORMAT_VERSIONS))})"
            )
        if backup.device_id != volume.device_id:
            raise IncompatibleBackup(
                f"Backup belongs to {backup.device_id}, not {volume.device_id}"
            )
        if not os.path.exists(backup.path):
            raise BackupNotFound(f"Header image missing: {backup.path}")
        checksum, size = await asyncio.to_thread(_sha256_file, backup.path)
        if checksum != backup.checksum or size != backup.size_bytes:
            raise BackupIntegrityError(f"Checksum mismatch for {backup.path}: backup may be corrupted")

    # ==================== Periodic ====================

    @log_operation("backup_all")
    async def backup_all(self) -> list[HeaderBackup]:
        """Back up every registered volume; failures are logged and skipped."""
        results = []
        for volume in await self.registry.list():
            try:
                results.append(await self.backup(volume.device_id))
            except LuksVaultError as e:
                logger.warning("Scheduled header backup skipped", device_id=volume.device_id, error=e.message)
        return results

    def run_periodic(self, interval_seconds: float, run_immediately: bool = False) -> PeriodicTask:
        """Start the periodic backup task."""
        task = PeriodicTask("header-backup", interval_seconds, self.backup_all, run_immediately)
        task.start()
        return task
