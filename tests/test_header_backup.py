"""Tests for header backup and restore."""

import json
import os
import stat

import pytest

from luksvault.core.errors import (
    BackupIntegrityError,
    BackupNotFound,
    Busy,
    DeviceError,
    DeviceNotFound,
    IncompatibleBackup,
    RestoreNotConfirmed,
)
from luksvault.core.header_backup import (
    FORMAT_VERSION,
    HeaderBackupManager,
    volume_slug,
)
from luksvault.core.notifications import EventKind
from luksvault.core.registry import CipherSpec
from luksvault.core.unlock_engine import VolumeState
from tests.conftest import DEVICE, PASSPHRASE


def _writable(path: str) -> None:
    os.chmod(path, 0o600)


class TestBackup:
    """Test creating header backups."""

    def test_volume_slug(self):
        """Test device identities become safe file names."""
        assert volume_slug("/dev/sda2") == "dev_sda2"
        assert volume_slug("UUID=1234-abcd") == "UUID_1234-abcd"

    @pytest.mark.asyncio
    async def test_backup_writes_header_and_manifest(self, services, enrolled):
        """Test a backup produces a read-only image and manifest."""
        backup = await services.backups.backup(DEVICE, actor="alice")

        assert backup.device_id == DEVICE
        assert backup.format_version == FORMAT_VERSION
        assert len(backup.checksum) == 64
        assert backup.size_bytes == os.path.getsize(backup.path)
        assert stat.S_IMODE(os.stat(backup.path).st_mode) == 0o400
        assert stat.S_IMODE(os.stat(backup.manifest_path).st_mode) == 0o400
        assert os.path.basename(os.path.dirname(backup.path)) == "dev_sim0"

        with open(backup.manifest_path) as f:
            manifest = json.load(f)
        assert manifest["checksum"] == backup.checksum
        assert manifest["device_id"] == DEVICE

    @pytest.mark.asyncio
    async def test_backup_notifies_and_audits(self, services, enrolled):
        """Test HeaderBackedUp and an audit record."""
        backup = await services.backups.backup(DEVICE, actor="alice")

        events = services.events.of_kind(EventKind.HEADER_BACKED_UP)
        assert len(events) == 1
        assert events[0].details["path"] == backup.path
        audit = await services.audit.query(event_type="header_backup")
        assert audit[0].actor == "alice"

    @pytest.mark.asyncio
    async def test_backup_missing_device(self, services, enrolled):
        """Test backing up an absent device."""
        services.backend.remove_device(DEVICE)

        with pytest.raises(DeviceNotFound):
            await services.backups.backup(DEVICE)

    @pytest.mark.asyncio
    async def test_backup_unregistered(self, services):
        """Test backing up an unregistered device."""
        with pytest.raises(DeviceNotFound):
            await services.backups.backup("/dev/unknown")

    @pytest.mark.asyncio
    async def test_failed_backup_leaves_nothing(self, services, enrolled):
        """Test a failed snapshot leaves no partial files."""
        services.backend.inject_failure("header_backup", DeviceError("read error"))

        with pytest.raises(DeviceError):
            await services.backups.backup(DEVICE)

        assert await services.backups.list_backups(DEVICE) == []

    @pytest.mark.asyncio
    async def test_backup_all_skips_failures(self, services, enrolled):
        """Test the periodic job continues past volumes that fail."""
        await services.registry.register("/dev/detached", CipherSpec())

        backups = await services.backups.backup_all()

        assert [b.device_id for b in backups] == [DEVICE]


class TestRetention:
    """Test pruning old backups."""

    @pytest.mark.asyncio
    async def test_keeps_newest(self, services, enrolled, tmp_path):
        """Test only the newest ``retention`` backups are kept."""
        manager = HeaderBackupManager(
            services.registry,
            services.backend,
            services.locks,
            services.engine,
            backup_dir=str(tmp_path / "retention"),
            retention=2,
        )
        created = [await manager.backup(DEVICE) for _ in range(3)]

        kept = await manager.list_backups(DEVICE)

        assert [b.path for b in kept] == [created[2].path, created[1].path]
        assert not os.path.exists(created[0].path)
        assert not os.path.exists(created[0].manifest_path)

    @pytest.mark.asyncio
    async def test_retention_must_be_positive(self, services):
        """Test retention of zero is refused."""
        with pytest.raises(ValueError):
            HeaderBackupManager(
                services.registry, services.backend, services.locks, services.engine,
                backup_dir="/tmp/unused", retention=0,
            )


class TestRestore:
    """Test restoring headers."""

    @pytest.mark.asyncio
    async def test_restore_requires_confirmation(self, services, enrolled):
        """Test restore without confirmation is refused."""
        backup = await services.backups.backup(DEVICE)

        with pytest.raises(RestoreNotConfirmed):
            await services.backups.restore(DEVICE, backup)

    @pytest.mark.asyncio
    async def test_restore_recovers_damaged_header(self, services, enrolled):
        """Test a restored header opens with the vault key again."""
        backup = await services.backups.backup(DEVICE)
        services.backend.corrupt_header(DEVICE)
        assert not await services.backend.is_luks(DEVICE)

        restored = await services.backups.restore(DEVICE, backup.path, confirm=True, actor="alice")

        assert restored.checksum == backup.checksum
        assert len(services.events.of_kind(EventKind.HEADER_RESTORED)) == 1
        result = await services.engine.unlock(DEVICE, PASSPHRASE)
        assert result.state == VolumeState.UNLOCKED

    @pytest.mark.asyncio
    async def test_restore_from_manifest_path(self, services, enrolled):
        """Test the manifest path is accepted as well."""
        backup = await services.backups.backup(DEVICE)

        restored = await services.backups.restore(DEVICE, backup.manifest_path, confirm=True)

        assert restored.path == backup.path

    @pytest.mark.asyncio
    async def test_restore_refused_while_unlocked(self, services, enrolled):
        """Test an open volume is never restored."""
        backup = await services.backups.backup(DEVICE)
        await services.engine.unlock(DEVICE, PASSPHRASE)

        with pytest.raises(Busy):
            await services.backups.restore(DEVICE, backup, confirm=True)

        assert "header_restore" not in [op for op, _ in services.backend.calls]

    @pytest.mark.asyncio
    async def test_restore_checksum_mismatch(self, services, enrolled):
        """Test a modified backup is refused."""
        backup = await services.backups.backup(DEVICE)
        _writable(backup.path)
        with open(backup.path, "ab") as f:
            f.write(b" ")

        with pytest.raises(BackupIntegrityError):
            await services.backups.restore(DEVICE, backup.path, confirm=True)

        failures = await services.audit.query(event_type="header_restore", outcome="failure")
        assert failures[0].details["error"] == "BackupIntegrityError"

    @pytest.mark.asyncio
    async def test_restore_other_volume_backup(self, services, enrolled):
        """Test a backup of another volume is refused."""
        other = "/dev/sim1"
        services.backend.add_device(other)
        await services.registry.register(other, CipherSpec())
        await services.keyslots.enroll(other, PASSPHRASE, format_device=True)
        backup = await services.backups.backup(other)

        with pytest.raises(IncompatibleBackup):
            await services.backups.restore(DEVICE, backup, confirm=True)

    @pytest.mark.asyncio
    async def test_restore_unsupported_version(self, services, enrolled):
        """Test a backup from an unknown format version is refused."""
        backup = await services.backups.backup(DEVICE)
        _writable(backup.manifest_path)
        with open(backup.manifest_path) as f:
            manifest = json.load(f)
        manifest["format_version"] = 99
        with open(backup.manifest_path, "w") as f:
            json.dump(manifest, f)

        with pytest.raises(IncompatibleBackup):
            await services.backups.restore(DEVICE, backup.path, confirm=True)

    @pytest.mark.asyncio
    async def test_restore_missing_backup(self, services, enrolled, tmp_path):
        """Test restoring from a path with no backup."""
        with pytest.raises(BackupNotFound):
            await services.backups.restore(DEVICE, str(tmp_path / "nothing.hdr"), confirm=True)
