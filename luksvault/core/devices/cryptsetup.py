"""cryptsetup / mount backed device operations.

Runs the system tools as subprocesses:
- key material goes over stdin (``--key-file=-``)
- when two keys are needed at once (luksAddKey) both are written to
  ephemeral owner-only files that are shredded on every exit path
- exit status 2 from cryptsetup means "no usable key" and maps to
  AuthenticationFailed; any other non-zero status is a DeviceError
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Optional

from luksvault.core.errors import AuthenticationFailed, DeviceError
from luksvault.core.registry import CipherSpec
from luksvault.core.vault.ephemeral import ephemeral_key_file
from .base import DeviceBackend

logger = logging.getLogger(__name__)

# cryptsetup exit code for "no key available with this passphrase"
EXIT_NO_KEY = 2

# LUKS1: "Key Slot 3: ENABLED"   LUKS2: "  3: luks2"
LUKS1_SLOT_RE = re.compile(r"^Key Slot (\d+): ENABLED", re.MULTILINE)
LUKS2_SLOT_RE = re.compile(r"^\s+(\d+): luks2", re.MULTILINE)


class CryptsetupBackend(DeviceBackend):
    """Device backend driving cryptsetup, mount and umount."""

    name = "cryptsetup"

    def __init__(
        self,
        ephemeral_dir: str,
        cryptsetup_path: str = "cryptsetup",
        mount_path: str = "mount",
        umount_path: str = "umount",
        proc_root: str = "/proc",
    ):
        self.ephemeral_dir = ephemeral_dir
        self.cryptsetup = cryptsetup_path
        self.mount_bin = mount_path
        self.umount_bin = umount_path
        self.proc_root = Path(proc_root)

    async def _run(self, *args: str, stdin: bytes | None = None) -> tuple[int, str, str]:
        logger.debug(f"exec: {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise DeviceError(f"Executable not found: {args[0]} ({e})")
        stdout, stderr = await proc.communicate(stdin)
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def _cryptsetup(self, *args: str, stdin: bytes | None = None, auth: bool = False) -> str:
        rc, out, err = await self._run(self.cryptsetup, *args, stdin=stdin)
        if rc == 0:
            return out
        if auth and rc == EXIT_NO_KEY:
            raise AuthenticationFailed("No key slot accepted the supplied key")
        raise DeviceError(f"cryptsetup {args[0]} failed (exit {rc}): {err.strip()}")

    # ==================== Header / slots ====================

    async def device_exists(self, device_id: str) -> bool:
        if device_id.startswith("UUID="):
            device_id = f"/dev/disk/by-uuid/{device_id[5:]}"
        return os.path.exists(device_id)

    async def is_luks(self, device_id: str) -> bool:
        rc, _, _ = await self._run(self.cryptsetup, "isLuks", device_id)
        return rc == 0

    async def format(self, device_id: str, cipher: CipherSpec, key: bytes, slot: int = 0) -> None:
        await self._cryptsetup(
            "luksFormat", "--batch-mode",
            "--type", "luks2",
            "--cipher", cipher.algorithm,
            "--key-size", str(cipher.key_size),
            "--hash", cipher.hash,
            "--pbkdf", "pbkdf2",
            "--pbkdf-force-iterations", str(cipher.kdf_iterations),
            "--key-slot", str(slot),
            "--key-file=-",
            device_id,
            stdin=key,
        )
        logger.info(f"Formatted {device_id} with {cipher.algorithm}")

    async def used_slots(self, device_id: str) -> set[int]:
        dump = await self._cryptsetup("luksDump", device_id)
        slots = {int(m) for m in LUKS1_SLOT_RE.findall(dump)}
        slots.update(int(m) for m in LUKS2_SLOT_RE.findall(dump))
        return slots

    async def add_key(self, device_id: str, existing_key: bytes, new_key: bytes, slot: int) -> None:
        with ephemeral_key_file(self.ephemeral_dir, existing_key) as existing_path, \
                ephemeral_key_file(self.ephemeral_dir, new_key) as new_path:
            await self._cryptsetup(
                "luksAddKey", "--batch-mode",
                "--key-slot", str(slot),
                "--key-file", existing_path,
                device_id, new_path,
                auth=True,
            )

    async def test_key(self, device_id: str, key: bytes, slot: Optional[int] = None) -> bool:
        args = [self.cryptsetup, "open", "--test-passphrase", "--key-file=-"]
        if slot is not None:
            args += ["--key-slot", str(slot)]
        args.append(device_id)
        rc, _, err = await self._run(*args, stdin=key)
        if rc == 0:
            return True
        if rc == EXIT_NO_KEY:
            return False
        raise DeviceError(f"cryptsetup test-passphrase failed (exit {rc}): {err.strip()}")

    async def kill_slot(self, device_id: str, slot: int, authorizing_key: Optional[bytes] = None) -> None:
        if authorizing_key is None:
            await self._cryptsetup("luksKillSlot", "--batch-mode", device_id, str(slot))
        else:
            await self._cryptsetup(
                "luksKillSlot", "--key-file=-", device_id, str(slot),
                stdin=authorizing_key, auth=True,
            )

    # ==================== Mapping ====================

    async def open(self, device_id: str, mapper_name: str, key: bytes) -> None:
        await self._cryptsetup(
            "open", "--type", "luks", "--key-file=-", device_id, mapper_name,
            stdin=key, auth=True,
        )

    async def close(self, mapper_name: str) -> None:
        await self._cryptsetup("close", mapper_name)

    async def is_open(self, mapper_name: str) -> bool:
        rc, _, _ = await self._run(self.cryptsetup, "status", mapper_name)
        return rc == 0

    # ==================== Filesystem ====================

    async def mount(self, mapper_name: str, mount_point: str) -> None:
        os.makedirs(mount_point, exist_ok=True)
        rc, _, err = await self._run(self.mount_bin, self.mapper_path(mapper_name), mount_point)
        if rc != 0:
            raise DeviceError(f"mount failed (exit {rc}): {err.strip()}")

    async def unmount(self, mount_point: str, force: bool = False) -> None:
        args = [self.umount_bin, "--lazy", mount_point] if force else [self.umount_bin, mount_point]
        rc, _, err = await self._run(*args)
        if rc != 0:
            raise DeviceError(f"umount failed (exit {rc}): {err.strip()}")

    async def is_mounted(self, mount_point: str) -> bool:
        target = os.path.realpath(mount_point)
        mounts = self.proc_root / "mounts"
        try:
            text = await asyncio.to_thread(mounts.read_text)
        except OSError as e:
            raise DeviceError(f"Cannot read {mounts}: {e}")
        for line in text.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1].replace("\\040", " ") == target:
                return True
        return False

    async def open_handles(self, mount_point: str) -> int:
        return await asyncio.to_thread(self._count_handles, os.path.realpath(mount_point))

    def _count_handles(self, target: str) -> int:
        prefix = target.rstrip("/") + "/"
        count = 0
        for pid_dir in self.proc_root.iterdir():
            if not pid_dir.name.isdigit():
                continue
            fd_dir = pid_dir / "fd"
            try:
                fds = list(fd_dir.iterdir())
            except OSError:
                # Process exited or is not ours to inspect
                continue
            for fd in fds:
                try:
                    link = os.readlink(fd)
                except OSError:
                    continue
                if link == target or link.startswith(prefix):
                    count += 1
        return count

    # ==================== Header backup ====================

    async def header_backup(self, device_id: str, dest_path: str) -> None:
        await self._cryptsetup(
            "luksHeaderBackup", device_id, "--header-backup-file", dest_path,
        )

    async def header_restore(self, device_id: str, src_path: str) -> None:
        await self._cryptsetup(
            "luksHeaderRestore", "--batch-mode", device_id, "--header-backup-file", src_path,
        )
