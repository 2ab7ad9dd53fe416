"""File-based key vault.

One JSON record per (volume, slot):

    <key_store_dir>/<volume-digest>/slot-<n>.json
    {"device_id", "slot", "encrypted_key", "salt", "created", "purpose",
     "creator", "last_used", "scheduled_rotation"}

Directories are 0700 and records 0600. Records are written to a
temporary file in the same directory and renamed into place, so a crash
never leaves a half-written record. Only sealed material is ever written.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from luksvault.core.errors import SlotNotFound, VaultIOError
from .base import KeySlot, KeyVault, VaultConfig

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


def _volume_dirname(device_id: str) -> str:
    # Device identities contain '/' and '='; hash them into a safe name
    return hashlib.sha256(device_id.encode("utf-8")).hexdigest()[:32]


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class FileKeyVault(KeyVault):
    """Key vault persisting sealed slot keys as owner-only JSON files."""

    def __init__(self, config: VaultConfig):
        super().__init__(config)
        if not config.path:
            raise VaultIOError("File key vault requires a storage path")
        self.root = Path(config.path)

    async def initialize(self) -> None:
        await asyncio.to_thread(self._ensure_dir, self.root)
        logger.info(f"File key vault ready at {self.root}")

    def _ensure_dir(self, path: Path) -> None:
        try:
            path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            os.chmod(path, DIR_MODE)
        except OSError as e:
            raise VaultIOError(f"Cannot prepare key store directory {path}: {e}")

    def _slot_path(self, device_id: str, slot: int) -> Path:
        return self.root / _volume_dirname(device_id) / f"slot-{slot}.json"

    # ==================== Serialization ====================

    @staticmethod
    def _to_json(record: KeySlot) -> dict:
        return {
            "device_id": record.device_id,
            "slot": record.slot,
            "encrypted_key": base64.b64encode(record.encrypted_key).decode("ascii"),
            "salt": base64.b64encode(record.salt).decode("ascii"),
            "created": record.created_at.isoformat(),
            "purpose": record.purpose,
            "creator": record.creator,
            "last_used": record.last_used.isoformat() if record.last_used else None,
            "scheduled_rotation": (
                record.scheduled_rotation.isoformat() if record.scheduled_rotation else None
            ),
        }

    @staticmethod
    def _from_json(data: dict) -> KeySlot:
        return KeySlot(
            device_id=data["device_id"],
            slot=int(data["slot"]),
            encrypted_key=base64.b64decode(data["encrypted_key"]),
            salt=base64.b64decode(data["salt"]),
            created_at=datetime.fromisoformat(data["created"]),
            purpose=data.get("purpose", "primary"),
            creator=data.get("creator", "system"),
            last_used=_dt(data.get("last_used")),
            scheduled_rotation=_dt(data.get("scheduled_rotation")),
        )

    # ==================== Sync I/O ====================

    def _write(self, record: KeySlot) -> None:
        path = self._slot_path(record.device_id, record.slot)
        self._ensure_dir(path.parent)
        payload = json.dumps(self._to_json(record), indent=2).encode("utf-8")
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".slot-", suffix=".tmp")
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise VaultIOError(f"Failed to write key slot record {path}: {e}")

    def _read(self, device_id: str, slot: int) -> KeySlot:
        path = self._slot_path(device_id, slot)
        if not path.exists():
            raise SlotNotFound(f"No key slot {slot} for {device_id}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise VaultIOError(f"Failed to read key slot record {path}: {e}")
        return self._from_json(data)

    def _remove(self, device_id: str, slot: int) -> None:
        path = self._slot_path(device_id, slot)
        if not path.exists():
            raise SlotNotFound(f"No key slot {slot} for {device_id}")
        try:
            path.unlink()
            if not any(path.parent.iterdir()):
                path.parent.rmdir()
        except OSError as e:
            raise VaultIOError(f"Failed to delete key slot record {path}: {e}")

    def _list(self, device_id: str) -> list[KeySlot]:
        directory = self.root / _volume_dirname(device_id)
        if not directory.exists():
            return []
        records = []
        for path in directory.glob("slot-*.json"):
            try:
                records.append(self._from_json(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                raise VaultIOError(f"Failed to read key slot record {path}: {e}")
        return sorted(records, key=lambda r: r.slot)

    # ==================== Interface ====================

    async def store(self, record: KeySlot) -> None:
        await asyncio.to_thread(self._write, record)

    async def load(self, device_id: str, slot: int) -> KeySlot:
        return await asyncio.to_thread(self._read, device_id, slot)

    async def delete(self, device_id: str, slot: int) -> None:
        await asyncio.to_thread(self._remove, device_id, slot)

    async def list_slots(self, device_id: str) -> list[KeySlot]:
        return await asyncio.to_thread(self._list, device_id)
