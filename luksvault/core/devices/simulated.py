"""Simulated LUKS device backend.

An in-memory model of LUKS headers, device-mapper targets and mounts used
by the test suite and by ``dev_mode``. Slot keys are stored as salted
SHA-256 digests, so a wrong key is rejected exactly like cryptsetup would.

State can optionally be persisted to a JSON file so that separate CLI
invocations in dev mode see the same devices.

Fault injection:
    backend.inject_failure("test_key", DeviceError("flaky"))
    backend.set_open_handles("/srv/data", 3)
"""

import asyncio
import hashlib
import hmac
import json
import os
import secrets
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from luksvault.core.errors import AuthenticationFailed, DeviceError, DeviceNotFound
from luksvault.core.registry import CipherSpec
from .base import DeviceBackend

HEADER_MAGIC = "LUKS-SIM"
HEADER_VERSION = 2


@dataclass
class SimulatedDevice:
    """A block device with an optional LUKS header."""
    device_id: str
    header: Optional[dict] = None

    @property
    def slots(self) -> dict[str, dict]:
        return self.header["slots"] if self.header else {}


@dataclass
class SimulatedState:
    devices: dict[str, SimulatedDevice] = field(default_factory=dict)
    mappers: dict[str, str] = field(default_factory=dict)  # mapper -> device
    mounts: dict[str, str] = field(default_factory=dict)   # mount point -> mapper


def _digest(salt: bytes, key: bytes) -> str:
    return hashlib.sha256(salt + key).hexdigest()


class SimulatedBackend(DeviceBackend):
    """Device backend that keeps everything in memory."""

    name = "simulated"

    def __init__(self, state_path: Optional[str] = None, latency: float = 0.0):
        self.state = SimulatedState()
        self.state_path = Path(state_path) if state_path else None
        self.latency = latency
        self._failures: dict[str, BaseException] = {}
        self._handles: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        if self.state_path and self.state_path.exists():
            self._load()

    # ==================== Test helpers ====================

    def add_device(self, device_id: str) -> SimulatedDevice:
        device = self.state.devices.setdefault(device_id, SimulatedDevice(device_id))
        self._save()
        return device

    def remove_device(self, device_id: str) -> None:
        self.state.devices.pop(device_id, None)
        self._save()

    def inject_failure(self, operation: str, error: BaseException) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures[operation] = error

    def set_open_handles(self, mount_point: str, count: int) -> None:
        self._handles[mount_point] = count

    def corrupt_header(self, device_id: str) -> None:
        self._device(device_id).header = None
        self._save()

    # ==================== Internals ====================

    async def _step(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        if self.latency:
            await asyncio.sleep(self.latency)
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def _device(self, device_id: str) -> SimulatedDevice:
        device = self.state.devices.get(device_id)
        if device is None:
            raise DeviceNotFound(f"Block device not present: {device_id}")
        return device

    def _luks(self, device_id: str) -> SimulatedDevice:
        device = self._device(device_id)
        if device.header is None:
            raise DeviceError(f"{device_id} is not a LUKS device")
        return device

    def _match_slot(self, device: SimulatedDevice, key: bytes, slot: Optional[int] = None) -> Optional[int]:
        for number, entry in device.slots.items():
            if slot is not None and int(number) != slot:
                continue
            expected = entry["digest"]
            if hmac.compare_digest(expected, _digest(bytes.fromhex(entry["salt"]), key)):
                return int(number)
        return None

    def _set_slot(self, device: SimulatedDevice, slot: int, key: bytes) -> None:
        salt = secrets.token_bytes(16)
        device.header["slots"][str(slot)] = {"salt": salt.hex(), "digest": _digest(salt, key)}

    def _save(self) -> None:
        if not self.state_path:
            return
        data = {
            "devices": {d: dev.header for d, dev in self.state.devices.items()},
            "mappers": self.state.mappers,
            "mounts": self.state.mounts,
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.state_path)

    def _load(self) -> None:
        data = json.loads(self.state_path.read_text())
        self.state = SimulatedState(
            devices={d: SimulatedDevice(d, h) for d, h in data.get("devices", {}).items()},
            mappers=data.get("mappers", {}),
            mounts=data.get("mounts", {}),
        )

    # ==================== Header / slots ====================

    async def device_exists(self, device_id: str) -> bool:
        return device_id in self.state.devices

    async def is_luks(self, device_id: str) -> bool:
        device = self.state.devices.get(device_id)
        return bool(device and device.header)

    async def format(self, device_id: str, cipher: CipherSpec, key: bytes, slot: int = 0) -> None:
        await self._step("format", device_id)
        device = self._device(device_id)
        device.header = {
            "magic": HEADER_MAGIC,
            "version": HEADER_VERSION,
            "uuid": str(uuid.uuid4()),
            "cipher": cipher.to_dict(),
            "slots": {},
        }
        self._set_slot(device, slot, key)
        self._save()

    async def used_slots(self, device_id: str) -> set[int]:
        await self._step("used_slots", device_id)
        return {int(s) for s in self._luks(device_id).slots}

    async def add_key(self, device_id: str, existing_key: bytes, new_key: bytes, slot: int) -> None:
        await self._step("add_key", device_id)
        device = self._luks(device_id)
        if self._match_slot(device, existing_key) is None:
            raise AuthenticationFailed("No key slot accepted the supplied key")
        if str(slot) in device.slots:
            raise DeviceError(f"Key slot {slot} is already in use on {device_id}")
        self._set_slot(device, slot, new_key)
        self._save()

    async def test_key(self, device_id: str, key: bytes, slot: Optional[int] = None) -> bool:
        await self._step("test_key", device_id)
        return self._match_slot(self._luks(device_id), key, slot) is not None

    async def kill_slot(self, device_id: str, slot: int, authorizing_key: Optional[bytes] = None) -> None:
        await self._step("kill_slot", device_id)
        device = self._luks(device_id)
        if str(slot) not in device.slots:
            raise DeviceError(f"Key slot {slot} is not in use on {device_id}")
        if authorizing_key is not None:
            matched = self._match_slot(device, authorizing_key)
            if matched is None or matched == slot:
                raise AuthenticationFailed("Authorizing key must open a different slot")
        del device.slots[str(slot)]
        self._save()

    # ==================== Mapping ====================

    async def open(self, device_id: str, mapper_name: str, key: bytes) -> None:
        await self._step("open", device_id)
        device = self._luks(device_id)
        if mapper_name in self.state.mappers:
            raise DeviceError(f"Mapping {mapper_name} already exists")
        if self._match_slot(device, key) is None:
            raise AuthenticationFailed("No key slot accepted the supplied key")
        self.state.mappers[mapper_name] = device_id
        self._save()

    async def close(self, mapper_name: str) -> None:
        await self._step("close", mapper_name)
        if mapper_name not in self.state.mappers:
            raise DeviceError(f"Mapping {mapper_name} does not exist")
        if mapper_name in self.state.mounts.values():
            raise DeviceError(f"Mapping {mapper_name} is still mounted")
        del self.state.mappers[mapper_name]
        self._save()

    async def is_open(self, mapper_name: str) -> bool:
        return mapper_name in self.state.mappers

    # ==================== Filesystem ====================

    async def mount(self, mapper_name: str, mount_point: str) -> None:
        await self._step("mount", mount_point)
        if mapper_name not in self.state.mappers:
            raise DeviceError(f"{self.mapper_path(mapper_name)} does not exist")
        if mount_point in self.state.mounts:
            raise DeviceError(f"{mount_point} is already a mount point")
        self.state.mounts[mount_point] = mapper_name
        self._save()

    async def unmount(self, mount_point: str, force: bool = False) -> None:
        await self._step("unmount", mount_point)
        if mount_point not in self.state.mounts:
            raise DeviceError(f"{mount_point} is not mounted")
        if force:
            self._handles.pop(mount_point, None)
        elif self._handles.get(mount_point, 0):
            raise DeviceError(f"{mount_point}: target is busy")
        del self.state.mounts[mount_point]
        self._save()

    async def is_mounted(self, mount_point: str) -> bool:
        return mount_point in self.state.mounts

    async def open_handles(self, mount_point: str) -> int:
        return self._handles.get(mount_point, 0)

    # ==================== Header backup ====================

    async def header_backup(self, device_id: str, dest_path: str) -> None:
        await self._step("header_backup", device_id)
        device = self._luks(device_id)
        path = Path(dest_path)
        if path.exists():
            raise DeviceError(f"Backup file {dest_path} already exists")
        path.write_bytes(json.dumps(device.header, sort_keys=True).encode())

    async def header_restore(self, device_id: str, src_path: str) -> None:
        await self._step("header_restore", device_id)
        device = self._device(device_id)
        try:
            header = json.loads(Path(src_path).read_bytes())
        except (OSError, ValueError) as e:
            raise DeviceError(f"Cannot read header backup {src_path}: {e}")
        if header.get("magic") != HEADER_MAGIC:
            raise DeviceError(f"{src_path} is not a LUKS header backup")
        device.header = header
        self._save()
