"""Base device backend interface.

The Unlock Engine, key slot service and header backup manager never talk
to cryptsetup directly; they go through a DeviceBackend so the same state
machine runs against real block devices or the simulated backend.

Key material is always passed as bytes and never placed on a command line.
"""

from abc import ABC, abstractmethod
from typing import Optional

from luksvault.core.registry import CipherSpec


class DeviceBackend(ABC):
    """Abstract base class for LUKS device operations."""

    name: str = "base"

    @abstractmethod
    async def device_exists(self, device_id: str) -> bool:
        """Whether the backing block device is present."""
        pass

    @abstractmethod
    async def is_luks(self, device_id: str) -> bool:
        """Whether the device carries a LUKS header."""
        pass

    @abstractmethod
    async def format(self, device_id: str, cipher: CipherSpec, key: bytes, slot: int = 0) -> None:
        """Create a LUKS header with ``key`` in ``slot``. Destroys data."""
        pass

    @abstractmethod
    async def used_slots(self, device_id: str) -> set[int]:
        """Key slot numbers enabled in the LUKS header."""
        pass

    @abstractmethod
    async def add_key(self, device_id: str, existing_key: bytes, new_key: bytes, slot: int) -> None:
        """Enable ``slot`` with ``new_key``, authorized by ``existing_key``.

        Raises:
            AuthenticationFailed: existing_key does not open any slot
            DeviceError: cryptsetup failure
        """
        pass

    @abstractmethod
    async def test_key(self, device_id: str, key: bytes, slot: Optional[int] = None) -> bool:
        """Check that ``key`` opens the device (optionally a specific slot)."""
        pass

    @abstractmethod
    async def kill_slot(self, device_id: str, slot: int, authorizing_key: Optional[bytes] = None) -> None:
        """Disable a key slot.

        ``authorizing_key`` must open a different slot; without it the
        slot is wiped unconditionally (decommissioning only).
        """
        pass

    @abstractmethod
    async def open(self, device_id: str, mapper_name: str, key: bytes) -> None:
        """Map the decrypted device to /dev/mapper/<mapper_name>.

        Raises:
            AuthenticationFailed: Key rejected by every slot
            DeviceError: Any other failure
        """
        pass

    @abstractmethod
    async def close(self, mapper_name: str) -> None:
        pass

    @abstractmethod
    async def is_open(self, mapper_name: str) -> bool:
        pass

    @abstractmethod
    async def mount(self, mapper_name: str, mount_point: str) -> None:
        pass

    @abstractmethod
    async def unmount(self, mount_point: str, force: bool = False) -> None:
        """Unmount; ``force`` detaches even with open file handles."""
        pass

    @abstractmethod
    async def is_mounted(self, mount_point: str) -> bool:
        pass

    @abstractmethod
    async def open_handles(self, mount_point: str) -> int:
        """Number of open file descriptors below ``mount_point``."""
        pass

    @abstractmethod
    async def header_backup(self, device_id: str, dest_path: str) -> None:
        """Write the LUKS header to ``dest_path`` (must not exist)."""
        pass

    @abstractmethod
    async def header_restore(self, device_id: str, src_path: str) -> None:
        """Overwrite the LUKS header from a backup file."""
        pass

    @staticmethod
    def mapper_path(mapper_name: str) -> str:
        return f"/dev/mapper/{mapper_name}"
