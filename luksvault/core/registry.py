"""Volume Registry.

Tracks LUKS-class encrypted block devices, their cipher parameters and
mapper / mount bindings. The registry is the source of device identity for
every other component.

Invariants:
- device_id is unique across the registry
- the cipher specification never changes after registration
- a volume with key slots in the vault cannot be deregistered
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from luksvault.core.errors import (
    ActiveKeysExist,
    AlreadyRegistered,
    InvalidCipherSpec,
    VolumeNotFound,
)
from luksvault.core.logging import get_logger
from luksvault.core.policy import RotationPolicy
from luksvault.database import Database
from luksvault.models import VolumeRecord

if TYPE_CHECKING:
    from luksvault.core.vault.base import KeyVault

logger = get_logger(__name__)

# algorithm -> allowed key sizes (bits)
SUPPORTED_CIPHERS: dict[str, frozenset[int]] = {
    "aes-xts-plain64": frozenset({256, 512}),
    "serpent-xts-plain64": frozenset({256, 512}),
    "twofish-xts-plain64": frozenset({256, 512}),
    "aes-cbc-essiv:sha256": frozenset({128, 256}),
}
SUPPORTED_HASHES = frozenset({"sha256", "sha512"})
MIN_DEVICE_KDF_ITERATIONS = 1000


@dataclass(frozen=True)
class CipherSpec:
    """Cipher parameters of a volume (immutable)."""
    algorithm: str = "aes-xts-plain64"
    key_size: int = 512
    hash: str = "sha256"
    kdf_iterations: int = 1_000_000

    def validate(self) -> None:
        sizes = SUPPORTED_CIPHERS.get(self.algorithm)
        if sizes is None:
            raise InvalidCipherSpec(
                f"Unsupported cipher '{self.algorithm}'. "
                f"Supported: {', '.join(sorted(SUPPORTED_CIPHERS))}"
            )
        if self.key_size not in sizes:
            raise InvalidCipherSpec(
                f"Key size {self.key_size} not valid for {self.algorithm} "
                f"(allowed: {', '.join(str(s) for s in sorted(sizes))})"
            )
        if self.hash not in SUPPORTED_HASHES:
            raise InvalidCipherSpec(f"Unsupported hash '{self.hash}'")
        if self.kdf_iterations < MIN_DEVICE_KDF_ITERATIONS:
            raise InvalidCipherSpec(
                f"kdf_iterations must be >= {MIN_DEVICE_KDF_ITERATIONS}"
            )

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "key_size": self.key_size,
            "hash": self.hash,
            "kdf_iterations": self.kdf_iterations,
        }


@dataclass
class EncryptedVolume:
    """A registered encrypted volume."""
    device_id: str
    name: str
    cipher: CipherSpec
    mapper_name: str
    mount_point: Optional[str] = None
    auto_unlock: bool = False
    remote_unlock_eligible: bool = False
    mounted: bool = False
    rotation_policy: Optional[RotationPolicy] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_record(cls, record: VolumeRecord) -> "EncryptedVolume":
        policy = None
        if record.rotation_policy:
            policy = RotationPolicy.from_dict(record.rotation_policy)
        return cls(
            device_id=record.device_id,
            name=record.name,
            cipher=CipherSpec(
                algorithm=record.cipher_algorithm,
                key_size=record.cipher_key_size,
                hash=record.cipher_hash,
                kdf_iterations=record.cipher_kdf_iterations,
            ),
            mapper_name=record.mapper_name,
            mount_point=record.mount_point,
            auto_unlock=record.auto_unlock,
            remote_unlock_eligible=record.remote_unlock_eligible,
            mounted=record.mounted,
            rotation_policy=policy,
            created_at=record.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "cipher": self.cipher.to_dict(),
            "mapper_name": self.mapper_name,
            "mount_point": self.mount_point,
            "auto_unlock": self.auto_unlock,
            "remote_unlock_eligible": self.remote_unlock_eligible,
            "mounted": self.mounted,
            "rotation_policy": self.rotation_policy.to_dict() if self.rotation_policy else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def default_mapper_name(device_id: str) -> str:
    """Derive a device-mapper name from a device identity."""
    tail = device_id.rstrip("/").rsplit("/", 1)[-1]
    tail = tail.replace("UUID=", "").replace("=", "-")
    return f"luks-{tail}"


class VolumeRegistry:
    """Registry of encrypted volumes backed by the database.

    Usage:
        registry = VolumeRegistry(db)
        volume = await registry.register(
            "/dev/sda2",
            CipherSpec("aes-xts-plain64", 512, "sha256"),
            mount_point="/srv/data",
        )
        for volume in await registry.list():
            ...
    """

    def __init__(self, db: Database):
        self._db = db

    async def register(
        self,
        device_id: str,
        cipher: CipherSpec,
        mount_point: str | None = None,
        mapper_name: str | None = None,
        name: str | None = None,
        auto_unlock: bool = False,
        remote_unlock_eligible: bool = False,
        rotation_policy: RotationPolicy | None = None,
    ) -> EncryptedVolume:
        """Register a device.

        Raises:
            InvalidCipherSpec: Unsupported cipher combination
            AlreadyRegistered: device_id already present
        """
        if not device_id:
            raise InvalidCipherSpec("device_id is required")
        cipher.validate()

        record = VolumeRecord(
            device_id=device_id,
            name=name or device_id.rstrip("/").rsplit("/", 1)[-1],
            cipher_algorithm=cipher.algorithm,
            cipher_key_size=cipher.key_size,
            cipher_hash=cipher.hash,
            cipher_kdf_iterations=cipher.kdf_iterations,
            mapper_name=mapper_name or default_mapper_name(device_id),
            mount_point=mount_point,
            auto_unlock=auto_unlock,
            remote_unlock_eligible=remote_unlock_eligible,
            mounted=False,
            rotation_policy=rotation_policy.to_dict() if rotation_policy else None,
        )

        async with self._db.session() as db:
            existing = await db.execute(
                select(VolumeRecord.id).where(VolumeRecord.device_id == device_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise AlreadyRegistered(f"Volume already registered: {device_id}")
            db.add(record)
            try:
                await db.commit()
            except SQLIntegrityError:
                await db.rollback()
                raise AlreadyRegistered(f"Volume already registered: {device_id}")
            await db.refresh(record)

        logger.info("Volume registered", device_id=device_id, cipher=cipher.algorithm)
        return EncryptedVolume.from_record(record)

    async def lookup(self, device_id: str) -> EncryptedVolume:
        """Raises VolumeNotFound if the device is not registered."""
        async with self._db.session() as db:
            record = await self._get_record(db, device_id)
            return EncryptedVolume.from_record(record)

    async def exists(self, device_id: str) -> bool:
        async with self._db.session() as db:
            result = await db.execute(
                select(VolumeRecord.id).where(VolumeRecord.device_id == device_id)
            )
            return result.scalar_one_or_none() is not None

    async def list(self) -> list[EncryptedVolume]:
        """All volumes in registration order."""
        async with self._db.session() as db:
            result = await db.execute(select(VolumeRecord).order_by(VolumeRecord.id))
            return [EncryptedVolume.from_record(r) for r in result.scalars().all()]

    async def deregister(self, device_id: str, vault: "KeyVault") -> None:
        """Remove a decommissioned volume.

        Caller holds the volume lock; KeySlotService.deregister does both.

        Raises:
            VolumeNotFound: Unknown device
            ActiveKeysExist: The vault still holds key slots for the volume
        """
        async with self._db.session() as db:
            await self._get_record(db, device_id)
            slots = await vault.list_slots(device_id)
            if slots:
                raise ActiveKeysExist(
                    f"{len(slots)} key slot(s) still active for {device_id}: "
                    f"{', '.join(str(s.slot) for s in slots)}"
                )
            await db.execute(delete(VolumeRecord).where(VolumeRecord.device_id == device_id))
            await db.commit()
        logger.info("Volume deregistered", device_id=device_id)

    async def update_flags(
        self,
        device_id: str,
        auto_unlock: bool | None = None,
        remote_unlock_eligible: bool | None = None,
        mount_point: str | None = None,
    ) -> EncryptedVolume:
        async with self._db.session() as db:
            record = await self._get_record(db, device_id)
            if auto_unlock is not None:
                record.auto_unlock = auto_unlock
            if remote_unlock_eligible is not None:
                record.remote_unlock_eligible = remote_unlock_eligible
            if mount_point is not None:
                record.mount_point = mount_point
            await db.commit()
            await db.refresh(record)
            return EncryptedVolume.from_record(record)

    async def set_mounted(self, device_id: str, mounted: bool) -> None:
        async with self._db.session() as db:
            record = await self._get_record(db, device_id)
            record.mounted = mounted
            await db.commit()

    async def set_rotation_policy(
        self,
        device_id: str,
        policy: RotationPolicy | None,
    ) -> EncryptedVolume:
        async with self._db.session() as db:
            record = await self._get_record(db, device_id)
            record.rotation_policy = policy.to_dict() if policy else None
            await db.commit()
            await db.refresh(record)
            return EncryptedVolume.from_record(record)

    async def _get_record(self, db, device_id: str) -> VolumeRecord:
        result = await db.execute(
            select(VolumeRecord).where(VolumeRecord.device_id == device_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise VolumeNotFound(f"Volume not registered: {device_id}")
        return record
