"""Base key vault interface.

All key vault implementations share the passphrase sealing scheme and
implement the storage half of the capability interface:

    seal / unseal   -> implemented here (PBKDF2-HMAC-SHA256 + AES-256-GCM)
    store / load    -> implemented by each backend

Sealed blob format:
    version (1 byte) || nonce (12 bytes) || ciphertext + GCM tag

A wrong passphrase and a tampered blob both fail GCM authentication and
raise AuthenticationFailed; garbage key material is never returned.
"""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from luksvault.config import MIN_KDF_ITERATIONS
from luksvault.core.errors import AuthenticationFailed, ConfigurationError, EmptySecret, InvalidSlot
from luksvault.core.metrics import KDF_LATENCY

# Maximum number of key slots of the underlying format (LUKS1 / LUKS2 default)
MAX_KEY_SLOTS = 8

SEAL_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12
KEY_SIZE = 32
SEAL_AAD = b"luksvault-slot-key:v1"


def check_slot_number(slot: int) -> None:
    if not isinstance(slot, int) or not 0 <= slot < MAX_KEY_SLOTS:
        raise InvalidSlot(f"Key slot must be between 0 and {MAX_KEY_SLOTS - 1}, got {slot}")


class VaultBackend(str, Enum):
    """Supported vault backends."""
    FILE = "file"       # JSON records on disk, owner-only permissions
    MEMORY = "memory"   # Process memory, tests and dev only


class SlotPurpose(str, Enum):
    """Why a key slot exists."""
    PRIMARY = "primary"
    ROTATED = "rotated"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class KeySlot:
    """A sealed key slot of a volume.

    Only ``last_used`` and ``scheduled_rotation`` change after creation;
    updates produce a new instance via ``dataclasses.replace``.
    """
    device_id: str
    slot: int
    encrypted_key: bytes
    salt: bytes
    created_at: datetime
    purpose: str = SlotPurpose.PRIMARY.value
    creator: str = "system"
    last_used: Optional[datetime] = None
    scheduled_rotation: Optional[datetime] = None

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() / 86400

    def public_dict(self) -> dict[str, Any]:
        """Metadata only; never includes the sealed blob or salt."""
        return {
            "device_id": self.device_id,
            "slot": self.slot,
            "purpose": self.purpose,
            "creator": self.creator,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "scheduled_rotation": (
                self.scheduled_rotation.isoformat() if self.scheduled_rotation else None
            ),
        }


@dataclass
class VaultConfig:
    """Configuration for a vault backend.

    Attributes:
        backend: Which backend to use
        kdf_iterations: PBKDF2 iteration count (>= 100,000)
        path: Storage location for persistent backends
        options: Backend-specific options
    """
    backend: str = VaultBackend.FILE.value
    kdf_iterations: int = 600_000
    path: str = ""
    options: dict[str, Any] = field(default_factory=dict)


class KeyVault(ABC):
    """Abstract base class for key vault backends."""

    def __init__(self, config: VaultConfig):
        if config.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ConfigurationError(
                f"KDF iteration cost {config.kdf_iterations} is below the "
                f"minimum of {MIN_KDF_ITERATIONS}"
            )
        self.config = config

    # ==================== Sealing ====================

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """Deterministic PBKDF2 derivation of the sealing key.

        CPU-bound; async callers go through ``seal``/``unseal``, which run
        it in a worker thread.
        """
        start = time.perf_counter()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.config.kdf_iterations,
        )
        key = kdf.derive(passphrase.encode("utf-8"))
        KDF_LATENCY.observe(time.perf_counter() - start)
        return key

    def seal_key(self, raw_key: bytes, passphrase: str) -> tuple[bytes, bytes]:
        """Encrypt key material under a passphrase with a fresh salt.

        Returns:
            Tuple of (encrypted_blob, salt)
        """
        if not raw_key:
            raise EmptySecret("raw_key cannot be empty")
        if not passphrase:
            raise EmptySecret("passphrase cannot be empty")
        salt = secrets.token_bytes(SALT_SIZE)
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealing_key = self.derive_key(passphrase, salt)
        ciphertext = AESGCM(sealing_key).encrypt(nonce, raw_key, SEAL_AAD)
        return bytes([SEAL_VERSION]) + nonce + ciphertext, salt

    def unseal_key(self, encrypted_blob: bytes, passphrase: str, salt: bytes) -> bytes:
        """Decrypt sealed key material.

        Raises:
            AuthenticationFailed: Wrong passphrase or corrupted blob
        """
        if len(encrypted_blob) < 1 + NONCE_SIZE + 16 or encrypted_blob[0] != SEAL_VERSION:
            raise AuthenticationFailed("Sealed key blob is malformed")
        nonce = encrypted_blob[1:1 + NONCE_SIZE]
        ciphertext = encrypted_blob[1 + NONCE_SIZE:]
        sealing_key = self.derive_key(passphrase, salt)
        try:
            return AESGCM(sealing_key).decrypt(nonce, ciphertext, SEAL_AAD)
        except InvalidTag:
            raise AuthenticationFailed("Passphrase rejected or key blob corrupted")

    async def seal(self, raw_key: bytes, passphrase: str) -> tuple[bytes, bytes]:
        return await asyncio.to_thread(self.seal_key, raw_key, passphrase)

    async def unseal(self, encrypted_blob: bytes, passphrase: str, salt: bytes) -> bytes:
        return await asyncio.to_thread(self.unseal_key, encrypted_blob, passphrase, salt)

    async def unseal_slot(self, slot: KeySlot, passphrase: str) -> bytes:
        return await self.unseal(slot.encrypted_key, passphrase, slot.salt)

    # ==================== Storage ====================

    async def store_slot_key(
        self,
        device_id: str,
        slot: int,
        encrypted_blob: bytes,
        salt: bytes,
        metadata: dict[str, Any] | None = None,
    ) -> KeySlot:
        """Persist a sealed slot key.

        ``metadata`` may carry purpose, creator, created_at and
        scheduled_rotation.
        """
        check_slot_number(slot)
        metadata = metadata or {}
        record = KeySlot(
            device_id=device_id,
            slot=slot,
            encrypted_key=encrypted_blob,
            salt=salt,
            created_at=metadata.get("created_at") or datetime.now(timezone.utc),
            purpose=metadata.get("purpose", SlotPurpose.PRIMARY.value),
            creator=metadata.get("creator", "system"),
            last_used=metadata.get("last_used"),
            scheduled_rotation=metadata.get("scheduled_rotation"),
        )
        await self.store(record)
        return record

    async def load_slot_key(self, device_id: str, slot: int) -> KeySlot:
        """Raises SlotNotFound if absent."""
        return await self.load(device_id, slot)

    async def touch(self, device_id: str, slot: int, when: datetime | None = None) -> KeySlot:
        """Record that a slot was used to unlock."""
        record = await self.load(device_id, slot)
        updated = replace(record, last_used=when or datetime.now(timezone.utc))
        await self.store(updated)
        return updated

    async def set_scheduled_rotation(
        self,
        device_id: str,
        slot: int,
        when: datetime | None,
    ) -> KeySlot:
        record = await self.load(device_id, slot)
        updated = replace(record, scheduled_rotation=when)
        await self.store(updated)
        return updated

    @abstractmethod
    async def store(self, record: KeySlot) -> None:
        """Create or replace a slot record."""
        pass

    @abstractmethod
    async def load(self, device_id: str, slot: int) -> KeySlot:
        """Load a slot record.

        Raises:
            SlotNotFound: No such slot
            VaultIOError: Storage failure
        """
        pass

    @abstractmethod
    async def delete(self, device_id: str, slot: int) -> None:
        """Remove a slot record.

        Raises:
            SlotNotFound: No such slot
        """
        pass

    @abstractmethod
    async def list_slots(self, device_id: str) -> list[KeySlot]:
        """All slots of a volume, ordered by slot number."""
        pass

    async def initialize(self) -> None:
        """Prepare storage (create directories, purge leftovers)."""
        pass

    async def close(self) -> None:
        pass
