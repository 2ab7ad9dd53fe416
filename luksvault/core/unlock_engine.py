"""Unlock Engine.

Opens and closes encrypted volumes with vault-resolved keys and mounts or
unmounts their filesystems.

State machine per volume:

    LOCKED -> UNLOCKING -> UNLOCKED -> MOUNTED -> UNLOCKED_UNMOUNTED
                                  \\________________________/
                                              |
                                  LOCKING -> LOCKED

- unlock is idempotent once the volume is open (it only refreshes the
  slot's last_used)
- a failure or cancellation while UNLOCKING leaves the volume LOCKED
- cryptographic failures are never retried internally; the caller owns
  attempt counting
- every transition holds the per-volume lock
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from luksvault.core.audit import AuditStore
from luksvault.core.devices import DeviceBackend
from luksvault.core.errors import (
    AuthenticationFailed,
    Busy,
    DeviceError,
    DeviceNotFound,
    NotUnlocked,
    StillMounted,
    VolumeNotFound,
    WrongPassphrase,
)
from luksvault.core.keyslots import KeySlotService
from luksvault.core.locks import VolumeLocks
from luksvault.core.logging import get_logger, log_context
from luksvault.core.metrics import UNLOCK_ATTEMPTS_TOTAL, track_operation
from luksvault.core.registry import EncryptedVolume, VolumeRegistry
from luksvault.core.vault import KeyVault

logger = get_logger(__name__)


class VolumeState(str, Enum):
    """Lifecycle state of an encrypted volume."""
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"
    MOUNTED = "mounted"
    UNLOCKED_UNMOUNTED = "unlocked_unmounted"
    LOCKING = "locking"


OPEN_STATES = frozenset({VolumeState.UNLOCKED, VolumeState.MOUNTED, VolumeState.UNLOCKED_UNMOUNTED})


@dataclass
class UnlockResult:
    """Outcome of a successful unlock."""
    device_id: str
    state: VolumeState
    slot: int
    already_unlocked: bool = False

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "slot": self.slot,
            "already_unlocked": self.already_unlocked,
        }


class UnlockEngine:
    """Drives volumes through the lock / unlock / mount state machine.

    Usage:
        engine = UnlockEngine(registry, vault, backend, locks, keyslots)
        await engine.unlock("/dev/sda2", passphrase)
        await engine.mount("/dev/sda2")
        ...
        await engine.unmount("/dev/sda2")
        await engine.lock("/dev/sda2")
    """

    def __init__(
        self,
        registry: VolumeRegistry,
        vault: KeyVault,
        backend: DeviceBackend,
        locks: VolumeLocks,
        keyslots: KeySlotService,
        audit: AuditStore | None = None,
    ):
        self.registry = registry
        self.vault = vault
        self.backend = backend
        self.locks = locks
        self.keyslots = keyslots
        self.audit = audit
        # Transitional states and the unmounted-after-mount distinction,
        # neither of which the device itself can report
        self._transient: dict[str, VolumeState] = {}
        self._unmounted: set[str] = set()

    async def _volume(self, device_id: str) -> EncryptedVolume:
        try:
            return await self.registry.lookup(device_id)
        except VolumeNotFound:
            raise DeviceNotFound(f"Volume not registered: {device_id}")

    # ==================== State ====================

    async def state(self, device_id: str) -> VolumeState:
        """Current state, derived from the device mapper and mount table."""
        volume = await self._volume(device_id)
        return await self._state(volume)

    async def _state(self, volume: EncryptedVolume) -> VolumeState:
        transient = self._transient.get(volume.device_id)
        if transient is not None:
            return transient
        if not await self.backend.is_open(volume.mapper_name):
            return VolumeState.LOCKED
        if volume.mount_point and await self.backend.is_mounted(volume.mount_point):
            return VolumeState.MOUNTED
        if volume.device_id in self._unmounted:
            return VolumeState.UNLOCKED_UNMOUNTED
        return VolumeState.UNLOCKED

    # ==================== Unlock ====================

    async def unlock(
        self,
        device_id: str,
        passphrase: str,
        channel: str = "local",
        actor: str | None = None,
    ) -> UnlockResult:
        """Open a volume with the first slot the passphrase unseals.

        Raises:
            DeviceNotFound: Volume not registered or block device missing
            WrongPassphrase: No slot unsealed with the passphrase
            AuthenticationFailed: A key unsealed but the header rejected it
            Busy: Another operation holds the volume
        """
        volume = await self._volume(device_id)
        with log_context(device_id=device_id, actor=actor):
            try:
                async with self.locks.hold(device_id, "unlock"):
                    result = await self._unlock_locked(volume, passphrase)
            except (WrongPassphrase, AuthenticationFailed) as e:
                UNLOCK_ATTEMPTS_TOTAL.labels(channel=channel, outcome="failure").inc()
                await self._audit("unlock", "failure", device_id, actor, channel, {"error": e.kind})
                raise
            UNLOCK_ATTEMPTS_TOTAL.labels(channel=channel, outcome="success").inc()
            await self._audit(
                "unlock", "success", device_id, actor, channel,
                {"slot": result.slot, "already_unlocked": result.already_unlocked},
            )
            return result

    async def _unlock_locked(self, volume: EncryptedVolume, passphrase: str) -> UnlockResult:
        device_id = volume.device_id
        current = await self._state(volume)

        if current in OPEN_STATES:
            record, _ = await self.keyslots.unseal_any(device_id, passphrase)
            await self.vault.touch(device_id, record.slot)
            logger.info("Volume already unlocked", slot=record.slot, state=current.value)
            return UnlockResult(device_id, current, record.slot, already_unlocked=True)

        if not await self.backend.device_exists(device_id):
            raise DeviceNotFound(f"Block device not present: {device_id}")

        self._transient[device_id] = VolumeState.UNLOCKING
        opened = False
        try:
            with track_operation("unlock"):
                slot = await self._open_with_any_slot(volume, passphrase)
                opened = True
                await self.vault.touch(device_id, slot)
        except BaseException:
            if opened:
                logger.warning("Unlock interrupted after open, closing mapping")
                await self.backend.close(volume.mapper_name)
            raise
        finally:
            self._transient.pop(device_id, None)

        self._unmounted.discard(device_id)
        logger.info("Volume unlocked", slot=slot)
        return UnlockResult(device_id, VolumeState.UNLOCKED, slot)

    async def _open_with_any_slot(self, volume: EncryptedVolume, passphrase: str) -> int:
        unsealed_any = False
        for record in await self.keyslots.active_slots(volume.device_id):
            try:
                raw_key = await self.vault.unseal_slot(record, passphrase)
            except AuthenticationFailed:
                continue
            unsealed_any = True
            try:
                await self.backend.open(volume.device_id, volume.mapper_name, raw_key)
            except AuthenticationFailed:
                logger.warning("Header rejected unsealed key", slot=record.slot)
                continue
            return record.slot
        if unsealed_any:
            raise AuthenticationFailed(f"No unsealed key opened {volume.device_id}")
        raise WrongPassphrase(f"Passphrase rejected for {volume.device_id}")

    # ==================== Mount ====================

    async def mount(self, device_id: str) -> VolumeState:
        """Mount an unlocked volume at its configured mount point.

        Raises:
            NotUnlocked: Volume is locked
        """
        volume = await self._volume(device_id)
        with log_context(device_id=device_id):
            async with self.locks.hold(device_id, "mount"):
                current = await self._state(volume)
                if current == VolumeState.MOUNTED:
                    return current
                if current not in OPEN_STATES:
                    raise NotUnlocked(f"{device_id} is {current.value}")
                if not volume.mount_point:
                    raise DeviceError(f"No mount point configured for {device_id}")
                with track_operation("mount"):
                    await self.backend.mount(volume.mapper_name, volume.mount_point)
                self._unmounted.discard(device_id)
                await self.registry.set_mounted(device_id, True)
                logger.info("Volume mounted", mount_point=volume.mount_point)
                return VolumeState.MOUNTED

    async def unmount(self, device_id: str, force: bool = False) -> VolumeState:
        """Unmount a mounted volume.

        Raises:
            NotUnlocked: Volume is locked
            Busy: Open file handles and ``force`` not set
        """
        volume = await self._volume(device_id)
        with log_context(device_id=device_id):
            async with self.locks.hold(device_id, "unmount"):
                current = await self._state(volume)
                if current == VolumeState.LOCKED:
                    raise NotUnlocked(f"{device_id} is locked")
                if current != VolumeState.MOUNTED:
                    return current
                handles = await self.backend.open_handles(volume.mount_point)
                if handles and not force:
                    raise Busy(f"{volume.mount_point} has {handles} open file handle(s)")
                if handles:
                    logger.warning("Forcing unmount with open handles", handles=handles)
                with track_operation("unmount"):
                    await self.backend.unmount(volume.mount_point, force=force)
                self._unmounted.add(device_id)
                await self.registry.set_mounted(device_id, False)
                logger.info("Volume unmounted", mount_point=volume.mount_point)
                return VolumeState.UNLOCKED_UNMOUNTED

    # ==================== Lock ====================

    async def lock(self, device_id: str, actor: str | None = None) -> VolumeState:
        """Close the device mapping.

        Raises:
            StillMounted: Filesystem is mounted
        """
        volume = await self._volume(device_id)
        with log_context(device_id=device_id, actor=actor):
            async with self.locks.hold(device_id, "lock"):
                current = await self._state(volume)
                if current == VolumeState.LOCKED:
                    return current
                if current == VolumeState.MOUNTED:
                    raise StillMounted(f"{device_id} is mounted at {volume.mount_point}")
                self._transient[device_id] = VolumeState.LOCKING
                try:
                    with track_operation("lock"):
                        await self.backend.close(volume.mapper_name)
                finally:
                    self._transient.pop(device_id, None)
                self._unmounted.discard(device_id)
                await self.registry.set_mounted(device_id, False)
            logger.info("Volume locked")
            await self._audit("lock", "success", device_id, actor, "local", None)
            return VolumeState.LOCKED

    # ==================== Verification ====================

    async def verify_key(self, device_id: str, raw_key: bytes, slot: Optional[int] = None) -> bool:
        """Whether ``raw_key`` opens the volume, optionally through one slot."""
        await self._volume(device_id)
        return await self.keyslots.verify_key(device_id, raw_key, slot)

    async def _audit(self, event_type, outcome, device_id, actor, channel, details) -> None:
        if self.audit:
            await self.audit.record(
                event_type, outcome, device_id=device_id, actor=actor, source=channel, details=details,
            )
