"""Key slot enrollment and retirement.

Keeps the vault and the LUKS header of a volume in step:

    enroll       fresh random slot key -> header slot -> sealed vault record
    add_slot     same, authorized by an already unsealed key (rotation)
    verify_slot  unseal a record and prove it opens its header slot
    remove_slot  disable the header slot, then drop the vault record
    deregister   drop the registry entry once no slots remain

The raw slot key is a random secret that only ever reaches cryptsetup;
operators hold the vault passphrase that seals it.

Invariant: a volume with key slots always keeps at least one. Removing
the last slot is refused with LastKeySlot unless the volume is being
decommissioned.
"""

import secrets
from datetime import datetime, timezone
from typing import Optional

from luksvault.core.audit import AuditStore
from luksvault.core.devices import DeviceBackend
from luksvault.core.errors import (
    AuthenticationFailed,
    DeviceError,
    DeviceNotFound,
    EmptySecret,
    LastKeySlot,
    NoFreeSlot,
    SlotNotFound,
    WrongPassphrase,
)
from luksvault.core.locks import VolumeLocks
from luksvault.core.logging import get_logger
from luksvault.core.registry import EncryptedVolume, VolumeRegistry
from luksvault.core.vault import KeySlot, KeyVault, SlotPurpose, MAX_KEY_SLOTS, check_slot_number

logger = get_logger(__name__)

# Raw slot key length handed to cryptsetup
SLOT_KEY_BYTES = 64

_PURPOSE_ORDER = {
    SlotPurpose.PRIMARY.value: 0,
    SlotPurpose.ROTATED.value: 1,
    SlotPurpose.EMERGENCY.value: 2,
}


def generate_passphrase(nbytes: int = 32) -> str:
    """High-entropy passphrase for operators or emergency slots."""
    return secrets.token_urlsafe(nbytes)


def generate_slot_key() -> bytes:
    return secrets.token_bytes(SLOT_KEY_BYTES)


def check_secret_and_slot(passphrase: str, slot: Optional[int]) -> None:
    """Reject arguments that would fail only after the header was changed."""
    if not passphrase:
        raise EmptySecret("Vault passphrase cannot be empty")
    if slot is not None:
        check_slot_number(slot)


def unlock_order(slots: list[KeySlot]) -> list[KeySlot]:
    """Primary slots first, then rotated, then emergency; newest first within each."""
    newest_first = sorted(slots, key=lambda s: s.created_at, reverse=True)
    return sorted(newest_first, key=lambda s: _PURPOSE_ORDER.get(s.purpose, len(_PURPOSE_ORDER)))


class KeySlotService:
    """Creates, verifies and retires key slots.

    ``enroll``, ``remove_slot`` and ``deregister`` take the volume lock
    themselves.
    ``add_slot`` and ``retire_slot`` expect the caller to hold it; the
    rotation scheduler uses them inside its own critical section.
    """

    def __init__(
        self,
        registry: VolumeRegistry,
        vault: KeyVault,
        backend: DeviceBackend,
        locks: VolumeLocks,
        audit: AuditStore | None = None,
    ):
        self.registry = registry
        self.vault = vault
        self.backend = backend
        self.locks = locks
        self.audit = audit

    # ==================== Lookup ====================

    async def active_slots(self, device_id: str) -> list[KeySlot]:
        return unlock_order(await self.vault.list_slots(device_id))

    async def unseal_any(self, device_id: str, passphrase: str) -> tuple[KeySlot, bytes]:
        """Unseal the first slot (in unlock order) that accepts the passphrase.

        Raises:
            SlotNotFound: Volume has no enrolled slots
            WrongPassphrase: No slot unsealed
        """
        slots = await self.active_slots(device_id)
        if not slots:
            raise SlotNotFound(f"No key slots enrolled for {device_id}")
        for record in slots:
            try:
                return record, await self.vault.unseal_slot(record, passphrase)
            except AuthenticationFailed:
                continue
        raise WrongPassphrase(f"Passphrase rejected for {device_id}")

    async def free_slot(self, device_id: str) -> int:
        """Lowest slot number unused by both the header and the vault."""
        used = {s.slot for s in await self.vault.list_slots(device_id)}
        if await self.backend.is_luks(device_id):
            used |= await self.backend.used_slots(device_id)
        for slot in range(MAX_KEY_SLOTS):
            if slot not in used:
                return slot
        raise NoFreeSlot(f"All {MAX_KEY_SLOTS} key slots of {device_id} are in use")

    # ==================== Enrollment ====================

    async def enroll(
        self,
        device_id: str,
        passphrase: str,
        purpose: str = SlotPurpose.PRIMARY.value,
        creator: str = "operator",
        slot: int | None = None,
        format_device: bool = False,
        authorize_passphrase: str | None = None,
    ) -> KeySlot:
        """Enroll a new key slot sealed under ``passphrase``.

        The first enrollment of a volume either formats an empty device
        (``format_device=True``) or adopts an existing LUKS header using
        its current passphrase (``authorize_passphrase``). Later
        enrollments are authorized by unsealing an existing slot with
        ``authorize_passphrase`` (defaults to ``passphrase``).

        Raises:
            VolumeNotFound: Volume not registered
            DeviceNotFound: Block device missing
            WrongPassphrase: No existing slot accepts the authorizing passphrase
            NoFreeSlot: All slots used
            InvalidSlot: Requested slot outside the header's range
            EmptySecret: Empty passphrase
        """
        SlotPurpose(purpose)
        check_secret_and_slot(passphrase, slot)
        async with self.locks.hold(device_id, "enroll"):
            volume = await self.registry.lookup(device_id)
            if not await self.backend.device_exists(device_id):
                raise DeviceNotFound(f"Block device not present: {device_id}")

            existing = await self.vault.list_slots(device_id)
            if existing:
                _, authorizing_key = await self.unseal_any(device_id, authorize_passphrase or passphrase)
                record, _ = await self.add_slot(
                    volume, authorizing_key, passphrase, purpose=purpose, creator=creator, slot=slot,
                )
            else:
                record = await self._first_slot(
                    volume, passphrase, purpose, creator, slot, format_device, authorize_passphrase,
                )

        await self._audit("enroll", device_id, creator, {"slot": record.slot, "purpose": purpose})
        logger.info("Key slot enrolled", device_id=device_id, slot=record.slot, purpose=purpose)
        return record

    async def _first_slot(
        self,
        volume: EncryptedVolume,
        passphrase: str,
        purpose: str,
        creator: str,
        slot: Optional[int],
        format_device: bool,
        authorize_passphrase: Optional[str],
    ) -> KeySlot:
        device_id = volume.device_id
        raw_key = generate_slot_key()
        is_luks = await self.backend.is_luks(device_id)

        if is_luks and authorize_passphrase:
            slot = slot if slot is not None else await self.free_slot(device_id)
            try:
                await self.backend.add_key(device_id, authorize_passphrase.encode(), raw_key, slot)
            except AuthenticationFailed:
                raise WrongPassphrase(f"Existing passphrase rejected by {device_id}")
            authorizing_key = authorize_passphrase.encode()
        elif format_device:
            slot = slot if slot is not None else 0
            logger.warning("Formatting device", device_id=device_id, cipher=volume.cipher.algorithm)
            await self.backend.format(device_id, volume.cipher, raw_key, slot)
            authorizing_key = None
        elif is_luks:
            raise DeviceError(
                f"{device_id} already has a LUKS header; supply its current passphrase to adopt it"
            )
        else:
            raise DeviceError(f"{device_id} is not a LUKS device; enroll with format to initialize it")

        return await self._seal_and_store(
            device_id, slot, raw_key, passphrase, purpose, creator, authorizing_key,
        )

    async def add_slot(
        self,
        volume: EncryptedVolume,
        authorizing_key: bytes,
        passphrase: str,
        purpose: str = SlotPurpose.ROTATED.value,
        creator: str = "system",
        slot: int | None = None,
    ) -> tuple[KeySlot, bytes]:
        """Add a fresh key slot next to the existing ones.

        Caller holds the volume lock. Returns the stored record and the raw
        slot key so the caller can verify it.
        """
        check_secret_and_slot(passphrase, slot)
        device_id = volume.device_id
        slot = slot if slot is not None else await self.free_slot(device_id)
        raw_key = generate_slot_key()
        await self.backend.add_key(device_id, authorizing_key, raw_key, slot)
        record = await self._seal_and_store(
            device_id, slot, raw_key, passphrase, purpose, creator, authorizing_key,
        )
        return record, raw_key

    async def _seal_and_store(
        self,
        device_id: str,
        slot: int,
        raw_key: bytes,
        passphrase: str,
        purpose: str,
        creator: str,
        authorizing_key: Optional[bytes],
    ) -> KeySlot:
        try:
            blob, salt = await self.vault.seal(raw_key, passphrase)
            return await self.vault.store_slot_key(
                device_id,
                slot,
                blob,
                salt,
                {"purpose": purpose, "creator": creator, "created_at": datetime.now(timezone.utc)},
            )
        except BaseException:
            # Header slot without a vault record would be an orphan key
            logger.error("Storing sealed key failed, disabling header slot", device_id=device_id, slot=slot)
            await self.backend.kill_slot(device_id, slot, authorizing_key)
            raise

    # ==================== Verification ====================

    async def verify_key(self, device_id: str, raw_key: bytes, slot: int | None = None) -> bool:
        """Whether ``raw_key`` opens the volume (optionally a given slot)."""
        return await self.backend.test_key(device_id, raw_key, slot)

    async def verify_slot(self, device_id: str, slot: int, passphrase: str) -> bool:
        """Unseal a slot record and check it still opens its header slot.

        Raises:
            SlotNotFound: No such slot
            WrongPassphrase: The passphrase does not unseal the record
        """
        record = await self.vault.load_slot_key(device_id, slot)
        try:
            raw_key = await self.vault.unseal_slot(record, passphrase)
        except AuthenticationFailed:
            raise WrongPassphrase(f"Passphrase rejected for slot {slot} of {device_id}")
        return await self.verify_key(device_id, raw_key, slot)

    # ==================== Removal ====================

    async def remove_slot(
        self,
        device_id: str,
        slot: int,
        actor: str = "operator",
        passphrase: str | None = None,
        decommission: bool = False,
    ) -> None:
        """Disable a key slot and delete its vault record.

        ``passphrase`` unseals one of the remaining slots to authorize the
        removal. ``decommission`` permits removing the last slot.

        Raises:
            SlotNotFound: No such slot
            LastKeySlot: Would leave the volume without a key
        """
        async with self.locks.hold(device_id, "remove_slot"):
            authorizing_key = None
            if passphrase:
                others = [s for s in await self.active_slots(device_id) if s.slot != slot]
                for record in others:
                    try:
                        authorizing_key = await self.vault.unseal_slot(record, passphrase)
                        break
                    except AuthenticationFailed:
                        continue
                if others and authorizing_key is None:
                    raise WrongPassphrase(f"Passphrase rejected for {device_id}")
            await self.retire_slot(device_id, slot, authorizing_key, decommission=decommission)
        await self._audit(
            "remove_slot", device_id, actor, {"slot": slot, "decommission": decommission},
        )

    async def retire_slot(
        self,
        device_id: str,
        slot: int,
        authorizing_key: bytes | None = None,
        decommission: bool = False,
    ) -> None:
        """Remove a slot from the header and the vault. Caller holds the volume lock."""
        slots = await self.vault.list_slots(device_id)
        if slot not in {s.slot for s in slots}:
            raise SlotNotFound(f"Key slot {slot} not enrolled for {device_id}")
        if len(slots) == 1 and not decommission:
            raise LastKeySlot(f"Slot {slot} is the last key slot of {device_id}")

        if await self.backend.device_exists(device_id) and await self.backend.is_luks(device_id):
            if slot in await self.backend.used_slots(device_id):
                await self.backend.kill_slot(device_id, slot, authorizing_key)
        elif not decommission:
            raise DeviceNotFound(f"Block device not present: {device_id}")
        else:
            logger.warning("Device absent, dropping vault record only", device_id=device_id, slot=slot)

        await self.vault.delete(device_id, slot)
        logger.info("Key slot removed", device_id=device_id, slot=slot, decommission=decommission)

    async def deregister(self, device_id: str, actor: str = "operator", decommission: bool = False) -> list[int]:
        """Remove a volume from the registry under its volume lock.

        ``decommission`` first removes every key slot, header and vault.
        Returns the removed slot numbers.

        Raises:
            VolumeNotFound: Volume not registered
            ActiveKeysExist: Slots remain and ``decommission`` is not set
        """
        removed = []
        async with self.locks.hold(device_id, "deregister"):
            await self.registry.lookup(device_id)
            if decommission:
                for record in await self.vault.list_slots(device_id):
                    await self.retire_slot(device_id, record.slot, decommission=True)
                    removed.append(record.slot)
            await self.registry.deregister(device_id, self.vault)
        await self._audit("deregister", device_id, actor, {"removed_slots": removed})
        return removed

    async def _audit(self, event_type: str, device_id: str, actor: str, details: dict) -> None:
        if self.audit:
            await self.audit.record(event_type, "success", device_id=device_id, actor=actor, details=details)
