"""Key Rotation Scheduler.

Evaluates key slot age against each volume's rotation policy and replaces
old slots with fresh ones.

For every volume with a policy and every primary or rotated slot:
- age within ``warning_days`` of the interval  -> KeyAgeWarning
- age beyond ``rotation_interval_days``        -> scheduled for the next
                                                  maintenance window (RotationScheduled)
- scheduled time reached                       -> rotated, or held for approval
                                                  when dual approval is required
- age beyond ``max_key_age_days``              -> KeyExpired

Emergency slots are reported but never rotated automatically.

Rotation order (the volume is never left without a working slot):
    1. header backup (if backup_before_rotate)
    2. add the new slot while the old one remains
    3. verify the new slot opens the device
    4. remove the old slot
A failure or cancellation before step 4 removes the unverified new slot
and leaves the old one untouched.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select, update

from luksvault.core.audit import AuditStore
from luksvault.core.errors import (
    ApprovalRequired,
    AuthenticationFailed,
    ConfigurationError,
    LuksVaultError,
    RotationVerificationFailed,
    SlotNotFound,
    WrongPassphrase,
)
from luksvault.core.header_backup import HeaderBackupManager
from luksvault.core.keyslots import KeySlotService
from luksvault.core.locks import VolumeLocks
from luksvault.core.logging import get_logger, log_context, log_operation
from luksvault.core.metrics import PENDING_ROTATIONS, ROTATIONS_TOTAL
from luksvault.core.notifications import EventKind, NotificationEvent, Notifier
from luksvault.core.policy import RotationPolicy
from luksvault.core.registry import EncryptedVolume, VolumeRegistry
from luksvault.core.tasks import PeriodicTask
from luksvault.core.vault import KeySlot, KeyVault, SlotPurpose
from luksvault.database import Database
from luksvault.models import RotationApproval

logger = get_logger(__name__)

SCHEDULER_ACTOR = "rotation-scheduler"
ROTATABLE_PURPOSES = frozenset({SlotPurpose.PRIMARY.value, SlotPurpose.ROTATED.value})


@dataclass
class RotationResult:
    """A completed rotation."""
    device_id: str
    old_slot: int
    new_slot: int
    initiator: str
    approver: Optional[str] = None
    backup_path: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "old_slot": self.old_slot,
            "new_slot": self.new_slot,
            "initiator": self.initiator,
            "approver": self.approver,
            "backup_path": self.backup_path,
            "warnings": self.warnings,
        }


@dataclass
class CheckReport:
    """What a single scheduler pass did."""
    checked_slots: int = 0
    warned: list[tuple[str, int]] = field(default_factory=list)
    expired: list[tuple[str, int]] = field(default_factory=list)
    scheduled: list[tuple[str, int]] = field(default_factory=list)
    awaiting_approval: list[tuple[str, int]] = field(default_factory=list)
    rotated: list[RotationResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class RotationApprovals:
    """Persistent store of rotations waiting for a second operator."""

    def __init__(self, db: Database):
        self._db = db

    async def pending(self, device_id: str | None = None) -> list[RotationApproval]:
        stmt = select(RotationApproval).where(RotationApproval.status == "pending")
        if device_id:
            stmt = stmt.where(RotationApproval.device_id == device_id)
        async with self._db.session() as db:
            result = await db.execute(stmt.order_by(RotationApproval.id))
            return list(result.scalars().all())

    async def get(self, device_id: str, slot: int) -> RotationApproval | None:
        async with self._db.session() as db:
            result = await db.execute(
                select(RotationApproval).where(
                    RotationApproval.device_id == device_id,
                    RotationApproval.slot == slot,
                    RotationApproval.status == "pending",
                )
            )
            return result.scalar_one_or_none()

    async def request(self, device_id: str, slot: int, initiator: str) -> tuple[RotationApproval, bool]:
        """Create a pending approval unless one exists. Returns (row, created)."""
        existing = await self.get(device_id, slot)
        if existing is not None:
            return existing, False
        row = RotationApproval(device_id=device_id, slot=slot, initiator=initiator, status="pending")
        async with self._db.session() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
        return row, True

    async def resolve(
        self,
        row_id: int,
        status: str,
        approver: str | None = None,
        expected: str = "pending",
    ) -> bool:
        """Move a row from ``expected`` to ``status``. False if another caller got there first."""
        values = {"status": status}
        if approver:
            values.update(approved_by=approver, approved_at=datetime.now(timezone.utc))
        async with self._db.session() as db:
            result = await db.execute(
                update(RotationApproval)
                .where(RotationApproval.id == row_id, RotationApproval.status == expected)
                .values(**values)
            )
            await db.commit()
            return result.rowcount == 1


class RotationScheduler:
    """Periodic key age evaluation and slot rotation.

    ``passphrase_provider`` returns the vault passphrase that seals the
    volume's slots; unattended rotation needs it to unseal the old key and
    seal the new one.

    Usage:
        scheduler = RotationScheduler(registry, vault, keyslots, locks, backups,
                                      approvals, notifier, passphrase_provider)
        scheduler.start(check_interval_seconds=3600)
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        registry: VolumeRegistry,
        vault: KeyVault,
        keyslots: KeySlotService,
        locks: VolumeLocks,
        backups: HeaderBackupManager,
        approvals: RotationApprovals,
        notifier: Notifier | None = None,
        passphrase_provider: Callable[[], str] | None = None,
        audit: AuditStore | None = None,
    ):
        self.registry = registry
        self.vault = vault
        self.keyslots = keyslots
        self.locks = locks
        self.backups = backups
        self.approvals = approvals
        self.notifier = notifier or Notifier()
        self.passphrase_provider = passphrase_provider
        self.audit = audit
        self._task: PeriodicTask | None = None
        # (device_id, slot, kind) already notified, so repeated passes stay quiet
        self._notified: set[tuple[str, int, str]] = set()

    # ==================== Lifecycle ====================

    def start(self, check_interval_seconds: float) -> PeriodicTask:
        if self._task is None or not self._task.running:
            self._task = PeriodicTask("rotation-check", check_interval_seconds, self.check_once)
            self._task.start()
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None

    # ==================== Evaluation ====================

    @log_operation("rotation_check")
    async def check_once(self, now: datetime | None = None) -> CheckReport:
        """Evaluate every volume with a rotation policy once."""
        now = now or datetime.now(timezone.utc)
        report = CheckReport()
        for volume in await self.registry.list():
            policy = volume.rotation_policy
            if policy is None:
                continue
            for record in await self.vault.list_slots(volume.device_id):
                report.checked_slots += 1
                try:
                    await self._evaluate(volume, policy, record, now, report)
                except LuksVaultError as e:
                    message = f"{volume.device_id} slot {record.slot}: {e.kind}: {e.message}"
                    logger.error("Rotation check failed", device_id=volume.device_id, slot=record.slot, error=e.message)
                    report.errors.append(message)

        pending = len(await self.approvals.pending())
        PENDING_ROTATIONS.set(pending + len(report.scheduled))
        if report.scheduled or report.rotated or report.errors:
            logger.info(
                "Rotation check completed",
                checked=report.checked_slots,
                scheduled=len(report.scheduled),
                rotated=len(report.rotated),
                errors=len(report.errors),
            )
        return report

    async def _evaluate(
        self,
        volume: EncryptedVolume,
        policy: RotationPolicy,
        record: KeySlot,
        now: datetime,
        report: CheckReport,
    ) -> None:
        device_id = volume.device_id
        key = (device_id, record.slot)
        age = record.age_days(now)

        if age > policy.max_key_age_days:
            if await self._notify_once(EventKind.KEY_EXPIRED, volume, record, {"age_days": round(age, 1)}):
                report.expired.append(key)
        elif policy.rotation_interval_days - policy.warning_days <= age <= policy.rotation_interval_days:
            if await self._notify_once(EventKind.KEY_AGE_WARNING, volume, record, {"age_days": round(age, 1)}):
                report.warned.append(key)

        if record.purpose not in ROTATABLE_PURPOSES or age <= policy.rotation_interval_days:
            return

        if record.scheduled_rotation is None:
            window = policy.next_maintenance_window(now)
            await self.vault.set_scheduled_rotation(device_id, record.slot, window)
            await self.notifier.emit(NotificationEvent(
                EventKind.ROTATION_SCHEDULED,
                device_id,
                slot=record.slot,
                actor=SCHEDULER_ACTOR,
                details={"scheduled_for": window.isoformat(), "age_days": round(age, 1)},
            ))
            logger.info("Rotation scheduled", device_id=device_id, slot=record.slot, window=window.isoformat())
            report.scheduled.append(key)
            return

        if record.scheduled_rotation > now:
            return

        if policy.dual_approval_required:
            await self._request_approval(volume, record.slot, SCHEDULER_ACTOR)
            report.awaiting_approval.append(key)
            return

        result = await self._rotate(volume, record.slot, SCHEDULER_ACTOR, trigger="scheduled")
        report.rotated.append(result)

    async def _notify_once(self, kind: EventKind, volume: EncryptedVolume, record: KeySlot, details: dict) -> bool:
        marker = (volume.device_id, record.slot, kind.value)
        if marker in self._notified:
            return False
        self._notified.add(marker)
        await self.notifier.emit(NotificationEvent(
            kind, volume.device_id, slot=record.slot, actor=SCHEDULER_ACTOR, details=details,
        ))
        return True

    # ==================== Approval ====================

    async def _request_approval(self, volume: EncryptedVolume, slot: int, initiator: str) -> RotationApproval:
        row, created = await self.approvals.request(volume.device_id, slot, initiator)
        if created:
            await self.notifier.emit(NotificationEvent(
                EventKind.ROTATION_APPROVAL_REQUIRED,
                volume.device_id,
                slot=slot,
                actor=initiator,
                details={"approval_id": row.id},
            ))
            logger.info("Rotation awaiting approval", device_id=volume.device_id, slot=slot, initiator=initiator)
        return row

    async def approve(self, device_id: str, slot: int, approver: str) -> RotationResult:
        """Approve a pending rotation and run it.

        Raises:
            SlotNotFound: Nothing pending for the slot, or another approver claimed it
            ApprovalRequired: Approver is the initiator
        """
        row = await self.approvals.get(device_id, slot)
        if row is None:
            raise SlotNotFound(f"No rotation of slot {slot} pending approval for {device_id}")
        if approver == row.initiator:
            raise ApprovalRequired(
                f"Rotation of {device_id} slot {slot} was requested by {approver}; "
                "a different operator must approve it"
            )
        volume = await self.registry.lookup(device_id)
        if not await self.approvals.resolve(row.id, "approved", approver):
            raise SlotNotFound(f"Rotation of slot {slot} for {device_id} was already approved")
        logger.info("Rotation approved", device_id=device_id, slot=slot, approver=approver)
        try:
            result = await self._rotate(
                volume, slot, row.initiator, trigger="approved", approver=approver,
            )
        except LuksVaultError:
            await self.approvals.resolve(row.id, "failed", expected="approved")
            raise
        await self.approvals.resolve(row.id, "completed", expected="approved")
        return result

    # ==================== Rotation ====================

    async def rotate_now(self, device_id: str, slot: int, actor: str) -> RotationResult:
        """Manually rotate a slot.

        Under a dual approval policy this only files the request and raises
        ApprovalRequired; ``approve`` by another operator completes it.
        """
        volume = await self.registry.lookup(device_id)
        await self.vault.load_slot_key(device_id, slot)
        policy = volume.rotation_policy
        if policy is not None and policy.dual_approval_required:
            await self._request_approval(volume, slot, actor)
            raise ApprovalRequired(f"Rotation of {device_id} slot {slot} requires a second approver")
        return await self._rotate(volume, slot, actor, trigger="manual")

    def _passphrase(self) -> str:
        if self.passphrase_provider is None:
            raise ConfigurationError("No vault passphrase available for rotation")
        return self.passphrase_provider()

    async def _rotate(
        self,
        volume: EncryptedVolume,
        slot: int,
        initiator: str,
        trigger: str,
        approver: str | None = None,
    ) -> RotationResult:
        device_id = volume.device_id
        policy = volume.rotation_policy or RotationPolicy()
        passphrase = self._passphrase()

        with log_context(device_id=device_id, actor=initiator):
            try:
                async with self.locks.hold(device_id, "rotate"):
                    result = await self._rotate_locked(volume, policy, slot, initiator, passphrase)
            except BaseException as e:
                ROTATIONS_TOTAL.labels(trigger=trigger, outcome="failure").inc()
                if self.audit and isinstance(e, LuksVaultError):
                    await self.audit.record(
                        "rotate", "failure", device_id=device_id, actor=initiator,
                        details={"slot": slot, "error": e.kind, "trigger": trigger},
                    )
                raise

            result.approver = approver
            ROTATIONS_TOTAL.labels(trigger=trigger, outcome="success").inc()
            logger.info("Key slot rotated", old_slot=result.old_slot, new_slot=result.new_slot)

            if policy.notify_on_rotation:
                result.warnings = await self.notifier.emit(NotificationEvent(
                    EventKind.KEY_ROTATED,
                    device_id,
                    slot=result.new_slot,
                    actor=initiator,
                    details={
                        "old_slot": result.old_slot,
                        "new_slot": result.new_slot,
                        "initiator": initiator,
                        "approver": approver,
                    },
                ))
            if self.audit:
                await self.audit.record(
                    "rotate", "success", device_id=device_id, actor=initiator,
                    details={**result.to_dict(), "trigger": trigger},
                )
            self._notified = {m for m in self._notified if m[:2] != (device_id, slot)}
            return result

    async def _rotate_locked(
        self,
        volume: EncryptedVolume,
        policy: RotationPolicy,
        slot: int,
        initiator: str,
        passphrase: str,
    ) -> RotationResult:
        device_id = volume.device_id
        old = await self.vault.load_slot_key(device_id, slot)

        backup_path = None
        if policy.backup_before_rotate:
            backup = await self.backups.snapshot(volume, actor=initiator)
            backup_path = backup.path

        try:
            old_key = await self.vault.unseal_slot(old, passphrase)
        except AuthenticationFailed:
            raise WrongPassphrase(f"Vault passphrase does not unseal slot {slot} of {device_id}")

        new = None
        try:
            new, new_key = await self.keyslots.add_slot(
                volume, old_key, passphrase, purpose=SlotPurpose.ROTATED.value, creator=initiator,
            )
            if not await self.keyslots.verify_key(device_id, new_key, new.slot):
                raise RotationVerificationFailed(f"New slot {new.slot} does not open {device_id}")
            if await self.vault.unseal_slot(new, passphrase) != new_key:
                raise RotationVerificationFailed(f"Sealed record of slot {new.slot} does not match")
        except BaseException:
            if new is not None:
                logger.warning("Rotation failed, removing unverified slot", new_slot=new.slot)
                try:
                    await self.keyslots.retire_slot(device_id, new.slot, old_key)
                except LuksVaultError as cleanup:
                    logger.error(
                        "Removing unverified slot failed",
                        new_slot=new.slot,
                        error_kind=cleanup.kind,
                        error=cleanup.message,
                    )
            raise

        await self.keyslots.retire_slot(device_id, old.slot, new_key)
        return RotationResult(
            device_id=device_id,
            old_slot=old.slot,
            new_slot=new.slot,
            initiator=initiator,
            backup_path=backup_path,
        )
