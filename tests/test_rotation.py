"""Tests for the key rotation scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from luksvault.core.errors import (
    ApprovalRequired,
    ConfigurationError,
    DeviceError,
    SlotNotFound,
)
from luksvault.core.notifications import EventKind
from luksvault.core.policy import RotationPolicy
from luksvault.models import RotationApproval
from luksvault.core.unlock_engine import VolumeState
from tests.conftest import DEVICE, PASSPHRASE


POLICY = RotationPolicy(
    rotation_interval_days=60,
    warning_days=7,
    max_key_age_days=365,
    maintenance_hour=2,
)


@pytest.fixture
async def with_policy(services, enrolled):
    """Enrolled volume with a 60-day rotation policy."""
    await services.registry.set_rotation_policy(DEVICE, POLICY)
    return enrolled


@pytest.fixture
async def dual_approval(services, enrolled):
    await services.registry.set_rotation_policy(
        DEVICE,
        RotationPolicy(rotation_interval_days=60, warning_days=7, max_key_age_days=365, dual_approval_required=True),
    )
    return enrolled


def days_from_now(days: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


class TestAgeEvaluation:
    """Test key age warnings and expiry."""

    @pytest.mark.asyncio
    async def test_young_key_untouched(self, services, with_policy):
        """Test nothing happens for a fresh key."""
        report = await services.rotation.check_once(now=days_from_now(10))

        assert report.checked_slots == 1
        assert report.warned == []
        assert report.scheduled == []
        assert services.events.events == []

    @pytest.mark.asyncio
    async def test_warning_inside_lead_time(self, services, with_policy):
        """Test KeyAgeWarning is emitted once within the warning window."""
        report = await services.rotation.check_once(now=days_from_now(55))
        again = await services.rotation.check_once(now=days_from_now(56))

        assert report.warned == [(DEVICE, 0)]
        assert again.warned == []
        warnings = services.events.of_kind(EventKind.KEY_AGE_WARNING)
        assert len(warnings) == 1
        assert warnings[0].slot == 0

    @pytest.mark.asyncio
    async def test_expired_key(self, services, with_policy):
        """Test KeyExpired beyond the maximum key age."""
        report = await services.rotation.check_once(now=days_from_now(400))

        assert report.expired == [(DEVICE, 0)]
        assert len(services.events.of_kind(EventKind.KEY_EXPIRED)) == 1

    @pytest.mark.asyncio
    async def test_volume_without_policy_skipped(self, services, enrolled):
        """Test volumes without a policy are not evaluated."""
        report = await services.rotation.check_once(now=days_from_now(1000))

        assert report.checked_slots == 0


class TestScheduledRotation:
    """Test scheduling and performing rotations."""

    @pytest.mark.asyncio
    async def test_overdue_key_is_scheduled_then_rotated(self, services, with_policy):
        """Test a 61-day-old key is scheduled and rotated at the maintenance window."""
        now = days_from_now(61)

        report = await services.rotation.check_once(now=now)

        assert report.scheduled == [(DEVICE, 0)]
        assert report.rotated == []
        window = POLICY.next_maintenance_window(now)
        record = await services.vault.load_slot_key(DEVICE, 0)
        assert record.scheduled_rotation == window
        scheduled = services.events.of_kind(EventKind.ROTATION_SCHEDULED)
        assert len(scheduled) == 1
        assert scheduled[0].details["scheduled_for"] == window.isoformat()

        # Before the window nothing happens
        report = await services.rotation.check_once(now=window - timedelta(minutes=5))
        assert report.rotated == []

        report = await services.rotation.check_once(now=window + timedelta(minutes=1))

        assert len(report.rotated) == 1
        result = report.rotated[0]
        assert result.old_slot == 0
        assert result.new_slot == 1
        assert result.initiator == "rotation-scheduler"
        slots = await services.vault.list_slots(DEVICE)
        assert [(s.slot, s.purpose) for s in slots] == [(1, "rotated")]
        assert await services.backend.used_slots(DEVICE) == {1}

        rotated = services.events.of_kind(EventKind.KEY_ROTATED)
        assert len(rotated) == 1
        assert rotated[0].volume == DEVICE
        assert rotated[0].details["old_slot"] == 0
        assert rotated[0].details["new_slot"] == 1
        assert rotated[0].details["initiator"] == "rotation-scheduler"

        # The same vault passphrase opens the volume through the new slot
        unlocked = await services.engine.unlock(DEVICE, PASSPHRASE)
        assert unlocked.slot == 1

    @pytest.mark.asyncio
    async def test_backup_before_rotate(self, services, with_policy):
        """Test a header backup is taken before the new slot is added."""
        result = await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        backups = await services.backups.list_backups(DEVICE)
        assert len(backups) == 1
        assert result.backup_path == backups[0].path
        header_backup = services.backend.calls.index(("header_backup", DEVICE))
        add_key = services.backend.calls.index(("add_key", DEVICE))
        assert header_backup < add_key

    @pytest.mark.asyncio
    async def test_rotation_while_unlocked(self, services, with_policy):
        """Test rotation does not disturb an open volume."""
        await services.engine.unlock(DEVICE, PASSPHRASE)

        await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        assert await services.engine.state(DEVICE) == VolumeState.UNLOCKED

    @pytest.mark.asyncio
    async def test_emergency_slot_never_rotated(self, services, with_policy):
        """Test emergency slots are reported but not scheduled."""
        await services.keyslots.enroll(
            DEVICE, "break-glass", purpose="emergency", authorize_passphrase=PASSPHRASE,
        )

        report = await services.rotation.check_once(now=days_from_now(61))

        assert report.checked_slots == 2
        assert report.scheduled == [(DEVICE, 0)]
        assert (await services.vault.load_slot_key(DEVICE, 1)).scheduled_rotation is None

    @pytest.mark.asyncio
    async def test_rotation_audited(self, services, with_policy):
        """Test successful rotations leave an audit record."""
        await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        events = await services.audit.query(event_type="rotate", outcome="success")
        assert len(events) == 1
        assert events[0].actor == "alice"
        assert events[0].details["old_slot"] == 0
        assert events[0].details["trigger"] == "manual"


class TestRotationFailures:
    """Test that failed rotations keep the old slot."""

    @pytest.mark.asyncio
    async def test_verification_failure_keeps_old_slot(self, services, with_policy):
        """Test a failing verify removes the new slot and keeps the old one."""
        services.backend.inject_failure("test_key", DeviceError("device went away"))

        with pytest.raises(DeviceError):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        assert [s.slot for s in await services.vault.list_slots(DEVICE)] == [0]
        assert await services.backend.used_slots(DEVICE) == {0}
        assert services.events.of_kind(EventKind.KEY_ROTATED) == []
        result = await services.engine.unlock(DEVICE, PASSPHRASE)
        assert result.slot == 0

    @pytest.mark.asyncio
    async def test_add_key_failure_keeps_old_slot(self, services, with_policy):
        """Test a failing luksAddKey leaves the volume unchanged."""
        services.backend.inject_failure("add_key", DeviceError("I/O error"))

        with pytest.raises(DeviceError):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        assert [s.slot for s in await services.vault.list_slots(DEVICE)] == [0]
        assert await services.backend.used_slots(DEVICE) == {0}

    @pytest.mark.asyncio
    async def test_cancellation_keeps_old_slot(self, services, with_policy):
        """Test a rotation cancelled mid-way removes its unverified slot."""
        services.backend.latency = 0.2
        task = asyncio.create_task(services.rotation.rotate_now(DEVICE, 0, actor="alice"))
        while ("test_key", DEVICE) not in services.backend.calls:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [s.slot for s in await services.vault.list_slots(DEVICE)] == [0]
        assert await services.backend.used_slots(DEVICE) == {0}
        assert not services.locks.is_locked(DEVICE)

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_original_error(self, services, with_policy, caplog):
        """Test a failing cleanup is logged and the verification error still surfaces."""
        services.backend.inject_failure("test_key", DeviceError("device went away"))
        services.backend.inject_failure("kill_slot", DeviceError("header locked"))

        with pytest.raises(DeviceError, match="device went away"):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        assert any(r.getMessage() == "Removing unverified slot failed" for r in caplog.records)
        assert not services.locks.is_locked(DEVICE)

    @pytest.mark.asyncio
    async def test_rotate_unknown_slot(self, services, with_policy):
        """Test rotating a slot that does not exist."""
        with pytest.raises(SlotNotFound):
            await services.rotation.rotate_now(DEVICE, 4, actor="alice")

    @pytest.mark.asyncio
    async def test_no_passphrase_provider(self, services, with_policy):
        """Test unattended rotation without a vault passphrase."""
        services.rotation.passphrase_provider = None

        with pytest.raises(ConfigurationError):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")

    @pytest.mark.asyncio
    async def test_failed_rotation_in_check_is_reported(self, services, with_policy):
        """Test the scheduler records errors and keeps going."""
        now = days_from_now(61)
        await services.rotation.check_once(now=now)
        services.backend.inject_failure("add_key", DeviceError("I/O error"))

        report = await services.rotation.check_once(now=POLICY.next_maintenance_window(now) + timedelta(hours=1))

        assert report.rotated == []
        assert len(report.errors) == 1
        assert "DeviceError" in report.errors[0]


class TestDualApproval:
    """Test rotations that need a second operator."""

    @pytest.mark.asyncio
    async def test_manual_rotation_requires_approval(self, services, dual_approval):
        """Test a request is filed and the initiator cannot approve it."""
        with pytest.raises(ApprovalRequired):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        pending = await services.approvals.pending(DEVICE)
        assert len(pending) == 1
        assert pending[0].initiator == "alice"
        assert len(services.events.of_kind(EventKind.ROTATION_APPROVAL_REQUIRED)) == 1

        with pytest.raises(ApprovalRequired):
            await services.rotation.approve(DEVICE, 0, approver="alice")
        assert [s.slot for s in await services.vault.list_slots(DEVICE)] == [0]

        result = await services.rotation.approve(DEVICE, 0, approver="bob")

        assert result.initiator == "alice"
        assert result.approver == "bob"
        assert await services.approvals.pending(DEVICE) == []
        rotated = services.events.of_kind(EventKind.KEY_ROTATED)
        assert rotated[0].details["approver"] == "bob"

    @pytest.mark.asyncio
    async def test_repeated_request_not_duplicated(self, services, dual_approval):
        """Test asking twice keeps one pending approval."""
        for _ in range(2):
            with pytest.raises(ApprovalRequired):
                await services.rotation.rotate_now(DEVICE, 0, actor="alice")

        assert len(await services.approvals.pending(DEVICE)) == 1
        assert len(services.events.of_kind(EventKind.ROTATION_APPROVAL_REQUIRED)) == 1

    @pytest.mark.asyncio
    async def test_scheduled_rotation_waits_for_approval(self, services, dual_approval):
        """Test the scheduler holds due rotations for approval."""
        now = days_from_now(61)
        await services.rotation.check_once(now=now)

        report = await services.rotation.check_once(now=now + timedelta(days=2))

        assert report.awaiting_approval == [(DEVICE, 0)]
        assert report.rotated == []
        pending = await services.approvals.pending(DEVICE)
        assert pending[0].initiator == "rotation-scheduler"

        result = await services.rotation.approve(DEVICE, 0, approver="alice")
        assert result.new_slot == 1

    @pytest.mark.asyncio
    async def test_approve_without_request(self, services, dual_approval):
        """Test approving when nothing is pending."""
        with pytest.raises(SlotNotFound):
            await services.rotation.approve(DEVICE, 0, approver="bob")


class TestSchedulerLifecycle:
    """Test the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services, with_policy):
        """Test the periodic check runs and stops cleanly."""
        task = services.rotation.start(check_interval_seconds=0.05)
        await asyncio.sleep(0.2)

        await services.rotation.stop()

        assert task.runs >= 2
        assert not task.running

    @pytest.mark.asyncio
    async def test_concurrent_approvals(self, services, dual_approval):
        """Test only one of two racing approvers runs the rotation."""
        with pytest.raises(ApprovalRequired):
            await services.rotation.rotate_now(DEVICE, 0, actor="alice")
        services.locks.wait_seconds = 5

        results = await asyncio.gather(
            services.rotation.approve(DEVICE, 0, approver="bob"),
            services.rotation.approve(DEVICE, 0, approver="carol"),
            return_exceptions=True,
        )

        rotated = [r for r in results if not isinstance(r, BaseException)]
        refused = [r for r in results if isinstance(r, SlotNotFound)]
        assert len(rotated) == 1
        assert len(refused) == 1
        async with services.db.session() as db:
            rows = (await db.execute(select(RotationApproval))).scalars().all()
        assert [row.status for row in rows] == ["completed"]
        assert rows[0].approved_by == rotated[0].approver
        assert [s.slot for s in await services.vault.list_slots(DEVICE)] == [1]
