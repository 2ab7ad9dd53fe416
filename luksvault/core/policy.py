"""Per-volume key rotation policy."""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta

from luksvault.core.errors import InvalidRotationPolicy


@dataclass(frozen=True)
class RotationPolicy:
    """When key slots of a volume must be rotated.

    Attributes:
        rotation_interval_days: Age after which a slot is scheduled for rotation
        warning_days: Lead time before the interval for KeyAgeWarning events
        max_key_age_days: Hard expiry; must be larger than the interval
        dual_approval_required: Rotation waits for an external approval
        backup_before_rotate: Snapshot the header before adding the new slot
        notify_on_rotation: Emit KeyRotated to the notification sinks
        maintenance_hour: UTC hour of the maintenance window
    """
    rotation_interval_days: int = 90
    warning_days: int = 14
    max_key_age_days: int = 365
    dual_approval_required: bool = False
    backup_before_rotate: bool = True
    notify_on_rotation: bool = True
    maintenance_hour: int = 2

    def __post_init__(self):
        if self.rotation_interval_days <= 0:
            raise InvalidRotationPolicy("rotation_interval_days must be positive")
        if self.rotation_interval_days >= self.max_key_age_days:
            raise InvalidRotationPolicy(
                f"rotation interval ({self.rotation_interval_days}d) must be shorter "
                f"than the maximum key age ({self.max_key_age_days}d)"
            )
        if not 0 <= self.warning_days < self.rotation_interval_days:
            raise InvalidRotationPolicy(
                "warning_days must be >= 0 and shorter than the rotation interval"
            )
        if not 0 <= self.maintenance_hour <= 23:
            raise InvalidRotationPolicy("maintenance_hour must be between 0 and 23")

    def next_maintenance_window(self, now: datetime) -> datetime:
        """Next calendar day at the maintenance hour."""
        next_day = (now + timedelta(days=1)).replace(
            hour=self.maintenance_hour, minute=0, second=0, microsecond=0
        )
        return next_day

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RotationPolicy":
        return cls(**data)
