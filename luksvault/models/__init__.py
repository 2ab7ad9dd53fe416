"""Database models."""

from luksvault.models.volume import VolumeRecord
from luksvault.models.audit import AuditEvent
from luksvault.models.rotation import RotationApproval

__all__ = [
    "VolumeRecord",
    "AuditEvent",
    "RotationApproval",
]
