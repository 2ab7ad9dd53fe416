"""Volume model for the encrypted device registry."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, DateTime, Integer, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from luksvault.database import Base, JSONType


class VolumeRecord(Base):
    """A registered LUKS-class volume.

    The autoincrement ``id`` preserves registration order for listing.
    Cipher columns are written once at registration and never updated.
    """

    __tablename__ = "volumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    # Cipher specification (immutable)
    cipher_algorithm: Mapped[str] = mapped_column(String(64), nullable=False)
    cipher_key_size: Mapped[int] = mapped_column(Integer, nullable=False)
    cipher_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    cipher_kdf_iterations: Mapped[int] = mapped_column(Integer, nullable=False)

    # Bindings
    mapper_name: Mapped[str] = mapped_column(String(128), nullable=False)
    mount_point: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Flags
    auto_unlock: Mapped[bool] = mapped_column(Boolean, default=False)
    remote_unlock_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    mounted: Mapped[bool] = mapped_column(Boolean, default=False)

    rotation_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<VolumeRecord {self.device_id}>"
