"""Rotation approval model."""

from datetime import datetime, timezone

from sqlalchemy import String, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from luksvault.database import Base


class RotationApproval(Base):
    """A rotation held back until a second operator approves it.

    Status moves from ``pending`` through ``approved`` to ``completed`` or
    ``failed``; rows are kept as the approval history.
    """

    __tablename__ = "rotation_approvals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    initiator: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    approved_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<RotationApproval {self.device_id}#{self.slot} {self.status}>"
