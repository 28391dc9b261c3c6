"""Global lock model for Buildfarm.

One row per held lock scope. A row whose ``expires_at`` has passed
belongs to a holder that died without releasing, and may be taken over.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from buildfarm.database.models.base import Base


class GlobalLock(Base):
    """A held mutual-exclusion scope.

    Attributes:
        scope: Lock scope key (primary key).
        holder: Token identifying the acquiring handle.
        acquired_at: When the lock was taken.
        expires_at: When the lease lapses.
    """

    __tablename__ = "global_locks"

    scope: Mapped[str] = mapped_column(Text, primary_key=True)
    holder: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
