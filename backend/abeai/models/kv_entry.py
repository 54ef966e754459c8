"""Key-value entry ORM model."""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from abeai.database import Base


class KeyValueEntry(Base):
    """A JSON blob stored under a string key, versioned for compare-and-swap."""

    __tablename__ = "kv_entries"

    # Keys look like "user:<id>" or "session:<id>"
    key: Mapped[str] = mapped_column(String(255), primary_key=True)

    value: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Incremented on every write; 0 means "never written"
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<KeyValueEntry {self.key} (v{self.version})>"
