"""StateBlob model for the persisted Bonsai state."""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from bonsai.core.db import Base


class StateBlob(Base):
    """Whole-store snapshot written through on every notable mutation.

    Only one row per key is kept. The row carries the runtime session id that
    wrote it; a process with a different session id treats it as absent.

    Example usage:
        blob = StateBlob(
            key="bonsai.state.v1",
            session_id="5a1c...",
            payload='{"branches": [...], "activeBranchId": "main", "currentId": 4}'
        )
    """

    __tablename__ = "bonsai_state"

    key = Column(
        String(100),
        primary_key=True,
        comment="Storage key of the blob"
    )
    session_id = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Runtime session that wrote this blob"
    )
    payload = Column(
        Text,
        nullable=False,
        comment="JSON document with branches, active branch, current id and LLM endpoint"
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="Timestamp of the last write"
    )

    def __repr__(self):
        return (
            f"<StateBlob(key={self.key}, session_id={self.session_id}, "
            f"updated_at={self.updated_at})>"
        )
