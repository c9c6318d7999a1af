"""ORM model storing one path-addressed document of the real-time store."""
from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from friendnet.database import Base


class Document(Base):
    __tablename__ = "documents"

    # Parent collection path, e.g. "friendRequests" or "users/<uid>/friends".
    collection = Column(String(512), primary_key=True)
    doc_id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    # Bumped on every UPDATE/DELETE; a write against an outdated version matches no row.
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"


__all__ = ["Document"]
