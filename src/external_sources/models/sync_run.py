"""
Run and Ledger Models
=====================
Per-source execution records and the import ledger that backs deduplication.
"""

from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .base import Base, new_id, utcnow


class RunStatus(str, Enum):
    """Run lifecycle: RUNNING moves once to a terminal state."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class SourceRun(Base):
    """One execution attempt against one source."""
    __tablename__ = "external_document_source_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    source_id = Column(
        String(36),
        ForeignKey("external_document_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    status = Column(SQLEnum(RunStatus, name="external_source_run_status"), nullable=False, default=RunStatus.RUNNING)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime)
    inserted_count = Column(Integer, nullable=False, default=0)
    message = Column(Text)

    __table_args__ = (
        Index("ix_runs_source_status", "source_id", "status"),
        Index("ix_runs_status_started", "status", "started_at"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source_id": self.source_id,
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "inserted_count": self.inserted_count,
            "message": self.message,
        }


class ItemLedgerEntry(Base):
    """
    Record of a remote object already imported for a source.

    Path-addressed providers (SFTP, FTPS) populate ``remote_path``; id-addressed
    cloud drives populate ``remote_id``. The unique constraints are the dedup
    key and are what makes overlapping runs safe.
    """
    __tablename__ = "external_document_source_items"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    source_id = Column(
        String(36),
        ForeignKey("external_document_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    remote_path = Column(Text)
    remote_id = Column(String(512))
    remote_modified_at = Column(DateTime)
    remote_size = Column(BigInteger)
    imported_document_id = Column(String(64), nullable=False)
    imported_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source_id", "remote_path", name="uq_source_items_path"),
        UniqueConstraint("source_id", "remote_id", name="uq_source_items_remote_id"),
        CheckConstraint(
            "(remote_path IS NOT NULL AND remote_id IS NULL) OR "
            "(remote_path IS NULL AND remote_id IS NOT NULL)",
            name="ck_source_items_single_identity",
        ),
    )
