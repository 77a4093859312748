"""
Source Models
=============
Configured external feeds and their encrypted credential blobs.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import Base, JSONType, new_id, utcnow
from .provider_config import SourceProvider


class Source(Base):
    """
    One configured external feed.

    ``last_run_at`` doubles as the compare-and-set token used to claim a
    source for a run; only the orchestrator writes it.
    """
    __tablename__ = "external_document_sources"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    provider = Column(SQLEnum(SourceProvider, name="external_source_provider"), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    schedule_minutes = Column(Integer, nullable=False, default=60)
    last_run_at = Column(DateTime)
    config = Column(JSONType, nullable=False, default=dict)

    created_by = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    secret = relationship(
        "SourceSecret",
        back_populates="source",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_sources_tenant_enabled", "tenant_id", "enabled"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary (secrets excluded)."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "provider": self.provider.value if self.provider else None,
            "enabled": self.enabled,
            "schedule_minutes": self.schedule_minutes,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "config": self.config or {},
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class SourceSecret(Base):
    """Envelope-encrypted credential blob, one per source."""
    __tablename__ = "external_document_source_secrets"

    source_id = Column(
        String(36),
        ForeignKey("external_document_sources.id", ondelete="CASCADE"),
        primary_key=True,
    )
    key_id = Column(Text, nullable=False)
    iv = Column(String(64), nullable=False)
    ciphertext = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    source = relationship("Source", back_populates="secret")
