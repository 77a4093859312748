"""
Tenant Cron Secret Model
========================
Per-tenant shared secret for unattended triggers, stored only as a hash.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from .base import Base, utcnow


class TenantCronSecret(Base):
    """Peppered hash of a tenant's cron key plus its automation settings."""
    __tablename__ = "external_sources_cron_secrets"

    tenant_id = Column(String(64), primary_key=True)
    key_prefix = Column(String(16), nullable=False)
    key_hash = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    default_run_limit = Column(Integer, nullable=False, default=10)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("default_run_limit BETWEEN 1 AND 50", name="ck_cron_secrets_run_limit"),
    )
