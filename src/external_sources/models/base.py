"""
Model Base
==========
Declarative base and column helpers shared by all sync tables.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
