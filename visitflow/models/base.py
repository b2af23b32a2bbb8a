"""Shared metadata and column types for all tables."""

from sqlalchemy import JSON, DateTime, MetaData
from sqlalchemy.dialects.postgresql import JSONB

# Metadata for all tables
metadata = MetaData()

# Portable types: JSONB and TIMESTAMPTZ on PostgreSQL, generic elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
Timestamp = DateTime(timezone=True)
