"""SQLAlchemy models for per-tenant KEK version records."""
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class KEKVersionHead(Base):
    """One row per tenant; etag is the optimistic-concurrency token for its versions."""

    __tablename__ = "kek_version_heads"
    tenant_id = Column(String(128), primary_key=True)
    etag = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class KEKVersionRow(Base):
    __tablename__ = "kek_versions"
    tenant_id = Column(String(128), primary_key=True)
    version_id = Column(String(64), primary_key=True)
    position = Column(Integer, nullable=False)  # creation order within the tenant
    status = Column(String(16), nullable=False)
    created_at = Column(String(40), nullable=False)  # ISO-8601 with offset
    created_by = Column(String(256), nullable=False)
    reason = Column(Text, nullable=False, default="")
    excluded_user_ids_json = Column(Text, nullable=False, default="[]")
