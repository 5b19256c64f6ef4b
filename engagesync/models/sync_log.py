"""Sync bookkeeping models: per-invocation log and the continuation queue."""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from engagesync.core.database import Base
from engagesync.models.database import utcnow


class SyncLog(Base):
    """Log of sync invocations."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)  # "already_syncing", "in_progress", "complete", "error", "paused"
    phase = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)


class SyncJob(Base):
    """Durable continuation request; drained by the scheduler."""

    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)
    generation = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, running, done, failed, cancelled
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
