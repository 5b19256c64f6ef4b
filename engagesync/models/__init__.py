# Database models
from engagesync.models.database import (
    SyncConnection,
    ExternalContact,
    DialSession,
    Call,
    ScoredCall,
    DailyMetric,
    Lead,
)
from engagesync.models.sync_log import SyncLog, SyncJob

__all__ = [
    "SyncConnection",
    "ExternalContact",
    "DialSession",
    "Call",
    "ScoredCall",
    "DailyMetric",
    "Lead",
    "SyncLog",
    "SyncJob",
]
