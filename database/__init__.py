"""Database package for the photo checkout engine."""
from .connection import get_db, get_session_factory, init_db, session_scope
from .models import (
    Base,
    Campaign,
    Organization,
    Photo,
    Purchase,
    RevenueShare,
    WebhookLog,
)

__all__ = [
    "Base",
    "Campaign",
    "Organization",
    "Photo",
    "Purchase",
    "RevenueShare",
    "WebhookLog",
    "get_db",
    "get_session_factory",
    "init_db",
    "session_scope",
]
