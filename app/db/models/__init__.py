"""
Database Models
"""
from app.db.models.event_record import EventRecord

__all__ = [
    "EventRecord",
]
