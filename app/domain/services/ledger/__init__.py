"""
Event ledger — אחסון רשומות אירועי webhook (idempotency).

ייבוא ישיר של הממשק והטיפוסים; המימושים נטענים דרך ledger_factory.
"""
from app.domain.services.ledger.base_ledger import (
    BaseEventLedger,
    EventRecordView,
    LedgerStats,
    Sighting,
)
from app.domain.services.ledger.ledger_factory import create_event_ledger, get_event_ledger

__all__ = [
    "BaseEventLedger",
    "EventRecordView",
    "LedgerStats",
    "Sighting",
    "create_event_ledger",
    "get_event_ledger",
]
