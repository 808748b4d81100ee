"""
Domain Services
"""
from app.domain.services.idempotency_gate import DuplicateCheck, EventIdempotencyGate
from app.domain.services.webhook_dispatcher import WebhookDispatcher, WebhookEvent, dispatcher

__all__ = [
    "DuplicateCheck",
    "EventIdempotencyGate",
    "WebhookDispatcher",
    "WebhookEvent",
    "dispatcher",
]
