"""
Webhook Dispatcher — ניתוב אירוע שעבר את ה-gate ל-handler לפי (provider, topic).

handlers נרשמים עם דקורטור:

    @dispatcher.register("shopify", "products/update")
    async def on_product_update(event: WebhookEvent) -> None:
        ...

topic="*" תופס כל topic של אותו provider. topic בלי handler נרשם ללוג
ונחשב מעובד — השולח לא צריך לנסות שוב על משהו שאנחנו לא מטפלים בו.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger

logger = get_logger(__name__)

WILDCARD_TOPIC = "*"


@dataclass(frozen=True)
class WebhookEvent:
    """אירוע מאומת ומפוענח שמועבר ל-handler."""

    provider: str
    source: str
    topic: str
    event_key: str
    payload: Any
    headers: dict[str, str] = field(default_factory=dict)


WebhookHandler = Callable[[WebhookEvent], Awaitable[None]]


class WebhookDispatcher:
    """Registry של handlers לפי provider ו-topic."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], list[WebhookHandler]] = {}

    def register(self, provider: str, topic: str = WILDCARD_TOPIC) -> Callable[[WebhookHandler], WebhookHandler]:
        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.add_handler(provider, topic, handler)
            return handler
        return decorator

    def add_handler(self, provider: str, topic: str, handler: WebhookHandler) -> None:
        self._handlers.setdefault((provider, topic), []).append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def handlers_for(self, provider: str, topic: str) -> list[WebhookHandler]:
        return [
            *self._handlers.get((provider, topic), []),
            *self._handlers.get((provider, WILDCARD_TOPIC), []),
        ]

    async def dispatch(self, event: WebhookEvent) -> int:
        """
        הרצת כל ה-handlers של האירוע לפי סדר הרישום.

        חריגה מ-handler עוצרת את השרשרת ועולה לקורא (ה-receiver רושם
        אותה ב-ledger כ-processed=False). מחזיר כמה handlers רצו.
        """
        handlers = self.handlers_for(event.provider, event.topic)
        if not handlers:
            logger.info(
                "Unhandled webhook topic",
                extra_data={
                    "provider": event.provider,
                    "topic": event.topic,
                    "source": event.source,
                },
            )
            return 0

        for handler in handlers:
            await handler(event)
        return len(handlers)


dispatcher = WebhookDispatcher()
