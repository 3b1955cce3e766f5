from __future__ import annotations

import threading
from collections import defaultdict
from typing import Callable, Dict, List

from volume_bot.enums.event_type import EventType
from volume_bot.models.events import BotEvent
from volume_bot.utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)

Handler = Callable[[BotEvent], None]


class EventBus:
    """
    Pub/sub por token: cada suscriptor solo recibe los eventos del token al
    que se suscribió. Un handler que falla no afecta a los demás ni al emisor.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, token_mint: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[token_mint].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(token_mint)
                if handlers and handler in handlers:
                    handlers.remove(handler)
                if handlers == []:
                    self._handlers.pop(token_mint, None)

        return _unsubscribe

    def publish(self, event: BotEvent) -> int:
        with self._lock:
            handlers = list(self._handlers.get(event.token_mint, ()))
        for h in handlers:
            try:
                h(event)
            except Exception as e:
                logger.exception(f"Handler de {event.type.value} falló para {event.token_mint}: {e}")
        return len(handlers)

    def emit(self, event_type: EventType, token_mint: str, session_id: str | None = None, **data) -> BotEvent:
        event = BotEvent(type=event_type, token_mint=token_mint, session_id=session_id, data=data)
        self.publish(event)
        return event

    def subscriber_count(self, token_mint: str) -> int:
        with self._lock:
            return len(self._handlers.get(token_mint, ()))
