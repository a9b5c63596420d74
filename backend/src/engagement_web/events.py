from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from .conversations import MessageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageCreatedEvent:
    tenant_id: str
    conversation_id: str
    message: MessageRecord


MessageCreatedHandler = Callable[[MessageCreatedEvent], None]


class EventPublisher(Protocol):
    def publish_message_created(self, event: MessageCreatedEvent) -> None: ...


class InProcessEventBus:
    """Fans ``MessageCreated`` out to subscribers without letting them fail the publisher."""

    def __init__(self, *, dispatch_mode: str = "sync", max_workers: int = 4) -> None:
        self._lock = Lock()
        self._handlers: list[MessageCreatedHandler] = []
        self._dispatch_mode = dispatch_mode
        self._executor: ThreadPoolExecutor | None = None
        if dispatch_mode == "background":
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="engagement-events")

    def subscribe(self, handler: MessageCreatedHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def publish_message_created(self, event: MessageCreatedEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            if self._executor is not None:
                self._executor.submit(self._deliver, handler, event)
            else:
                self._deliver(handler, event)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    @staticmethod
    def _deliver(handler: MessageCreatedHandler, event: MessageCreatedEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "message_created handler failed conversation=%s message=%s",
                event.conversation_id,
                event.message.message_id,
            )
