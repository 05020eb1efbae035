"""
Operation notifications for the presentation layer.

Every notification is logged. Subscribed listeners (toasts, CLI output,
webhooks) receive it afterwards; a failing listener is logged and skipped
so it can never break an operation.
"""
import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    message: str
    kind: Optional[str] = None
    tx_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time, compare=False)


Listener = Callable[[Notification], Union[None, Awaitable[None]]]


class Notifier:
    """Fan-out of notifications to subscribed listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, notification: Notification) -> None:
        log = logger.error if notification.level == NotificationLevel.ERROR else logger.info
        log(
            "Notification",
            level=notification.level.value,
            title=notification.title,
            message=notification.message,
            kind=notification.kind,
            tx_hash=notification.tx_hash,
        )

        for listener in list(self._listeners):
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # listeners are presentation; never let them break orchestration
                logger.warning(
                    "Notification listener failed (non-fatal)",
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(e),
                )

    async def success(self, title: str, message: str, kind: Optional[str] = None, tx_hash: Optional[str] = None, **details) -> None:
        await self.publish(Notification(NotificationLevel.SUCCESS, title, message, kind, tx_hash, details))

    async def error(self, title: str, message: str, kind: Optional[str] = None, tx_hash: Optional[str] = None, **details) -> None:
        await self.publish(Notification(NotificationLevel.ERROR, title, message, kind, tx_hash, details))

    async def info(self, title: str, message: str, kind: Optional[str] = None, **details) -> None:
        await self.publish(Notification(NotificationLevel.INFO, title, message, kind, None, details))

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
