"""
Settlement progress events and the bus that carries them.

Events carry their own data and are published by the orchestrator at every
phase change; handlers are injected by the caller (UI refresh, toasts,
metrics) and never influence the outcome of a settlement.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..schemas.bases import SettlementOutcome, SettlementPhase

logger = logging.getLogger(__name__)


# ==================== Base Event ====================

class BaseEvent(ABC):
    """Base class for all events in the system."""

    @abstractmethod
    def __repr__(self) -> str:
        """String representation of the event."""
        pass


# ==================== Progress Events ====================

class PhaseChangedEvent(BaseModel, BaseEvent):
    """Progress: an attempt moved to a new phase."""
    invoice_id: Union[int, str]
    previous: SettlementPhase
    phase: SettlementPhase
    tx_hash: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return (
            f"PhaseChangedEvent(invoice={self.invoice_id!r}, "
            f"{self.previous.value}->{self.phase.value})"
        )


class SettlementCompletedEvent(BaseModel, BaseEvent):
    """Result: an attempt reached a terminal phase."""
    outcome: SettlementOutcome

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        reason = self.outcome.reason.value if self.outcome.reason else None
        return (
            f"SettlementCompletedEvent(invoice={self.outcome.invoice_id!r}, "
            f"phase={self.outcome.phase.value}, reason={reason})"
        )


# ==================== Event Bus ====================

EventHandlerFunc = Callable[[BaseEvent], Awaitable[None]]


class EventBus:
    """Event dispatcher for publishing and subscribing to settlement events."""

    def __init__(self) -> None:
        """Initialize with empty subscribers and hooks."""
        self._subscribers: Dict[type, List[EventHandlerFunc]] = {}
        self._hooks: Dict[type, List[EventHandlerFunc]] = {}

    def subscribe(self, event_class: type, handler: EventHandlerFunc) -> None:
        """
        Register an async handler for the given event class.
        Multiple handlers can be subscribed to the same event type and run concurrently.

        Args:
            event_class: The event class to subscribe to.
            handler: The async handler function to call when the event is published.

        Raises:
            TypeError: If handler is not a coroutine function.
        """
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Handler must be a coroutine function, got {type(handler).__name__}")

        self._subscribers.setdefault(event_class, []).append(handler)

    def unsubscribe(self, event_class: type, handler: EventHandlerFunc) -> None:
        handlers = self._subscribers.get(event_class, [])
        if handler in handlers:
            handlers.remove(handler)

    def hook(self, event_class: type, hook_func: EventHandlerFunc) -> None:
        """
        Register a hook for the given event class.
        Hooks are awaited before subscribers when the event is published.

        Raises:
            TypeError: If hook_func is not a coroutine function.
        """
        if not inspect.iscoroutinefunction(hook_func):
            raise TypeError(f"Handler must be a coroutine function, got {type(hook_func).__name__}")

        self._hooks.setdefault(event_class, []).append(hook_func)

    async def publish(self, event: BaseEvent) -> None:
        """
        Publish an event to all registered hooks, then all subscribers.

        Handler failures are logged and dropped: a broken listener must not
        turn a settled payment into an error.

        Args:
            event: The event to publish.
        """
        for stage in (self._hooks, self._subscribers):
            handlers = list(stage.get(type(event), []))
            if not handlers:
                continue
            results = await asyncio.gather(
                *(handler(event) for handler in handlers),
                return_exceptions=True,
            )
            for handler, result in zip(handlers, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.error(
                        "Event handler %s failed on %r: %s",
                        getattr(handler, "__qualname__", handler), event, result,
                    )
