"""
Settlement notifications.

Turns terminal ``SettlementOutcome`` values into user-facing notifications
for the collaborators outside the core (list refresh, toasts). Every terminal
state maps to exactly one message category; revert reasons are appended
verbatim.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from ..adapters.evm.constants import get_explorer_tx_url
from ..schemas.bases import ErrorKind, SettlementOutcome, SettlementPhase
from .events import EventBus, SettlementCompletedEvent

logger = logging.getLogger(__name__)


class MessageCategory(str, Enum):
    """User-facing category of a terminal outcome."""
    PAID = "paid"
    INVALID_INVOICE = "invalid_invoice"
    NETWORK_PROBLEM = "network_problem"
    TRANSACTION_NOT_SENT = "transaction_not_sent"
    TRANSACTION_REVERTED = "transaction_reverted"
    STILL_PENDING = "still_pending"
    ALLOWANCE_MISMATCH = "allowance_mismatch"
    DUPLICATE_REQUEST = "duplicate_request"


_CATEGORIES: Dict[ErrorKind, MessageCategory] = {
    ErrorKind.INVALID_AMOUNT: MessageCategory.INVALID_INVOICE,
    ErrorKind.UNKNOWN_TOKEN: MessageCategory.INVALID_INVOICE,
    ErrorKind.EVALUATION_ERROR: MessageCategory.NETWORK_PROBLEM,
    ErrorKind.CHAIN_READ_ERROR: MessageCategory.NETWORK_PROBLEM,
    ErrorKind.SUBMISSION_ERROR: MessageCategory.TRANSACTION_NOT_SENT,
    ErrorKind.APPROVAL_REJECTED: MessageCategory.TRANSACTION_REVERTED,
    ErrorKind.FUNDING_REJECTED: MessageCategory.TRANSACTION_REVERTED,
    ErrorKind.CONFIRMATION_TIMEOUT: MessageCategory.STILL_PENDING,
    ErrorKind.INVARIANT_VIOLATION: MessageCategory.ALLOWANCE_MISMATCH,
    ErrorKind.ALREADY_IN_PROGRESS: MessageCategory.DUPLICATE_REQUEST,
}

_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_AMOUNT: "This nota has no amount to pay.",
    ErrorKind.UNKNOWN_TOKEN: "This nota is in a token that is not supported on this network.",
    ErrorKind.EVALUATION_ERROR: "Could not check your token allowance. Please try again.",
    ErrorKind.CHAIN_READ_ERROR: "Lost connection to the network while waiting for your transaction.",
    ErrorKind.SUBMISSION_ERROR: "The transaction was not sent.",
    ErrorKind.APPROVAL_REJECTED: "The token approval failed on-chain.",
    ErrorKind.FUNDING_REJECTED: "The payment failed on-chain.",
    ErrorKind.CONFIRMATION_TIMEOUT: "Your transaction is taking longer than expected. It may still go through.",
    ErrorKind.INVARIANT_VIOLATION: "The approval went through but the allowance is still too low.",
    ErrorKind.ALREADY_IN_PROGRESS: "A payment for this nota is already in progress.",
}

_PAID_MESSAGE = "Nota paid."


class Notification(BaseModel):
    """What a UI collaborator receives for one outcome."""
    category: MessageCategory
    text: str
    outcome: SettlementOutcome
    explorer_url: Optional[str] = None


def categorize(outcome: SettlementOutcome) -> MessageCategory:
    """Message category of a terminal outcome."""
    if outcome.phase == SettlementPhase.SETTLED:
        return MessageCategory.PAID
    if outcome.reason is None:
        raise ValueError(f"Failed outcome for invoice {outcome.invoice_id} has no reason")
    return _CATEGORIES[outcome.reason]


def render_message(outcome: SettlementOutcome) -> str:
    """Human-readable message of a terminal outcome, with the revert reason appended verbatim."""
    if outcome.phase == SettlementPhase.SETTLED:
        return _PAID_MESSAGE
    text = _MESSAGES[outcome.reason]
    if outcome.revert_reason:
        text = f"{text} Reason: {outcome.revert_reason}"
    return text


NotificationHandler = Callable[[Notification], Awaitable[None]]


class SettlementNotifier:
    """
    Dispatches outcomes to the registered success and failure handlers.

    Handlers are coroutine functions; a failing handler is logged and does
    not prevent the others from running. With a ``chain_id``, notifications
    link the last transaction of the outcome on the chain's block explorer.

    Example:
        notifier = SettlementNotifier(chain_id=11155111)
        notifier.on_settled(refresh_notas)
        notifier.on_failed(show_error_toast)
        notifier.attach(orchestrator.event_bus)
    """

    def __init__(self, chain_id: Optional[int] = None) -> None:
        self.chain_id = chain_id
        self._on_settled: List[NotificationHandler] = []
        self._on_failed: List[NotificationHandler] = []

    def on_settled(self, handler: NotificationHandler) -> None:
        self._on_settled.append(self._checked(handler))

    def on_failed(self, handler: NotificationHandler) -> None:
        self._on_failed.append(self._checked(handler))

    def attach(self, event_bus: EventBus) -> None:
        """Subscribe to completion events so every outcome is notified automatically."""
        event_bus.subscribe(SettlementCompletedEvent, self._handle_event)

    async def notify(self, outcome: SettlementOutcome) -> Optional[Notification]:
        """
        Notify handlers of ``outcome``.

        A settled outcome without a funding transaction hash is not a
        confirmed payment and is refused.

        Returns:
            Optional[Notification]: The dispatched notification, or None if
            the outcome was refused.
        """
        if outcome.phase == SettlementPhase.SETTLED and not outcome.funding_tx_hash:
            logger.error("Refusing to notify settled invoice %s without a funding transaction", outcome.invoice_id)
            return None

        notification = Notification(
            category=categorize(outcome),
            text=render_message(outcome),
            outcome=outcome,
            explorer_url=self._explorer_url(outcome),
        )
        handlers = self._on_settled if outcome.is_success() else self._on_failed
        results = await asyncio.gather(
            *(handler(notification) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Notification handler %s failed for invoice %s: %s",
                    getattr(handler, "__qualname__", handler), outcome.invoice_id, result,
                )
        return notification

    def _explorer_url(self, outcome: SettlementOutcome) -> Optional[str]:
        tx_hash = outcome.funding_tx_hash or outcome.approval_tx_hash
        if self.chain_id is None or not tx_hash:
            return None
        return get_explorer_tx_url(self.chain_id, tx_hash)

    async def _handle_event(self, event: SettlementCompletedEvent) -> None:
        await self.notify(event.outcome)

    @staticmethod
    def _checked(handler: NotificationHandler) -> NotificationHandler:
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Handler must be a coroutine function, got {type(handler).__name__}")
        return handler
