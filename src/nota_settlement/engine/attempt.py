"""
Settlement attempt state machine.

A ``SettlementAttempt`` is created for every ``settle()`` call and discarded
once it reaches a terminal phase. It owns the handles of the transactions it
submitted and refuses any phase change the transition table does not list.
"""

import asyncio
from typing import Dict, FrozenSet, List, Optional

from ..schemas.bases import (
    ConfirmationResult,
    ErrorKind,
    SettlementPhase,
    TransactionHandle,
    TransactionKind,
)
from ..schemas.invoices import Invoice
from .exceptions import InvalidTransition


_TRANSITIONS: Dict[SettlementPhase, FrozenSet[SettlementPhase]] = {
    SettlementPhase.EVALUATING: frozenset({
        SettlementPhase.AWAITING_APPROVAL,
        SettlementPhase.AWAITING_FUNDING,
        SettlementPhase.FAILED,
    }),
    SettlementPhase.AWAITING_APPROVAL: frozenset({
        SettlementPhase.APPROVAL_CONFIRMED,
        SettlementPhase.FAILED,
    }),
    SettlementPhase.APPROVAL_CONFIRMED: frozenset({
        SettlementPhase.AWAITING_FUNDING,
        SettlementPhase.FAILED,
    }),
    SettlementPhase.AWAITING_FUNDING: frozenset({
        SettlementPhase.SETTLED,
        SettlementPhase.FAILED,
    }),
    SettlementPhase.SETTLED: frozenset(),
    SettlementPhase.FAILED: frozenset(),
}


def allowed_transitions(phase: SettlementPhase) -> FrozenSet[SettlementPhase]:
    """Phases reachable from ``phase`` in one step."""
    return _TRANSITIONS[phase]


class SettlementAttempt:
    """
    Mutable record of one settlement attempt.

    Attributes:
        invoice: The invoice being settled
        phase: Current phase, starts at ``EVALUATING``
        approval_tx: Handle of the approval transaction, once submitted
        funding_tx: Handle of the funding transaction, once submitted
        error: Failure kind, only set in ``FAILED``
        history: Every phase the attempt has been in, in order
        detached: Confirmation still being observed after the attempt's
            task was cancelled
    """

    def __init__(self, invoice: Invoice) -> None:
        self.invoice = invoice
        self.phase = SettlementPhase.EVALUATING
        self.approval_tx: Optional[TransactionHandle] = None
        self.funding_tx: Optional[TransactionHandle] = None
        self.error: Optional[ErrorKind] = None
        self.history: List[SettlementPhase] = [SettlementPhase.EVALUATING]
        self.detached: Optional["asyncio.Future[ConfirmationResult]"] = None

    def transition(self, target: SettlementPhase) -> SettlementPhase:
        """
        Move the attempt to ``target``.

        Returns:
            SettlementPhase: The phase the attempt left.

        Raises:
            InvalidTransition: If the edge is not in the transition table.
        """
        if target not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(
                f"Invoice {self.invoice.id}: cannot move from {self.phase.value} to {target.value}",
                current_state=self.phase,
                target_state=target,
            )
        previous = self.phase
        self.phase = target
        self.history.append(target)
        return previous

    def fail(self, reason: ErrorKind) -> SettlementPhase:
        previous = self.transition(SettlementPhase.FAILED)
        self.error = reason
        return previous

    def attach(self, handle: TransactionHandle) -> None:
        """
        Record a submitted transaction.

        Raises:
            InvalidTransition: If a transaction of the same kind is already attached,
                or the attempt is terminal.
        """
        if self.phase.is_terminal:
            raise InvalidTransition(
                f"Invoice {self.invoice.id}: attempt is {self.phase.value}, no transaction can be attached",
                current_state=self.phase,
            )
        if handle.kind == TransactionKind.APPROVAL:
            if self.approval_tx is not None:
                raise InvalidTransition(
                    f"Invoice {self.invoice.id}: approval {self.approval_tx.tx_hash} already submitted",
                    current_state=self.phase,
                )
            self.approval_tx = handle
        else:
            if self.funding_tx is not None:
                raise InvalidTransition(
                    f"Invoice {self.invoice.id}: funding {self.funding_tx.tx_hash} already submitted",
                    current_state=self.phase,
                )
            self.funding_tx = handle

    def __repr__(self) -> str:
        return f"SettlementAttempt(invoice={self.invoice.id!r}, phase={self.phase.value})"
