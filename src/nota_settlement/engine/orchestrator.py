"""
Settlement orchestration.

``TransactionOrchestrator.settle`` drives one invoice through the approval
and funding steps:

    EVALUATING ──(no approval needed)──────────────────────────▶ AWAITING_FUNDING
        │                                                           │
        └─(approval needed)─▶ AWAITING_APPROVAL ─▶ APPROVAL_CONFIRMED ┘
                                                                    │
                                                        SETTLED ◀───┴───▶ FAILED

Every failure, whatever step it happens in, ends the attempt in ``FAILED``
and is returned as a ``SettlementOutcome``; ``settle()`` does not raise for
chain conditions. Nothing is retried internally: retry is a fresh call.
"""

import asyncio
import logging
from typing import AsyncGenerator, Awaitable, Callable, Dict, Optional, Set, Tuple

from ..adapters.bases import ChainAccessor
from ..adapters.evm.constants import SettlementSettings
from ..adapters.registry import TokenRegistry
from ..schemas.bases import (
    ConfirmationResult,
    ErrorKind,
    SettlementOutcome,
    SettlementPhase,
    TransactionHandle,
    TransactionKind,
)
from ..schemas.invoices import Invoice, TokenRef
from .allowance import AllowanceEvaluator
from .attempt import SettlementAttempt
from .events import BaseEvent, EventBus, PhaseChangedEvent, SettlementCompletedEvent
from .exceptions import ConfirmationTimeoutError, UnknownTokenError

logger = logging.getLogger(__name__)

EventListener = Callable[[BaseEvent], Awaitable[None]]
InvoiceKey = Tuple[str, str]
AllowanceKey = Tuple[str, str, str]


def _invoice_key(invoice: Invoice) -> InvoiceKey:
    # Nota ids are only unique per registrar
    return invoice.settlement_contract_address, str(invoice.id)


class TransactionOrchestrator:
    """
    Sequences allowance evaluation, approval and funding for invoices.

    Concurrency rules:
        - Independent invoices settle concurrently; each call owns its attempt.
        - A second ``settle()`` for an invoice that is in flight is rejected
          with ``ALREADY_IN_PROGRESS``.
        - For ERC20 invoices a lock per (owner, spender, token) is held from
          evaluation until the funding is confirmed, so two approvals for the
          same allowance are never in flight together.
        - A call cancelled after submitting keeps the invoice in flight and
          the allowance locked until its transaction is resolved.
        - An invoice that settled returns its cached outcome and makes no
          further chain calls.

    Args:
        accessor: Chain accessor bound to the paying wallet.
        registry: Token registry of the accessor's chain.
        settings: Timeouts; defaults to ``SettlementSettings()``.
        event_bus: Bus receiving progress and completion events.

    Example:
        orchestrator = TransactionOrchestrator(accessor, TokenRegistry(11155111))
        outcome = await orchestrator.settle(invoice)
        await notifier.notify(outcome)
    """

    def __init__(
        self,
        accessor: ChainAccessor,
        registry: TokenRegistry,
        settings: Optional[SettlementSettings] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._accessor = accessor
        self._registry = registry
        self._settings = settings or SettlementSettings()
        self.event_bus = event_bus or EventBus()
        self._evaluator = AllowanceEvaluator(accessor)

        self._in_flight: Set[InvoiceKey] = set()
        self._settled: Dict[InvoiceKey, SettlementOutcome] = {}
        self._unresolved_funding: Dict[InvoiceKey, TransactionHandle] = {}
        self._allowance_locks: Dict[AllowanceKey, asyncio.Lock] = {}
        self._lock_users: Dict[AllowanceKey, int] = {}
        self._confirmations: Dict[str, "asyncio.Future[ConfirmationResult]"] = {}
        self._background: Set["asyncio.Future[SettlementOutcome]"] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def settle(self, invoice: Invoice) -> SettlementOutcome:
        """
        Settle ``invoice`` and return its terminal outcome.

        Returns:
            SettlementOutcome: ``SETTLED`` once the funding transaction was
            observed mined successfully, ``FAILED`` with a reason otherwise.

        Raises:
            asyncio.CancelledError: If the calling task is cancelled. A
                transaction already submitted keeps being observed; see
                :meth:`query_transaction`.
        """
        return await self._settle(invoice, None)

    async def stream(self, invoice: Invoice) -> AsyncGenerator[BaseEvent, None]:
        """
        Settle ``invoice`` while yielding its progress events.

        Yields every ``PhaseChangedEvent`` of the attempt and finally its
        ``SettlementCompletedEvent``. The settlement runs in its own task, so
        a consumer that stops iterating early does not abort a payment.
        """
        queue: "asyncio.Queue[Optional[BaseEvent]]" = asyncio.Queue()
        task = asyncio.ensure_future(self._settle(invoice, queue.put))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(lambda _: queue.put_nowait(None))

        while True:
            event = await queue.get()
            if event is None:
                break
            yield event
        task.result()

    async def query_transaction(self, handle: TransactionHandle) -> Optional[ConfirmationResult]:
        """
        Out-of-band lookup of a submitted transaction.

        Resolves handles of attempts that timed out or were cancelled after
        submission. ``None`` means the transaction is still pending.

        Raises:
            ChainReadError: If the node cannot be queried.
        """
        return await self._accessor.get_confirmation(handle)

    def pending_confirmation(self, tx_hash: str) -> Optional["asyncio.Future[ConfirmationResult]"]:
        """Confirmation still being awaited for ``tx_hash``, if any."""
        return self._confirmations.get(tx_hash)

    def settled_outcome(self, invoice: Invoice) -> Optional[SettlementOutcome]:
        return self._settled.get(_invoice_key(invoice))

    def unresolved_funding(self, invoice: Invoice) -> Optional[TransactionHandle]:
        """Funding transaction of ``invoice`` whose outcome has not been observed yet."""
        return self._unresolved_funding.get(_invoice_key(invoice))

    def is_in_flight(self, invoice: Invoice) -> bool:
        return _invoice_key(invoice) in self._in_flight

    # ------------------------------------------------------------------
    # Attempt execution
    # ------------------------------------------------------------------

    async def _settle(self, invoice: Invoice, listener: Optional[EventListener]) -> SettlementOutcome:
        key = _invoice_key(invoice)

        cached = self._settled.get(key)
        if cached is not None:
            logger.info("Invoice %s already settled in %s", invoice.id, cached.funding_tx_hash)
            await self._emit(SettlementCompletedEvent(outcome=cached), listener)
            return cached

        attempt = SettlementAttempt(invoice)
        if key in self._in_flight:
            outcome = await self._fail(
                attempt, ErrorKind.ALREADY_IN_PROGRESS, listener,
                f"Invoice {invoice.id} is already being settled",
            )
        else:
            self._in_flight.add(key)
            try:
                outcome = await self._run(attempt, listener)
            finally:
                self._after_detached(attempt, lambda: self._in_flight.discard(key))
            if outcome.is_success():
                self._settled[key] = outcome

        logger.info(
            "Invoice %s settlement finished: %s%s",
            invoice.id, outcome.phase.value,
            f" ({outcome.reason.value})" if outcome.reason else "",
        )
        await self._emit(SettlementCompletedEvent(outcome=outcome), listener)
        return outcome

    async def _run(self, attempt: SettlementAttempt, listener: Optional[EventListener]) -> SettlementOutcome:
        invoice = attempt.invoice

        # Checks that need no chain interaction
        if invoice.amount_raw <= 0:
            return await self._fail(
                attempt, ErrorKind.INVALID_AMOUNT, listener,
                f"Invoice amount must be positive, got {invoice.amount_raw}",
            )
        try:
            token = self._registry.resolve(invoice.token)
        except UnknownTokenError as e:
            return await self._fail(attempt, ErrorKind.UNKNOWN_TOKEN, listener, str(e))

        wallet = self._accessor.get_wallet_address()
        if wallet.lower() != invoice.payer_address.lower():
            return await self._fail(
                attempt, ErrorKind.SUBMISSION_ERROR, listener,
                f"Connected wallet {wallet} is not the invoice payer {invoice.payer_address}",
            )

        previous_funding = self._unresolved_funding.get(_invoice_key(invoice))
        if previous_funding is not None:
            resolved = await self._resolve_previous_funding(attempt, previous_funding, listener)
            if resolved is not None:
                return resolved

        if token.is_native:
            return await self._execute(attempt, token, listener)

        lock_key = (invoice.payer_address, invoice.settlement_contract_address, token.address)
        await self._acquire_allowance_lock(lock_key)
        try:
            return await self._execute(attempt, token, listener)
        finally:
            self._after_detached(attempt, lambda: self._release_allowance_lock(lock_key))

    async def _acquire_allowance_lock(self, lock_key: AllowanceKey) -> None:
        # Users count holders and waiters; the lock is dropped when it reaches zero
        self._lock_users[lock_key] = self._lock_users.get(lock_key, 0) + 1
        lock = self._allowance_locks.setdefault(lock_key, asyncio.Lock())
        try:
            await lock.acquire()
        except asyncio.CancelledError:
            self._drop_lock_user(lock_key)
            raise

    def _release_allowance_lock(self, lock_key: AllowanceKey) -> None:
        self._allowance_locks[lock_key].release()
        self._drop_lock_user(lock_key)

    def _drop_lock_user(self, lock_key: AllowanceKey) -> None:
        remaining = self._lock_users[lock_key] - 1
        if remaining:
            self._lock_users[lock_key] = remaining
        else:
            del self._lock_users[lock_key]
            del self._allowance_locks[lock_key]

    @staticmethod
    def _after_detached(attempt: SettlementAttempt, release: Callable[[], None]) -> None:
        """
        Run ``release`` now, or once the attempt's detached confirmation finishes.

        An attempt cancelled after submitting keeps its invoice in flight and
        its allowance locked until the submitted transaction is resolved.
        """
        pending = attempt.detached
        if pending is not None and not pending.done():
            pending.add_done_callback(lambda _: release())
        else:
            release()

    async def _resolve_previous_funding(
        self,
        attempt: SettlementAttempt,
        handle: TransactionHandle,
        listener: Optional[EventListener],
    ) -> Optional[SettlementOutcome]:
        """
        Look up a funding transaction left unresolved by an earlier attempt.

        Returns an outcome when the earlier transaction decides this attempt
        (mined successfully or still pending), or None when it reverted and a
        new payment may be made.
        """
        key = _invoice_key(attempt.invoice)
        try:
            confirmation = await self._accessor.get_confirmation(handle)
        except Exception as e:
            return await self._fail(
                attempt, ErrorKind.EVALUATION_ERROR, listener,
                f"Cannot check earlier funding {handle.tx_hash}: {e}",
                details={"funding_tx_hash": handle.tx_hash},
            )

        if confirmation is None:
            return await self._fail(
                attempt, ErrorKind.ALREADY_IN_PROGRESS, listener,
                f"Earlier funding {handle.tx_hash} is still pending",
                details={"funding_tx_hash": handle.tx_hash},
            )

        self._unresolved_funding.pop(key, None)
        if not confirmation.success:
            logger.info("Earlier funding %s reverted, settling invoice %s again", handle.tx_hash, attempt.invoice.id)
            return None

        logger.info("Earlier funding %s of invoice %s was mined", handle.tx_hash, attempt.invoice.id)
        await self._transition(attempt, SettlementPhase.AWAITING_FUNDING, listener)
        attempt.attach(handle)
        await self._transition(attempt, SettlementPhase.SETTLED, listener, handle.tx_hash)
        return self._settled_outcome(attempt, "Invoice paid by an earlier funding transaction")

    async def _execute(
        self,
        attempt: SettlementAttempt,
        token: TokenRef,
        listener: Optional[EventListener],
    ) -> SettlementOutcome:
        invoice = attempt.invoice
        owner = invoice.payer_address
        spender = invoice.settlement_contract_address

        try:
            allowance = await self._evaluator.evaluate(token, invoice.amount_raw, owner, spender)
        except Exception as e:
            return await self._fail(
                attempt, ErrorKind.EVALUATION_ERROR, listener,
                f"Could not read {token.symbol} allowance: {e}",
            )

        if allowance.required:
            await self._transition(attempt, SettlementPhase.AWAITING_APPROVAL, listener)
            failed = await self._approve(attempt, token, listener)
            if failed is not None:
                return failed

        await self._transition(attempt, SettlementPhase.AWAITING_FUNDING, listener)
        return await self._fund(attempt, token, listener)

    async def _approve(
        self,
        attempt: SettlementAttempt,
        token: TokenRef,
        listener: Optional[EventListener],
    ) -> Optional[SettlementOutcome]:
        """Submit and confirm an approval for exactly the invoice amount. Returns an outcome only on failure."""
        invoice = attempt.invoice
        spender = invoice.settlement_contract_address

        try:
            handle = await self._accessor.submit_approval(token.address, spender, invoice.amount_raw)
        except Exception as e:
            return await self._fail(attempt, ErrorKind.SUBMISSION_ERROR, listener, f"Approval not submitted: {e}")
        attempt.attach(handle)
        logger.info("Invoice %s: approval %s for %d %s submitted", invoice.id, handle.tx_hash, invoice.amount_raw, token.symbol)

        confirmation, failed = await self._observe(attempt, handle, listener)
        if failed is not None:
            return failed
        if not confirmation.success:
            return await self._fail(
                attempt, ErrorKind.APPROVAL_REJECTED, listener,
                f"Approval {handle.tx_hash} reverted",
                revert_reason=confirmation.revert_reason,
            )
        await self._transition(attempt, SettlementPhase.APPROVAL_CONFIRMED, listener, handle.tx_hash)

        # The allowance is shared on-chain state; another spender may have raced us
        try:
            recheck = await self._evaluator.evaluate(token, invoice.amount_raw, invoice.payer_address, spender)
        except Exception as e:
            return await self._fail(
                attempt, ErrorKind.EVALUATION_ERROR, listener,
                f"Could not re-read {token.symbol} allowance after approval: {e}",
            )
        if recheck.required:
            return await self._fail(
                attempt, ErrorKind.INVARIANT_VIOLATION, listener,
                f"Allowance still {recheck.current_allowance} after approving {invoice.amount_raw}",
                details={
                    "current_allowance": recheck.current_allowance,
                    "required": invoice.amount_raw,
                },
            )
        return None

    async def _fund(
        self,
        attempt: SettlementAttempt,
        token: TokenRef,
        listener: Optional[EventListener],
    ) -> SettlementOutcome:
        invoice = attempt.invoice
        key = _invoice_key(invoice)

        # Native payments travel as msg.value; ERC20 payments as calldata against the allowance
        if token.is_native:
            amount, value = 0, invoice.amount_raw
        else:
            amount, value = invoice.amount_raw, 0

        try:
            payload = self._accessor.funding_payload(invoice)
            handle = await self._accessor.submit_funding(
                invoice.settlement_contract_address, invoice.id, amount, value, payload,
            )
        except Exception as e:
            return await self._fail(attempt, ErrorKind.SUBMISSION_ERROR, listener, f"Funding not submitted: {e}")
        attempt.attach(handle)
        self._unresolved_funding[key] = handle
        logger.info("Invoice %s: funding %s submitted", invoice.id, handle.tx_hash)

        confirmation, failed = await self._observe(attempt, handle, listener)
        if failed is not None:
            return failed

        self._unresolved_funding.pop(key, None)
        if not confirmation.success:
            return await self._fail(
                attempt, ErrorKind.FUNDING_REJECTED, listener,
                f"Funding {handle.tx_hash} reverted",
                revert_reason=confirmation.revert_reason,
            )
        await self._transition(attempt, SettlementPhase.SETTLED, listener, handle.tx_hash)
        return self._settled_outcome(attempt, "Invoice paid")

    async def _observe(
        self,
        attempt: SettlementAttempt,
        handle: TransactionHandle,
        listener: Optional[EventListener],
    ) -> Tuple[Optional[ConfirmationResult], Optional[SettlementOutcome]]:
        """Await ``handle``; returns (confirmation, None) or (None, failed outcome)."""
        try:
            return await self._confirm(attempt, handle), None
        except ConfirmationTimeoutError as e:
            return None, await self._fail(
                attempt, ErrorKind.CONFIRMATION_TIMEOUT, listener, str(e),
                details={"tx_hash": handle.tx_hash, "timeout": self._settings.confirmation_timeout},
            )
        except Exception as e:
            return None, await self._fail(
                attempt, ErrorKind.CHAIN_READ_ERROR, listener,
                f"Lost track of {handle.kind.value} {handle.tx_hash}: {e}",
                details={"tx_hash": handle.tx_hash},
            )

    async def _confirm(self, attempt: SettlementAttempt, handle: TransactionHandle) -> ConfirmationResult:
        """
        Wait for ``handle`` in a task of its own.

        The wait is shielded: cancelling the settlement stops waiting but not
        observing, because the transaction is already on its way to the chain.
        """
        task = asyncio.ensure_future(
            self._accessor.await_confirmation(handle, self._settings.confirmation_timeout)
        )
        self._confirmations[handle.tx_hash] = task
        task.add_done_callback(lambda _: self._confirmations.pop(handle.tx_hash, None))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                "Invoice %s: settlement cancelled while %s %s is pending; still observing it",
                attempt.invoice.id, handle.kind.value, handle.tx_hash,
            )
            task.add_done_callback(lambda t: self._record_detached(attempt, handle, t))
            attempt.detached = task
            raise

    def _record_detached(
        self,
        attempt: SettlementAttempt,
        handle: TransactionHandle,
        task: "asyncio.Future[ConfirmationResult]",
    ) -> None:
        """Bookkeeping for a confirmation that finished after its attempt was cancelled."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Detached %s %s unresolved: %s", handle.kind.value, handle.tx_hash, error)
            return

        confirmation = task.result()
        logger.info(
            "Detached %s %s mined: %s", handle.kind.value, handle.tx_hash,
            "success" if confirmation.success else "reverted",
        )
        if handle.kind != TransactionKind.FUNDING:
            return

        key = _invoice_key(attempt.invoice)
        self._unresolved_funding.pop(key, None)
        if confirmation.success and key not in self._settled:
            self._settled[key] = SettlementOutcome(
                invoice_id=attempt.invoice.id,
                phase=SettlementPhase.SETTLED,
                message="Invoice paid",
                approval_tx_hash=attempt.approval_tx.tx_hash if attempt.approval_tx else None,
                funding_tx_hash=handle.tx_hash,
            )

    # ------------------------------------------------------------------
    # Transitions and outcomes
    # ------------------------------------------------------------------

    async def _transition(
        self,
        attempt: SettlementAttempt,
        phase: SettlementPhase,
        listener: Optional[EventListener],
        tx_hash: Optional[str] = None,
    ) -> None:
        previous = attempt.transition(phase)
        logger.debug("Invoice %s: %s -> %s", attempt.invoice.id, previous.value, phase.value)
        await self._emit(
            PhaseChangedEvent(invoice_id=attempt.invoice.id, previous=previous, phase=phase, tx_hash=tx_hash),
            listener,
        )

    async def _fail(
        self,
        attempt: SettlementAttempt,
        reason: ErrorKind,
        listener: Optional[EventListener],
        message: str,
        revert_reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> SettlementOutcome:
        previous = attempt.fail(reason)
        logger.warning("Invoice %s failed in %s: %s: %s", attempt.invoice.id, previous.value, reason.value, message)
        await self._emit(
            PhaseChangedEvent(invoice_id=attempt.invoice.id, previous=previous, phase=SettlementPhase.FAILED),
            listener,
        )
        return SettlementOutcome(
            invoice_id=attempt.invoice.id,
            phase=SettlementPhase.FAILED,
            reason=reason,
            message=message,
            revert_reason=revert_reason,
            approval_tx_hash=attempt.approval_tx.tx_hash if attempt.approval_tx else None,
            funding_tx_hash=attempt.funding_tx.tx_hash if attempt.funding_tx else None,
            error_details=details,
        )

    @staticmethod
    def _settled_outcome(attempt: SettlementAttempt, message: str) -> SettlementOutcome:
        return SettlementOutcome(
            invoice_id=attempt.invoice.id,
            phase=SettlementPhase.SETTLED,
            message=message,
            approval_tx_hash=attempt.approval_tx.tx_hash if attempt.approval_tx else None,
            funding_tx_hash=attempt.funding_tx.tx_hash if attempt.funding_tx else None,
        )

    async def _emit(self, event: BaseEvent, listener: Optional[EventListener]) -> None:
        await self.event_bus.publish(event)
        if listener is not None:
            await listener(event)
