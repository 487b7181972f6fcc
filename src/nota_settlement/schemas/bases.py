"""
Base Schema Models for Nota Settlement

This module defines the base classes and value models shared by every layer
of the settlement core: the chain accessors produce them, the orchestrator
consumes them and the notifier renders them.

Core Classes:
    - CanonicalModel: Pydantic base model with canonical JSON serialization
    - TransactionKind: Which step of a settlement a transaction belongs to
    - TransactionHandle: Reference to a submitted on-chain transaction
    - ConfirmationResult: Mined outcome of a transaction (success or revert)
    - SettlementPhase: Phases of a settlement attempt
    - ErrorKind: Closed taxonomy of settlement failures
    - SettlementOutcome: Terminal value returned by ``settle()``

Dependencies:
    - pydantic: For data validation and serialization
"""

import json
from typing import Optional, Dict, Any, Union
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CanonicalModel(BaseModel):
    """
    Pydantic base model with canonical JSON serialization.

    Produces a deterministic JSON representation (sorted keys, no extra
    whitespace), which keeps outcomes stable when logged or compared.

    Example:
        class MyModel(CanonicalModel):
            name: str
            value: int

        model = MyModel(name="test", value=123)
        model.to_canonical_json()  # '{"name":"test","value":123}'
    """

    model_config = ConfigDict(populate_by_name=True)

    def to_canonical_json(self) -> str:
        """
        Convert model to canonical JSON string.

        ``model_dump(mode="json")`` converts enums, datetimes and nested models
        to plain types; ``json.dumps`` with sorted keys and compact separators
        fixes the layout.

        Returns:
            str: JSON string with sorted keys and no extra whitespace.
        """
        data = self.model_dump(mode="json")
        return json.dumps(
            data,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Returns:
            Dict[str, Any]: Dictionary with all model fields.
        """
        return self.model_dump()


class TransactionKind(str, Enum):
    """
    Role of a transaction within a settlement.

    Attributes:
        APPROVAL: ERC20 ``approve`` granting the settlement contract an allowance
        FUNDING: Call on the settlement contract that moves the payment
    """
    APPROVAL = "approval"
    FUNDING = "funding"


class TransactionHandle(CanonicalModel):
    """
    Reference to a transaction that has been broadcast.

    A handle is only created once the node accepted the transaction, so its
    existence means on-chain effects may follow regardless of what happens to
    the local attempt afterwards.

    Attributes:
        tx_hash: Transaction hash (0x-prefixed hex string on EVM)
        kind: Whether this is the approval or the funding transaction
        submitted_at: Local timestamp of the broadcast
    """

    model_config = ConfigDict(frozen=True)

    tx_hash: str = Field(..., description="Transaction hash (0x-prefixed hex string on EVM)")
    kind: TransactionKind = Field(..., description="Settlement step this transaction performs")
    submitted_at: datetime = Field(default_factory=datetime.now, description="Broadcast timestamp")


class ConfirmationResult(CanonicalModel):
    """
    Mined outcome of a transaction.

    A confirmation result always describes a transaction that was included
    in a block. ``success=False`` means the transaction executed and
    reverted; it never stands for a timeout or a network failure, which are
    reported as exceptions by the chain accessor instead.

    Attributes:
        tx_hash: Transaction hash
        success: True when the receipt status is 1
        revert_reason: Revert message recovered from the node, verbatim
        block_number: Block number containing the transaction
        gas_used: Actual gas consumed
    """

    tx_hash: str = Field(..., description="Transaction hash")
    success: bool = Field(..., description="True if the transaction executed without reverting")
    revert_reason: Optional[str] = Field(None, description="Revert reason reported by the node, verbatim")
    block_number: Optional[int] = Field(None, ge=0, description="Block number containing transaction")
    gas_used: Optional[int] = Field(None, ge=0, description="Actual gas consumed by transaction")


class SettlementPhase(str, Enum):
    """
    Phases of a settlement attempt.

    Attributes:
        EVALUATING: Checking whether an allowance must be granted first
        AWAITING_APPROVAL: Approval transaction submitted, waiting to be mined
        APPROVAL_CONFIRMED: Approval mined and allowance re-verified
        AWAITING_FUNDING: Funding transaction in preparation or waiting to be mined
        SETTLED: Funding transaction mined successfully (terminal)
        FAILED: Attempt ended without payment (terminal)
    """
    EVALUATING = "evaluating"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVAL_CONFIRMED = "approval_confirmed"
    AWAITING_FUNDING = "awaiting_funding"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementPhase.SETTLED, SettlementPhase.FAILED)


class ErrorKind(str, Enum):
    """
    Reasons a settlement attempt can end in ``FAILED``.

    Attributes:
        INVALID_AMOUNT: Invoice amount is zero or negative
        UNKNOWN_TOKEN: Invoice token has no known contract address
        EVALUATION_ERROR: Allowance could not be read; the whole call may be retried
        CHAIN_READ_ERROR: Node failed while waiting for a confirmation
        SUBMISSION_ERROR: Wallet rejected or node refused the transaction
        APPROVAL_REJECTED: Approval transaction reverted on-chain
        FUNDING_REJECTED: Funding transaction reverted on-chain
        CONFIRMATION_TIMEOUT: Transaction not mined within the timeout; it may still land
        INVARIANT_VIOLATION: Allowance still insufficient after a successful approval
        ALREADY_IN_PROGRESS: Another attempt for the same invoice is in flight
    """
    INVALID_AMOUNT = "invalid_amount"
    UNKNOWN_TOKEN = "unknown_token"
    EVALUATION_ERROR = "evaluation_error"
    CHAIN_READ_ERROR = "chain_read_error"
    SUBMISSION_ERROR = "submission_error"
    APPROVAL_REJECTED = "approval_rejected"
    FUNDING_REJECTED = "funding_rejected"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    INVARIANT_VIOLATION = "invariant_violation"
    ALREADY_IN_PROGRESS = "already_in_progress"


class SettlementOutcome(CanonicalModel):
    """
    Terminal value of one ``settle()`` call.

    Exactly one outcome is produced per call. It is the only externally
    observable result of the settlement core; UI refreshes and toasts are
    driven from it by the caller.

    Attributes:
        invoice_id: Identifier of the settled invoice
        phase: ``SETTLED`` or ``FAILED``
        reason: Failure kind, ``None`` when settled
        message: Human-readable description of the outcome
        revert_reason: On-chain revert reason, passed through verbatim
        approval_tx_hash: Hash of the approval transaction, if one was submitted
        funding_tx_hash: Hash of the funding transaction, if one was submitted
        error_details: Structured diagnostic information
        completed_at: Timestamp when the outcome was produced

    Example:
        outcome = await orchestrator.settle(invoice)
        if outcome.is_success():
            print(f"Paid in {outcome.funding_tx_hash}")
        else:
            print(f"Payment failed ({outcome.reason.value}): {outcome.message}")
    """

    invoice_id: Union[int, str] = Field(..., description="Identifier of the settled invoice")
    phase: SettlementPhase = Field(..., description="Terminal phase (settled or failed)")
    reason: Optional[ErrorKind] = Field(None, description="Failure kind when phase is failed")
    message: str = Field("", description="Human-readable outcome description")
    revert_reason: Optional[str] = Field(None, description="On-chain revert reason, verbatim")
    approval_tx_hash: Optional[str] = Field(None, description="Approval transaction hash")
    funding_tx_hash: Optional[str] = Field(None, description="Funding transaction hash")
    error_details: Optional[Dict[str, Any]] = Field(None, description="Detailed error information")
    completed_at: datetime = Field(default_factory=datetime.now, description="Outcome timestamp")

    def is_success(self) -> bool:
        return self.phase == SettlementPhase.SETTLED
