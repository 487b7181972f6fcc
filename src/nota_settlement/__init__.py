"""
Nota settlement core.

Pays on-chain invoices ("notas") denominated in native currency or ERC20
tokens: evaluates whether an allowance must be granted, submits the approval
and funding transactions in order, waits for each to be mined and reports a
single terminal outcome per call.
"""

from .schemas import (
    Invoice,
    TokenRef,
    AllowanceState,
    TransactionKind,
    TransactionHandle,
    ConfirmationResult,
    SettlementPhase,
    ErrorKind,
    SettlementOutcome,
    NATIVE_SYMBOL,
)
from .engine.exceptions import (
    SettlementBaseError,
    ChainReadError,
    ConfirmationTimeoutError,
    SubmissionError,
    UnknownTokenError,
    ConfigurationError,
    InvalidTransition,
)
from .adapters import ChainAccessor, TokenRegistry, EVMChainAccessor, SettlementSettings
from .engine.events import EventBus, PhaseChangedEvent, SettlementCompletedEvent
from .engine.allowance import AllowanceEvaluator
from .engine.orchestrator import TransactionOrchestrator
from .engine.notifier import SettlementNotifier, MessageCategory, Notification

__all__ = [
    "Invoice",
    "TokenRef",
    "AllowanceState",
    "TransactionKind",
    "TransactionHandle",
    "ConfirmationResult",
    "SettlementPhase",
    "ErrorKind",
    "SettlementOutcome",
    "NATIVE_SYMBOL",
    "SettlementBaseError",
    "ChainReadError",
    "ConfirmationTimeoutError",
    "SubmissionError",
    "UnknownTokenError",
    "ConfigurationError",
    "InvalidTransition",
    "ChainAccessor",
    "TokenRegistry",
    "EVMChainAccessor",
    "SettlementSettings",
    "EventBus",
    "PhaseChangedEvent",
    "SettlementCompletedEvent",
    "AllowanceEvaluator",
    "TransactionOrchestrator",
    "SettlementNotifier",
    "MessageCategory",
    "Notification",
]
