from .bases import (
    CanonicalModel,
    TransactionKind,
    TransactionHandle,
    ConfirmationResult,
    SettlementPhase,
    ErrorKind,
    SettlementOutcome,
)
from .invoices import NATIVE_SYMBOL, Invoice, TokenRef, AllowanceState
from .amounts import amount_to_value, value_to_amount

__all__ = [
    "CanonicalModel",
    "TransactionKind",
    "TransactionHandle",
    "ConfirmationResult",
    "SettlementPhase",
    "ErrorKind",
    "SettlementOutcome",
    "NATIVE_SYMBOL",
    "Invoice",
    "TokenRef",
    "AllowanceState",
    "amount_to_value",
    "value_to_amount",
]
