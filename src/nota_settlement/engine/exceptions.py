"""
Exception and Error Definitions Module

Defines the exception hierarchy raised by chain accessors, the token registry
and the settlement state machine. The orchestrator catches every one of these
and turns it into a terminal ``SettlementOutcome``; they never escape
``settle()``.

Exception Hierarchy:
    SettlementBaseError (root)
    ├── ChainReadError
    │   └── ConfirmationTimeoutError
    ├── SubmissionError
    ├── UnknownTokenError
    ├── ConfigurationError
    └── InvalidTransition
"""

from typing import Optional


class SettlementBaseError(Exception):
    """
    Root exception class for all project-specific exceptions.

    All custom exceptions inherit from this class to enable unified
    exception handling at the orchestrator boundary.
    """
    pass


class ChainReadError(SettlementBaseError):
    """
    Raised when a read against the chain (RPC call) fails.

    This includes scenarios such as:
    - RPC call timeout or node disconnection
    - Invalid contract address
    - Malformed response from the node

    A read failure says nothing about on-chain state; it is safe to retry.
    """
    pass


class ConfirmationTimeoutError(ChainReadError):
    """
    Raised when a submitted transaction is not mined within the timeout.

    Distinct from a revert: the transaction may still be mined later, so the
    handle remains queryable.

    Attributes:
        tx_hash: Hash of the transaction that did not confirm in time
        timeout: Timeout that elapsed, in seconds
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.timeout = timeout


class SubmissionError(SettlementBaseError):
    """
    Raised when a transaction cannot be submitted.

    This includes scenarios such as:
    - Wallet or signer rejection
    - Insufficient native balance for gas
    - Gas estimation failure (the call would revert)
    - Broadcast refused by the node
    """
    pass


class UnknownTokenError(SettlementBaseError):
    """
    Raised when a token symbol has no contract address on the current chain.

    Attributes:
        symbol: The symbol that could not be resolved
    """

    def __init__(self, symbol: str, chain_id: Optional[int] = None):
        where = f" on chain {chain_id}" if chain_id is not None else ""
        super().__init__(f"Unknown token '{symbol}'{where}")
        self.symbol = symbol
        self.chain_id = chain_id


class ConfigurationError(SettlementBaseError):
    """
    Raised when configuration is missing or invalid.

    This includes scenarios such as:
    - Missing private key
    - No RPC endpoint for the chain
    - Invalid settings values
    """
    pass


class InvalidTransition(SettlementBaseError):
    """
    Raised when a settlement attempt is driven along an edge the state table
    does not allow, or a second transaction of the same kind is attached.

    This indicates a programming error in the orchestrator, not a chain
    condition.

    Attributes:
        current_state: Phase the attempt was in
        target_state: Phase that was requested
    """

    def __init__(self, message: str, current_state=None, target_state=None):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
