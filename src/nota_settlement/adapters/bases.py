"""
Abstract Base Class for Chain Accessors

Defines the capability set the settlement orchestrator needs from a
blockchain connection. Concrete accessors (EVM over JSON-RPC, in-memory fakes
for tests) implement every method; the orchestrator never talks to a node
directly.

Every method is a coroutine and is the only place a settlement may suspend.
"""

from abc import ABC, abstractmethod
from typing import Optional, Union

from ..schemas.bases import ConfirmationResult, TransactionHandle
from ..schemas.invoices import Invoice


class ChainAccessor(ABC):
    """
    Read and write handle on one chain, bound to one paying wallet.

    Key Responsibilities:
    1. read_allowance: Query ERC20 allowance granted by an owner to a spender
    2. submit_approval: Broadcast an ERC20 approve for an exact amount
    3. submit_funding: Broadcast the settlement contract's funding call
    4. await_confirmation / get_confirmation: Observe the mined outcome
    5. funding_payload: Encode the protocol payload the funding call carries

    Error contract:
        - reads raise ``ChainReadError``
        - submissions raise ``SubmissionError``
        - ``await_confirmation`` raises ``ConfirmationTimeoutError`` when the
          timeout elapses and ``ChainReadError`` when the node fails; a mined
          revert is returned as ``ConfirmationResult(success=False)``.
    """

    @abstractmethod
    async def read_allowance(self, token_address: str, owner: str, spender: str) -> int:
        """
        Read the ERC20 allowance ``owner`` granted to ``spender``.

        Returns:
            int: Allowance in the token's smallest unit.

        Raises:
            ChainReadError: If the call fails.
        """
        pass

    @abstractmethod
    async def submit_approval(self, token_address: str, spender: str, amount: int) -> TransactionHandle:
        """
        Sign and broadcast ``approve(spender, amount)`` on ``token_address``.

        Raises:
            SubmissionError: If the transaction cannot be signed or broadcast.
        """
        pass

    @abstractmethod
    async def submit_funding(
        self,
        contract: str,
        invoice_id: Union[int, str],
        amount: int,
        value: int,
        payload: bytes,
    ) -> TransactionHandle:
        """
        Sign and broadcast the funding call on the settlement contract.

        Args:
            contract: Settlement contract address.
            invoice_id: On-chain identifier of the invoice.
            amount: Calldata amount (zero for native payments).
            value: Native value attached to the call (zero for ERC20 payments).
            payload: Opaque protocol payload from :meth:`funding_payload`.

        Raises:
            SubmissionError: If the transaction cannot be signed or broadcast.
        """
        pass

    @abstractmethod
    async def await_confirmation(self, handle: TransactionHandle, timeout: float) -> ConfirmationResult:
        """
        Suspend until ``handle`` is mined or ``timeout`` seconds elapse.

        Raises:
            ConfirmationTimeoutError: If the transaction is not mined in time.
            ChainReadError: If the node cannot be queried.
        """
        pass

    @abstractmethod
    async def get_confirmation(self, handle: TransactionHandle) -> Optional[ConfirmationResult]:
        """
        Query the mined outcome of ``handle`` without waiting.

        Returns:
            Optional[ConfirmationResult]: ``None`` while the transaction is pending.

        Raises:
            ChainReadError: If the node cannot be queried.
        """
        pass

    @abstractmethod
    def funding_payload(self, invoice: Invoice) -> bytes:
        """Protocol payload attached to the funding call for ``invoice``."""
        pass

    @abstractmethod
    def get_wallet_address(self) -> str:
        """Checksummed address of the wallet that signs submissions."""
        pass
