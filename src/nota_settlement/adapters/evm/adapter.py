"""
EVM Chain Accessor

Implements the ChainAccessor capability set over an EVM JSON-RPC node:
ERC20 allowance reads, exact-amount approvals, nota funding calls on the
registrar, and receipt observation with timeouts.

Key Features:
    - Local signing with the paying wallet's private key
    - EIP-1559 fees with legacy gas price fallback
    - Serialized nonce allocation for concurrent settlements from one wallet
    - Best-effort revert reason recovery for reverted receipts

Dependencies:
    - web3.py: For blockchain RPC interaction
    - eth_account: For transaction signing
    - eth_abi: For the funding payload encoding
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Union

from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from ...engine.exceptions import (
    ChainReadError,
    ConfigurationError,
    ConfirmationTimeoutError,
    SubmissionError,
)
from ...schemas.bases import ConfirmationResult, TransactionHandle, TransactionKind
from ...schemas.invoices import Invoice
from ..bases import ChainAccessor
from .abis import get_allowance_abi, get_approve_abi, get_fund_abi
from .constants import (
    SettlementSettings,
    get_private_key_from_env,
    get_rpc_key_from_env,
    get_rpc_url,
    to_caip2,
)

logger = logging.getLogger(__name__)

#: Gas estimate multiplier leaving headroom for state changes between estimate and inclusion.
_GAS_BUFFER: float = 1.1


class EVMChainAccessor(ChainAccessor):
    """
    EVM implementation of :class:`ChainAccessor`, bound to one chain and one wallet.

    The wallet is loaded from the ``private_key`` argument or the
    ``EVM_PRIVATE_KEY`` environment variable. The RPC endpoint comes from the
    ``rpc_url`` argument or :func:`get_rpc_url`. An ``AsyncWeb3`` instance may
    be injected directly, which is how the tests drive this class.

    Attributes:
        chain_id: EVM chain id this accessor talks to
        account: Signing account
        wallet_address: Checksummed address of ``account``

    Example:
        accessor = EVMChainAccessor(chain_id=11155111)
        allowance = await accessor.read_allowance(usdc, accessor.get_wallet_address(), registrar)
    """

    def __init__(
        self,
        chain_id: int,
        private_key: Optional[str] = None,
        rpc_url: Optional[str] = None,
        settings: Optional[SettlementSettings] = None,
        web3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize the accessor.

        Args:
            chain_id: EVM chain id (1=Ethereum, 11155111=Sepolia, ...).
            private_key: Optional private key override (0x-prefixed hex).
            rpc_url: Optional RPC endpoint override.
            settings: Timeouts and poll interval; defaults to ``SettlementSettings()``.
            web3: Optional pre-built ``AsyncWeb3`` instance.

        Raises:
            ConfigurationError: If no private key is available or it is malformed.
        """
        self.chain_id = int(to_caip2(chain_id).split(":")[1])
        self._settings = settings or SettlementSettings()

        resolved_pk = private_key if private_key else get_private_key_from_env()
        if not resolved_pk:
            raise ConfigurationError(
                "Private key not provided. Either pass 'private_key' parameter or "
                "set 'EVM_PRIVATE_KEY' environment variable."
            )
        try:
            self.account = Account.from_key(resolved_pk)
        except Exception as e:
            raise ConfigurationError(f"Invalid private key: {e}") from e
        self.wallet_address = AsyncWeb3.to_checksum_address(self.account.address)

        self._rpc_url = rpc_url
        self._web3 = web3
        self._nonce_lock = asyncio.Lock()

    async def _get_web3_instance(self) -> AsyncWeb3:
        """
        Return the ``AsyncWeb3`` instance, creating it on first use.

        Raises:
            ConfigurationError: If no RPC endpoint can be resolved.
        """
        if self._web3 is None:
            rpc_url = self._rpc_url or await get_rpc_url(self.chain_id, get_rpc_key_from_env())
            self._web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": self._settings.request_timeout}
            ))
        return self._web3

    def get_wallet_address(self) -> str:
        return self.wallet_address

    def funding_payload(self, invoice: Invoice) -> bytes:
        """ABI-encoded payer address, as expected by the registrar's payment modules."""
        return abi_encode(["address"], [invoice.payer_address])

    async def read_allowance(self, token_address: str, owner: str, spender: str) -> int:
        """
        Retrieves the amount of tokens that an owner allowed a spender to withdraw.

        Raises:
            ChainReadError: If an address is invalid or the contract call fails.
        """
        try:
            w3 = await self._get_web3_instance()
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=get_allowance_abi(),
            )
            allowance = await contract.functions.allowance(
                AsyncWeb3.to_checksum_address(owner),
                AsyncWeb3.to_checksum_address(spender),
            ).call()
            return int(allowance)
        except ConfigurationError as e:
            raise ChainReadError(str(e)) from e
        except Exception as e:
            raise ChainReadError(
                f"Failed to query allowance for token {token_address}. "
                f"Owner: {owner}, Spender: {spender}. Error: {e}"
            ) from e

    async def submit_approval(self, token_address: str, spender: str, amount: int) -> TransactionHandle:
        """
        Sign and broadcast ``approve(spender, amount)``.

        Raises:
            SubmissionError: If building, signing or broadcasting fails.
        """
        try:
            w3 = await self._get_web3_instance()
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=get_approve_abi(),
            )
            tx_fn = contract.functions.approve(AsyncWeb3.to_checksum_address(spender), int(amount))
        except Exception as e:
            raise SubmissionError(f"Cannot build approval for token {token_address}: {e}") from e

        tx_hash = await self._sign_and_send(tx_fn, value=0, label="approval")
        return TransactionHandle(tx_hash=tx_hash, kind=TransactionKind.APPROVAL)

    async def submit_funding(
        self,
        contract: str,
        invoice_id: Union[int, str],
        amount: int,
        value: int,
        payload: bytes,
    ) -> TransactionHandle:
        """
        Sign and broadcast ``fund(notaId, amount, fundData)`` with ``value`` attached.

        Raises:
            SubmissionError: If the invoice id is not a uint256, or building,
                signing or broadcasting fails.
        """
        try:
            nota_id = int(invoice_id)
        except (TypeError, ValueError) as e:
            raise SubmissionError(f"Invoice id {invoice_id!r} is not a numeric nota id") from e

        try:
            w3 = await self._get_web3_instance()
            registrar = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(contract),
                abi=get_fund_abi(),
            )
            tx_fn = registrar.functions.fund(nota_id, int(amount), bytes(payload))
        except Exception as e:
            raise SubmissionError(f"Cannot build funding for nota {invoice_id}: {e}") from e

        tx_hash = await self._sign_and_send(tx_fn, value=int(value), label="funding")
        return TransactionHandle(tx_hash=tx_hash, kind=TransactionKind.FUNDING)

    async def _sign_and_send(self, tx_fn, value: int, label: str) -> str:
        """
        Build, sign and broadcast a contract call from the wallet.

        Nonce lookup and broadcast run under a lock so two settlements from
        the same wallet never reuse a nonce.

        Returns:
            str: 0x-prefixed transaction hash.

        Raises:
            SubmissionError: On any failure before the node accepted the transaction.
        """
        async with self._nonce_lock:
            try:
                w3 = await self._get_web3_instance()
                tx_params: Dict[str, Any] = {
                    "chainId": self.chain_id,
                    "from": self.wallet_address,
                    "value": value,
                    "nonce": await w3.eth.get_transaction_count(self.wallet_address, "pending"),
                }

                # A failing estimate means the call would revert; do not broadcast it
                gas_estimate = await tx_fn.estimate_gas({"from": self.wallet_address, "value": value})
                tx_params["gas"] = int(gas_estimate * _GAS_BUFFER)

                tx_params.update(await self._fee_params(w3))

                transaction = await tx_fn.build_transaction(tx_params)
                signed_tx = self.account.sign_transaction(transaction)
                tx_hash = await w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            except ContractLogicError as e:
                raise SubmissionError(f"{label} would revert: {e.message or e}") from e
            except Exception as e:
                raise SubmissionError(f"Failed to submit {label} transaction: {e}") from e

        tx_hex = AsyncWeb3.to_hex(tx_hash)
        logger.info("Submitted %s transaction %s from %s", label, tx_hex, self.wallet_address)
        return tx_hex

    @staticmethod
    async def _fee_params(w3: AsyncWeb3) -> Dict[str, int]:
        """EIP-1559 fee fields, or a legacy ``gasPrice`` when fee history is unavailable."""
        try:
            fee_history = await w3.eth.fee_history(1, "latest", [25.0])
            base_fee = fee_history["baseFeePerGas"][-1]
            priority_fee = fee_history["reward"][0][0]
            # Max fee includes a buffer for base fee volatility (2x base + priority)
            return {
                "maxPriorityFeePerGas": priority_fee,
                "maxFeePerGas": (base_fee * 2) + priority_fee,
            }
        except Exception:
            logger.debug("fee_history unavailable, falling back to legacy gas price")
            return {"gasPrice": await w3.eth.gas_price}

    async def await_confirmation(self, handle: TransactionHandle, timeout: float) -> ConfirmationResult:
        """
        Poll for the receipt of ``handle`` until mined or ``timeout`` elapses.

        Raises:
            ConfirmationTimeoutError: If no receipt appears in time.
            ChainReadError: If the node cannot be queried.
        """
        try:
            w3 = await self._get_web3_instance()
            receipt = await w3.eth.wait_for_transaction_receipt(
                handle.tx_hash,
                timeout=timeout,
                poll_latency=self._settings.poll_interval,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(
                f"Transaction {handle.tx_hash} not mined within {timeout}s",
                tx_hash=handle.tx_hash,
                timeout=timeout,
            ) from e
        except ConfigurationError as e:
            raise ChainReadError(str(e)) from e
        except Exception as e:
            raise ChainReadError(f"Failed to fetch receipt for {handle.tx_hash}: {e}") from e

        return await self._to_confirmation(handle.tx_hash, receipt, w3)

    async def get_confirmation(self, handle: TransactionHandle) -> Optional[ConfirmationResult]:
        """
        Fetch the receipt of ``handle`` once, without waiting.

        Returns:
            Optional[ConfirmationResult]: ``None`` while the transaction is pending.

        Raises:
            ChainReadError: If the node cannot be queried.
        """
        try:
            w3 = await self._get_web3_instance()
            receipt = await w3.eth.get_transaction_receipt(handle.tx_hash)
        except TransactionNotFound:
            return None
        except ConfigurationError as e:
            raise ChainReadError(str(e)) from e
        except Exception as e:
            raise ChainReadError(f"Failed to fetch receipt for {handle.tx_hash}: {e}") from e

        if not receipt:
            return None
        return await self._to_confirmation(handle.tx_hash, receipt, w3)

    async def _to_confirmation(self, tx_hash: str, receipt, w3: AsyncWeb3) -> ConfirmationResult:
        if receipt.get("status") == 1:
            return ConfirmationResult(
                tx_hash=tx_hash,
                success=True,
                block_number=receipt.get("blockNumber"),
                gas_used=receipt.get("gasUsed"),
            )
        return ConfirmationResult(
            tx_hash=tx_hash,
            success=False,
            revert_reason=await self._revert_reason(tx_hash, receipt, w3),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    @staticmethod
    async def _revert_reason(tx_hash: str, receipt, w3: AsyncWeb3) -> Optional[str]:
        """
        Recover the revert message by replaying the call at the mined block.

        Receipts do not carry revert data, so the reason is best-effort:
        ``None`` when the node cannot replay the call.
        """
        try:
            tx = await w3.eth.get_transaction(tx_hash)
            await w3.eth.call(
                {
                    "from": tx["from"],
                    "to": tx["to"],
                    "data": tx["input"],
                    "value": tx.get("value", 0),
                },
                block_identifier=receipt["blockNumber"],
            )
        except ContractLogicError as e:
            return e.message or str(e)
        except Exception as e:
            logger.debug("Could not replay %s for a revert reason: %s", tx_hash, e)
        return None
