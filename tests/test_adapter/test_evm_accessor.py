"""
Test suite for EVMChainAccessor.
The AsyncWeb3 instance is replaced by mocks; no node is contacted.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import decode as abi_decode
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from nota_settlement.adapters.evm import adapter as adapter_module
from nota_settlement.adapters.evm.adapter import EVMChainAccessor
from nota_settlement.adapters.evm.constants import SettlementSettings
from nota_settlement.engine.exceptions import (
    ChainReadError,
    ConfigurationError,
    ConfirmationTimeoutError,
    SubmissionError,
)
from nota_settlement.schemas.bases import TransactionHandle, TransactionKind

from settlement_mocks import MOCK_DAI_ADDRESS, MOCK_REGISTRAR_ADDRESS, make_invoice

# Well-known development key (hardhat account #0)
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TX_HASH = "0x" + "ab" * 32


async def _value(value):
    return value


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.get_transaction_count = AsyncMock(return_value=7)
    mock.eth.fee_history = AsyncMock(return_value={"baseFeePerGas": [10, 12], "reward": [[2]]})
    mock.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex("ab" * 32))

    function = mock.eth.contract.return_value.functions
    for name in ("approve", "fund"):
        call = getattr(function, name).return_value
        call.estimate_gas = AsyncMock(return_value=50000)
        call.build_transaction = AsyncMock(side_effect=lambda params: {
            "chainId": params["chainId"],
            "nonce": params["nonce"],
            "gas": params["gas"],
            "maxFeePerGas": params["maxFeePerGas"],
            "maxPriorityFeePerGas": params["maxPriorityFeePerGas"],
            "value": params["value"],
            "to": MOCK_REGISTRAR_ADDRESS,
            "data": "0x",
        })
    return mock


@pytest.fixture
def accessor(w3):
    settings = SettlementSettings(confirmation_timeout=3.0, poll_interval=0.25)
    return EVMChainAccessor(11155111, private_key=TEST_PRIVATE_KEY, settings=settings, web3=w3)


class TestConstruction:

    def test_wallet_from_private_key(self, accessor):
        assert accessor.get_wallet_address() == TEST_ADDRESS
        assert accessor.chain_id == 11155111

    def test_missing_private_key(self, monkeypatch):
        monkeypatch.delenv("EVM_PRIVATE_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            EVMChainAccessor(11155111)

    def test_invalid_private_key(self):
        with pytest.raises(ConfigurationError):
            EVMChainAccessor(11155111, private_key="0x1234")

    def test_private_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("EVM_PRIVATE_KEY", TEST_PRIVATE_KEY)
        assert EVMChainAccessor("eip155:11155111").get_wallet_address() == TEST_ADDRESS

    @pytest.mark.asyncio
    async def test_rpc_endpoint_is_resolved_on_first_use(self, monkeypatch):
        resolved = []

        async def resolve(chain_id, rpc_key=None):
            resolved.append(chain_id)
            return "https://rpc.example"

        monkeypatch.setattr(adapter_module, "get_rpc_url", resolve)
        accessor = EVMChainAccessor(31337, private_key=TEST_PRIVATE_KEY)
        assert resolved == []

        w3 = await accessor._get_web3_instance()

        assert resolved == [31337]
        assert w3.provider.endpoint_uri == "https://rpc.example"
        assert await accessor._get_web3_instance() is w3

    def test_funding_payload_encodes_payer(self, accessor):
        invoice = make_invoice(payer_address=TEST_ADDRESS)
        payload = accessor.funding_payload(invoice)
        assert len(payload) == 32
        assert abi_decode(["address"], payload)[0].lower() == TEST_ADDRESS.lower()


class TestReads:

    @pytest.mark.asyncio
    async def test_read_allowance(self, accessor, w3):
        call = w3.eth.contract.return_value.functions.allowance.return_value
        call.call = AsyncMock(return_value=700)

        assert await accessor.read_allowance(MOCK_DAI_ADDRESS, TEST_ADDRESS, MOCK_REGISTRAR_ADDRESS) == 700
        w3.eth.contract.return_value.functions.allowance.assert_called_once_with(TEST_ADDRESS, MOCK_REGISTRAR_ADDRESS)

    @pytest.mark.asyncio
    async def test_read_allowance_failure(self, accessor, w3):
        call = w3.eth.contract.return_value.functions.allowance.return_value
        call.call = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ChainReadError):
            await accessor.read_allowance(MOCK_DAI_ADDRESS, TEST_ADDRESS, MOCK_REGISTRAR_ADDRESS)


class TestSubmission:

    @pytest.mark.asyncio
    async def test_submit_approval(self, accessor, w3):
        handle = await accessor.submit_approval(MOCK_DAI_ADDRESS, MOCK_REGISTRAR_ADDRESS, 500)

        assert handle.kind == TransactionKind.APPROVAL
        assert handle.tx_hash == TX_HASH
        w3.eth.contract.return_value.functions.approve.assert_called_once_with(MOCK_REGISTRAR_ADDRESS, 500)
        params = w3.eth.contract.return_value.functions.approve.return_value.build_transaction.call_args[0][0]
        assert params["nonce"] == 7
        assert params["gas"] == 55000
        assert params["maxFeePerGas"] == 26
        assert params["maxPriorityFeePerGas"] == 2
        w3.eth.get_transaction_count.assert_awaited_once_with(TEST_ADDRESS, "pending")
        w3.eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_submit_funding_native(self, accessor, w3):
        handle = await accessor.submit_funding(MOCK_REGISTRAR_ADDRESS, "42", 0, 10 ** 18, b"\x01" * 32)

        assert handle.kind == TransactionKind.FUNDING
        w3.eth.contract.return_value.functions.fund.assert_called_once_with(42, 0, b"\x01" * 32)
        fund_call = w3.eth.contract.return_value.functions.fund.return_value
        assert fund_call.estimate_gas.call_args[0][0]["value"] == 10 ** 18
        assert fund_call.build_transaction.call_args[0][0]["value"] == 10 ** 18

    @pytest.mark.asyncio
    async def test_legacy_gas_price_fallback(self, accessor, w3):
        w3.eth.fee_history = AsyncMock(side_effect=ValueError("method not found"))
        w3.eth.gas_price = _value(30)
        fund_call = w3.eth.contract.return_value.functions.fund.return_value
        fund_call.build_transaction = AsyncMock(side_effect=lambda params: {
            "chainId": params["chainId"],
            "nonce": params["nonce"],
            "gas": params["gas"],
            "gasPrice": params["gasPrice"],
            "value": params["value"],
            "to": MOCK_REGISTRAR_ADDRESS,
            "data": "0x",
        })

        await accessor.submit_funding(MOCK_REGISTRAR_ADDRESS, 1, 5, 0, b"")

        assert fund_call.build_transaction.call_args[0][0]["gasPrice"] == 30

    @pytest.mark.asyncio
    async def test_non_numeric_invoice_id(self, accessor, w3):
        with pytest.raises(SubmissionError):
            await accessor.submit_funding(MOCK_REGISTRAR_ADDRESS, "nota-1", 5, 0, b"")
        w3.eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_estimate_revert_is_not_broadcast(self, accessor, w3):
        approve_call = w3.eth.contract.return_value.functions.approve.return_value
        approve_call.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: paused"))

        with pytest.raises(SubmissionError) as exc_info:
            await accessor.submit_approval(MOCK_DAI_ADDRESS, MOCK_REGISTRAR_ADDRESS, 500)

        assert "paused" in str(exc_info.value)
        w3.eth.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_broadcast_refused(self, accessor, w3):
        w3.eth.send_raw_transaction = AsyncMock(side_effect=ValueError("insufficient funds for gas"))

        with pytest.raises(SubmissionError):
            await accessor.submit_approval(MOCK_DAI_ADDRESS, MOCK_REGISTRAR_ADDRESS, 500)


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_mined_success(self, accessor, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(
            return_value={"status": 1, "blockNumber": 12, "gasUsed": 46000}
        )

        result = await accessor.await_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING), 3.0)

        assert result.success
        assert result.block_number == 12
        w3.eth.wait_for_transaction_receipt.assert_awaited_once_with(TX_HASH, timeout=3.0, poll_latency=0.25)

    @pytest.mark.asyncio
    async def test_reverted_with_reason(self, accessor, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(
            return_value={"status": 0, "blockNumber": 12, "gasUsed": 30000}
        )
        w3.eth.get_transaction = AsyncMock(return_value={
            "from": TEST_ADDRESS, "to": MOCK_REGISTRAR_ADDRESS, "input": "0x", "value": 0,
        })
        w3.eth.call = AsyncMock(side_effect=ContractLogicError("execution reverted: Nota: already funded"))

        result = await accessor.await_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING), 3.0)

        assert not result.success
        assert result.revert_reason == "execution reverted: Nota: already funded"
        assert w3.eth.call.call_args.kwargs["block_identifier"] == 12

    @pytest.mark.asyncio
    async def test_reverted_without_replay(self, accessor, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0, "blockNumber": 12})
        w3.eth.get_transaction = AsyncMock(side_effect=ConnectionError("gone"))

        result = await accessor.await_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.APPROVAL), 3.0)

        assert not result.success
        assert result.revert_reason is None

    @pytest.mark.asyncio
    async def test_timeout(self, accessor, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("not mined"))

        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await accessor.await_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING), 3.0)

        assert exc_info.value.tx_hash == TX_HASH
        assert exc_info.value.timeout == 3.0

    @pytest.mark.asyncio
    async def test_node_failure_while_waiting(self, accessor, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ChainReadError) as exc_info:
            await accessor.await_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING), 3.0)
        assert not isinstance(exc_info.value, ConfirmationTimeoutError)

    @pytest.mark.asyncio
    async def test_get_confirmation_pending(self, accessor, w3):
        w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("unknown"))

        assert await accessor.get_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING)) is None

    @pytest.mark.asyncio
    async def test_get_confirmation_mined(self, accessor, w3):
        w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 9, "gasUsed": 1})

        result = await accessor.get_confirmation(TransactionHandle(tx_hash=TX_HASH, kind=TransactionKind.FUNDING))

        assert result.success
        assert result.tx_hash == TX_HASH
