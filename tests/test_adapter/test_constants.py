import asyncio

import httpx
import pytest

from nota_settlement.adapters.evm import constants
from nota_settlement.adapters.evm.constants import (
    EvmChainInfo,
    SettlementSettings,
    fetch_evm_chain_info,
    get_chain_config,
    get_explorer_tx_url,
    get_rpc_url,
    get_supported_chains,
    parse_public_rpc_url,
    to_caip2,
)
from nota_settlement.engine.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "EVM_RPC_URL",
        "EVM_RPC_KEY",
        "SETTLEMENT_CONFIRMATION_TIMEOUT",
        "SETTLEMENT_POLL_INTERVAL",
        "SETTLEMENT_REQUEST_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


class TestToCaip2:

    @pytest.mark.parametrize("value", [1, "1", "eip155:1", "eip155-1", " eip155:1 "])
    def test_accepted_forms(self, value):
        assert to_caip2(value) == "eip155:1"

    @pytest.mark.parametrize("value", [0, -1, True, "", "solana:1", "eip155:abc", "eip155:1:2", None])
    def test_rejected_forms(self, value):
        with pytest.raises(ValueError):
            to_caip2(value)


class TestChainConfig:

    def test_known_chain(self):
        config = get_chain_config(137)
        assert config.caip2 == "eip155:137"
        assert config.native_symbol == "MATIC"
        assert set(config.assets) == {"DAI", "WETH", "USDC"}
        assert config.assets["USDC"].decimals == 6

    def test_unknown_chain(self):
        assert get_chain_config(31337) is None

    def test_supported_chains(self):
        assert "eip155:11155111" in get_supported_chains()

    def test_explorer_tx_url(self):
        assert get_explorer_tx_url(8453, "0xabc") == "https://basescan.org/tx/0xabc"
        assert get_explorer_tx_url(31337, "0xabc") is None


class TestSettlementSettings:

    def test_defaults(self, monkeypatch):
        settings = SettlementSettings.from_env()
        assert settings == SettlementSettings()
        assert settings.confirmation_timeout == 120.0

    def test_values_from_environment(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_CONFIRMATION_TIMEOUT", "30")
        monkeypatch.setenv("SETTLEMENT_POLL_INTERVAL", "0.5")
        settings = SettlementSettings.from_env()
        assert settings.confirmation_timeout == 30.0
        assert settings.poll_interval == 0.5
        assert settings.request_timeout == 60.0

    @pytest.mark.parametrize("raw", ["0", "-5", "soon"])
    def test_invalid_values(self, monkeypatch, raw):
        monkeypatch.setenv("SETTLEMENT_CONFIRMATION_TIMEOUT", raw)
        with pytest.raises(ConfigurationError):
            SettlementSettings.from_env()


class TestRpcUrl:

    @pytest.mark.asyncio
    async def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setenv("EVM_RPC_URL", "http://localhost:8545")
        assert await get_rpc_url(1, rpc_key="abc") == "http://localhost:8545"

    @pytest.mark.asyncio
    async def test_template_is_filled_with_key(self):
        assert await get_rpc_url(11155111, rpc_key="abc") == "https://sepolia.infura.io/v3/abc"

    @pytest.mark.asyncio
    async def test_public_fallback_without_key(self):
        assert await get_rpc_url(8453) == "https://mainnet.base.org"

    @pytest.mark.asyncio
    async def test_unknown_chain_uses_ethereum_lists(self, monkeypatch):
        info = EvmChainInfo(
            name="Local",
            chainId=31337,
            rpc=["wss://ws.example", "https://${KEY}.example", "https://rpc.example"],
        )

        async def fetch_info(chain_id):
            return info

        monkeypatch.setattr(constants, "fetch_evm_chain_info", fetch_info)
        assert await get_rpc_url(31337) == "https://rpc.example"

    @pytest.mark.asyncio
    async def test_unknown_chain_unreachable_metadata(self, monkeypatch):
        async def unreachable(chain_id):
            raise httpx.ConnectError("offline")

        monkeypatch.setattr(constants, "fetch_evm_chain_info", unreachable)
        with pytest.raises(ConfigurationError):
            await get_rpc_url(31337)

    @pytest.mark.asyncio
    async def test_chain_metadata_is_fetched_without_blocking(self, monkeypatch):
        requested = []

        async def fetch(url, timeout=10.0):
            requested.append(url)
            await asyncio.sleep(0)
            return {"name": "Local", "chainId": 31337, "rpc": ["https://rpc.example"]}

        monkeypatch.setattr(constants, "fetch_json", fetch)
        info = await fetch_evm_chain_info("eip155:31337")

        assert info.rpc == ["https://rpc.example"]
        assert requested[0].endswith("/eip155-31337.json")

    @pytest.mark.asyncio
    async def test_fetch_json_uses_async_client(self, monkeypatch):
        def respond(request):
            return httpx.Response(200, json={"ok": True})

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            constants.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(respond), **kwargs),
        )
        assert await constants.fetch_json("https://lists.example/chain.json") == {"ok": True}

    def test_parse_public_rpc_url(self):
        assert parse_public_rpc_url(["https://{API_KEY}.x", "http://plain"]) is None
        assert parse_public_rpc_url([]) is None
