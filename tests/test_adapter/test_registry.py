import pytest

from nota_settlement.adapters.registry import TokenRegistry
from nota_settlement.engine.exceptions import UnknownTokenError

from settlement_mocks import MOCK_DAI_ADDRESS, make_registry

SEPOLIA_USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"


class TestTokenRegistry:

    def test_defaults_come_from_chain_table(self):
        registry = TokenRegistry(11155111)
        usdc = registry.resolve("usdc")
        assert usdc.address == SEPOLIA_USDC
        assert usdc.decimals == 6
        assert "WETH" in registry

    def test_caip2_chain_id(self):
        assert TokenRegistry("eip155:1").chain_id == 1

    def test_native_resolves_without_address(self):
        native = TokenRegistry(137).resolve("NATIVE")
        assert native.is_native
        assert native.address is None
        assert native.decimals == 18

    def test_unknown_symbol(self):
        with pytest.raises(UnknownTokenError) as exc_info:
            make_registry().resolve("USDT")
        assert exc_info.value.symbol == "USDT"
        assert exc_info.value.chain_id == 11155111

    def test_without_defaults_only_registered_tokens(self):
        registry = make_registry()
        assert registry.symbols() == ["NATIVE", "DAI", "WETH"]
        assert "USDC" not in registry
        assert registry.resolve("dai").address == MOCK_DAI_ADDRESS

    def test_unconfigured_chain_is_native_only(self):
        registry = TokenRegistry(31337)
        assert registry.symbols() == ["NATIVE"]

    def test_register_checksums_address(self):
        registry = TokenRegistry(31337)
        token = registry.register("usdt", SEPOLIA_USDC.lower(), decimals=6)
        assert token.symbol == "USDT"
        assert token.address == SEPOLIA_USDC
        assert registry.resolve("USDT") == token

    @pytest.mark.parametrize("symbol, address", [
        ("NATIVE", MOCK_DAI_ADDRESS),
        ("", MOCK_DAI_ADDRESS),
        ("XYZ", "0x1234"),
        ("XYZ", None),
    ])
    def test_register_rejects_invalid_entries(self, symbol, address):
        with pytest.raises(ValueError):
            TokenRegistry(31337).register(symbol, address)
