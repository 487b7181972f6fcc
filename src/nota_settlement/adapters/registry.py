"""
Token Registry

Resolves the token symbol of an invoice into a contract address on one chain.
The set of payable tokens is closed: the native currency plus the assets
registered for the chain. Anything else is an unknown token.
"""

from typing import Dict, List, Union

from web3 import Web3

from ..engine.exceptions import UnknownTokenError
from ..schemas.invoices import NATIVE_SYMBOL, TokenRef
from .evm.constants import get_chain_config, to_caip2


class TokenRegistry:
    """
    Symbol to token mapping for a single chain.

    Seeded from the built-in chain table; deployments on other chains (or
    with custom tokens) add entries with :meth:`register`.

    Example:
        registry = TokenRegistry(11155111)
        registry.resolve("USDC").address  # '0x1c7D4B19...'
        registry.resolve("NATIVE").is_native  # True
    """

    def __init__(self, chain_id: Union[int, str], include_defaults: bool = True):
        self.chain_id = int(to_caip2(chain_id).split(":")[1])
        self._native_decimals = 18
        self._tokens: Dict[str, TokenRef] = {}

        config = get_chain_config(self.chain_id)
        if config is not None:
            self._native_decimals = config.native_decimals
            if include_defaults:
                for symbol, asset in config.assets.items():
                    self.register(symbol, asset.address, asset.decimals)

    def register(self, symbol: str, address: str, decimals: int = 18) -> TokenRef:
        """
        Register (or replace) an ERC20 token.

        Raises:
            ValueError: If the symbol is reserved or empty, or the address is invalid.
        """
        key = (symbol or "").strip().upper()
        if not key:
            raise ValueError("Token symbol must be a non-empty string")
        if key == NATIVE_SYMBOL:
            raise ValueError(f"'{NATIVE_SYMBOL}' is reserved for the chain's native currency")
        if not isinstance(address, str) or not Web3.is_address(address):
            raise ValueError(f"Invalid token address for {key}: {address!r}")

        token = TokenRef(symbol=key, address=Web3.to_checksum_address(address), decimals=decimals)
        self._tokens[key] = token
        return token

    def resolve(self, symbol: str) -> TokenRef:
        """
        Resolve a symbol.

        Raises:
            UnknownTokenError: If the symbol is neither native nor registered.
        """
        key = (symbol or "").strip().upper()
        if key == NATIVE_SYMBOL:
            return TokenRef(symbol=NATIVE_SYMBOL, address=None, decimals=self._native_decimals)
        token = self._tokens.get(key)
        if token is None:
            raise UnknownTokenError(symbol, self.chain_id)
        return token

    def symbols(self) -> List[str]:
        return [NATIVE_SYMBOL, *self._tokens.keys()]

    def __contains__(self, symbol: str) -> bool:
        key = (symbol or "").strip().upper()
        return key == NATIVE_SYMBOL or key in self._tokens
