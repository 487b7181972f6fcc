"""
EVM Chain Configuration Management

Provides unified access to EVM chain configurations, the tokens a nota can be
denominated in on each chain, RPC URL resolution and the settlement settings
loaded from the environment.
"""

import os
from typing import Dict, Optional, List, Any, Union

from pydantic import BaseModel, Field, ValidationError
import dotenv
import httpx

from ...engine.exceptions import ConfigurationError

dotenv.load_dotenv()


class EvmAssetConfig(BaseModel):
    """Token asset configuration."""
    symbol: str
    address: str = Field(..., description="Token contract address")
    name: str = Field(..., description="Token name")
    decimals: int = Field(..., description="Token decimals")


class EvmChainInfo(BaseModel):
    """Subset of ethereum-lists chain metadata we rely on.

    Compatible with the JSON files in `ethereum-lists/chains`
    (eip155-<chain_id>.json); only the fields used for RPC discovery are kept.
    """
    name: str = Field(..., description="Human-readable network name")
    rpc: List[str] = Field(..., description="List of RPC endpoints")
    chainId: int = Field(..., description="Chain ID of the network")


class EvmChainConfig(BaseModel):
    """EVM blockchain network configuration."""
    caip2: str
    chain_id: int
    name: str
    native_symbol: str = Field(..., description="Symbol of the native currency")
    native_decimals: int = Field(default=18, description="Decimals of the native currency")
    rpc_url: Optional[str] = Field(None, description="JSON-RPC endpoint URL template")
    public_rpc_url: Optional[str] = Field(None, description="Public RPC endpoint (fallback when no RPC key)")
    explorer_url: Optional[str] = Field(None, description="Block explorer URL")
    assets: Dict[str, EvmAssetConfig] = Field(default_factory=dict, description="Supported ERC20 assets")


class SettlementSettings(BaseModel):
    """
    Tunables of the settlement orchestrator.

    Attributes:
        confirmation_timeout: Seconds to wait for each transaction to be mined
        poll_interval: Seconds between receipt polls
        request_timeout: HTTP timeout of each RPC request, in seconds
    """
    confirmation_timeout: float = Field(default=120.0, gt=0, description="Seconds to wait for a receipt")
    poll_interval: float = Field(default=2.0, gt=0, description="Seconds between receipt polls")
    request_timeout: float = Field(default=60.0, gt=0, description="RPC request timeout in seconds")

    @classmethod
    def from_env(cls) -> "SettlementSettings":
        """
        Build settings from environment variables, falling back to defaults.

        Environment Variables:
            - SETTLEMENT_CONFIRMATION_TIMEOUT
            - SETTLEMENT_POLL_INTERVAL
            - SETTLEMENT_REQUEST_TIMEOUT

        Raises:
            ConfigurationError: If a variable is set to an invalid value.
        """
        values: Dict[str, str] = {}
        for field_name, env_name in (
            ("confirmation_timeout", "SETTLEMENT_CONFIRMATION_TIMEOUT"),
            ("poll_interval", "SETTLEMENT_POLL_INTERVAL"),
            ("request_timeout", "SETTLEMENT_REQUEST_TIMEOUT"),
        ):
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settlement settings in environment: {e}") from e


# Raw chain configuration data
# Each chain includes a premium RPC template (with {RPC_KEYS} placeholder) and a public RPC fallback.
_EVM_CHAINS_DATA: Dict[str, Dict[str, Any]] = {
    "eip155:1": {
      "name": "Ethereum Mainnet",
      "native_symbol": "ETH",
      "rpc_url": "https://mainnet.infura.io/v3/{RPC_KEYS}",
      "public_rpc_url": "https://ethereum-rpc.publicnode.com",
      "explorer_url": "https://etherscan.io",
      "assets": {
        "DAI": {
          "address": "0x6B175474E89094C44Da98b954EedeAC495271d0F",
          "name": "Dai Stablecoin",
          "decimals": 18,
        },
        "WETH": {
          "address": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
          "name": "Wrapped Ether",
          "decimals": 18,
        },
        "USDC": {
          "address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
          "name": "USD Coin",
          "decimals": 6,
        },
      }
    },
    "eip155:8453": {
      "name": "Base Mainnet",
      "native_symbol": "ETH",
      "rpc_url": "https://base-mainnet.infura.io/v3/{RPC_KEYS}",
      "public_rpc_url": "https://mainnet.base.org",
      "explorer_url": "https://basescan.org",
      "assets": {
        "DAI": {
          "address": "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb",
          "name": "Dai Stablecoin",
          "decimals": 18,
        },
        "WETH": {
          "address": "0x4200000000000000000000000000000000000006",
          "name": "Wrapped Ether",
          "decimals": 18,
        },
        "USDC": {
          "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
          "name": "USD Coin",
          "decimals": 6,
        },
      }
    },
    "eip155:137": {
      "name": "Polygon Mainnet",
      "native_symbol": "MATIC",
      "rpc_url": "https://polygon-mainnet.infura.io/v3/{RPC_KEYS}",
      "public_rpc_url": "https://polygon-rpc.com",
      "explorer_url": "https://polygonscan.com",
      "assets": {
        "DAI": {
          "address": "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063",
          "name": "Dai Stablecoin",
          "decimals": 18,
        },
        "WETH": {
          "address": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
          "name": "Wrapped Ether",
          "decimals": 18,
        },
        "USDC": {
          "address": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
          "name": "USD Coin",
          "decimals": 6,
        },
      }
    },
    "eip155:11155111": {
      "name": "Sepolia Testnet",
      "native_symbol": "ETH",
      "rpc_url": "https://sepolia.infura.io/v3/{RPC_KEYS}",
      "public_rpc_url": "https://ethereum-sepolia-rpc.publicnode.com",
      "explorer_url": "https://sepolia.etherscan.io",
      "assets": {
        "WETH": {
          "address": "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14",
          "name": "Wrapped Ether",
          "decimals": 18,
        },
        "USDC": {
          "address": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
          "name": "USD Coin",
          "decimals": 6,
        },
      }
    },
}


def to_caip2(chain_id: Union[int, str]) -> str:
    """
    Normalize a chain identifier into CAIP-2 form.

    Accepts an integer chain id, a decimal string, ``eip155:<id>`` or
    ``eip155-<id>``.

    Raises:
        ValueError: If the identifier cannot be parsed or is not positive.
    """
    if isinstance(chain_id, bool):
        raise ValueError(f"Invalid chain id: {chain_id!r}")
    if isinstance(chain_id, int):
        number = chain_id
    elif isinstance(chain_id, str) and chain_id.strip():
        normalized = chain_id.strip().replace("-", ":")
        parts = normalized.split(":")
        if len(parts) == 1:
            digits = parts[0]
        elif len(parts) == 2 and parts[0] == "eip155":
            digits = parts[1]
        else:
            raise ValueError(
                f"Invalid CAIP-2 format: '{chain_id}'. "
                f"Expected format 'eip155:<chain_id>' or 'eip155-<chain_id>'"
            )
        try:
            number = int(digits)
        except ValueError as exc:
            raise ValueError(
                f"Failed to parse chain ID from '{chain_id}'. "
                f"The segment '{digits}' is not a valid integer."
            ) from exc
    else:
        raise ValueError(f"Invalid chain id: {chain_id!r}")

    if number <= 0:
        raise ValueError(f"Chain ID must be a positive integer, got {number}")
    return f"eip155:{number}"


def get_chain_config(chain_id: Union[int, str]) -> Optional[EvmChainConfig]:
    """
    Look up the built-in configuration of a chain.

    Args:
        chain_id: Integer chain id or CAIP-2 identifier.

    Returns:
        EvmChainConfig, or None if the chain has no built-in entry.
    """
    caip2 = to_caip2(chain_id)
    data = _EVM_CHAINS_DATA.get(caip2)
    if data is None:
        return None

    assets = {
        symbol: EvmAssetConfig(symbol=symbol, **asset)
        for symbol, asset in data.get("assets", {}).items()
    }
    return EvmChainConfig(
        caip2=caip2,
        chain_id=int(caip2.split(":")[1]),
        name=data["name"],
        native_symbol=data["native_symbol"],
        rpc_url=data.get("rpc_url"),
        public_rpc_url=data.get("public_rpc_url"),
        explorer_url=data.get("explorer_url"),
        assets=assets,
    )


def get_explorer_tx_url(chain_id: Union[int, str], tx_hash: str) -> Optional[str]:
    """
    Block explorer page of a transaction.

    Returns:
        The transaction URL, or None if the chain has no known explorer.
    """
    config = get_chain_config(chain_id)
    if config is None or not config.explorer_url:
        return None
    return f"{config.explorer_url.rstrip('/')}/tx/{tx_hash}"


def get_supported_chains() -> List[str]:
    """CAIP-2 identifiers of every chain with a built-in configuration."""
    return list(_EVM_CHAINS_DATA.keys())


async def fetch_json(url: str, timeout: float = 10.0) -> Dict[str, Any]:
    """
    Fetches JSON data from a URL and raises detailed exceptions on failure.

    Args:
        url (str): The target URL to request.
        timeout (float): Connection timeout in seconds.

    Returns:
        Dict[str, Any]: The parsed JSON response.

    Raises:
        httpx.HTTPStatusError: If the server returns a 4xx or 5xx status code.
        httpx.RequestError: If a network-level error occurs (DNS, Connection Refused).
        RuntimeError: If the response is not valid JSON.
    """
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as json_exc:
            raise RuntimeError(
                f"Failed to decode JSON from {url}. Content-Type: {response.headers.get('Content-Type')}"
            ) from json_exc


async def fetch_evm_chain_info(chain_id: Union[int, str]) -> EvmChainInfo:
    """
    Retrieves EVM chain metadata from the ethereum-lists repository.

    Args:
        chain_id: Integer chain id or CAIP-2 identifier.

    Returns:
        EvmChainInfo: Validated chain metadata.

    Raises:
        httpx.HTTPError: If the chain file is not found or unreachable.
        TypeError: If the returned payload does not match the EvmChainInfo schema.
    """
    number = to_caip2(chain_id).split(":")[1]
    url = (
        "https://raw.githubusercontent.com/ethereum-lists/chains/master/_data/chains/"
        f"eip155-{number}.json"
    )

    payload = await fetch_json(url)

    try:
        return EvmChainInfo(**payload)
    except ValidationError as e:
        raise TypeError(
            f"Schema mismatch: Data from {url} is incompatible with EvmChainInfo."
        ) from e


def parse_public_rpc_url(rpcs: List[str], start_with: str = "https://") -> Optional[str]:
    """Pick a public (no-key) RPC URL from a chain's RPC list.

    Prefers plain HTTPS endpoints without placeholder markers (`$` or `{...}`),
    which indicate an API key is required.

    Returns:
        A public RPC URL, or None if none is found.
    """
    for rpc in rpcs or []:
        if not isinstance(rpc, str):
            continue
        if not rpc.startswith(start_with):
            continue
        if "$" in rpc or "{" in rpc or "}" in rpc:
            continue
        return rpc
    return None


async def get_rpc_url(chain_id: Union[int, str], rpc_key: Optional[str] = None) -> str:
    """
    Resolve the JSON-RPC endpoint for a chain.

    Resolution order:
    1. ``EVM_RPC_URL`` environment variable
    2. The chain's premium template filled with ``rpc_key``
    3. The chain's built-in public endpoint
    4. A public endpoint from ethereum-lists metadata

    Only the last step goes to the network, through ``httpx.AsyncClient``.

    Raises:
        ConfigurationError: If no endpoint can be determined.
    """
    explicit = get_rpc_url_from_env()
    if explicit:
        return explicit

    config = get_chain_config(chain_id)
    if config is not None:
        if rpc_key and config.rpc_url:
            return config.rpc_url.replace("{RPC_KEYS}", rpc_key)
        if config.public_rpc_url:
            return config.public_rpc_url

    try:
        info = await fetch_evm_chain_info(chain_id)
    except (httpx.HTTPError, RuntimeError, TypeError) as e:
        raise ConfigurationError(f"No RPC endpoint known for chain {chain_id}: {e}") from e

    url = parse_public_rpc_url(info.rpc)
    if not url:
        raise ConfigurationError(f"No public RPC endpoint listed for chain {chain_id}")
    return url


def get_private_key_from_env() -> Optional[str]:
    """
    Load the paying wallet's private key from ``EVM_PRIVATE_KEY``.

    The private key should be stored in the environment or a ``.env`` file
    and never committed to version control.
    """
    return os.getenv("EVM_PRIVATE_KEY")


def get_rpc_url_from_env() -> Optional[str]:
    """Explicit JSON-RPC endpoint from ``EVM_RPC_URL``, overriding chain defaults."""
    return os.getenv("EVM_RPC_URL")


def get_rpc_key_from_env() -> Optional[str]:
    """
    Load the infrastructure API key (``EVM_RPC_KEY``) used to fill premium
    RPC URL templates. Public endpoints are used when it is not set.
    """
    return os.getenv("EVM_RPC_KEY")
