from .adapter import EVMChainAccessor
from .abis import get_allowance_abi, get_approve_abi, get_fund_abi
from .constants import (
    EvmAssetConfig,
    EvmChainConfig,
    SettlementSettings,
    get_chain_config,
    get_explorer_tx_url,
    get_supported_chains,
    get_rpc_url,
    to_caip2,
)

__all__ = [
    "EVMChainAccessor",
    "get_allowance_abi",
    "get_approve_abi",
    "get_fund_abi",
    "EvmAssetConfig",
    "EvmChainConfig",
    "SettlementSettings",
    "get_chain_config",
    "get_explorer_tx_url",
    "get_supported_chains",
    "get_rpc_url",
    "to_caip2",
]
