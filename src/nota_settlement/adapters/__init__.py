from .bases import ChainAccessor
from .registry import TokenRegistry
from .evm import EVMChainAccessor, SettlementSettings

__all__ = [
    "ChainAccessor",
    "TokenRegistry",
    "EVMChainAccessor",
    "SettlementSettings",
]
