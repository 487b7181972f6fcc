"""
ERC20 + Nota Registrar Smart Contract ABI Module

Minimal ABI fragments for the calls a settlement makes: reading and granting
ERC20 allowances, and funding a nota on the registrar contract.

Usage:
    from .abis import get_allowance_abi, get_approve_abi, get_fund_abi

    contract = web3.eth.contract(address=token_address, abi=get_allowance_abi())
    allowance = await contract.functions.allowance(owner, spender).call()
"""

from typing import Dict, Any, List


def get_allowance_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ERC20 `allowance(owner, spender)`.

    Returns:
        List[Dict[str, Any]]: ABI for ERC20 `allowance` function.
    """
    return [
        {
            "name": "allowance",
            "type": "function",
            "stateMutability": "view",
            "inputs": [
                {"name": "owner", "type": "address"},
                {"name": "spender", "type": "address"},
            ],
            "outputs": [{"name": "", "type": "uint256"}],
        }
    ]


def get_approve_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ERC20 `approve(spender, amount)`.

    Returns:
        List[Dict[str, Any]]: ABI for ERC20 `approve` function.
    """
    return [
        {
            "name": "approve",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "spender", "type": "address"},
                {"name": "amount", "type": "uint256"},
            ],
            "outputs": [{"name": "", "type": "bool"}],
        }
    ]


def get_fund_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for the registrar's payable `fund(notaId, amount, fundData)`.

    ERC20 notas pass the amount in calldata and rely on a prior allowance;
    native notas pass a zero amount and attach the payment as ``msg.value``.
    ``fundData`` is forwarded to the nota's module untouched.

    Returns:
        List[Dict[str, Any]]: ABI for the `fund` function.
    """
    return [
        {
            "name": "fund",
            "type": "function",
            "stateMutability": "payable",
            "inputs": [
                {"name": "notaId", "type": "uint256"},
                {"name": "amount", "type": "uint256"},
                {"name": "fundData", "type": "bytes"},
            ],
            "outputs": [],
        }
    ]
