"""
Invoice and Token Models

Models describing what is being paid: the invoice handed over by the UI or
backend layer, the token it is denominated in once resolved against the
chain's registry, and the allowance snapshot computed for one attempt.

Amounts are always smallest-unit Python ``int`` values. Floats are refused at
construction time so a rounding error can never reach a transaction.
"""

from typing import Optional, Union

from pydantic import ConfigDict, Field, field_validator
from web3 import Web3

from .amounts import amount_to_value
from .bases import CanonicalModel

#: Symbol reserved for the chain's native currency (ETH, MATIC, ...).
NATIVE_SYMBOL: str = "NATIVE"


def _checksum(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"{field_name} must be a valid EVM address, got {value!r}")
    return Web3.to_checksum_address(value)


class Invoice(CanonicalModel):
    """
    An invoice ("nota") to be settled on-chain.

    Immutable for the duration of a settlement. The core never fetches or
    parses invoices itself; callers build this model from whatever their
    backend returns.

    Attributes:
        id: Stable invoice identifier (on-chain nota id)
        token: Token symbol, ``NATIVE`` for the chain's native currency
        amount_raw: Exact amount in the token's smallest unit
        payer_address: Account that pays
        settlement_contract_address: Registrar contract receiving the funding call

    Note:
        ``amount_raw`` is not required to be positive here. A zero or negative
        amount is reported by the orchestrator as a failed settlement rather
        than a construction error, so the caller still gets an outcome.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Union[int, str] = Field(..., description="Stable invoice identifier")
    token: str = Field(..., min_length=1, description="Token symbol (NATIVE for native currency)")
    amount_raw: int = Field(..., description="Amount in the token's smallest unit")
    payer_address: str = Field(..., description="Paying account address")
    settlement_contract_address: str = Field(..., description="Settlement (registrar) contract address")

    @field_validator("token", mode="before")
    @classmethod
    def _normalize_token(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("amount_raw", mode="before")
    @classmethod
    def _exact_integer(cls, value):
        # bool is an int subclass; float loses precision above 2**53
        if isinstance(value, (bool, float)):
            raise ValueError(f"amount_raw must be an integer, got {type(value).__name__}")
        if isinstance(value, str):
            text = value.strip()
            digits = text[1:] if text.startswith("-") else text
            if not digits.isdigit():
                raise ValueError(f"amount_raw must be an integer string, got {value!r}")
            return int(text)
        return value

    @field_validator("payer_address")
    @classmethod
    def _payer_checksum(cls, value: str) -> str:
        return _checksum(value, "payer_address")

    @field_validator("settlement_contract_address")
    @classmethod
    def _contract_checksum(cls, value: str) -> str:
        return _checksum(value, "settlement_contract_address")

    @classmethod
    def from_amount(
        cls,
        *,
        id: Union[int, str],
        token: str,
        amount: Union[int, str],
        decimals: int,
        payer_address: str,
        settlement_contract_address: str,
    ) -> "Invoice":
        """
        Build an invoice from a human-readable amount.

        Args:
            id: Invoice identifier.
            token: Token symbol.
            amount: Human-readable amount, e.g. ``"1.5"``.
            decimals: Token decimals used to scale ``amount``.
            payer_address: Paying account.
            settlement_contract_address: Registrar contract.

        Returns:
            Invoice: With ``amount_raw`` scaled exactly.

        Raises:
            ValueError: If ``amount`` has more fractional digits than ``decimals``.
        """
        return cls(
            id=id,
            token=token,
            amount_raw=amount_to_value(amount=amount, decimals=decimals),
            payer_address=payer_address,
            settlement_contract_address=settlement_contract_address,
        )


class TokenRef(CanonicalModel):
    """
    A token resolved against one chain's registry.

    Attributes:
        symbol: Upper-case token symbol
        address: ERC20 contract address, ``None`` for the native currency
        decimals: Token decimals
    """

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Token symbol")
    address: Optional[str] = Field(None, description="ERC20 contract address (None for native)")
    decimals: int = Field(18, ge=0, description="Token decimals")

    @property
    def is_native(self) -> bool:
        return self.address is None


class AllowanceState(CanonicalModel):
    """Allowance snapshot computed fresh for one settlement attempt; never cached."""

    required: bool = Field(..., description="Whether an approval must precede funding")
    current_allowance: int = Field(0, ge=0, description="Allowance currently granted to the spender")
