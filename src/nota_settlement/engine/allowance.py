"""
Allowance evaluation.

Decides whether a settlement needs an ERC20 approval before its funding
transaction. Evaluation only reads chain state, so it is safe to run
repeatedly and concurrently.
"""

from ..adapters.bases import ChainAccessor
from ..schemas.invoices import AllowanceState, TokenRef


class AllowanceEvaluator:
    """
    Compares a required payment with the allowance currently granted.

    Native currency never needs an allowance and is answered without any
    chain call. For ERC20 tokens an approval is required iff
    ``amount_raw > current_allowance`` (integer comparison).
    """

    def __init__(self, accessor: ChainAccessor) -> None:
        self._accessor = accessor

    async def evaluate(
        self,
        token: TokenRef,
        amount_raw: int,
        owner: str,
        spender: str,
    ) -> AllowanceState:
        """
        Compute a fresh allowance snapshot.

        Args:
            token: Resolved token of the invoice.
            amount_raw: Required amount in smallest units.
            owner: Token holder (the payer).
            spender: Contract that will pull the tokens.

        Returns:
            AllowanceState: ``required`` and the allowance that was read.

        Raises:
            ChainReadError: If the allowance read fails.
        """
        if token.is_native:
            return AllowanceState(required=False, current_allowance=0)

        current = await self._accessor.read_allowance(token.address, owner, spender)
        return AllowanceState(required=amount_raw > current, current_allowance=current)
