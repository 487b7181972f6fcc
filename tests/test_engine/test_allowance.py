import pytest

from nota_settlement.engine.allowance import AllowanceEvaluator
from nota_settlement.engine.exceptions import ChainReadError
from nota_settlement.schemas.invoices import TokenRef

from settlement_mocks import (
    MOCK_DAI_ADDRESS,
    MOCK_PAYER_ADDRESS,
    MOCK_REGISTRAR_ADDRESS,
)

NATIVE = TokenRef(symbol="NATIVE", address=None)
DAI = TokenRef(symbol="DAI", address=MOCK_DAI_ADDRESS)


@pytest.mark.asyncio
async def test_native_never_requires_approval(chain):
    state = await AllowanceEvaluator(chain).evaluate(NATIVE, 10 ** 30, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)

    assert state.required is False
    assert state.current_allowance == 0
    assert chain.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("allowance, amount, required", [
    (0, 1, True),
    (499, 500, True),
    (500, 500, False),
    (501, 500, False),
    (2 ** 256 - 1, 10 ** 30, False),
])
async def test_erc20_compares_exact_integers(chain, allowance, amount, required):
    chain.set_allowance(MOCK_DAI_ADDRESS, allowance)

    state = await AllowanceEvaluator(chain).evaluate(DAI, amount, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)

    assert state.required is required
    assert state.current_allowance == allowance
    assert chain.calls == [("read_allowance", MOCK_DAI_ADDRESS, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)]


@pytest.mark.asyncio
async def test_read_failure_propagates(chain):
    chain.read_error = ChainReadError("timeout")

    with pytest.raises(ChainReadError):
        await AllowanceEvaluator(chain).evaluate(DAI, 1, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)


@pytest.mark.asyncio
async def test_every_evaluation_reads_fresh(chain):
    evaluator = AllowanceEvaluator(chain)
    first = await evaluator.evaluate(DAI, 100, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)
    chain.set_allowance(MOCK_DAI_ADDRESS, 100)
    second = await evaluator.evaluate(DAI, 100, MOCK_PAYER_ADDRESS, MOCK_REGISTRAR_ADDRESS)

    assert first.required and not second.required
    assert chain.count("read_allowance") == 2
