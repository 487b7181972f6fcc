import pytest

from nota_settlement.adapters.evm.constants import SettlementSettings
from nota_settlement.engine.orchestrator import TransactionOrchestrator

from settlement_mocks import FakeChainAccessor, make_registry


@pytest.fixture
def chain():
    return FakeChainAccessor()


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def settings():
    return SettlementSettings(confirmation_timeout=5.0, poll_interval=0.01, request_timeout=1.0)


@pytest.fixture
def orchestrator(chain, registry, settings):
    return TransactionOrchestrator(chain, registry, settings=settings)
