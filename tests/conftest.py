import pytest
from solders.pubkey import Pubkey

from mcp_bonding_curve.collaborators import InMemoryIssuer, InMemoryLedger
from mcp_bonding_curve.curve_registry import CurveRegistry


@pytest.fixture
def authority():
    return str(Pubkey.new_unique())


@pytest.fixture
def collection_id():
    return str(Pubkey.new_unique())


@pytest.fixture
def buyer():
    return str(Pubkey.new_unique())


@pytest.fixture
def registry():
    """Registry without persistence."""
    return CurveRegistry()


@pytest.fixture
def ledger(buyer):
    return InMemoryLedger({buyer: 10**12})


@pytest.fixture
def issuer():
    return InMemoryIssuer()


@pytest.fixture
def make_curve(registry, authority, collection_id):
    """Creates a curve in the registry; keyword arguments override the linear 1000/100/3 defaults."""
    def _make(**overrides):
        request = {
            "authority": authority,
            "collection_id": collection_id,
            "curve_kind": "linear",
            "base_price": 1000,
            "price_increment": 100,
            "max_supply": 3,
        }
        request.update(overrides)
        return registry.create_curve(request)
    return _make
