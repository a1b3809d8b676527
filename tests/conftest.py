import pytest

from ape_safecd.client import MockTransactionServiceClient
from ape_safecd.store import EntityStore
from tests.factories import DELEGATE, FakeChain, FakeSigner, FakeSimulator


@pytest.fixture
def root(tmp_path):
    return tmp_path


@pytest.fixture
def store(root):
    return EntityStore(root)


@pytest.fixture
def load_store(root):
    def load() -> EntityStore:
        store = EntityStore(root)
        store.load()
        return store

    return load


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def simulator():
    return FakeSimulator()


@pytest.fixture
def client():
    return MockTransactionServiceClient()


@pytest.fixture
def delegate_signer():
    return FakeSigner(DELEGATE)
