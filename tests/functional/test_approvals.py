from pathlib import Path

import pytest

from ape_safecd.approvals import (
    APPROVE_HASH_SELECTOR,
    ApprovalGenerator,
    approve_hash_calldata,
    child_proposal_path,
)
from ape_safecd.exceptions import OwnershipCycleError
from ape_safecd.nonce import NonceResolver
from ape_safecd.types import ChildOfProposal, FunctionCallProposal, PopulatedSafe
from tests.factories import (
    DELEGATE,
    OWNER_1,
    OWNER_2,
    OWNER_SAFE,
    PARENT_SAFE,
    populated_safe,
    proposal,
    tx_hash,
)

PARENT_HASH = tx_hash(0xAA)
PARENT_PATH = "script/upgrade.proposal.yaml"


def add_safe(store, address, name, owners, delegates=(DELEGATE,)):
    store.create_safe(
        f"safes/{name}.yaml",
        PopulatedSafe.model_validate(
            populated_safe(address, name, owners, delegates=list(delegates))
        ),
    )


@pytest.fixture
def parent(store, chain):
    chain.contracts.add(OWNER_SAFE)
    add_safe(store, PARENT_SAFE, "parent", [OWNER_SAFE, OWNER_1])
    store.create_proposal(
        PARENT_PATH,
        FunctionCallProposal.model_validate(
            proposal("parent", "Upgrade", safeTxHash=PARENT_HASH, createChildProposals=True)
        ),
    )
    return store.proposal_exists(PARENT_PATH)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, index, nonce, path):
        self.calls.append((index, nonce, path))


def test_approve_hash_calldata():
    calldata = approve_hash_calldata(PARENT_HASH)

    assert calldata == "0x" + APPROVE_HASH_SELECTOR.hex() + PARENT_HASH[2:]
    assert calldata.startswith("0xd4d9bdcd")


def test_child_proposal_path():
    path = child_proposal_path(Path("script/dir/a.proposal.yaml"), PARENT_HASH, 2)

    assert path == Path(f"script/dir/{PARENT_HASH}.2.child.proposal.yaml")


def test_generate_child(store, chain, parent):
    add_safe(store, OWNER_SAFE, "council", [OWNER_2])
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)
    recorder = Recorder()

    children = approvals.generate(parent, recorder)

    assert len(children) == 1
    entry = store.proposals[children[0]]
    assert entry.path == Path(f"script/{PARENT_HASH}.0.child.proposal.yaml")
    child = entry.entity
    assert isinstance(child, ChildOfProposal)
    assert child.safe == OWNER_SAFE
    assert child.delegate == DELEGATE
    assert child.nonce == 0
    assert child.child_of.safe == PARENT_SAFE
    assert child.child_of.hash == PARENT_HASH
    assert child.create_child_proposals
    assert child.title == "Approve 'Upgrade' on parent"
    assert recorder.calls == [(children[0], 0, (PARENT_SAFE,))]


def test_generate_is_idempotent(store, chain, parent):
    add_safe(store, OWNER_SAFE, "council", [OWNER_2])

    first = ApprovalGenerator(store, NonceResolver(store), chain).generate(parent, Recorder())
    child = store.proposals[first[0]].entity
    second = ApprovalGenerator(store, NonceResolver(store), chain).generate(parent, Recorder())

    assert first == second
    assert len(store.proposals) == 2
    assert store.proposals[second[0]].entity == child


def test_submitted_child_kept(store, chain, parent):
    add_safe(store, OWNER_SAFE, "council", [OWNER_2])
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)
    (index,) = approvals.generate(parent, Recorder())
    submitted = store.proposals[index].entity.model_copy(update={"safe_tx_hash": tx_hash(0xBB)})
    store.write_proposal(index, submitted)
    recorder = Recorder()

    assert approvals.generate(parent, recorder) == [index]
    assert store.proposals[index].entity == submitted
    assert recorder.calls == [(index, None, (PARENT_SAFE,))]


def test_skips_safe_without_delegate(store, chain, parent):
    add_safe(store, OWNER_SAFE, "council", [OWNER_2], delegates=())
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)

    assert approvals.generate(parent, Recorder()) == []
    assert len(store.proposals) == 1


def test_skips_unknown_contract(store, chain, parent):
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)

    assert approvals.generate(parent, Recorder()) == []


def test_requires_submitted_parent(store, chain):
    chain.contracts.add(OWNER_SAFE)
    add_safe(store, PARENT_SAFE, "parent", [OWNER_SAFE])
    add_safe(store, OWNER_SAFE, "council", [OWNER_2])
    store.create_proposal(
        PARENT_PATH,
        FunctionCallProposal.model_validate(
            proposal("parent", "Upgrade", createChildProposals=True)
        ),
    )
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)

    assert approvals.generate(0, Recorder()) == []


def test_ownership_cycle(store, chain, parent):
    chain.contracts.add(PARENT_SAFE)
    add_safe(store, OWNER_SAFE, "council", [PARENT_SAFE])
    approvals = ApprovalGenerator(store, NonceResolver(store), chain)

    def submit_and_recurse(index, nonce, path):
        entry = store.proposals[index]
        store.write_proposal(
            index, entry.entity.model_copy(update={"safe_tx_hash": tx_hash(0x10 + index)})
        )
        approvals.generate(index, submit_and_recurse, path)

    with pytest.raises(OwnershipCycleError) as err:
        approvals.generate(parent, submit_and_recurse)

    assert err.value.path == [PARENT_SAFE, OWNER_SAFE, PARENT_SAFE]
