from pathlib import Path

import pytest
import requests

from ape_safecd.approvals import approve_hash_calldata
from ape_safecd.exceptions import (
    DelegateNotRegisteredError,
    HashMismatchError,
    SafeClientException,
    SignerNotLoadedError,
    UnsupportedTransactionTypeError,
)
from ape_safecd.multisend import MULTISEND_CALL_ONLY_ADDRESS
from ape_safecd.proposals import ProposalSyncer, build_safe_transaction, manifest_path
from ape_safecd.types import ChildOfProposal, OperationType, PlannedTransaction
from ape_safecd.verify import TransactionHashVerifier
from tests.factories import (
    DELEGATE,
    OTHER_TARGET,
    OWNER_1,
    OWNER_2,
    OWNER_SAFE,
    PARENT_SAFE,
    SAFE,
    TARGET,
    populated_safe,
    proposal,
    tx_hash,
    write_yaml,
)

MANIFEST = Path("script/upgrade.proposal.manifest.yaml")


@pytest.fixture
def repo(root, client):
    write_yaml(
        root,
        "safes/treasury.yaml",
        populated_safe(SAFE, "treasury", [OWNER_1, OWNER_2], threshold=2, delegates=[DELEGATE]),
    )
    write_yaml(root, "script/upgrade.proposal.yaml", proposal("treasury", "Upgrade"))
    (root / "script" / "Proposal.s.sol").write_text("contract Proposal {}\n")
    client.add_safe(SAFE, [OWNER_1, OWNER_2], threshold=2)
    client.register_delegate(SAFE, DELEGATE, OWNER_1, label="ci")
    return root


@pytest.fixture
def make_syncer(client, chain, simulator, delegate_signer):
    def make(store, upload=False, signers=None):
        return ProposalSyncer(
            store,
            client,
            chain,
            simulator,
            TransactionHashVerifier(chain),
            signers={DELEGATE: delegate_signer} if signers is None else signers,
            upload=upload,
        )

    return make


def test_manifest_path():
    assert manifest_path(Path("script/a/b.proposal.yaml")) == Path(
        "script/a/b.proposal.manifest.yaml"
    )


def test_build_single_call():
    planned = PlannedTransaction.model_validate(
        {"transactionType": "CALL", "transaction": {"to": TARGET, "value": "0x5", "input": "0x12"}}
    )

    tx = build_safe_transaction([planned], nonce=3)

    assert (tx.to, tx.value, tx.data, tx.operation, tx.nonce) == (
        TARGET,
        5,
        "0x12",
        OperationType.CALL,
        3,
    )


def test_dry_run(repo, load_store, make_syncer, simulator, client):
    simulator.plan("run()", {"to": TARGET, "input": "0x1234"})
    store = load_store()
    syncer = make_syncer(store)

    manifests = syncer.sync()

    manifest = manifests[Path("script/upgrade.proposal.yaml")]
    assert manifest.error is None
    assert manifest.simulation_success
    assert manifest.raw_script == "contract Proposal {}\n"
    assert manifest.safe_transaction["to"] == TARGET
    assert manifest.safe_transaction["data"] == "0x1234"
    assert manifest.safe_transaction["nonce"] == 0
    assert manifest.safe_tx_hash.startswith("0x")
    assert store.proposals[0].entity.safe_tx_hash is None
    assert client.proposed == []
    assert simulator.calls[0][1:] == (SAFE, "run()", [])

    store.save()

    assert (repo / MANIFEST).is_file()


def test_upload(repo, load_store, make_syncer, simulator, client, delegate_signer):
    simulator.plan("run()", {"to": TARGET, "input": "0x1234"})
    store = load_store()
    syncer = make_syncer(store, upload=True)

    manifest = syncer.sync()[Path("script/upgrade.proposal.yaml")]

    assert syncer.proposed == 1
    assert store.proposals[0].entity.safe_tx_hash == manifest.safe_tx_hash
    assert store.get_proposal_by_hash(manifest.safe_tx_hash).title == "Upgrade"
    (proposed,) = client.proposed
    assert proposed["contractTransactionHash"] == manifest.safe_tx_hash
    assert proposed["sender"] == DELEGATE
    assert proposed["signature"] == "0x" + "01" * 32 + "02" * 32 + "1b"
    assert len(delegate_signer.signed) == 1


def test_simulation_error_continues(repo, root, load_store, make_syncer, simulator):
    write_yaml(
        root, "script/broken.proposal.yaml", proposal("treasury", "Broken", function="fail()")
    )
    simulator.failures.add("fail()")
    simulator.plan("run()", {"to": TARGET})

    manifests = make_syncer(load_store()).sync()

    broken = manifests[Path("script/broken.proposal.yaml")]
    assert broken.error == "Proposal simulation error"
    assert not broken.simulation_success
    assert broken.simulation_error_output == "Error: reverted"
    assert manifests[Path("script/upgrade.proposal.yaml")].error is None


def test_no_transactions(repo, load_store, make_syncer):
    manifest = make_syncer(load_store()).sync()[Path("script/upgrade.proposal.yaml")]

    assert manifest.error == "No transactions found"
    assert manifest.safe_transaction is None


def test_estimation_error(repo, load_store, make_syncer, simulator, client):
    simulator.plan("run()", {"to": TARGET})
    client.estimation_error = SafeClientException("estimation failed")
    store = load_store()

    manifest = make_syncer(store, upload=True).sync()[Path("script/upgrade.proposal.yaml")]

    assert manifest.error == "Safe estimation error"
    assert manifest.safe_transaction is not None
    assert client.proposed == []
    assert store.proposals[0].entity.safe_tx_hash is None


@pytest.fixture
def flaky(monkeypatch):
    def make(client, method):
        calls = []
        original = getattr(client, method)

        def call(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise requests.ConnectionError("connection reset by peer")

            return original(*args, **kwargs)

        monkeypatch.setattr(client, method, call)
        return calls

    return make


def test_estimation_connection_error_continues(
    repo, root, load_store, make_syncer, simulator, client, flaky
):
    simulator.plan("run()", {"to": TARGET})
    write_yaml(root, "script/second.proposal.yaml", proposal("treasury", "Second"))
    calls = flaky(client, "estimate_safe_transaction")
    store = load_store()

    manifests = make_syncer(store, upload=True).sync()

    errors = [manifest.error for manifest in manifests.values()]
    assert len(calls) == 2
    assert errors.count("Safe estimation error") == 1
    assert errors.count(None) == 1
    assert len(client.proposed) == 1


def test_propose_connection_error_continues(
    repo, root, load_store, make_syncer, simulator, client, flaky
):
    simulator.plan("run()", {"to": TARGET})
    write_yaml(root, "script/second.proposal.yaml", proposal("treasury", "Second"))
    calls = flaky(client, "propose_transaction")
    store = load_store()

    syncer = make_syncer(store, upload=True)
    manifests = syncer.sync()

    assert len(calls) == 2
    assert [manifest.error for manifest in manifests.values()].count("Safe proposal error") == 1
    assert syncer.proposed == 1
    assert len([entry for entry in store.proposals if entry.entity.safe_tx_hash]) == 1


def test_unsupported_transaction_type(repo, load_store, make_syncer, simulator):
    simulator.plan("run()", {"to": TARGET}, transaction_type="CREATE")

    with pytest.raises(UnsupportedTransactionTypeError):
        make_syncer(load_store()).sync()


def test_multisend_batch(repo, load_store, make_syncer, simulator):
    simulator.plan("run()", {"to": TARGET, "input": "0x12"}, {"to": OTHER_TARGET, "value": "0x1"})

    manifest = make_syncer(load_store()).sync()[Path("script/upgrade.proposal.yaml")]

    assert manifest.safe_transaction["to"] == MULTISEND_CALL_ONLY_ADDRESS
    assert manifest.safe_transaction["operation"] == OperationType.DELEGATECALL
    assert len(manifest.simulation_transactions) == 2


def test_hash_mismatch_is_fatal(repo, load_store, make_syncer, simulator, chain, client):
    simulator.plan("run()", {"to": TARGET})
    chain.tamper = lambda tx: tx.model_copy(update={"nonce": tx.nonce + 1})

    with pytest.raises(HashMismatchError):
        make_syncer(load_store(), upload=True).sync()

    assert client.proposed == []


def test_delegate_not_registered(root, repo, load_store, make_syncer, simulator):
    write_yaml(
        root,
        "safes/treasury.yaml",
        populated_safe(SAFE, "treasury", [OWNER_1, OWNER_2], threshold=2),
    )
    simulator.plan("run()", {"to": TARGET})

    with pytest.raises(DelegateNotRegisteredError):
        make_syncer(load_store(), upload=True).sync()


def test_signer_not_loaded(repo, load_store, make_syncer, simulator):
    simulator.plan("run()", {"to": TARGET})

    with pytest.raises(SignerNotLoadedError):
        make_syncer(load_store(), upload=True, signers={}).sync()


def test_next_proposal_after_submission(repo, root, load_store, make_syncer, simulator, client):
    simulator.plan("run()", {"to": TARGET})
    write_yaml(root, "script/second.proposal.yaml", proposal("treasury", "Second"))
    store = load_store()

    make_syncer(store, upload=True).sync()

    assert [proposed["nonce"] for proposed in client.proposed] == [0, 1]
    assert all(entry.entity.safe_tx_hash for entry in store.proposals)


@pytest.fixture
def nested(root, client, chain):
    chain.contracts.add(OWNER_SAFE)
    write_yaml(
        root,
        "safes/parent.yaml",
        populated_safe(PARENT_SAFE, "parent", [OWNER_SAFE, OWNER_1], delegates=[DELEGATE]),
    )
    write_yaml(
        root,
        "safes/council.yaml",
        populated_safe(OWNER_SAFE, "council", [OWNER_2], delegates=[DELEGATE]),
    )
    client.add_safe(PARENT_SAFE, [OWNER_SAFE, OWNER_1])
    client.add_safe(OWNER_SAFE, [OWNER_2])
    return root


def test_child_proposal(nested, load_store, make_syncer, simulator, client):
    write_yaml(
        nested,
        "script/upgrade.proposal.yaml",
        proposal("parent", "Upgrade", createChildProposals=True),
    )
    simulator.plan("run()", {"to": TARGET})
    store = load_store()

    manifests = make_syncer(store, upload=True).sync()

    parent_hash = manifests[Path("script/upgrade.proposal.yaml")].safe_tx_hash
    child_manifest = manifests[Path(f"script/{parent_hash}.0.child.proposal.yaml")]
    assert child_manifest.error is None
    assert child_manifest.safe_transaction["to"] == PARENT_SAFE
    assert child_manifest.safe_transaction["data"] == approve_hash_calldata(parent_hash)
    assert child_manifest.safe_transaction["nonce"] == 0
    assert len(client.proposed) == 2

    child = store.get_proposal_by_hash(child_manifest.safe_tx_hash)
    assert isinstance(child, ChildOfProposal)
    assert child.safe == OWNER_SAFE
    # NOTE: Only the parent went through the simulator
    assert len(simulator.calls) == 1


def test_child_of_previously_submitted(nested, load_store, make_syncer, simulator):
    write_yaml(
        nested,
        "script/upgrade.proposal.yaml",
        proposal("parent", "Upgrade", safeTxHash=tx_hash(0xAA), createChildProposals=True),
    )
    store = load_store()

    manifests = make_syncer(store).sync()

    assert list(manifests) == [Path(f"script/{tx_hash(0xAA)}.0.child.proposal.yaml")]
    assert simulator.calls == []
    assert len(store.proposals) == 2
