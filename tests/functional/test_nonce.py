import pytest
from hypothesis import given
from hypothesis import strategies as st

from ape_safecd.exceptions import DuplicateNonceError, NonceExpressionError
from ape_safecd.nonce import NonceCounters, NonceResolver, evaluate_nonce, references_auto
from tests.factories import (
    OWNER_1,
    OWNER_2,
    SAFE,
    populated_safe,
    proposal,
    transaction,
    tx_hash,
    write_yaml,
)

BINDINGS = {"auto": 3, "nonce": 2, "pending_nonce": 7}


@pytest.fixture
def treasury(root):
    write_yaml(
        root,
        "safes/treasury.yaml",
        populated_safe(SAFE, "treasury", [OWNER_1, OWNER_2], threshold=2),
    )


def schedule_of(store) -> list[tuple[str, int]]:
    return [
        (item.proposal.title, item.nonce)
        for item in NonceResolver(store).schedule().get(SAFE, [])
    ]


@pytest.mark.parametrize(
    "expression,expected",
    [
        (5, 5),
        ("5", 5),
        (" 12 ", 12),
        ("a", 3),
        ("auto + 1", 4),
        ("n", 2),
        ("nonce * 2", 4),
        ("pn - 1", 6),
        ("pendingNonce // 2", 3),
        ("(a + n) % 4", 1),
        ("pn / 7", 1),
        ("-a + 10", 7),
    ],
)
def test_evaluate_nonce(expression, expected):
    assert evaluate_nonce(expression, BINDINGS) == expected


@pytest.mark.parametrize(
    "expression",
    [
        "a +",
        "foo",
        "__import__('os')",
        "a.real",
        "1 / 0",
        "7 / 2",
        "n - 10",
        "1.5",
        "True",
        "[1]",
    ],
)
def test_evaluate_nonce_invalid(expression):
    with pytest.raises(ValueError):
        evaluate_nonce(expression, BINDINGS)


@given(st.integers(min_value=0, max_value=2**64))
def test_literal_nonce_ignores_bindings(value):
    assert evaluate_nonce(str(value), BINDINGS) == value
    assert evaluate_nonce(value, BINDINGS) == value


def test_references_auto():
    assert references_auto("a")
    assert references_auto("auto + 1")
    assert not references_auto("n + 1")
    assert not references_auto("pn")
    assert not references_auto(3)
    assert not references_auto("a +")


def test_next_auto_skips_taken():
    counters = NonceCounters(nonce=0, pending_nonce=2, auto=0, taken={0, 1, 3})

    assert [counters.next_auto() for _ in range(3)] == [2, 4, 5]


def test_resolve_explicit_auto_formula(store):
    resolver = NonceResolver(store)
    counters = NonceCounters(nonce=3, pending_nonce=3, auto=3)

    assert resolver.resolve_explicit("p.yaml", "a+1", counters) == 4
    assert counters.auto == 3

    assert resolver.resolve_explicit("p.yaml", "a", counters) == 3
    assert counters.auto == 4


def test_resolve_explicit_invalid(store):
    counters = NonceCounters(nonce=0, pending_nonce=0, auto=0)

    with pytest.raises(NonceExpressionError) as err:
        NonceResolver(store).resolve_explicit("script/p.proposal.yaml", "a +", counters)

    assert err.value.proposal == "script/p.proposal.yaml"
    assert err.value.expression == "a +"


def test_first_proposal_gets_zero(root, load_store, treasury):
    write_yaml(root, "script/first.proposal.yaml", proposal("treasury", "first"))

    assert schedule_of(load_store()) == [("first", 0)]


def test_nonces_strictly_increase(root, load_store, treasury):
    for name in ("c", "a", "b"):
        write_yaml(root, f"script/{name}.proposal.yaml", proposal("treasury", name))

    nonces = [nonce for _, nonce in schedule_of(load_store())]

    assert nonces == [0, 1, 2]


@pytest.fixture
def queued(root, treasury):
    write_yaml(
        root,
        f"transactions/{SAFE}/00004.{tx_hash(1)}.yaml",
        transaction(SAFE, 4, tx_hash(1), executed=True),
    )
    write_yaml(
        root,
        f"transactions/{SAFE}/00005.{tx_hash(2)}.pending.yaml",
        transaction(SAFE, 5, tx_hash(2)),
    )
    return root


@pytest.mark.parametrize("extra", [{}, {"nonce": "a"}, {"nonce": "auto"}])
def test_auto_starts_after_executed(queued, load_store, extra):
    write_yaml(queued, "script/p.proposal.yaml", proposal("treasury", "p", **extra))
    store = load_store()

    assert store.get_highest_executed_proposal_nonce(SAFE) == 4
    assert store.get_highest_proposal_nonce(SAFE) == 5
    assert schedule_of(store) == [("p", 5)]


def test_queue_after_pending(queued, load_store):
    write_yaml(queued, "script/p.proposal.yaml", proposal("treasury", "p", nonce="pn"))

    assert schedule_of(load_store()) == [("p", 6)]


def test_auto_skips_explicit(root, load_store, treasury):
    write_yaml(
        root,
        f"transactions/{SAFE}/00000.{tx_hash(1)}.yaml",
        transaction(SAFE, 0, tx_hash(1), executed=True),
    )
    write_yaml(
        root,
        f"transactions/{SAFE}/00001.{tx_hash(2)}.pending.yaml",
        transaction(SAFE, 1, tx_hash(2)),
    )
    write_yaml(root, "script/a.proposal.yaml", proposal("treasury", "a"))
    write_yaml(root, "script/b.proposal.yaml", proposal("treasury", "b", nonce="n + 1"))
    write_yaml(root, "script/c.proposal.yaml", proposal("treasury", "c"))

    # NOTE: nonce=1, `b` claims 2 so `c` moves on to 3
    assert schedule_of(load_store()) == [("a", 1), ("b", 2), ("c", 3)]


def test_replacing_pending_transaction(root, load_store, treasury):
    write_yaml(
        root,
        f"transactions/{SAFE}/00000.{tx_hash(1)}.pending.yaml",
        transaction(SAFE, 0, tx_hash(1)),
    )
    write_yaml(root, "script/replace.proposal.yaml", proposal("treasury", "replace", nonce="n"))

    assert schedule_of(load_store()) == [("replace", 0)]


def test_submitted_and_child_proposals_skipped(root, load_store, treasury):
    write_yaml(
        root, "script/done.proposal.yaml", proposal("treasury", "done", safeTxHash=tx_hash(1))
    )
    write_yaml(
        root,
        f"script/{tx_hash(2)}.0.child.proposal.yaml",
        {
            "title": "child",
            "safe": "treasury",
            "delegate": OWNER_1,
            "nonce": 0,
            "childOf": {"safe": OWNER_2, "hash": tx_hash(2)},
        },
    )

    assert NonceResolver(load_store()).schedule() == {}


def test_duplicate_nonce(root, load_store, treasury):
    write_yaml(root, "script/a.proposal.yaml", proposal("treasury", "a", nonce=3))
    write_yaml(root, "script/b.proposal.yaml", proposal("treasury", "b", nonce="1 + 2"))

    with pytest.raises(DuplicateNonceError) as err:
        NonceResolver(load_store()).schedule()

    assert err.value.nonce == 3


def test_invalid_nonce_in_proposal(root, load_store, treasury):
    write_yaml(root, "script/a.proposal.yaml", proposal("treasury", "a", nonce="a ** 2"))

    with pytest.raises(NonceExpressionError):
        NonceResolver(load_store()).schedule()


def test_allocate_shares_counters(root, load_store, treasury):
    write_yaml(root, "script/a.proposal.yaml", proposal("treasury", "a"))
    resolver = NonceResolver(load_store())

    resolver.schedule()

    assert resolver.allocate(SAFE) == 1
    assert resolver.allocate(SAFE) == 2
