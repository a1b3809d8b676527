import pytest
from click.testing import CliRunner

from ape_safecd._cli import cli as CLI
from ape_safecd.client import MockTransactionServiceClient
from tests.factories import (
    DELEGATE,
    OWNER_1,
    OWNER_2,
    SAFE,
    FakeSigner,
    populated_safe,
    proposal,
    transaction,
    tx_hash,
    write_yaml,
)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli():
    return CLI


@pytest.fixture
def repo(root):
    write_yaml(
        root,
        "safes/treasury.yaml",
        populated_safe(SAFE, "treasury", [OWNER_1, OWNER_2], threshold=2),
    )
    write_yaml(root, "eoas/bob.yaml", {"type": "eoa", "address": OWNER_2, "name": "bob"})
    write_yaml(
        root,
        f"transactions/{SAFE}/00000.{tx_hash(1)}.pending.yaml",
        transaction(SAFE, 0, tx_hash(1), confirmations=[{"owner": OWNER_1}]),
    )
    write_yaml(
        root, "script/upgrade.proposal.yaml", proposal("treasury", "Upgrade", safeTxHash=tx_hash(1))
    )
    write_yaml(root, "script/next.proposal.yaml", proposal("treasury", "Next"))
    write_yaml(root, "script/later.proposal.yaml", proposal("treasury", "Later", nonce="a + 1"))
    return root


def test_nonces(runner, cli, repo):
    result = runner.invoke(cli, ["nonces", "--root", str(repo)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "  0: script/next.proposal.yaml (Next)" in result.output
    assert "  1: script/later.proposal.yaml (Later)" in result.output
    assert "upgrade.proposal.yaml" not in result.output


def test_nonces_nothing_pending(runner, cli, root):
    result = runner.invoke(cli, ["nonces", "--root", str(root)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert ": script/" not in result.output


def test_pending_by_name(runner, cli, repo):
    result = runner.invoke(cli, ["pending", "bob", "--root", str(repo)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "1 proposal(s) awaiting a signature from 'bob':" in result.output
    assert f"  {tx_hash(1)} Upgrade (safe: treasury)" in result.output


def test_pending_by_address(runner, cli, repo):
    result = runner.invoke(cli, ["pending", OWNER_1, "--root", str(repo)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "proposal(s) awaiting" not in result.output


def test_pending_unknown_owner(runner, cli, repo):
    result = runner.invoke(cli, ["pending", "carol", "--root", str(repo)])

    assert result.exit_code != 0


def test_reminders_dry_run(runner, cli, repo):
    result = runner.invoke(
        cli,
        [
            "reminders",
            "--users",
            "bob:U02:Europe/Paris;carol:U03",
            "--dry-run",
            "--root",
            str(repo),
        ],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "bob (U02): 1 proposal(s) awaiting a signature" in result.output
    assert "carol" not in result.output


def test_reminders_invalid_users(runner, cli, repo):
    result = runner.invoke(cli, ["reminders", "--users", "bob", "--root", str(repo)])

    assert result.exit_code == 2
    assert "EOA_NAME:SLACK_ID" in result.output


@pytest.fixture
def service(monkeypatch):
    from ape_safecd import client as client_module
    from ape_safecd._cli.click_ext import SafeCdCliContext

    client = MockTransactionServiceClient()
    client.add_safe(SAFE, [OWNER_1, OWNER_2], threshold=2)
    monkeypatch.setattr(client_module, "TransactionServiceClient", lambda **kwargs: client)
    monkeypatch.setattr(
        SafeCdCliContext, "load_account", lambda self, reference: FakeSigner(reference)
    )
    return client


def test_delegates_add(runner, cli, repo, service):
    result = runner.invoke(
        cli,
        ["delegates", "add", "treasury", DELEGATE, "ci", OWNER_1, "--root", str(repo)],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    (added,) = service.delegates[SAFE]
    assert (added.delegate, added.delegator, added.label) == (DELEGATE, OWNER_1, "ci")


def test_delegates_add_not_an_owner(runner, cli, repo, service):
    result = runner.invoke(
        cli, ["delegates", "add", "treasury", DELEGATE, "ci", DELEGATE, "--root", str(repo)]
    )

    assert result.exit_code != 0
    assert SAFE not in service.delegates


def test_delegates_add_unknown_safe(runner, cli, repo, service):
    result = runner.invoke(
        cli, ["delegates", "add", "vault", DELEGATE, "ci", OWNER_1, "--root", str(repo)]
    )

    assert result.exit_code != 0
    assert service.delegates == {}


def test_delegates_list(runner, cli, root):
    write_yaml(
        root,
        "safes/treasury.yaml",
        populated_safe(SAFE, "treasury", [OWNER_1, OWNER_2], delegates=[DELEGATE]),
    )

    result = runner.invoke(
        cli, ["delegates", "list", "treasury", "--root", str(root)], catch_exceptions=False
    )

    assert result.exit_code == 0, result.output
    assert f"  {DELEGATE} (ci) for {OWNER_1}" in result.output
